"""
Schema DDL for the chat admission and context store.

Defines all table structures, constraints, and indexes as a single SQL
string constant. ``DatabaseProvider`` applies it on every open, so every
statement is idempotent.

Tables:
    rate_limits        - Fixed-window request counters per (user, endpoint)
    rate_limit_blocks  - Explicit block markers for repeated offenders
    moderation_logs    - Audit trail of flagged/blocked verdicts and appeals
    conversations      - One row per user/character chat, with optional summary
    messages           - Append-only conversation history
"""

SCHEMA_SQL = """
-- ============================================================================
-- RATE LIMITS: one counter row per fixed window
-- ============================================================================

CREATE TABLE IF NOT EXISTS rate_limits (
    user_id TEXT NOT NULL,
    endpoint TEXT NOT NULL,
    window_start INTEGER NOT NULL,   -- epoch ms, floor(now / window) * window
    request_count INTEGER NOT NULL DEFAULT 0 CHECK(request_count >= 0),
    created_at INTEGER NOT NULL,
    PRIMARY KEY (user_id, endpoint, window_start)
);

CREATE INDEX IF NOT EXISTS idx_rate_limits_window
    ON rate_limits(user_id, endpoint, window_start);

CREATE TABLE IF NOT EXISTS rate_limit_blocks (
    user_id TEXT NOT NULL,
    endpoint TEXT NOT NULL,
    blocked_until INTEGER NOT NULL,  -- epoch ms
    PRIMARY KEY (user_id, endpoint)
);

-- ============================================================================
-- MODERATION LOGS
-- ============================================================================

CREATE TABLE IF NOT EXISTS moderation_logs (
    id TEXT PRIMARY KEY,
    message_id TEXT,
    user_id TEXT,
    action TEXT NOT NULL CHECK(action IN ('allowed', 'flagged', 'blocked')),
    reason TEXT,
    categories TEXT NOT NULL,        -- JSON array
    confidence REAL NOT NULL,
    appealed INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_moderation_logs_created ON moderation_logs(created_at);
CREATE INDEX IF NOT EXISTS idx_moderation_logs_action ON moderation_logs(action);

-- ============================================================================
-- CONVERSATIONS AND MESSAGES
-- ============================================================================

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    character_id TEXT NOT NULL,
    title TEXT,
    summary TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,  -- insertion order
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    tokens INTEGER NOT NULL DEFAULT 0,
    metadata TEXT,                   -- JSON object
    hidden INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, seq);
"""
