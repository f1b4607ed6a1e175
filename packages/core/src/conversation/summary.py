"""Extractive conversation summaries.

No model call is involved: a summary is built from message counts, topic
phrases following common question openers, and a coarse tone label.
"""

from storage.records import Message

_TOPIC_KEYWORDS = (
    "about",
    "tell me",
    "what is",
    "how do",
    "can you",
    "explain",
    "help with",
)
_MAX_TOPICS = 3
_PREVIEW_CHARS = 100


def extract_topics(user_messages: list[Message]) -> list[str]:
    """Return up to three distinct short phrases that follow a topic keyword."""
    topics: list[str] = []
    for message in user_messages:
        content = message.content.lower()
        for keyword in _TOPIC_KEYWORDS:
            index = content.find(keyword)
            if index < 0:
                continue
            start = index + len(keyword)
            after = content[start:start + 20].strip()
            if after:
                topic = " ".join(after.split()[:3])
                if topic not in topics:
                    topics.append(topic)
    return topics[:_MAX_TOPICS]


def detect_tone(messages: list[Message]) -> str:
    text = " ".join(m.content.lower() for m in messages)
    if any(word in text for word in ("thank", "please", "appreciate")):
        return "polite"
    if any(word in text for word in ("!", "wow", "amazing")):
        return "enthusiastic"
    if any(word in text for word in ("help", "question", "how")):
        return "inquisitive"
    return "neutral"


def create_conversation_summary(messages: list[Message]) -> str:
    """Summarize user/assistant turns; returns "" for an empty list."""
    if not messages:
        return ""

    user_messages = [m for m in messages if m.role == "user"]
    assistant_messages = [m for m in messages if m.role == "assistant"]

    summary = (
        f"Conversation involved {len(user_messages)} user messages "
        f"and {len(assistant_messages)} responses."
    )

    topics = extract_topics(user_messages)
    if topics:
        summary += f" Topics discussed: {', '.join(topics)}."

    summary += f" Conversation tone: {detect_tone(messages)}."

    if user_messages:
        last = user_messages[-1].content
        preview = last[:_PREVIEW_CHARS]
        ellipsis = "..." if len(last) > _PREVIEW_CHARS else ""
        summary += f' Last user topic: "{preview}{ellipsis}"'

    return summary
