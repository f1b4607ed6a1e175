"""Caller authentication and identity.

Requests authenticate with a bearer key listed in ``API_KEYS``. Quotas and
moderation logs are keyed by a subject: the end user a trusted frontend names
in ``X-User-Id``, or the key itself when no user is named.
"""

import os

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

_bearer = HTTPBearer(auto_error=False)


def configured_api_keys() -> frozenset[str]:
    raw = os.environ.get("API_KEYS", "")
    return frozenset(key.strip() for key in raw.split(",") if key.strip())


async def require_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> str:
    """Validate the ``Authorization: Bearer <key>`` header.

    Raises:
        HTTPException 503 if the server has no keys configured, 401 if the
        key is missing or unknown.
    """
    keys = configured_api_keys()
    if not keys:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server has no API keys configured",
        )
    if credentials is None or credentials.credentials not in keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


async def require_subject(
    api_key: str = Depends(require_api_key),
    x_user_id: str | None = Header(default=None),
) -> str:
    """Resolve the subject that quotas and moderation logs are keyed by."""
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return api_key
