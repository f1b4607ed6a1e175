"""Rate limiting dependencies for non-chat endpoints.

The chat endpoints are limited inside the pipeline (``chat-send``); the
remaining endpoints charge their own quota through ``rate_limited``.
"""

from fastapi import Depends, HTTPException, Request, status

from admission.models import RateLimitResult
from chat_api.auth import require_subject
from pipeline.ChatPipeline import ChatPipeline


def get_pipeline(request: Request) -> ChatPipeline:
    """Retrieve the shared ChatPipeline instance from app state."""
    return request.app.state.pipeline


def too_many_requests(result: RateLimitResult) -> HTTPException:
    """Build the 429 carrying ``Retry-After`` and the ``X-RateLimit-*`` headers."""
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "error": "Rate limit exceeded",
            "message": f"Too many requests. Try again in {result.retry_after} seconds.",
            "retryAfter": result.retry_after,
        },
        headers=result.headers(),
    )


def rate_limited(endpoint: str):
    """Return a dependency that consumes one request of ``endpoint``'s quota.

    The dependency resolves to the caller's subject id and leaves the
    admission result on ``request.state.rate_limit`` for response headers.
    The check runs under the pipeline's gate timeout and fails open.
    """

    async def _dependency(
        request: Request,
        subject: str = Depends(require_subject),
        pipeline: ChatPipeline = Depends(get_pipeline),
    ) -> str:
        result = pipeline.check_rate_limit(subject, endpoint)
        if not result.allowed:
            raise too_many_requests(result)
        request.state.rate_limit = result
        return subject

    return _dependency
