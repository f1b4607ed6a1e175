"""FastAPI application entry point."""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pipeline.bootstrap import build_pipeline, open_storage
from pipeline.errors import (
    ContentBlocked,
    ConversationNotFound,
    ModelUnavailable,
    RateLimitExceeded,
)
from pipeline.settings import Settings

from chat_api.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Set up and tear down application-wide resources."""
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    storage, provider = open_storage(settings)
    app.state.pipeline = build_pipeline(settings, storage)
    logger.info("Chat API ready (model=%s)", settings.model)

    yield

    app.state.pipeline.close()
    if provider is not None:
        provider.close()


app = FastAPI(
    title="Chat API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
)


# ---------------------------------------------------------------------------
# Pipeline errors
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Rate limit exceeded",
            "message": str(exc),
            "retryAfter": exc.retry_after,
        },
        headers=exc.headers,
    )


@app.exception_handler(ContentBlocked)
async def content_blocked_handler(request: Request, exc: ContentBlocked):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Message blocked", **exc.to_dict()},
    )


@app.exception_handler(ConversationNotFound)
async def conversation_not_found_handler(request: Request, exc: ConversationNotFound):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": "Conversation not found"},
    )


@app.exception_handler(ModelUnavailable)
async def model_unavailable_handler(request: Request, exc: ModelUnavailable):
    logger.error("Model call failed: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
    )


app.include_router(router)


def serve() -> None:
    """Start the uvicorn server using environment configuration."""
    host = os.environ.get("API_HOST", "0.0.0.0")
    port = int(os.environ.get("API_PORT", "3000"))
    uvicorn.run("chat_api.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    serve()
