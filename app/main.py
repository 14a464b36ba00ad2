"""FastAPI application wiring for the portal messaging engine.

This module bootstraps the HTTP API used by the project:

- Configures logging, CORS (optional for the admin UI), Prometheus metrics
  and rate limiting.
- Serves stored attachments and exposes the conversation, messaging and
  escalation routes plus health/version/config endpoints.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .conversations.attachments import (
    ATTACHMENT_ALLOWED_MIME_TYPES,
    ATTACHMENT_MAX_SIZE,
    UPLOAD_DIR,
)
from .conversations.service import MESSAGE_MAX_LENGTH
from .routers import conversations

load_dotenv()

logger = logging.getLogger(__name__)

RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "120/minute")

os.makedirs(UPLOAD_DIR, exist_ok=True)


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address. This function is used by SlowAPI to key the limiter.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=get_client_ip, default_limits=[RATE_LIMIT_DEFAULT])

app = FastAPI(title="Portal Messaging Engine", version=__version__)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
# Optional CORS for admin UI
admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
if admin_ui_origins:
    origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")
app.include_router(conversations.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.on_event("shutdown")
def _close_feeds() -> None:
    if conversations._SERVICE is not None:
        conversations._SERVICE.close()


@app.get("/api/health")
async def health():
    """Liveness/readiness check with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }


@app.get("/api/config")
async def config():
    """Expose the messaging limits the UI validates against."""
    return {
        "MESSAGE_MAX_LENGTH": MESSAGE_MAX_LENGTH,
        "ATTACHMENT_MAX_SIZE": ATTACHMENT_MAX_SIZE,
        "ATTACHMENT_ALLOWED_MIME_TYPES": list(ATTACHMENT_ALLOWED_MIME_TYPES),
    }
