"""Logging for the messaging API.

Engine modules log under ``app.*`` into ``app.log``; one JSON access line per
HTTP request goes to ``access.log`` through the ``uvicorn.access`` logger.
Both files rotate at midnight.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

# Record attributes copied into JSON log lines when passed via ``extra=``.
CONTEXT_FIELDS = ("request_id", "conversation_id", "message_id", "user_id")

# Credentials and contact details.
SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "access_token",
    "refresh_token",
    "email",
}

# Message bodies and escalation reasons are private correspondence.
REDACTED_BODY_FIELDS = {"content", "reason"}

_MASKED_FIELDS = SENSITIVE_FIELDS | REDACTED_BODY_FIELDS

UNLOGGED_PATHS = frozenset({"/api/health", "/api/metrics"})

_CONVERSATION_PATH = re.compile(r"^/api/conversations/([^/]+)")


@dataclass(frozen=True)
class LogSettings:
    log_dir: str
    level: int
    json_lines: bool
    retention_days: int
    rotate_utc: bool
    request_bodies: bool


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


def load_log_settings() -> LogSettings:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    return LogSettings(
        log_dir=os.getenv("LOG_DIR", "logs"),
        level=getattr(logging, level_name, logging.INFO),
        json_lines=_env_flag("LOG_JSON"),
        retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
        rotate_utc=_env_flag("LOG_ROTATE_UTC"),
        request_bodies=_env_flag("LOG_REQUEST_BODIES"),
    )


class JsonFormatter(logging.Formatter):
    """One JSON object per record, used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _formatter(settings: LogSettings) -> logging.Formatter:
    if settings.json_lines:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _rotating_handler(
    settings: LogSettings, filename: str, formatter: logging.Formatter
) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        os.path.join(settings.log_dir, filename),
        when="midnight",
        backupCount=settings.retention_days,
        utc=settings.rotate_utc,
    )
    handler.setFormatter(formatter)
    return handler


def _scrub(data: object) -> object:
    """Mask credentials and message text anywhere in a decoded JSON body."""

    if isinstance(data, dict):
        return {
            key: "***" if key.lower() in _MASKED_FIELDS else _scrub(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(item) for item in data]
    return data


def _body_is_loggable(request: Request) -> bool:
    if request.url.path.endswith("/stream"):
        return False
    return not request.headers.get("content-type", "").startswith("multipart/")


async def _capture_body(request: Request) -> object | None:
    """Read the request body for the access line and replay it downstream."""

    body = await request.body()

    async def receive() -> dict:  # pragma: no cover - replayed by starlette
        return {"type": "http.request", "body": body, "more_body": False}

    request._receive = receive  # type: ignore[attr-defined]
    if not body:
        return None
    try:
        return _scrub(json.loads(body))
    except ValueError:
        return body.decode("utf-8", errors="replace")


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client is not None else None


def _install_access_logging(app: FastAPI) -> None:
    """Write one access line per request and echo its X-Request-Id.

    Conversation routes also record the conversation id taken from the path.
    Request bodies are only logged with LOG_REQUEST_BODIES=true, and never
    for uploads or SSE streams.
    """

    log_bodies = load_log_settings().request_bodies
    access_logger = logging.getLogger("uvicorn.access")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        path = request.url.path
        if path in UNLOGGED_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        body = None
        if log_bodies and _body_is_loggable(request):
            body = await _capture_body(request)

        response = await call_next(request)

        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": _client_ip(request),
            "headers": _scrub(dict(request.headers)),
        }
        match = _CONVERSATION_PATH.match(path)
        if match:
            entry["conversation_id"] = match.group(1)
        if body is not None:
            entry["body"] = body

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Attach the rotating file handlers and, given an app, the access middleware."""

    settings = load_log_settings()
    os.makedirs(settings.log_dir, exist_ok=True)
    formatter = _formatter(settings)

    app_logger = logging.getLogger("app")
    if not app_logger.handlers:
        app_logger.addHandler(_rotating_handler(settings, "app.log", formatter))
    app_logger.setLevel(settings.level)

    access_logger = logging.getLogger("uvicorn.access")
    access_logger.handlers.clear()
    access_logger.addHandler(_rotating_handler(settings, "access.log", formatter))
    access_logger.setLevel(settings.level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app)
