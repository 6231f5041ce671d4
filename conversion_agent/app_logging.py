"""Application and access logging setup.

Configures the ``conversion_agent`` logger hierarchy with either a
human-readable or a JSON formatter and a daily rotating file, and installs
an HTTP middleware that writes one access line per request with an
``X-Request-Id`` echoed back to the caller.
"""

from __future__ import annotations

import json
import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler
from uuid import uuid4

from fastapi import FastAPI, Request

from conversion_agent.config import Settings


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, ensure_ascii=False)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _install_access_logging(app: FastAPI) -> None:
    skip_paths = {"/api/health"}
    access_logger = logging.getLogger("conversion_agent.access")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skip_paths:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        start = time.time()

        response = await call_next(request)

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.time() - start) * 1000, 2),
        }
        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(log_data))
        return response


def init_logging(settings: Settings, app: FastAPI | None = None) -> None:
    """Initialise the application loggers and, if given, the access middleware."""

    formatter = _get_formatter(settings.LOG_JSON)
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    app_logger = logging.getLogger("conversion_agent")
    if not app_logger.handlers:
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        app_logger.addHandler(stream)

        if settings.LOG_DIR:
            os.makedirs(settings.LOG_DIR, exist_ok=True)
            handler = TimedRotatingFileHandler(
                os.path.join(settings.LOG_DIR, "app.log"),
                when="midnight",
                backupCount=7,
            )
            handler.setFormatter(formatter)
            app_logger.addHandler(handler)
    app_logger.setLevel(log_level)

    if app is not None:
        _install_access_logging(app)
