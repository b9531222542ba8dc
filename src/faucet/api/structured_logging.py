# src/faucet/api/structured_logging.py
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


class _JsonLineFormatter(logging.Formatter):
    """Wraps plain log records as JSON lines; records that are already JSON pass through."""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if msg.startswith("{") and msg.endswith("}"):
            return msg
        payload: Json = {
            "ts_ms": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "msg": msg,
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def configure_structured_logging(level_name: Optional[str] = None) -> None:
    """Configure stdlib logging for JSONL output (stdout).

    - Level from the argument, else FAUCET_LOG_LEVEL (default INFO).
    - Safe to call multiple times.
    """
    name = (level_name or os.environ.get("FAUCET_LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, name, logging.INFO)

    root = logging.getLogger()
    if getattr(root, "_faucet_configured", False):  # type: ignore[attr-defined]
        root.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(_JsonLineFormatter())

    root.handlers = [handler]
    root.setLevel(level)
    setattr(root, "_faucet_configured", True)  # type: ignore[attr-defined]


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    payload: Json = {"ts_ms": _now_ms(), "event": event}
    payload.update(fields)
    try:
        logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str))
    except Exception:
        parts = [f"event={event}"] + [f"{k}={fields.get(k)!r}" for k in sorted(fields.keys())]
        logger.info(" ".join(parts))


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Structured request logging middleware.

    FAUCET_LOG_REQUESTS=0 disables it (default on).
    """

    def __init__(self, app) -> None:
        super().__init__(app)
        raw = (os.environ.get("FAUCET_LOG_REQUESTS") or "1").strip().lower()
        self._enabled = raw not in {"0", "false", "no", "n", "off"}
        self._logger = logging.getLogger("faucet.http")

    async def dispatch(self, request: Request, call_next):
        if not self._enabled:
            return await call_next(request)

        started = time.monotonic()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id

        status = 500
        err: Optional[str] = None
        response: Optional[Response] = None

        try:
            response = await call_next(request)
            status = int(getattr(response, "status_code", 200) or 200)
            return response
        except Exception as e:
            err = str(e)
            raise
        finally:
            log_event(
                self._logger,
                "http_request",
                request_id=request_id,
                method=request.method,
                path=str(request.url.path or ""),
                status=status,
                duration_ms=int((time.monotonic() - started) * 1000),
                client=str(request.client.host) if request.client else "",
                error=err,
            )
            if response is not None:
                response.headers.setdefault("x-request-id", request_id)
