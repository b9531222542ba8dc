from __future__ import annotations

import resource
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from faucet.runtime.errors import FaucetError
from faucet.runtime.metrics import snapshot
from faucet.runtime.service import FaucetService

router = APIRouter()

Json = Dict[str, Any]

SERVICE_NAME = "Hive Account Faucet"
SERVICE_VERSION = "1.0.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _service(request: Request) -> FaucetService | None:
    return getattr(request.app.state, "service", None)


def _rss_kb() -> int:
    rss = int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)
    # macOS reports bytes, Linux kilobytes.
    return rss // 1024 if sys.platform == "darwin" else rss


@router.get("/health")
def health(request: Request) -> Json:
    svc = _service(request)
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "monitoring": bool(svc and svc.running),
        "last_block": svc.last_processed_height if svc else 0,
        "timestamp": _now_iso(),
    }


@router.get("/status")
def status(request: Request) -> Json:
    svc = _service(request)
    metrics = snapshot()
    out: Json = {
        "monitoring": False,
        "last_processed_block": 0,
        "pending_credentials": 0,
    }
    if svc is not None:
        out.update(svc.status())
        out["uptime_s"] = round(svc.uptime_s, 3)
    else:
        out["uptime_s"] = round(metrics["uptime_ms"] / 1000.0, 3)
    out["memory"] = {"rss_kb": _rss_kb()}
    out["counters"] = metrics["counters"]
    out["timestamp"] = _now_iso()
    return out


@router.post("/monitor/start")
def monitor_start(request: Request):
    svc = _service(request)
    if svc is None:
        return JSONResponse(status_code=503, content={"error": "Service not available"})
    try:
        started = svc.start_monitor()
    except FaucetError as e:
        return JSONResponse(status_code=503, content={"error": e.reason, "code": e.code})
    if not started:
        return {"ok": True, "message": "Monitoring already running"}
    return {"ok": True, "message": "Monitoring started"}


@router.post("/monitor/stop")
def monitor_stop(request: Request) -> Json:
    svc = _service(request)
    if svc is None or not svc.stop_monitor():
        return {"ok": True, "message": "Monitoring not running"}
    return {"ok": True, "message": "Monitoring stopped"}
