from __future__ import annotations

import threading
import time
from typing import Dict


_lock = threading.Lock()
_counters: Dict[str, int] = {}
_gauges: Dict[str, int] = {}
_started_ms = int(time.time() * 1000)


def inc_counter(name: str, value: int = 1) -> None:
    n = str(name or "").strip()
    if not n:
        return
    try:
        v = int(value)
    except Exception:
        v = 1
    with _lock:
        _counters[n] = int(_counters.get(n, 0)) + int(v)


def set_gauge(name: str, value: int) -> None:
    n = str(name or "").strip()
    if not n:
        return
    try:
        v = int(value)
    except Exception:
        v = 0
    with _lock:
        _gauges[n] = int(v)


def get_counter(name: str) -> int:
    with _lock:
        return int(_counters.get(str(name), 0))


def snapshot() -> dict:
    with _lock:
        return {
            "ts_ms": int(time.time() * 1000),
            "started_ms": int(_started_ms),
            "uptime_ms": int(time.time() * 1000) - int(_started_ms),
            "counters": dict(_counters),
            "gauges": dict(_gauges),
        }


def reset() -> None:
    """Clear all counters and gauges. Used by tests."""
    with _lock:
        _counters.clear()
        _gauges.clear()
