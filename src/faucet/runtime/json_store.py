# src/faucet/runtime/json_store.py
from __future__ import annotations

import copy
import fcntl
import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator

from faucet.runtime.errors import StoreError

Json = Dict[str, Any]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def read_json(path: Path, *, default: Json) -> Json:
    """Read a JSON object from disk.

    Missing file -> a deep copy of `default`.
    Unreadable or corrupt file -> StoreError. Callers must not treat a corrupt
    file as empty: rewriting it would drop records that may hold the only copy
    of a secret.
    """
    p = Path(path)
    if not p.exists():
        return copy.deepcopy(default)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreError("store_unreadable", f"cannot read {p}", str(e)) from e
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise StoreError("store_corrupt", f"invalid JSON in {p}", str(e)) from e
    if not isinstance(data, dict):
        raise StoreError("store_corrupt", f"expected a JSON object in {p}")
    return data


def write_json_atomic(path: Path, obj: Json) -> None:
    """Rewrite `path` in full via temp file + fsync + rename.

    Readers either see the previous complete file or the new complete file,
    never a truncated one.
    """
    p = Path(path)
    tmp = p.with_name(p.name + ".tmp")
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        body = json.dumps(obj, indent=2, ensure_ascii=False)
        with open(tmp, "w", encoding="utf-8") as fh:
            fh.write(body)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, p)
    except (OSError, TypeError, ValueError) as e:
        raise StoreError("store_unwritable", f"cannot write {p}", str(e)) from e

    # Persist the rename itself.
    try:
        dir_fd = os.open(str(p.parent), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def ensure_json_file(path: Path, initial: Json) -> None:
    """Create `path` with `initial` content if it does not exist.

    Raises StoreError when the location is not writable, so a service pointed
    at a bad data dir fails at startup instead of at the first request.
    """
    p = Path(path)
    if p.exists():
        read_json(p, default=initial)
        if not os.access(str(p), os.W_OK):
            raise StoreError("store_unwritable", f"{p} is not writable")
        return
    write_json_atomic(p, initial)


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Exclusive advisory lock on `<path>.lock` for one read-modify-write.

    Blocks until acquired. Serializes the service and the admin tool when
    both touch the same ledger file.
    """
    lock_path = Path(str(path) + ".lock")
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(lock_path, "a+", encoding="utf-8")
    except OSError as e:
        raise StoreError("store_unwritable", f"cannot open lock {lock_path}", str(e)) from e
    try:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        yield
    finally:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
