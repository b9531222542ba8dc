from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from faucet.runtime.errors import StoreError
from faucet.runtime.json_store import Json, ensure_json_file, file_lock, read_json, utc_now_iso, write_json_atomic
from faucet.runtime.models import AuthorizationResult, AuthorizedRequester

log = logging.getLogger("faucet.quota")

UNKNOWN_REQUESTER = "unknown_requester"
INACTIVE_REQUESTER = "inactive_requester"
NO_TOKENS_REMAINING = "no_tokens_remaining"


def _initial_data() -> Json:
    now = utc_now_iso()
    return {
        "requesters": {},
        "metadata": {
            "created_at": now,
            "last_updated": now,
            "total_users": 0,
            "total_tokens_allocated": 0,
            "total_tokens_used": 0,
        },
    }


def _recompute_metadata(data: Json) -> None:
    """Derive aggregate totals from the per-requester records.

    Called on every save so the aggregate block and the records are always
    written together and cannot drift apart.
    """
    requesters = data.get("requesters") or {}
    meta = data.setdefault("metadata", {})
    meta["total_users"] = len(requesters)
    meta["total_tokens_allocated"] = sum(int(r.get("tokens_allocated", 0)) for r in requesters.values())
    meta["total_tokens_used"] = sum(int(r.get("tokens_used", 0)) for r in requesters.values())
    meta["last_updated"] = utc_now_iso()
    meta.setdefault("created_at", meta["last_updated"])


class QuotaLedger:
    """Per-requester authorization and creation-token balances.

    Every operation re-reads the file so edits made by the admin tool take
    effect immediately. Mutations are read-modify-write of the whole file
    under an advisory lock.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        ensure_json_file(self._path, _initial_data())

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Json:
        data = read_json(self._path, default=_initial_data())
        if not isinstance(data.get("requesters"), dict):
            raise StoreError("store_corrupt", f"'requesters' must be an object in {self._path}")
        if not isinstance(data.get("metadata"), dict):
            data["metadata"] = {}
        return data

    def _save(self, data: Json) -> None:
        _recompute_metadata(data)
        write_json_atomic(self._path, data)

    def _mutate(self, fn: Callable[[Json], Tuple[bool, Any]]) -> Any:
        with file_lock(self._path):
            data = self._load()
            changed, result = fn(data)
            if changed:
                self._save(data)
            return result

    # ------------------------------------------------------------------
    # Pipeline operations
    # ------------------------------------------------------------------

    def authorize(self, requester_id: str) -> AuthorizationResult:
        """Check whether `requester_id` may create an account. Read-only."""
        raw = self._load()["requesters"].get(str(requester_id or ""))
        if not isinstance(raw, dict):
            return AuthorizationResult(ok=False, reason=UNKNOWN_REQUESTER)
        rec = AuthorizedRequester.from_json(str(requester_id), raw)
        if not rec.is_active:
            return AuthorizationResult(ok=False, reason=INACTIVE_REQUESTER, requester=rec)
        if rec.tokens_remaining <= 0:
            return AuthorizationResult(ok=False, reason=NO_TOKENS_REMAINING, requester=rec)
        return AuthorizationResult(ok=True, remaining=rec.tokens_remaining, requester=rec)

    def commit(self, requester_id: str) -> bool:
        """Spend one token. False for unknown requesters or an empty balance."""
        rid = str(requester_id or "")

        def _apply(data: Json) -> Tuple[bool, bool]:
            rec = data["requesters"].get(rid)
            if not isinstance(rec, dict):
                return False, False
            if int(rec.get("tokens_remaining", 0)) <= 0:
                return False, False
            rec["tokens_used"] = int(rec.get("tokens_used", 0)) + 1
            rec["tokens_remaining"] = int(rec.get("tokens_remaining", 0)) - 1
            rec["last_used"] = utc_now_iso()
            return True, True

        ok = bool(self._mutate(_apply))
        if ok:
            log.info("token committed for %s", rid)
        else:
            log.warning("token commit refused for %s", rid)
        return ok

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def list_all(self) -> List[AuthorizedRequester]:
        requesters = self._load()["requesters"]
        return [AuthorizedRequester.from_json(k, v) for k, v in sorted(requesters.items()) if isinstance(v, dict)]

    def get(self, requester_id: str) -> Optional[AuthorizedRequester]:
        raw = self._load()["requesters"].get(str(requester_id or ""))
        if not isinstance(raw, dict):
            return None
        return AuthorizedRequester.from_json(str(requester_id), raw)

    def stats(self) -> Json:
        data = self._load()
        meta = dict(data.get("metadata") or {})
        requesters = data["requesters"].values()
        meta["active_users"] = sum(1 for r in requesters if bool(r.get("is_active")))
        meta["total_tokens_remaining"] = sum(int(r.get("tokens_remaining", 0)) for r in requesters)
        return meta

    def add(self, requester_id: str, tokens: int = 5, email: Optional[str] = None, notes: str = "") -> Dict[str, Any]:
        rid = str(requester_id or "").strip()
        if not rid:
            return {"ok": False, "message": "requester id required"}
        if int(tokens) < 0:
            return {"ok": False, "message": "tokens must be >= 0"}

        def _apply(data: Json) -> Tuple[bool, Dict[str, Any]]:
            if rid in data["requesters"]:
                return False, {"ok": False, "message": f"User {rid} already exists"}
            rec = AuthorizedRequester(
                id=rid,
                tokens_allocated=int(tokens),
                tokens_used=0,
                tokens_remaining=int(tokens),
                email=(email or "").strip() or None,
                is_active=True,
                created_at=utc_now_iso(),
                notes=str(notes or ""),
            )
            data["requesters"][rid] = rec.to_json()
            return True, {"ok": True, "message": f"User {rid} added with {int(tokens)} tokens"}

        return self._mutate(_apply)

    def grant_tokens(self, requester_id: str, delta: int) -> Dict[str, Any]:
        rid = str(requester_id or "").strip()
        if int(delta) <= 0:
            return {"ok": False, "message": "delta must be > 0 (use set_tokens to reduce)"}

        def _apply(data: Json) -> Tuple[bool, Dict[str, Any]]:
            rec = data["requesters"].get(rid)
            if not isinstance(rec, dict):
                return False, {"ok": False, "message": "User not found"}
            rec["tokens_allocated"] = int(rec.get("tokens_allocated", 0)) + int(delta)
            rec["tokens_remaining"] = int(rec["tokens_allocated"]) - int(rec.get("tokens_used", 0))
            return True, {
                "ok": True,
                "message": f"Added {int(delta)} tokens to {rid}. New total: {rec['tokens_allocated']}",
            }

        return self._mutate(_apply)

    def set_tokens(self, requester_id: str, total: int) -> Dict[str, Any]:
        rid = str(requester_id or "").strip()

        def _apply(data: Json) -> Tuple[bool, Dict[str, Any]]:
            rec = data["requesters"].get(rid)
            if not isinstance(rec, dict):
                return False, {"ok": False, "message": "User not found"}
            used = int(rec.get("tokens_used", 0))
            if int(total) < used:
                return False, {"ok": False, "message": f"total {int(total)} is below tokens already used ({used})"}
            rec["tokens_allocated"] = int(total)
            rec["tokens_remaining"] = int(total) - used
            return True, {
                "ok": True,
                "message": f"Set {rid} tokens to {int(total)}. Remaining: {rec['tokens_remaining']}",
            }

        return self._mutate(_apply)

    def set_active(self, requester_id: str, is_active: bool) -> Dict[str, Any]:
        rid = str(requester_id or "").strip()

        def _apply(data: Json) -> Tuple[bool, Dict[str, Any]]:
            rec = data["requesters"].get(rid)
            if not isinstance(rec, dict):
                return False, {"ok": False, "message": "User not found"}
            rec["is_active"] = bool(is_active)
            word = "activated" if is_active else "deactivated"
            return True, {"ok": True, "message": f"User {rid} {word}"}

        return self._mutate(_apply)

    def set_email(self, requester_id: str, email: Optional[str]) -> Dict[str, Any]:
        rid = str(requester_id or "").strip()
        value = (email or "").strip() or None
        if value is not None and ("@" not in value or "." not in value):
            return {"ok": False, "message": "invalid email"}

        def _apply(data: Json) -> Tuple[bool, Dict[str, Any]]:
            rec = data["requesters"].get(rid)
            if not isinstance(rec, dict):
                return False, {"ok": False, "message": "User not found"}
            rec["email"] = value
            return True, {"ok": True, "message": f"Email for {rid} {'set' if value else 'cleared'}"}

        return self._mutate(_apply)
