from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from faucet.runtime.json_store import Json, ensure_json_file, file_lock, read_json, write_json_atomic
from faucet.runtime.models import GeneratedCredential
from faucet.runtime.errors import StoreError

log = logging.getLogger("faucet.pending")

_EMPTY: Json = {"pending": []}


class PendingCredentialsLedger:
    """Durable record of created-but-not-yet-delivered account credentials.

    A record exists from the moment an account is created on chain until a
    qualifying delivery succeeded. Anything still listed here after a
    pipeline pass is stranded and needs manual redelivery by an operator.

    Records are keyed by resource name; adding a name that is already present
    replaces the older record.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        ensure_json_file(self._path, _EMPTY)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> List[Json]:
        data = read_json(self._path, default=_EMPTY)
        pending = data.get("pending")
        if not isinstance(pending, list):
            raise StoreError("store_corrupt", f"'pending' must be a list in {self._path}")
        return [r for r in pending if isinstance(r, dict)]

    def _save(self, records: List[Json]) -> None:
        write_json_atomic(self._path, {"pending": records})

    def list_all(self) -> List[GeneratedCredential]:
        return [GeneratedCredential.from_json(r) for r in self._load()]

    def get(self, resource_name: str) -> Optional[GeneratedCredential]:
        name = str(resource_name or "").strip()
        for r in self._load():
            if r.get("resource_name") == name:
                return GeneratedCredential.from_json(r)
        return None

    def count(self) -> int:
        return len(self._load())

    def add(self, credential: GeneratedCredential) -> None:
        """Persist a credential. Returns only after the file is durably replaced."""
        if not credential.resource_name:
            raise ValueError("credential.resource_name is required")
        with file_lock(self._path):
            records = [r for r in self._load() if r.get("resource_name") != credential.resource_name]
            records.append(credential.to_json())
            self._save(records)
        log.info("pending credential stored for %s", credential.resource_name)

    def remove(self, resource_name: str) -> bool:
        name = str(resource_name or "").strip()
        with file_lock(self._path):
            records = self._load()
            kept = [r for r in records if r.get("resource_name") != name]
            if len(kept) == len(records):
                return False
            self._save(kept)
        log.info("pending credential removed for %s", name)
        return True
