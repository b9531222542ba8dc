from __future__ import annotations

import logging
from pathlib import Path

from faucet.runtime.json_store import read_json, utc_now_iso, write_json_atomic

log = logging.getLogger("faucet.cursor")

# Current key first; the others are read from files written by older deployments.
_HEIGHT_KEYS = ("lastProcessedHeight", "lastProcessedBlock", "last_processed_height")


class CursorStore:
    """Durable record of the last fully-processed block height.

    The in-memory height only moves forward once a block is completely
    processed. It is written to disk every `save_interval` heights and on
    flush, so the persisted value never exceeds the processed one. A crash
    replays at most `save_interval - 1` blocks.
    """

    def __init__(self, path: Path, *, save_interval: int = 20) -> None:
        self._path = Path(path)
        self._save_interval = max(1, int(save_interval))
        self._height = 0
        self._saved_height = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def height(self) -> int:
        return self._height

    @property
    def saved_height(self) -> int:
        return self._saved_height

    def load(self) -> int:
        data = read_json(self._path, default={})
        raw = 0
        for key in _HEIGHT_KEYS:
            if data.get(key) is not None:
                raw = data[key]
                break
        try:
            h = int(raw)
        except (TypeError, ValueError):
            h = 0
        self._height = max(0, h)
        self._saved_height = self._height
        if self._height:
            log.info("resuming from persisted block %s", self._height)
        return self._height

    def seed(self, height: int) -> None:
        """Set the starting point when nothing has been persisted yet."""
        h = int(height)
        if h < 0:
            raise ValueError("height must be >= 0")
        self._height = h

    def advance(self, height: int) -> bool:
        """Record `height` as fully processed. Returns True if it was persisted."""
        h = int(height)
        if h <= self._height:
            raise ValueError(f"cursor must move forward: {self._height} -> {h}")
        self._height = h
        if h % self._save_interval == 0:
            return self.flush()
        return False

    def flush(self, *, force: bool = False) -> bool:
        if self._height <= 0:
            return False
        if not force and self._saved_height == self._height:
            return False
        write_json_atomic(
            self._path,
            {"lastProcessedHeight": int(self._height), "savedAt": utc_now_iso()},
        )
        self._saved_height = self._height
        return True
