from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class FaucetError(Exception):
    """Canonical error type for faucet runtime failures.

    Raised for conditions the service cannot continue past (unwritable data
    files, a held single-writer lock, invalid configuration). Expected
    per-request failures are returned as result objects instead.
    """

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class StoreError(FaucetError):
    """A JSON-backed ledger file could not be read or written."""


class LedgerError(FaucetError):
    """The ledger RPC source failed or rejected a call."""
