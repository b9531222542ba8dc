from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

Json = Dict[str, Any]

ROLES = ("owner", "active", "posting", "memo")

EMAIL = "email"
HIVE_MEMO = "hive_memo"
BOTH = "both"
DELIVERY_METHODS = (EMAIL, HIVE_MEMO, BOTH)


@dataclass(frozen=True)
class KeyPair:
    private: str  # WIF
    public: str  # STM...


@dataclass(frozen=True)
class AuthorizedRequester:
    id: str
    tokens_allocated: int
    tokens_used: int
    tokens_remaining: int
    email: Optional[str]
    is_active: bool
    created_at: str
    last_used: Optional[str] = None
    notes: str = ""

    @staticmethod
    def from_json(requester_id: str, j: Json) -> "AuthorizedRequester":
        email = j.get("email")
        return AuthorizedRequester(
            id=str(requester_id),
            tokens_allocated=int(j.get("tokens_allocated", 0)),
            tokens_used=int(j.get("tokens_used", 0)),
            tokens_remaining=int(j.get("tokens_remaining", 0)),
            email=str(email) if email else None,
            is_active=bool(j.get("is_active", False)),
            created_at=str(j.get("created_at") or ""),
            last_used=str(j["last_used"]) if j.get("last_used") else None,
            notes=str(j.get("notes") or ""),
        )

    def to_json(self) -> Json:
        return {
            "tokens_allocated": int(self.tokens_allocated),
            "tokens_used": int(self.tokens_used),
            "tokens_remaining": int(self.tokens_remaining),
            "email": self.email,
            "is_active": bool(self.is_active),
            "created_at": self.created_at,
            "last_used": self.last_used,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class AuthorizationResult:
    ok: bool
    remaining: int = 0
    reason: str = ""
    requester: Optional[AuthorizedRequester] = None

    def __iter__(self) -> Iterator[Any]:
        """Allow `ok, reason = quota.authorize(...)` unpacking."""
        yield self.ok
        yield self.reason


@dataclass(frozen=True)
class ProvisionRequest:
    requester_id: str
    resource_name: str
    delivery_method: str
    source_block_height: int
    source_tx_id: str
    email: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class GeneratedCredential:
    resource_name: str
    seed: str
    keys: Dict[str, KeyPair]
    creation_tx_id: str
    requester_id: str
    created_at: str

    def public_keys(self) -> Dict[str, str]:
        return {role: kp.public for role, kp in self.keys.items()}

    def to_json(self) -> Json:
        return {
            "resource_name": self.resource_name,
            "seed": self.seed,
            "keys": {role: {"private": kp.private, "public": kp.public} for role, kp in self.keys.items()},
            "creation_tx_id": self.creation_tx_id,
            "requester_id": self.requester_id,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_json(j: Json) -> "GeneratedCredential":
        keys_raw = j.get("keys") if isinstance(j.get("keys"), dict) else {}
        keys = {
            str(role): KeyPair(private=str(kp.get("private") or ""), public=str(kp.get("public") or ""))
            for role, kp in keys_raw.items()
            if isinstance(kp, dict)
        }
        return GeneratedCredential(
            resource_name=str(j.get("resource_name") or ""),
            seed=str(j.get("seed") or ""),
            keys=keys,
            creation_tx_id=str(j.get("creation_tx_id") or ""),
            requester_id=str(j.get("requester_id") or ""),
            created_at=str(j.get("created_at") or ""),
        )


@dataclass(frozen=True)
class ProvisionResult:
    ok: bool
    resource_name: str
    creation_tx_id: str = ""
    seed: str = ""
    keys: Dict[str, KeyPair] = field(default_factory=dict)
    error_kind: str = ""
    error: str = ""

    def public_keys(self) -> Dict[str, str]:
        return {role: kp.public for role, kp in self.keys.items()}

    @staticmethod
    def failure(resource_name: str, error_kind: str, error: str) -> "ProvisionResult":
        return ProvisionResult(ok=False, resource_name=resource_name, error_kind=error_kind, error=error)
