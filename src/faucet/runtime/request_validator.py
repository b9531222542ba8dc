from __future__ import annotations

import json
import logging
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from faucet.runtime.models import DELIVERY_METHODS, ProvisionRequest

log = logging.getLogger("faucet.request_validator")

APP_ID = "hive_account_faucet"
APP_VERSION = "1.0.0"
ACTION = "create_account_request"

Json = Dict[str, Any]


class RequestData(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    requested_username: str = Field(..., min_length=1)
    delivery_method: str = Field(..., min_length=1)
    email: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[Any] = None


class RequestEnvelope(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    app: Literal["hive_account_faucet"]
    version: Literal["1.0.0"]
    action: Literal["create_account_request"]
    data: RequestData


def decode(raw: Any) -> Optional[Json]:
    """Parse the operation's json payload. Parse failures yield None."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, (str, bytes)):
        return None
    try:
        obj = json.loads(raw)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def validate(decoded: Any) -> bool:
    """True only for an exact request envelope match.

    Fixed app/version/action, a `data` object with non-empty
    `requested_username` and `delivery_method`, and a known delivery method.
    Any missing or mistyped field fails closed.
    """
    if not isinstance(decoded, dict):
        return False
    try:
        env = RequestEnvelope.model_validate(decoded)
    except ValidationError:
        return False
    if not env.data.requested_username.strip():
        return False
    return env.data.delivery_method in DELIVERY_METHODS


def requester_of(op: Json) -> str:
    """Posting authority first, then active authority."""
    for key in ("required_posting_auths", "required_auths"):
        auths = op.get(key)
        if isinstance(auths, list) and auths and isinstance(auths[0], str) and auths[0].strip():
            return auths[0].strip()
    return ""


def extract_request(op: Json, *, block_height: int, tx_id: str) -> Optional[ProvisionRequest]:
    """Turn a tracked custom_json operation into a ProvisionRequest.

    Returns None (and logs) for anything that does not validate.
    """
    requester = requester_of(op)
    decoded = decode(op.get("json"))
    if decoded is None:
        log.warning("rejected request: malformed json block=%s tx=%s from=%s", block_height, tx_id, requester)
        return None
    if not validate(decoded):
        log.warning("rejected request: invalid format block=%s tx=%s from=%s", block_height, tx_id, requester)
        return None
    if not requester:
        log.warning("rejected request: no signing authority block=%s tx=%s", block_height, tx_id)
        return None

    data = decoded["data"]
    return ProvisionRequest(
        requester_id=requester,
        resource_name=str(data["requested_username"]).strip().lower(),
        delivery_method=str(data["delivery_method"]),
        source_block_height=int(block_height),
        source_tx_id=str(tx_id),
        email=data.get("email") or None,
        notes=data.get("notes") or None,
        timestamp=str(data["timestamp"]) if data.get("timestamp") is not None else None,
    )
