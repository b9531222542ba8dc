from __future__ import annotations

import json
import logging
import re
from typing import Callable, Dict, List

from faucet.crypto.keys import derive_account_keys, generate_seed
from faucet.ledger.client import LedgerClient, Operation
from faucet.runtime.json_store import utc_now_iso
from faucet.runtime.metrics import inc_counter
from faucet.runtime.models import KeyPair, ProvisionResult

log = logging.getLogger("faucet.provisioner")

NAME_TAKEN = "name_taken"
LOOKUP_FAILED = "lookup_failed"
BROADCAST_FAILED = "broadcast_failed"
MISSING_CREATOR_KEY = "missing_creator_key"

# Chain-side rejection of a duplicate account name.
_DUPLICATE_RE = re.compile(r"already\s+(exists|taken)|account_name_exists|must be unique", re.IGNORECASE)


def _authority(public_key: str) -> Dict[str, object]:
    return {"weight_threshold": 1, "account_auths": [], "key_auths": [[public_key, 1]]}


def build_create_operation(resource_name: str, creator_id: str, keys: Dict[str, KeyPair]) -> Operation:
    """One create_claimed_account op: spends a claimed account token, no fee."""
    metadata = {
        "profile": {
            "name": resource_name,
            "about": f"Account created by {creator_id}",
            "created": utc_now_iso(),
        }
    }
    return [
        "create_claimed_account",
        {
            "creator": creator_id,
            "new_account_name": resource_name,
            "owner": _authority(keys["owner"].public),
            "active": _authority(keys["active"].public),
            "posting": _authority(keys["posting"].public),
            "memo_key": keys["memo"].public,
            "json_metadata": json.dumps(metadata, separators=(",", ":")),
            "extensions": [],
        },
    ]


class ResourceProvisioner:
    """Creates a Hive account with freshly generated key material.

    Never raises for expected failures: name collisions, lookup errors and
    broadcast rejections come back as a failed ProvisionResult carrying the
    underlying error text. Nothing is persisted here.
    """

    def __init__(self, *, ledger: LedgerClient, seed_factory: Callable[[], str] = generate_seed) -> None:
        self._ledger = ledger
        self._seed_factory = seed_factory

    def name_exists(self, resource_name: str) -> bool:
        accounts: List[dict] = self._ledger.get_accounts([resource_name])
        return len(accounts) > 0

    def provision(self, resource_name: str, creator_id: str, creator_authority_key: str) -> ProvisionResult:
        name = str(resource_name or "").strip()
        if not creator_authority_key:
            return ProvisionResult.failure(name, MISSING_CREATOR_KEY, "creator active key is not configured")

        try:
            if self.name_exists(name):
                inc_counter("provision_name_taken_total", 1)
                return ProvisionResult.failure(name, NAME_TAKEN, f"Username @{name} is already taken")
        except Exception as e:
            log.warning("account lookup failed for %s: %s", name, e)
            return ProvisionResult.failure(name, LOOKUP_FAILED, str(e))

        seed = self._seed_factory()
        keys = derive_account_keys(name, seed)
        op = build_create_operation(name, creator_id, keys)

        try:
            result = self._ledger.broadcast_operations([op], creator_authority_key)
        except Exception as e:
            text = str(e)
            if _DUPLICATE_RE.search(text):
                # Lost the race against another creator between lookup and broadcast.
                inc_counter("provision_name_taken_total", 1)
                return ProvisionResult.failure(name, NAME_TAKEN, text)
            inc_counter("provision_failed_total", 1)
            log.error("account creation broadcast failed for %s: %s", name, text)
            return ProvisionResult.failure(name, BROADCAST_FAILED, text)

        tx_id = str(result.get("id") or "")
        inc_counter("provision_ok_total", 1)
        log.info("account %s created tx=%s", name, tx_id)
        return ProvisionResult(ok=True, resource_name=name, creation_tx_id=tx_id, seed=seed, keys=keys)
