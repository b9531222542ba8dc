# src/faucet/ledger/client.py
from __future__ import annotations

import itertools
import json
import logging
import urllib.error
import urllib.request
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from faucet.runtime.errors import LedgerError

log = logging.getLogger("faucet.ledger")

Json = Dict[str, Any]
Operation = List[Any]  # ["op_name", {...}]

HIVE_CHAIN_ID = "beeab0de00000000000000000000000000000000000000000000000000000000"
TX_EXPIRATION_S = 60

# (unsigned_tx, wif, chain_id) -> signed_tx with "signatures" populated.
TransactionSigner = Callable[[Json, str, str], Json]


class LedgerClient(Protocol):
    """The ledger as seen by the faucet: a block/account source and a tx sink."""

    def get_block(self, height: int) -> Optional[Json]:
        ...

    def get_accounts(self, names: Sequence[str]) -> List[Json]:
        ...

    def get_dynamic_global_properties(self) -> Json:
        ...

    def broadcast_operations(self, operations: List[Operation], wif: str) -> Json:
        """Sign with `wif` and broadcast. Returns {"id": tx_id, "block_num": n}."""
        ...


def parse_asset(amount: Any) -> Decimal:
    """'1.234 HBD' -> Decimal('1.234'). Unparseable -> 0."""
    if isinstance(amount, dict):
        # appbase/nai shape: {"amount": "1234", "precision": 3, ...}
        try:
            return Decimal(str(amount.get("amount"))) / (Decimal(10) ** int(amount.get("precision", 3)))
        except (InvalidOperation, TypeError, ValueError):
            return Decimal(0)
    try:
        return Decimal(str(amount or "").split(" ")[0])
    except InvalidOperation:
        return Decimal(0)


class JsonRpcLedgerClient:
    """condenser_api client over HTTP JSON-RPC with node failover.

    Network failures move on to the next node; a JSON-RPC error response is
    a definitive answer from the chain and is raised without failover.
    Transaction signing is delegated to the injected `signer`.
    """

    def __init__(
        self,
        urls: Sequence[str],
        *,
        timeout_s: int = 15,
        signer: Optional[TransactionSigner] = None,
        chain_id: str = HIVE_CHAIN_ID,
    ) -> None:
        self._urls = [u.rstrip("/") for u in urls if str(u).strip()]
        if not self._urls:
            raise ValueError("at least one node url is required")
        self._timeout_s = int(timeout_s)
        self._signer = signer
        self._chain_id = chain_id
        self._ids = itertools.count(1)

    def _post_json(self, url: str, payload: Json) -> Json:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        req = urllib.request.Request(
            url=url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
            raw = resp.read()
        out = json.loads(raw.decode("utf-8"))
        if not isinstance(out, dict):
            raise ValueError("bad_json_from_node")
        return out

    def call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        last_err = ""
        for url in self._urls:
            try:
                out = self._post_json(url, payload)
            except (urllib.error.URLError, OSError, ValueError) as e:
                last_err = f"{url}: {e}"
                log.warning("rpc node failed method=%s node=%s err=%s", method, url, e)
                continue
            err = out.get("error")
            if err:
                msg = err.get("message") if isinstance(err, dict) else str(err)
                raise LedgerError("rpc_error", str(msg or "rpc error"), err)
            return out.get("result")
        raise LedgerError("rpc_unreachable", f"all ledger nodes failed for {method}", last_err)

    def get_block(self, height: int) -> Optional[Json]:
        out = self.call("condenser_api.get_block", [int(height)])
        return out if isinstance(out, dict) else None

    def get_accounts(self, names: Sequence[str]) -> List[Json]:
        out = self.call("condenser_api.get_accounts", [list(names)])
        return [a for a in (out or []) if isinstance(a, dict)]

    def get_dynamic_global_properties(self) -> Json:
        out = self.call("condenser_api.get_dynamic_global_properties", [])
        if not isinstance(out, dict):
            raise LedgerError("rpc_error", "dynamic global properties missing")
        return out

    def build_transaction(self, operations: List[Operation]) -> Json:
        props = self.get_dynamic_global_properties()
        head_num = int(props["head_block_number"])
        head_id = str(props["head_block_id"])
        head_time = datetime.strptime(str(props["time"]), "%Y-%m-%dT%H:%M:%S")
        return {
            "ref_block_num": head_num & 0xFFFF,
            "ref_block_prefix": int.from_bytes(bytes.fromhex(head_id)[4:8], "little"),
            "expiration": (head_time + timedelta(seconds=TX_EXPIRATION_S)).strftime("%Y-%m-%dT%H:%M:%S"),
            "operations": operations,
            "extensions": [],
            "signatures": [],
        }

    def broadcast_operations(self, operations: List[Operation], wif: str) -> Json:
        if self._signer is None:
            raise LedgerError("no_signer", "no transaction signer configured")
        tx = self.build_transaction(operations)
        try:
            signed = self._signer(tx, wif, self._chain_id)
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError("sign_failed", f"transaction signing failed: {e}") from e
        out = self.call("condenser_api.broadcast_transaction_synchronous", [signed])
        if not isinstance(out, dict) or not out.get("id"):
            raise LedgerError("broadcast_failed", "node returned no transaction id", out)
        return {"id": str(out["id"]), "block_num": int(out.get("block_num") or 0)}
