from __future__ import annotations

import urllib.error
from decimal import Decimal

import pytest

from faucet.ledger.client import JsonRpcLedgerClient, parse_asset
from faucet.runtime.errors import LedgerError

_PROPS = {
    "head_block_number": 0x12345,
    "head_block_id": "00012345" + "aabbccdd" + "00" * 12,
    "time": "2024-01-01T00:00:00",
}


def test_parse_asset_shapes() -> None:
    assert parse_asset("1.234 HBD") == Decimal("1.234")
    assert parse_asset({"amount": "1500", "precision": 3, "nai": "@@000000013"}) == Decimal("1.5")
    assert parse_asset("") == Decimal(0)
    assert parse_asset(None) == Decimal(0)
    assert parse_asset("garbage") == Decimal(0)


def test_failover_to_next_node(monkeypatch: pytest.MonkeyPatch) -> None:
    client = JsonRpcLedgerClient(["https://down.example", "https://up.example"])
    tried = []

    def fake_post(url, payload):
        tried.append(url)
        if "down" in url:
            raise urllib.error.URLError("connection refused")
        return {"jsonrpc": "2.0", "id": payload["id"], "result": {"transactions": []}}

    monkeypatch.setattr(client, "_post_json", fake_post)
    assert client.get_block(10) == {"transactions": []}
    assert tried == ["https://down.example", "https://up.example"]


def test_null_block_means_not_produced_yet(monkeypatch: pytest.MonkeyPatch) -> None:
    client = JsonRpcLedgerClient(["https://node.example"])
    monkeypatch.setattr(client, "_post_json", lambda url, payload: {"result": None})
    assert client.get_block(10**9) is None


def test_all_nodes_down(monkeypatch: pytest.MonkeyPatch) -> None:
    client = JsonRpcLedgerClient(["https://a.example", "https://b.example"])

    def fake_post(url, payload):
        raise OSError("timed out")

    monkeypatch.setattr(client, "_post_json", fake_post)
    with pytest.raises(LedgerError) as ei:
        client.get_accounts(["alice"])
    assert ei.value.code == "rpc_unreachable"


def test_rpc_error_is_not_retried_on_other_nodes(monkeypatch: pytest.MonkeyPatch) -> None:
    client = JsonRpcLedgerClient(["https://a.example", "https://b.example"])
    tried = []

    def fake_post(url, payload):
        tried.append(url)
        return {"error": {"code": -32000, "message": "Account newuser1 already exists"}}

    monkeypatch.setattr(client, "_post_json", fake_post)
    with pytest.raises(LedgerError) as ei:
        client.get_accounts(["alice"])
    assert ei.value.code == "rpc_error"
    assert "already exists" in ei.value.reason
    assert tried == ["https://a.example"]


def test_broadcast_builds_transaction_and_uses_signer(monkeypatch: pytest.MonkeyPatch) -> None:
    signed = {}

    def signer(tx, wif, chain_id):
        signed.update(tx=tx, wif=wif, chain_id=chain_id)
        return dict(tx, signatures=["sig"])

    client = JsonRpcLedgerClient(["https://node.example"], signer=signer)
    calls = []

    def fake_post(url, payload):
        calls.append(payload["method"])
        if payload["method"] == "condenser_api.get_dynamic_global_properties":
            return {"result": _PROPS}
        assert payload["params"][0]["signatures"] == ["sig"]
        return {"result": {"id": "abc123", "block_num": 99}}

    monkeypatch.setattr(client, "_post_json", fake_post)
    out = client.broadcast_operations([["transfer", {"from": "a", "to": "b"}]], "5Kwif")

    assert out == {"id": "abc123", "block_num": 99}
    tx = signed["tx"]
    assert tx["ref_block_num"] == 0x2345
    assert tx["ref_block_prefix"] == int.from_bytes(bytes.fromhex("aabbccdd"), "little")
    assert tx["expiration"] == "2024-01-01T00:01:00"
    assert signed["wif"] == "5Kwif"
    assert calls[-1] == "condenser_api.broadcast_transaction_synchronous"


def test_broadcast_without_signer_fails() -> None:
    client = JsonRpcLedgerClient(["https://node.example"])
    with pytest.raises(LedgerError) as ei:
        client.broadcast_operations([], "5Kwif")
    assert ei.value.code == "no_signer"


def test_requires_a_node_url() -> None:
    with pytest.raises(ValueError):
        JsonRpcLedgerClient([])
