from __future__ import annotations

import struct

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from faucet.crypto.keys import (
    derive_account_keys,
    derive_key_pair,
    private_key_from_wif,
    public_key_bytes,
    public_key_from_str,
    wif_to_public,
)
from faucet.ledger.client import HIVE_CHAIN_ID, JsonRpcLedgerClient
from faucet.ledger.signing import (
    load_signer,
    recover_public_key,
    serialize_operation,
    serialize_transaction,
    sign_transaction,
    transaction_digest,
)
from faucet.runtime.errors import FaucetError, LedgerError
from faucet.runtime.provisioner import build_create_operation

CREATOR_WIF = derive_key_pair("faucetbank", "active", "P5creator").private

# 2024-01-01T00:01:00Z
_EXPIRATION_TS = 1704067260


def _tx(*ops):
    return {
        "ref_block_num": 0x1234,
        "ref_block_prefix": 0xDEADBEEF,
        "expiration": "2024-01-01T00:01:00",
        "operations": list(ops),
        "extensions": [],
        "signatures": [],
    }


def _transfer(amount="1.000 HIVE", memo=""):
    return ["transfer", {"from": "a", "to": "bb", "amount": amount, "memo": memo}]


def test_transfer_transaction_layout() -> None:
    expected = (
        struct.pack("<HII", 0x1234, 0xDEADBEEF, _EXPIRATION_TS)
        + b"\x01"  # one operation
        + b"\x02"  # transfer
        + b"\x01a"
        + b"\x02bb"
        + struct.pack("<qB", 1000, 3)
        + b"STEEM\x00\x00"
        + b"\x00"  # empty memo
        + b"\x00"  # no extensions
    )
    assert serialize_transaction(_tx(_transfer())) == expected


def test_hbd_uses_legacy_wire_symbol_in_both_amount_shapes() -> None:
    legacy = serialize_operation(_transfer("0.001 HBD", "#memo"))
    nai = serialize_operation(_transfer({"amount": "1", "precision": 3, "nai": "@@000000013"}, "#memo"))
    assert struct.pack("<qB", 1, 3) + b"SBD\x00\x00\x00\x00" in legacy
    assert legacy == nai


def test_create_claimed_account_layout() -> None:
    keys = derive_account_keys("newuser1", "P5seed")
    raw = serialize_operation(build_create_operation("newuser1", "faucetbank", keys))

    assert raw[0] == 23
    assert raw[1:12] == b"\x0afaucetbank"
    for role in ("owner", "active", "posting"):
        pub = public_key_bytes(public_key_from_str(keys[role].public))
        assert struct.pack("<I", 1) + b"\x00" + b"\x01" + pub + struct.pack("<H", 1) in raw
    assert public_key_bytes(public_key_from_str(keys["memo"].public)) in raw
    assert raw.endswith(b"\x00")


def test_signature_is_canonical_and_recovers_the_signer() -> None:
    tx = _tx(_transfer("0.001 HBD", "#encrypted"))
    signed = sign_transaction(tx, CREATOR_WIF, HIVE_CHAIN_ID)

    assert tx["signatures"] == []
    sig = bytes.fromhex(signed["signatures"][0])
    assert len(sig) == 65
    assert sig[0] in (31, 32)
    assert sig[1] < 0x80 and sig[33] < 0x80

    digest = transaction_digest(tx, HIVE_CHAIN_ID)
    assert recover_public_key(digest, sig) == wif_to_public(CREATOR_WIF)

    r = int.from_bytes(sig[1:33], "big")
    s = int.from_bytes(sig[33:], "big")
    private_key_from_wif(CREATOR_WIF).public_key().verify(
        encode_dss_signature(r, s), digest, ec.ECDSA(Prehashed(hashes.SHA256()))
    )


def test_chain_id_is_part_of_the_digest() -> None:
    tx = _tx(_transfer())
    assert transaction_digest(tx, HIVE_CHAIN_ID) != transaction_digest(tx, "00" * 32)


def test_unknown_operation_is_refused() -> None:
    with pytest.raises(LedgerError) as ei:
        serialize_transaction(_tx(["vote", {"voter": "a", "author": "b", "permlink": "c", "weight": 1}]))
    assert ei.value.code == "unsupported_operation"


def test_bad_amount_is_a_ledger_error() -> None:
    with pytest.raises(LedgerError) as ei:
        serialize_operation(_transfer("1.000 DOGE"))
    assert ei.value.code == "bad_operation"


def test_load_signer_resolves_entrypoints() -> None:
    assert load_signer("faucet.ledger.signing:sign_transaction") is sign_transaction
    for bad in ("sign_transaction", "faucet.no_such_module:sign", "faucet.ledger.signing:missing"):
        with pytest.raises(FaucetError) as ei:
            load_signer(bad)
        assert ei.value.code == "invalid_config"


def test_client_reports_signing_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    client = JsonRpcLedgerClient(["https://node.example"], signer=sign_transaction)
    props = {"head_block_number": 10, "head_block_id": "00" * 20, "time": "2024-01-01T00:00:00"}
    monkeypatch.setattr(client, "_post_json", lambda url, payload: {"result": props})

    with pytest.raises(LedgerError) as ei:
        client.broadcast_operations([_transfer()], "not-a-wif")
    assert ei.value.code == "sign_failed"
