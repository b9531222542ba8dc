from __future__ import annotations

import json

from faucet.runtime.request_validator import decode, extract_request, requester_of, validate
from faucet.testing.fakes import custom_json_op, request_payload


def _op(payload, requester: str = "alice", **kw):
    return custom_json_op(requester, payload, **kw)[1]


def test_valid_envelope_passes() -> None:
    assert validate(request_payload("newuser1", "email")) is True
    assert validate(request_payload("newuser1", "hive_memo")) is True
    assert validate(request_payload("newuser1", "both")) is True


def test_fixed_fields_must_match_exactly() -> None:
    for field, bad in [("app", "other_app"), ("version", "1.0.1"), ("action", "create_account")]:
        p = request_payload("newuser1")
        p[field] = bad
        assert validate(p) is False, field


def test_missing_or_mistyped_fields_fail_closed() -> None:
    p = request_payload("newuser1")
    del p["data"]
    assert validate(p) is False

    p = request_payload("newuser1")
    del p["data"]["delivery_method"]
    assert validate(p) is False

    p = request_payload("newuser1")
    p["data"]["requested_username"] = 12345
    assert validate(p) is False

    p = request_payload("newuser1")
    p["data"]["requested_username"] = "   "
    assert validate(p) is False

    assert validate(["not", "a", "dict"]) is False
    assert validate(None) is False


def test_unknown_delivery_method_is_rejected() -> None:
    assert validate(request_payload("newuser1", "carrier_pigeon")) is False


def test_extra_fields_are_ignored() -> None:
    p = request_payload("newuser1", extra_field="x")
    p["unexpected"] = True
    assert validate(p) is True


def test_decode_treats_garbage_as_none() -> None:
    assert decode("{not json") is None
    assert decode("[1, 2]") is None
    assert decode(42) is None
    assert decode('{"a": 1}') == {"a": 1}


def test_requester_prefers_posting_authority() -> None:
    op = {"required_posting_auths": ["poster"], "required_auths": ["activeuser"]}
    assert requester_of(op) == "poster"
    assert requester_of({"required_posting_auths": [], "required_auths": ["activeuser"]}) == "activeuser"
    assert requester_of({"required_posting_auths": [], "required_auths": []}) == ""


def test_extract_request_builds_provision_request() -> None:
    req = extract_request(_op(request_payload("NewUser1", "both")), block_height=42, tx_id="abc")
    assert req is not None
    assert req.requester_id == "alice"
    assert req.resource_name == "newuser1"
    assert req.delivery_method == "both"
    assert req.source_block_height == 42
    assert req.source_tx_id == "abc"
    assert req.timestamp == "2024-01-01T00:00:00Z"


def test_extract_request_with_active_authority() -> None:
    req = extract_request(_op(request_payload("newuser1"), active=True), block_height=1, tx_id="t")
    assert req is not None
    assert req.requester_id == "alice"


def test_extract_request_rejects_malformed_json_and_missing_requester() -> None:
    assert extract_request(_op("{broken"), block_height=1, tx_id="t") is None

    op = _op(request_payload("newuser1"))
    op["required_posting_auths"] = []
    assert extract_request(op, block_height=1, tx_id="t") is None

    op = _op(json.dumps({"app": "hive_account_faucet"}))
    assert extract_request(op, block_height=1, tx_id="t") is None
