from __future__ import annotations

import json
from pathlib import Path

import pytest

from faucet.crypto.keys import derive_account_keys
from faucet.runtime.errors import StoreError
from faucet.runtime.models import GeneratedCredential
from faucet.runtime.pending_ledger import PendingCredentialsLedger


def _cred(name: str, seed: str = "P5testseed", tx: str = "tx1") -> GeneratedCredential:
    return GeneratedCredential(
        resource_name=name,
        seed=seed,
        keys=derive_account_keys(name, seed),
        creation_tx_id=tx,
        requester_id="alice",
        created_at="2024-01-01T00:00:00Z",
    )


def test_add_get_remove(tmp_path: Path) -> None:
    p = PendingCredentialsLedger(tmp_path / "pending_credentials.json")
    assert p.count() == 0

    cred = _cred("newuser1")
    p.add(cred)
    assert p.count() == 1
    got = p.get("newuser1")
    assert got == cred

    assert p.remove("newuser1") is True
    assert p.remove("newuser1") is False
    assert p.get("newuser1") is None


def test_records_survive_a_restart(tmp_path: Path) -> None:
    path = tmp_path / "pending_credentials.json"
    PendingCredentialsLedger(path).add(_cred("newuser1"))

    reopened = PendingCredentialsLedger(path)
    got = reopened.get("newuser1")
    assert got is not None
    assert got.seed == "P5testseed"
    assert set(got.keys) == {"owner", "active", "posting", "memo"}


def test_add_same_name_replaces(tmp_path: Path) -> None:
    p = PendingCredentialsLedger(tmp_path / "pending_credentials.json")
    p.add(_cred("newuser1", tx="old"))
    p.add(_cred("newuser2"))
    p.add(_cred("newuser1", seed="P5other", tx="new"))

    assert p.count() == 2
    assert p.get("newuser1").creation_tx_id == "new"
    assert p.get("newuser1").seed == "P5other"


def test_file_format(tmp_path: Path) -> None:
    path = tmp_path / "pending_credentials.json"
    p = PendingCredentialsLedger(path)
    p.add(_cred("newuser1"))

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert list(raw) == ["pending"]
    rec = raw["pending"][0]
    assert rec["resource_name"] == "newuser1"
    assert rec["keys"]["memo"]["public"].startswith("STM")
    assert not (tmp_path / "pending_credentials.json.tmp").exists()


def test_corrupt_file_is_not_treated_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "pending_credentials.json"
    path.write_text('{"pending": {"oops": 1}}', encoding="utf-8")
    with pytest.raises(StoreError):
        PendingCredentialsLedger(path).count()


def test_add_requires_name(tmp_path: Path) -> None:
    p = PendingCredentialsLedger(tmp_path / "pending_credentials.json")
    with pytest.raises(ValueError):
        p.add(_cred(""))
