from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import List, Tuple

import pytest

from faucet.runtime.block_pump import (
    ERROR,
    HALTED,
    MISSING,
    PROCESSED,
    BlockPump,
    BlockPumpConfig,
    iter_tracked_operations,
)
from faucet.runtime.cursor_store import CursorStore
from faucet.runtime.errors import LedgerError, StoreError
from faucet.runtime.metrics import get_counter
from faucet.testing.fakes import FakeLedger, custom_json_op, request_payload


class _Crash(BaseException):
    """Simulates the process dying mid-block."""


def _cfg(start_block: int = 0) -> BlockPumpConfig:
    return BlockPumpConfig(
        custom_json_id="hive_account_faucet",
        poll_interval_ms=10,
        error_backoff_ms=10,
        start_block=start_block,
    )


def _pump(tmp_path: Path, ledger: FakeLedger, handler, *, save_interval: int = 20, start_block: int = 0):
    cursor = CursorStore(tmp_path / "last_block.json", save_interval=save_interval)
    cursor.load()
    return BlockPump(ledger=ledger, cursor=cursor, handler=handler, cfg=_cfg(start_block)), cursor


def _op(name: str, requester: str = "alice"):
    return custom_json_op(requester, request_payload(name))


def test_ops_are_dispatched_in_block_order(tmp_path: Path) -> None:
    seen: List[Tuple[str, int, str]] = []
    ledger = FakeLedger(head=99)
    ledger.add_block(100, _op("first"), ["transfer", {"from": "a", "to": "b"}], _op("second"))
    ledger.blocks[100]["transactions"][0]["operations"].append(_op("third"))

    def handler(op, height, tx_id):
        seen.append((json.loads(op["json"])["data"]["requested_username"], height, tx_id))

    pump, cursor = _pump(tmp_path, ledger, handler)
    cursor.seed(99)
    assert pump.run_once() == PROCESSED

    assert [s[0] for s in seen] == ["first", "third", "second"]
    assert all(s[1] == 100 for s in seen)
    assert seen[0][2] == ledger.blocks[100]["transaction_ids"][0]
    assert cursor.height == 100


def test_other_custom_json_ids_are_ignored(tmp_path: Path) -> None:
    seen = []
    ledger = FakeLedger(head=99)
    ledger.add_block(100, custom_json_op("alice", request_payload("x"), op_id="follow"))
    pump, cursor = _pump(tmp_path, ledger, lambda *a: seen.append(a))
    cursor.seed(99)
    pump.run_once()
    assert seen == []
    assert cursor.height == 100


def test_appbase_operation_shape_is_recognised() -> None:
    body = _op("appbase")[1]
    block = {"transactions": [{"transaction_id": "abc", "operations": [{"type": "custom_json_operation", "value": body}]}]}
    assert list(iter_tracked_operations(block, "hive_account_faucet")) == [("abc", body)]


def test_missing_block_does_not_advance(tmp_path: Path) -> None:
    ledger = FakeLedger(head=100)
    pump, cursor = _pump(tmp_path, ledger, lambda *a: None)
    cursor.seed(100)
    assert pump.run_once() == MISSING
    assert pump.run_once() == MISSING
    assert cursor.height == 100
    assert ledger.block_requests == [101, 101]


def test_fetch_errors_retry_same_height(tmp_path: Path) -> None:
    ledger = FakeLedger(head=101)
    ledger.failures.extend([LedgerError("rpc_unreachable", "down"), LedgerError("rpc_unreachable", "down")])
    pump, cursor = _pump(tmp_path, ledger, lambda *a: None)
    cursor.seed(100)

    assert pump.run_once() == ERROR
    assert pump.run_once() == ERROR
    assert cursor.height == 100
    assert pump.consecutive_failures == 2
    assert "rpc_unreachable" in pump.last_error

    assert pump.run_once() == PROCESSED
    assert cursor.height == 101
    assert pump.consecutive_failures == 0
    assert pump.last_error == ""
    assert ledger.block_requests == [101, 101, 101]
    assert get_counter("block_pump_errors_total") == 2


def test_failing_request_does_not_abort_block(tmp_path: Path) -> None:
    seen = []
    ledger = FakeLedger(head=99)
    ledger.add_block(100, _op("boom"), _op("fine"))

    def handler(op, height, tx_id):
        name = json.loads(op["json"])["data"]["requested_username"]
        if name == "boom":
            raise RuntimeError("handler blew up")
        seen.append(name)

    pump, cursor = _pump(tmp_path, ledger, handler)
    cursor.seed(99)
    assert pump.run_once() == PROCESSED
    assert seen == ["fine"]
    assert cursor.height == 100
    assert get_counter("request_handler_errors_total") == 1


def test_crash_mid_block_replays_from_persisted_stride(tmp_path: Path) -> None:
    ledger = FakeLedger(head=10)
    ledger.add_block(8, _op("crashme"))
    processed: List[int] = []

    def handler(op, height, tx_id):
        raise _Crash()

    pump, cursor = _pump(tmp_path, ledger, handler, save_interval=5)
    cursor.seed(1)
    for _ in range(6):
        assert pump.run_once() == PROCESSED
        processed.append(cursor.height)
    assert processed == [2, 3, 4, 5, 6, 7]

    with pytest.raises(_Crash):
        pump.run_once()
    assert cursor.height == 7

    restarted = CursorStore(tmp_path / "last_block.json", save_interval=5)
    assert restarted.load() == 5


def test_start_height_resolution(tmp_path: Path) -> None:
    ledger = FakeLedger(head=500)

    pump, cursor = _pump(tmp_path / "a", ledger, lambda *a: None)
    assert pump.resolve_start_height() == 499

    pump, cursor = _pump(tmp_path / "b", ledger, lambda *a: None, start_block=250)
    assert pump.resolve_start_height() == 250

    cursor = CursorStore(tmp_path / "c" / "last_block.json")
    cursor.seed(300)
    cursor.flush()
    pump, cursor = _pump(tmp_path / "c", ledger, lambda *a: None, start_block=250)
    assert pump.resolve_start_height() == 300


def test_thread_start_stop_flushes_cursor(tmp_path: Path) -> None:
    seen = []
    ledger = FakeLedger(head=100)
    ledger.add_block(98, _op("threaded"))
    pump, cursor = _pump(tmp_path, ledger, lambda op, h, t: seen.append(h), start_block=95)

    assert pump.start() is True
    assert pump.start() is False
    deadline = time.monotonic() + 5.0
    while cursor.height < 100 and time.monotonic() < deadline:
        time.sleep(0.01)
    pump.stop()

    assert pump.running is False
    assert seen == [98]
    assert cursor.height == 100
    raw = json.loads((tmp_path / "last_block.json").read_text(encoding="utf-8"))
    assert raw["lastProcessedHeight"] == 100
    assert pump.blocks_processed == 5


def test_store_failure_halts_without_advancing(tmp_path: Path) -> None:
    seen = []
    ledger = FakeLedger(head=100)
    ledger.add_block(100, _op("first"), _op("second"))

    def handler(op, height, tx_id):
        name = json.loads(op["json"])["data"]["requested_username"]
        if name == "first":
            raise StoreError("store_corrupt", "authorized_users.json is not valid JSON")
        seen.append(name)

    pump, cursor = _pump(tmp_path, ledger, handler)
    cursor.seed(99)

    assert pump.run_once() == HALTED
    assert cursor.height == 99
    assert seen == []
    assert "store_corrupt" in pump.last_error
    assert get_counter("block_pump_halted_total") == 1


def test_ledger_error_in_handler_is_skipped_not_halted(tmp_path: Path) -> None:
    ledger = FakeLedger(head=100)
    ledger.add_block(100, _op("flaky"))

    def handler(op, height, tx_id):
        raise LedgerError("rpc_unreachable", "all ledger nodes failed")

    pump, cursor = _pump(tmp_path, ledger, handler)
    cursor.seed(99)
    assert pump.run_once() == PROCESSED
    assert cursor.height == 100


def test_halted_pump_thread_exits(tmp_path: Path) -> None:
    ledger = FakeLedger(head=100)
    ledger.add_block(98, _op("bad"))

    def handler(op, height, tx_id):
        raise StoreError("store_unreadable", "permission denied")

    pump, cursor = _pump(tmp_path, ledger, handler, start_block=96)
    pump.start()
    deadline = time.monotonic() + 5.0
    while pump.alive and time.monotonic() < deadline:
        time.sleep(0.01)

    assert pump.alive is False
    assert pump.running is False
    assert cursor.height == 97
    raw = json.loads((tmp_path / "last_block.json").read_text(encoding="utf-8"))
    assert raw["lastProcessedHeight"] == 97


def test_stop_timeout_leaves_cursor_to_pump_thread(tmp_path: Path) -> None:
    entered = threading.Event()
    release = threading.Event()
    ledger = FakeLedger(head=100)
    ledger.add_block(96, _op("slow"))

    def handler(op, height, tx_id):
        entered.set()
        release.wait(5.0)

    pump, cursor = _pump(tmp_path, ledger, handler, start_block=95)
    pump.start()
    assert entered.wait(5.0)

    assert pump.stop(timeout_s=0.05) is False
    assert pump.alive is True
    assert pump.running is True
    assert not (tmp_path / "last_block.json").exists()

    release.set()
    deadline = time.monotonic() + 5.0
    while pump.alive and time.monotonic() < deadline:
        time.sleep(0.01)

    assert pump.running is False
    raw = json.loads((tmp_path / "last_block.json").read_text(encoding="utf-8"))
    assert raw["lastProcessedHeight"] == 96
