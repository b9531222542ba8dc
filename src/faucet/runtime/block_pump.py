from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from faucet.ledger.client import LedgerClient
from faucet.runtime.config import FaucetConfig
from faucet.runtime.cursor_store import CursorStore
from faucet.runtime.errors import StoreError
from faucet.runtime.metrics import inc_counter, set_gauge

log = logging.getLogger("faucet.block_pump")

Json = Dict[str, Any]

# (operation body, block height, transaction id) -> anything
OperationHandler = Callable[[Json, int, str], Any]

PROCESSED = "processed"
MISSING = "missing"
ERROR = "error"
HALTED = "halted"


@dataclass(frozen=True, slots=True)
class BlockPumpConfig:
    custom_json_id: str
    poll_interval_ms: int
    error_backoff_ms: int
    start_block: int


def block_pump_config_from(cfg: FaucetConfig) -> BlockPumpConfig:
    return BlockPumpConfig(
        custom_json_id=str(cfg.custom_json_id),
        poll_interval_ms=int(cfg.poll_interval_ms),
        error_backoff_ms=int(cfg.error_backoff_ms),
        start_block=int(cfg.start_block),
    )


def _operation_name_and_body(op: Any) -> Tuple[str, Optional[Json]]:
    # condenser shape: ["custom_json", {...}]
    if isinstance(op, (list, tuple)) and len(op) == 2 and isinstance(op[1], dict):
        return str(op[0]), op[1]
    # appbase shape: {"type": "custom_json_operation", "value": {...}}
    if isinstance(op, dict) and isinstance(op.get("value"), dict):
        name = str(op.get("type") or "")
        if name.endswith("_operation"):
            name = name[: -len("_operation")]
        return name, op["value"]
    return "", None


def iter_tracked_operations(block: Json, custom_json_id: str) -> Iterator[Tuple[str, Json]]:
    """Yield (tx_id, op) for every tracked custom_json op, in block order."""
    txs = block.get("transactions") or []
    tx_ids = block.get("transaction_ids") or []
    for i, tx in enumerate(txs):
        if not isinstance(tx, dict):
            continue
        tx_id = str(tx.get("transaction_id") or (tx_ids[i] if i < len(tx_ids) else ""))
        for op in tx.get("operations") or []:
            name, body = _operation_name_and_body(op)
            if name != "custom_json" or body is None:
                continue
            if body.get("id") != custom_json_id:
                continue
            yield tx_id, body


class BlockPump:
    """Sequential block reader driving the request pipeline.

    - one block is fully processed before the next is fetched
    - a missing block or a fetch error never advances the cursor
    - fetch errors are retried forever after a fixed backoff
    - a failing request is logged and skipped; it never aborts its block
    - a data store failure (StoreError) halts the pump; the block is not
      marked processed and is replayed after the operator restarts

    Runs on a dedicated thread via start()/stop(), or inline via run().
    """

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        cursor: CursorStore,
        handler: OperationHandler,
        cfg: BlockPumpConfig,
    ) -> None:
        self._ledger = ledger
        self._cursor = cursor
        self._handler = handler
        self._cfg = cfg

        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._running = False

        self._consecutive_failures = 0
        self._last_error: str = ""
        self._blocks_processed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def alive(self) -> bool:
        """True while the pump thread exists and has not exited."""
        t = self._t
        return bool(t is not None and t.is_alive())

    @property
    def last_processed_height(self) -> int:
        return self._cursor.height

    @property
    def last_error(self) -> str:
        return self._last_error

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def blocks_processed(self) -> int:
        return self._blocks_processed

    def start(self) -> bool:
        if self._t is not None and self._t.is_alive():
            return False
        self._stop.clear()
        self._running = True
        self._t = threading.Thread(target=self._run_guarded, name="faucet-block-pump", daemon=True)
        self._t.start()
        inc_counter("block_pump_start_total", 1)
        return True

    def request_stop(self) -> None:
        """Ask the loop to exit after the current block. Safe from the pump thread."""
        self._stop.set()

    def stop(self, *, timeout_s: float = 30.0) -> bool:
        """Signal the loop and wait for the in-flight block to finish.

        Returns False if the pump thread is still busy after `timeout_s`. The
        cursor is then left to the pump thread, which flushes it on exit.
        """
        self._stop.set()
        t = self._t
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout_s)
            if t.is_alive():
                log.warning("block pump still busy after %.1fs; cursor will be flushed when it exits", timeout_s)
                return False
        self._flush_cursor()
        self._running = False
        inc_counter("block_pump_stop_total", 1)
        return True

    def _flush_cursor(self) -> None:
        try:
            self._cursor.flush(force=True)
        except Exception:
            log.exception("cursor flush failed at height %s", self._cursor.height)

    def _mark_error(self, *, where: str, err: Exception) -> None:
        self._consecutive_failures += 1
        self._last_error = f"{where}:{type(err).__name__}:{err}"
        inc_counter("block_pump_errors_total", 1)
        set_gauge("block_pump_consecutive_failures", self._consecutive_failures)
        log.warning(
            "block pump %s failed at height %s (failures=%s): %s",
            where,
            self._cursor.height + 1,
            self._consecutive_failures,
            err,
        )

    def _clear_error(self) -> None:
        if self._consecutive_failures == 0 and not self._last_error:
            return
        self._consecutive_failures = 0
        self._last_error = ""
        set_gauge("block_pump_consecutive_failures", 0)

    def resolve_start_height(self) -> int:
        """Persisted cursor, else configured start block, else head - 1."""
        if self._cursor.height > 0:
            return self._cursor.height
        if self._cfg.start_block > 0:
            self._cursor.seed(self._cfg.start_block)
            log.info("using configured start block %s", self._cfg.start_block)
            return self._cursor.height
        props = self._ledger.get_dynamic_global_properties()
        head = int(props["head_block_number"])
        self._cursor.seed(max(0, head - 1))
        log.info("starting from block %s", self._cursor.height)
        return self._cursor.height

    def process_block(self, block: Json, height: int) -> int:
        """Dispatch every tracked op in `block`. Returns how many were seen."""
        seen = 0
        for tx_id, op in iter_tracked_operations(block, self._cfg.custom_json_id):
            seen += 1
            try:
                self._handler(op, height, tx_id)
            except StoreError:
                raise
            except Exception:
                inc_counter("request_handler_errors_total", 1)
                log.exception("request processing failed block=%s tx=%s", height, tx_id)
        if seen:
            log.info("processed block %s (%s requests)", height, seen)
        return seen

    def run_once(self) -> str:
        """Try to fetch and process the next block."""
        nxt = self._cursor.height + 1
        try:
            block = self._ledger.get_block(nxt)
        except Exception as err:
            self._mark_error(where="get_block", err=err)
            return ERROR
        if not block:
            return MISSING

        self._clear_error()
        try:
            self.process_block(block, nxt)
        except StoreError as err:
            self._mark_error(where="process_block", err=err)
            inc_counter("block_pump_halted_total", 1)
            log.critical("data store failure in block %s; monitor halted, fix the data dir and restart", nxt)
            self._stop.set()
            return HALTED
        self._cursor.advance(nxt)
        self._blocks_processed += 1
        inc_counter("blocks_processed_total", 1)
        set_gauge("last_processed_height", nxt)
        return PROCESSED

    def run(self) -> None:
        """Loop until stop() is called. Flushes the cursor on exit."""
        self._running = True
        poll_s = float(self._cfg.poll_interval_ms) / 1000.0
        backoff_s = float(self._cfg.error_backoff_ms) / 1000.0
        try:
            while not self._stop.is_set():
                if self._cursor.height <= 0:
                    try:
                        self.resolve_start_height()
                    except Exception as err:
                        self._mark_error(where="resolve_start", err=err)
                        self._stop.wait(backoff_s)
                        continue

                status = self.run_once()
                if status == MISSING:
                    self._stop.wait(poll_s)
                elif status == ERROR:
                    self._stop.wait(backoff_s)
        finally:
            self._flush_cursor()
            self._running = False

    def _run_guarded(self) -> None:
        try:
            self.run()
        except Exception:
            # Only cursor persistence can get here (data dir became unwritable).
            log.exception("block pump stopped on fatal error")
            self._stop.set()
