from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from faucet.email.smtp_sender import SmtpMailer
from faucet.ledger.client import JsonRpcLedgerClient, LedgerClient
from faucet.ledger.signing import load_signer
from faucet.runtime.block_pump import BlockPump, block_pump_config_from
from faucet.runtime.config import FaucetConfig
from faucet.runtime.cursor_store import CursorStore
from faucet.runtime.delivery import DeliveryRouter, Mailer
from faucet.runtime.errors import FaucetError
from faucet.runtime.pending_ledger import PendingCredentialsLedger
from faucet.runtime.pipeline import PipelineOutcome, RequestPipeline
from faucet.runtime.provisioner import ResourceProvisioner
from faucet.runtime.quota_ledger import QuotaLedger
from faucet.runtime.single_writer import SingleWriterLock

log = logging.getLogger("faucet.service")

Json = Dict[str, Any]


class FaucetService:
    """Owns the ledgers, the pipeline and the block pump for one data dir.

    open() takes the single-writer lock and loads the cursor; it raises
    FaucetError when the data dir is unusable or another process holds it.
    """

    def __init__(
        self,
        cfg: FaucetConfig,
        *,
        ledger: Optional[LedgerClient] = None,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self.cfg = cfg
        if ledger is None:
            ledger = JsonRpcLedgerClient(
                cfg.node_urls,
                timeout_s=cfg.rpc_timeout_s,
                signer=load_signer(cfg.tx_signer),
            )
        self.ledger: LedgerClient = ledger
        self.mailer: Mailer = mailer or SmtpMailer.from_config(cfg)

        self._lock = SingleWriterLock(str(cfg.lock_path))
        self.cursor = CursorStore(cfg.cursor_path, save_interval=cfg.save_interval)
        self.quota: Optional[QuotaLedger] = None
        self.pending: Optional[PendingCredentialsLedger] = None
        self.pipeline: Optional[RequestPipeline] = None
        self.pump: Optional[BlockPump] = None

        self._started_monotonic = time.monotonic()
        self._opened = False

    def open(self) -> "FaucetService":
        if self._opened:
            return self
        try:
            os.makedirs(self.cfg.data_dir, exist_ok=True)
        except OSError as e:
            raise FaucetError("data_dir_unwritable", f"cannot create data dir {self.cfg.data_dir}", str(e)) from e

        self._lock.acquire()
        try:
            self.quota = QuotaLedger(self.cfg.quota_path)
            self.pending = PendingCredentialsLedger(self.cfg.pending_path)
            self.cursor.load()
        except Exception:
            self._lock.release()
            raise

        if not self.cfg.creator_active_key:
            log.warning("creator active key not configured; account creation will fail")
        if not self.cfg.creator_memo_key:
            log.warning("creator memo key not configured; memo delivery will fail")

        router = DeliveryRouter(
            ledger=self.ledger,
            mailer=self.mailer,
            creator_account=self.cfg.creator_account,
            creator_active_key=self.cfg.creator_active_key,
            creator_memo_key=self.cfg.creator_memo_key,
            min_memo_balance=self.cfg.memo_min_balance,
            transfer_amount=self.cfg.memo_transfer_amount,
        )
        self.pipeline = RequestPipeline(
            quota=self.quota,
            pending=self.pending,
            provisioner=ResourceProvisioner(ledger=self.ledger),
            router=router,
            creator_account=self.cfg.creator_account,
            creator_active_key=self.cfg.creator_active_key,
        )
        self.pump = BlockPump(
            ledger=self.ledger,
            cursor=self.cursor,
            handler=self._handle_operation,
            cfg=block_pump_config_from(self.cfg),
        )
        self._opened = True
        log.info("faucet service opened data_dir=%s creator=%s", self.cfg.data_dir, self.cfg.creator_account)
        return self

    def _handle_operation(self, op: Json, block_height: int, tx_id: str) -> PipelineOutcome:
        assert self.pipeline is not None
        outcome = self.pipeline.handle_operation(op, block_height=block_height, tx_id=tx_id)
        if outcome.persist_failed and self.pump is not None:
            log.critical("pending ledger is not writable; stopping monitor for operator action")
            self.pump.request_stop()
        return outcome

    @property
    def running(self) -> bool:
        return bool(self.pump is not None and self.pump.running)

    @property
    def last_processed_height(self) -> int:
        return self.cursor.height

    @property
    def uptime_s(self) -> float:
        return time.monotonic() - self._started_monotonic

    def start_monitor(self) -> bool:
        """Start the pump thread. Returns False if it was already running."""
        self.open()
        assert self.pump is not None
        started = self.pump.start()
        if started:
            log.info("blockchain monitoring started from block %s", self.cursor.height or "head")
        return started

    def stop_monitor(self, *, timeout_s: float = 30.0) -> bool:
        if self.pump is None or not self.pump.running:
            return False
        if self.pump.stop(timeout_s=timeout_s):
            log.info("blockchain monitoring stopped at block %s", self.cursor.height)
        else:
            log.warning("blockchain monitoring asked to stop; block %s still in flight", self.cursor.height + 1)
        return True

    def close(self, *, timeout_s: float = 30.0) -> None:
        """Stop the monitor and release the data dir.

        The single-writer lock is kept while the pump thread is still running,
        so no other process can write the ledgers underneath it.
        """
        try:
            self.stop_monitor(timeout_s=timeout_s)
        finally:
            if self.pump is not None and self.pump.alive:
                log.error("block pump did not exit; keeping single-writer lock %s", self.cfg.lock_path)
            else:
                self._lock.release()
                self._opened = False

    def status(self) -> Json:
        pump = self.pump
        return {
            "monitoring": self.running,
            "last_processed_block": self.cursor.height,
            "saved_block": self.cursor.saved_height,
            "blocks_processed": pump.blocks_processed if pump else 0,
            "consecutive_failures": pump.consecutive_failures if pump else 0,
            "last_error": pump.last_error if pump else "",
            "pending_credentials": self.pending.count() if self.pending else 0,
        }
