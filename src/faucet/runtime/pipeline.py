from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from faucet.runtime.delivery import DeliveryReport, DeliveryRouter
from faucet.runtime.errors import StoreError
from faucet.runtime.json_store import utc_now_iso
from faucet.runtime.metrics import inc_counter
from faucet.runtime.models import GeneratedCredential, ProvisionRequest, ProvisionResult
from faucet.runtime.pending_ledger import PendingCredentialsLedger
from faucet.runtime.provisioner import ResourceProvisioner
from faucet.runtime.quota_ledger import QuotaLedger
from faucet.runtime.request_validator import extract_request

log = logging.getLogger("faucet.pipeline")

Json = Dict[str, Any]


class RequestState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    AUTHORIZED = "authorized"
    PROVISIONED = "provisioned"
    CREDENTIAL_PERSISTED = "credential_persisted"
    DELIVERY_ATTEMPTED = "delivery_attempted"
    FULFILLED = "fulfilled"
    STRANDED = "stranded_pending_manual_recovery"
    REJECTED = "rejected"
    PROVISIONING_FAILED = "provisioning_failed"


@dataclass(frozen=True)
class PipelineOutcome:
    state: RequestState
    request: Optional[ProvisionRequest]
    reason: str = ""
    provision: Optional[ProvisionResult] = None
    delivery: Optional[DeliveryReport] = None
    token_committed: bool = False
    persist_failed: bool = False

    @property
    def terminal(self) -> bool:
        return self.state in {
            RequestState.FULFILLED,
            RequestState.STRANDED,
            RequestState.REJECTED,
            RequestState.PROVISIONING_FAILED,
        }


class RequestPipeline:
    """One request from validated envelope to fulfilled or stranded.

    Ordering rules:
      - the credential is durably stored before any delivery attempt
      - on delivery success the token is committed, then the record removed
      - nothing after authorization is retried; failures are terminal for
        the request and reported
    """

    def __init__(
        self,
        *,
        quota: QuotaLedger,
        pending: PendingCredentialsLedger,
        provisioner: ResourceProvisioner,
        router: DeliveryRouter,
        creator_account: str,
        creator_active_key: str,
    ) -> None:
        self._quota = quota
        self._pending = pending
        self._provisioner = provisioner
        self._router = router
        self._creator = creator_account
        self._creator_key = creator_active_key

    def handle_operation(self, op: Json, *, block_height: int, tx_id: str) -> PipelineOutcome:
        inc_counter("requests_seen_total", 1)
        request = extract_request(op, block_height=block_height, tx_id=tx_id)
        if request is None:
            inc_counter("requests_invalid_total", 1)
            return PipelineOutcome(state=RequestState.REJECTED, request=None, reason="invalid_request")
        return self.process(request)

    def process(self, request: ProvisionRequest) -> PipelineOutcome:
        log.info(
            "request found requester=%s account=%s delivery=%s block=%s tx=%s",
            request.requester_id,
            request.resource_name,
            request.delivery_method,
            request.source_block_height,
            request.source_tx_id,
        )

        auth = self._quota.authorize(request.requester_id)
        if not auth.ok:
            inc_counter("requests_unauthorized_total", 1)
            log.warning("authorization failed requester=%s reason=%s", request.requester_id, auth.reason)
            return PipelineOutcome(state=RequestState.REJECTED, request=request, reason=auth.reason)
        log.info("authorized requester=%s remaining=%s", request.requester_id, auth.remaining)

        prov = self._provisioner.provision(request.resource_name, self._creator, self._creator_key)
        if not prov.ok:
            log.warning(
                "provisioning failed account=%s kind=%s error=%s (no token deducted)",
                request.resource_name,
                prov.error_kind,
                prov.error,
            )
            return PipelineOutcome(
                state=RequestState.PROVISIONING_FAILED,
                request=request,
                reason=prov.error_kind,
                provision=prov,
            )

        credential = GeneratedCredential(
            resource_name=prov.resource_name,
            seed=prov.seed,
            keys=dict(prov.keys),
            creation_tx_id=prov.creation_tx_id,
            requester_id=request.requester_id,
            created_at=utc_now_iso(),
        )

        persist_failed = False
        try:
            self._pending.add(credential)
        except StoreError:
            # The account exists on chain and this process holds the only copy of
            # its secret. Delivery is still attempted; the service stops afterwards.
            persist_failed = True
            inc_counter("pending_persist_failed_total", 1)
            log.critical("could not persist pending credential for %s", credential.resource_name, exc_info=True)

        email = auth.requester.email if auth.requester is not None else None
        report = self._router.deliver(credential, request.delivery_method, request.requester_id, email)

        if not report.overall_success:
            inc_counter("requests_stranded_total", 1)
            log.error(
                "delivery failed for %s; credentials retained in pending ledger for manual recovery",
                credential.resource_name,
            )
            return PipelineOutcome(
                state=RequestState.STRANDED,
                request=request,
                reason="delivery_failed",
                provision=prov,
                delivery=report,
                persist_failed=persist_failed,
            )

        committed = self._quota.commit(request.requester_id)
        if not committed:
            log.warning("token deduction failed for requester=%s", request.requester_id)
        if not persist_failed:
            self._pending.remove(credential.resource_name)

        inc_counter("requests_fulfilled_total", 1)
        log.info("account creation flow complete account=%s tx=%s", credential.resource_name, prov.creation_tx_id)
        return PipelineOutcome(
            state=RequestState.FULFILLED,
            request=request,
            provision=prov,
            delivery=report,
            token_committed=committed,
            persist_failed=persist_failed,
        )
