from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Protocol

from faucet.crypto.memo import encode_memo
from faucet.email.smtp_sender import render_credentials_email
from faucet.ledger.client import LedgerClient, parse_asset
from faucet.runtime.metrics import inc_counter
from faucet.runtime.models import BOTH, EMAIL, HIVE_MEMO, GeneratedCredential

log = logging.getLogger("faucet.delivery")

# Channel failure reasons
NOT_REQUESTED = "not_requested"
NO_REGISTERED_EMAIL = "no_registered_email"
EMAIL_NOT_CONFIGURED = "email_not_configured"
EMAIL_SEND_FAILED = "email_send_failed"
INSUFFICIENT_BALANCE = "insufficient_balance"
MISSING_MEMO_KEY = "missing_memo_key"
RECIPIENT_LOOKUP_FAILED = "recipient_lookup_failed"
ENCRYPTION_FAILED = "encryption_failed"
ENCRYPTION_LEAK = "encryption_leak"
TRANSFER_FAILED = "transfer_failed"


class Mailer(Protocol):
    @property
    def configured(self) -> bool:
        ...

    def send(self, *, to_email: str, subject: str, body_text: str) -> str:
        ...


MemoEncoder = Callable[[str, str, str], str]


@dataclass(frozen=True)
class ChannelResult:
    attempted: bool
    ok: bool
    reason: str = ""
    detail: str = ""
    tx_id: str = ""
    fatal: bool = False

    @staticmethod
    def skipped() -> "ChannelResult":
        return ChannelResult(attempted=False, ok=False, reason=NOT_REQUESTED)

    @staticmethod
    def failed(reason: str, detail: str = "", *, fatal: bool = False) -> "ChannelResult":
        return ChannelResult(attempted=True, ok=False, reason=reason, detail=detail, fatal=fatal)

    @staticmethod
    def succeeded(detail: str = "", tx_id: str = "") -> "ChannelResult":
        return ChannelResult(attempted=True, ok=True, detail=detail, tx_id=tx_id)


@dataclass(frozen=True)
class DeliveryReport:
    method: str
    email: ChannelResult
    memo: ChannelResult
    overall_success: bool

    @property
    def fatal(self) -> bool:
        return self.email.fatal or self.memo.fatal


def overall_success(method: str, email: ChannelResult, memo: ChannelResult) -> bool:
    """`both` needs both channels; a single-channel method needs that channel."""
    if method == BOTH:
        return email.ok and memo.ok
    if method == EMAIL:
        return email.ok
    if method == HIVE_MEMO:
        return memo.ok
    return False


def memo_message(credential: GeneratedCredential) -> str:
    return (
        f"Account created: {credential.resource_name}\n"
        f"Master Password: {credential.seed}\n\n"
        "Import this to Keychain to access your account."
    )


def find_plaintext_leak(encoded: str, credential: GeneratedCredential) -> Optional[str]:
    """Name the secret that appears verbatim in an encoded memo, if any."""
    if credential.resource_name and credential.resource_name in encoded:
        return "resource_name"
    if credential.seed and credential.seed in encoded:
        return "seed"
    return None


class DeliveryRouter:
    """Hands generated credentials to the requester over email and/or memo.

    Channel failures are reported, never raised: the caller keeps the
    pending record whenever overall success is not reached.
    """

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        mailer: Mailer,
        creator_account: str,
        creator_active_key: str,
        creator_memo_key: str,
        min_memo_balance: Decimal = Decimal("0.001"),
        transfer_amount: str = "0.001 HBD",
        memo_encoder: MemoEncoder = encode_memo,
    ) -> None:
        self._ledger = ledger
        self._mailer = mailer
        self._creator = creator_account
        self._active_key = creator_active_key
        self._memo_key = creator_memo_key
        self._min_balance = Decimal(min_memo_balance)
        self._amount = transfer_amount
        self._encode = memo_encoder

    def deliver(
        self,
        credential: GeneratedCredential,
        method: str,
        requester_id: str,
        requester_email: Optional[str],
    ) -> DeliveryReport:
        email = ChannelResult.skipped()
        memo = ChannelResult.skipped()

        if method in (EMAIL, BOTH):
            email = self._deliver_email(credential, requester_email)
        if method in (HIVE_MEMO, BOTH):
            memo = self._deliver_memo(credential, requester_id)

        ok = overall_success(method, email, memo)
        inc_counter("delivery_ok_total" if ok else "delivery_failed_total", 1)
        log.info(
            "delivery summary account=%s method=%s email=%s(%s) memo=%s(%s) overall=%s",
            credential.resource_name,
            method,
            email.ok,
            email.reason,
            memo.ok,
            memo.reason,
            ok,
        )
        return DeliveryReport(method=method, email=email, memo=memo, overall_success=ok)

    def _deliver_email(self, credential: GeneratedCredential, requester_email: Optional[str]) -> ChannelResult:
        to = (requester_email or "").strip()
        if not to:
            return ChannelResult.failed(NO_REGISTERED_EMAIL, "no registered email for requester")
        if not self._mailer.configured:
            return ChannelResult.failed(EMAIL_NOT_CONFIGURED, "email service not configured")

        subject, body = render_credentials_email(credential)
        try:
            message_id = self._mailer.send(to_email=to, subject=subject, body_text=body)
        except Exception as e:
            log.error("email delivery failed for %s: %s", credential.resource_name, e)
            return ChannelResult.failed(EMAIL_SEND_FAILED, str(e))
        return ChannelResult.succeeded(detail=str(message_id or ""))

    def memo_balance(self) -> Decimal:
        accounts = self._ledger.get_accounts([self._creator])
        if not accounts:
            return Decimal(0)
        return parse_asset(accounts[0].get("hbd_balance"))

    def _deliver_memo(self, credential: GeneratedCredential, recipient: str) -> ChannelResult:
        try:
            balance = self.memo_balance()
        except Exception as e:
            log.warning("balance lookup failed for %s: %s", self._creator, e)
            balance = Decimal(0)
        if balance < self._min_balance:
            return ChannelResult.failed(
                INSUFFICIENT_BALANCE, f"need >= {self._min_balance} HBD, have {balance} HBD"
            )
        if not self._memo_key:
            return ChannelResult.failed(MISSING_MEMO_KEY, "creator memo key is not configured")

        try:
            accounts = self._ledger.get_accounts([recipient])
        except Exception as e:
            return ChannelResult.failed(RECIPIENT_LOOKUP_FAILED, str(e))
        if not accounts or not accounts[0].get("memo_key"):
            return ChannelResult.failed(RECIPIENT_LOOKUP_FAILED, f"recipient account @{recipient} not found")

        try:
            encoded = self._encode(self._memo_key, str(accounts[0]["memo_key"]), "#" + memo_message(credential))
        except Exception as e:
            return ChannelResult.failed(ENCRYPTION_FAILED, str(e))

        leaked = find_plaintext_leak(encoded, credential)
        if leaked is not None:
            inc_counter("delivery_encryption_leak_total", 1)
            log.critical(
                "SECURITY: encrypted memo for %s contains plaintext %s; transfer not sent, operator action required",
                credential.resource_name,
                leaked,
            )
            return ChannelResult.failed(ENCRYPTION_LEAK, f"plaintext {leaked} visible in memo", fatal=True)

        transfer = [
            "transfer",
            {"from": self._creator, "to": recipient, "amount": self._amount, "memo": encoded},
        ]
        try:
            result = self._ledger.broadcast_operations([transfer], self._active_key)
        except Exception as e:
            log.error("memo transfer failed for %s: %s", credential.resource_name, e)
            return ChannelResult.failed(TRANSFER_FAILED, str(e))
        return ChannelResult.succeeded(tx_id=str(result.get("id") or ""))
