# src/faucet/email/smtp_sender.py
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Tuple

from faucet.runtime.config import FaucetConfig
from faucet.runtime.models import GeneratedCredential

log = logging.getLogger("faucet.email")

SENDER_NAME = "Hive Account Faucet"


@dataclass(frozen=True)
class SmtpMailer:
    """
    Minimal SMTP sender (stdlib only).

    Notes:
      - For Gmail: host=smtp.gmail.com, port=587, use an App Password.
      - Port 587 uses STARTTLS; port 465 uses implicit TLS.
    """

    host: str
    port: int
    user: str
    password: str
    sender: str
    timeout_s: int = 20

    @staticmethod
    def from_config(cfg: FaucetConfig) -> "SmtpMailer":
        return SmtpMailer(
            host=cfg.email_host,
            port=int(cfg.email_port),
            user=cfg.email_user,
            password=cfg.email_pass,
            sender=cfg.email_from or cfg.email_user,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password and self.sender)

    def _connect(self) -> smtplib.SMTP:
        if self.port == 465:
            s: smtplib.SMTP = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_s)
        else:
            s = smtplib.SMTP(self.host, self.port, timeout=self.timeout_s)
            s.ehlo()
            s.starttls()
            s.ehlo()
        s.login(self.user, self.password)
        return s

    def send(self, *, to_email: str, subject: str, body_text: str) -> str:
        """Send one plain-text message. Returns the Message-ID."""
        if not self.configured:
            raise RuntimeError("email not configured: set FAUCET_EMAIL_HOST/PORT/USER/PASS/FROM")

        msg = EmailMessage()
        msg["From"] = f'"{SENDER_NAME}" <{self.sender}>'
        msg["To"] = to_email
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=self.sender.split("@")[-1] or None)
        msg.set_content(body_text)

        with self._connect() as s:
            s.send_message(msg)
        return str(msg["Message-ID"])

    def verify_connection(self) -> Tuple[bool, str]:
        if not self.configured:
            return False, "Email service not configured"
        try:
            with self._connect() as s:
                s.noop()
        except (smtplib.SMTPException, OSError) as e:
            return False, str(e)
        return True, "Connection verified"


def render_credentials_email(credential: GeneratedCredential) -> Tuple[str, str]:
    keys = credential.keys
    subject = "Your Hive Account Credentials - DO NOT REPLY"
    body = (
        "THIS IS AN AUTOMATED MESSAGE - DO NOT REPLY\n\n"
        "Your Hive Account Has Been Created!\n\n"
        f"Username: {credential.resource_name}\n"
        f"Master Password: {credential.seed}\n"
        f"Owner Key: {keys['owner'].private}\n"
        f"Active Key: {keys['active'].private}\n"
        f"Posting Key: {keys['posting'].private}\n"
        f"Memo Key: {keys['memo'].private}\n\n"
        "IMPORTANT: Save these keys securely!\n"
        f"Created by: @{credential.requester_id}\n"
    )
    return subject, body
