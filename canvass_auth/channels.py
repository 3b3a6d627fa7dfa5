"""
canvass_auth/channels.py

Outbound mail channels used to deliver OTP codes.

The set of channels is closed and resolved once at startup:

  - SendGridChannel : SendGrid v3 REST API (needs SENDGRID_API_KEY + FROM_EMAIL)
  - SmtpChannel     : plain SMTP with STARTTLS or implicit TLS
                      (needs SMTP_HOST + SMTP_USER + SMTP_PASS + FROM_EMAIL)
  - NoChannel       : nothing configured; the OTP service returns the code in
                      the response instead (development only)

Every channel raises DeliveryError on any transport failure. Timeouts are
bounded by MAIL_TIMEOUT_SECONDS; there are no retries.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional, Union

import httpx

from .config import Settings

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """The outbound channel failed to hand the message to its transport."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


def render_otp_message(code: str, ttl_seconds: int, subject: str = "Your admin OTP") -> tuple[str, str]:
    minutes = max(1, ttl_seconds // 60)
    unit = "minute" if minutes == 1 else "minutes"
    return subject, f"Your one-time code: {code} (valid for {minutes} {unit})"


# -----------------------------------------------------------------------------
# Variants
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class NoChannel:
    name: str = "none"
    delivers: bool = False

    async def send(self, to: str, subject: str, body: str) -> None:
        raise DeliveryError("no outbound channel configured")


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: str
    password: str
    from_email: str
    secure: bool = False
    timeout: float = 15.0


@dataclass(frozen=True)
class SmtpChannel:
    config: SmtpConfig
    name: str = "smtp"
    delivers: bool = True

    def _connect(self) -> smtplib.SMTP:
        cfg = self.config
        ctx = ssl.create_default_context()
        if cfg.secure:
            conn: smtplib.SMTP = smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=cfg.timeout, context=ctx)
        else:
            conn = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout)
        try:
            if not cfg.secure:
                conn.starttls(context=ctx)
            conn.login(cfg.user, cfg.password)
        except BaseException:
            conn.close()
            raise
        return conn

    # SMTP.__exit__ sends QUIT, ignores a server that already hung up, and
    # always closes the socket.
    def _send_blocking(self, msg: EmailMessage) -> None:
        conn = self._connect()
        with conn:
            conn.send_message(msg)

    def _check_blocking(self) -> None:
        conn = self._connect()
        with conn:
            conn.noop()

    async def send(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.config.from_email
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_blocking, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"smtp: {exc}") from exc

    async def check(self) -> None:
        """Connect and authenticate without sending anything."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._check_blocking)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"smtp: {exc}") from exc


@dataclass(frozen=True)
class SendGridConfig:
    api_key: str
    from_email: str
    api_url: str
    timeout: float = 15.0


@dataclass(frozen=True)
class SendGridChannel:
    config: SendGridConfig
    name: str = "sendgrid"
    delivers: bool = True
    # tests pass httpx.MockTransport here
    transport: Optional[httpx.AsyncBaseTransport] = None

    async def send(self, to: str, subject: str, body: str) -> None:
        cfg = self.config
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": cfg.from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        headers = {"Authorization": f"Bearer {cfg.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=cfg.timeout, transport=self.transport) as client:
                resp = await client.post(cfg.api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"sendgrid: {exc}") from exc

        if resp.status_code >= 300:
            raise DeliveryError(f"sendgrid: HTTP {resp.status_code}: {resp.text[:200]}")


OutboundChannel = Union[NoChannel, SmtpChannel, SendGridChannel]


# -----------------------------------------------------------------------------
# Startup resolution
# -----------------------------------------------------------------------------
def resolve_channel(settings: Settings) -> OutboundChannel:
    """Pick the outbound channel from settings. Priority: SendGrid, SMTP, none."""
    if settings.SENDGRID_API_KEY and settings.FROM_EMAIL:
        logger.info("SendGrid configured; OTP codes will be e-mailed via SendGrid.")
        return SendGridChannel(
            SendGridConfig(
                api_key=settings.SENDGRID_API_KEY,
                from_email=settings.FROM_EMAIL,
                api_url=settings.SENDGRID_API_URL,
                timeout=settings.MAIL_TIMEOUT_SECONDS,
            )
        )

    if settings.SMTP_HOST and settings.SMTP_USER and settings.SMTP_PASS and settings.FROM_EMAIL:
        logger.info(
            "SMTP configured; OTP codes will be e-mailed via %s:%s.",
            settings.SMTP_HOST,
            settings.SMTP_PORT,
        )
        return SmtpChannel(
            SmtpConfig(
                host=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                user=settings.SMTP_USER,
                password=settings.SMTP_PASS,
                from_email=settings.FROM_EMAIL,
                secure=settings.SMTP_SECURE,
                timeout=settings.MAIL_TIMEOUT_SECONDS,
            )
        )

    missing = [
        key
        for key, value in [
            ("FROM_EMAIL", settings.FROM_EMAIL),
            ("SENDGRID_API_KEY or SMTP_HOST/SMTP_USER/SMTP_PASS",
             settings.SENDGRID_API_KEY or (settings.SMTP_HOST and settings.SMTP_USER and settings.SMTP_PASS)),
        ]
        if not value
    ]
    logger.warning(
        "No outbound mail channel configured (missing: %s). "
        "OTP codes will be returned in the API response (dev mode).",
        ", ".join(missing),
    )
    return NoChannel()
