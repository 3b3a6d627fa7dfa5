# canvass_auth/otp.py
#
# -----------------------------------------------------------------------------
# Stateless OTP issuance and verification
# -----------------------------------------------------------------------------
# Flow:
#   send_otp(email)
#     -> code (6 digits), expiresAt = now + TTL, signature = HMAC(email.code.expiresAt)
#     -> code goes out through the mail channel
#     -> caller receives {signature, expiresAt}
#   verify(email, code, signature, expiresAt)
#     -> expiry check, signature check
#     -> signed session token + user
#
# The server keeps NO record of issued codes. Consequences:
#   - a valid (code, signature, expiresAt) triple verifies any number of times
#     until it expires (no single-use enforcement)
#   - expiry is the only revocation mechanism
#   - re-issuing supersedes an older credential but does not invalidate it
#
# Time is milliseconds since epoch throughout, matching the wire format.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import functools
import hashlib
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from .audit import AuditLog, build_common
from .channels import DeliveryError, OutboundChannel, render_otp_message
from .config import Settings
from .signing import sign_otp, signatures_match
from .tokens import TOKEN_TYPE, TOKEN_VERSION, sign_session_token

logger = logging.getLogger(__name__)

CODE_MIN = 100000
CODE_MAX = 999999
# ms timestamps stay well under 16 digits for the next few hundred thousand years
MAX_EXPIRES_DIGITS = 16

ROLE_ADMIN = "admin"
ROLE_USER = "user"


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class OtpError(Exception):
    status_code = 400

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class MissingFieldError(OtpError):
    pass


class InvalidFieldError(OtpError):
    pass


class OtpExpiredError(OtpError):
    def __init__(self):
        super().__init__("otp expired")


class InvalidOtpError(OtpError):
    # Same message whether the code, identity, or expiresAt was wrong.
    def __init__(self):
        super().__init__("invalid otp")


class OtpDeliveryError(OtpError):
    status_code = 500

    def __init__(self, details: str):
        super().__init__("failed to send otp", details=details)


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class OtpCredential:
    identity: str
    code: str
    expires_at: int
    signature: str


@dataclass(frozen=True)
class SessionUser:
    id: str
    username: str
    email: str
    name: str
    role: str

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def epoch_ms() -> int:
    # Keep time source centralized for easier testing/mocking.
    return time.time_ns() // 1_000_000


def generate_code() -> str:
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def derive_role(identity: str, admin_identity: str) -> str:
    if identity.strip().casefold() == admin_identity.strip().casefold():
        return ROLE_ADMIN
    return ROLE_USER


def subject_id(identity: str) -> str:
    return hashlib.sha256(identity.strip().lower().encode("utf-8")).hexdigest()[:16]


def display_name(identity: str) -> str:
    return identity.split("@", 1)[0]


def _require_identity(identity) -> str:
    if not isinstance(identity, str) or not identity.strip():
        raise MissingFieldError("email is required")
    return identity


def _coerce_code(code) -> str:
    # JSON clients sometimes send the code as a number
    if isinstance(code, bool):
        raise InvalidFieldError("otp must be a string of digits")
    if isinstance(code, int):
        return str(code)
    if isinstance(code, str):
        return code.strip()
    raise InvalidFieldError("otp must be a string of digits")


def _coerce_expires_at(expires_at) -> int:
    if isinstance(expires_at, bool):
        raise InvalidFieldError("expiresAt must be an integer")
    if isinstance(expires_at, int):
        return expires_at
    if isinstance(expires_at, float) and expires_at.is_integer():
        return int(expires_at)
    if isinstance(expires_at, str):
        s = expires_at.strip()
        # ASCII digits only: int() rejects "²" and friends
        if s.isascii() and s.isdecimal() and len(s) <= MAX_EXPIRES_DIGITS:
            return int(s)
    raise InvalidFieldError("expiresAt must be an integer")


def _is_missing(v) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------
class OtpService:
    """
    Issues and verifies OTP credentials. Holds only read-only configuration.

    clock returns milliseconds since epoch so tests can pin it.
    """

    def __init__(
        self,
        settings: Settings,
        channel: OutboundChannel,
        clock: Callable[[], int] = epoch_ms,
        audit: Optional[AuditLog] = None,
    ):
        self.settings = settings
        self.channel = channel
        self.clock = clock
        self.audit = audit

    def now_ms(self) -> int:
        return self.clock()

    def _record(self, result: str, reason: str, **common) -> None:
        if self.audit is None:
            return
        self.audit.append({**build_common(**common), "result": result, "reason": reason})

    async def _record_async(self, result: str, reason: str, **common) -> None:
        # flock + fsync must not stall the event loop
        if self.audit is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, functools.partial(self._record, result, reason, **common))

    # -------------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------------
    def issue(self, identity: str) -> OtpCredential:
        identity = _require_identity(identity)
        code = generate_code()
        expires_at = self.now_ms() + self.settings.otp_ttl_ms
        signature = sign_otp(self.settings.signing_secret, identity, code, expires_at)
        return OtpCredential(identity=identity, code=code, expires_at=expires_at, signature=signature)

    async def send_otp(
        self,
        identity,
        *,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        cred = self.issue(identity)
        common = dict(
            identity=cred.identity,
            expires_at=cred.expires_at,
            signature=cred.signature,
            channel=self.channel.name,
            request_ip=request_ip,
            user_agent=user_agent,
        )
        out: Dict[str, Any] = {
            "success": True,
            "signature": cred.signature,
            "expiresAt": cred.expires_at,
        }

        if not self.channel.delivers:
            logger.warning("Dev OTP for %s: %s (no outbound channel configured)", cred.identity, cred.code)
            await self._record_async("issued", "dev_fallback", **common)
            out["otp"] = cred.code
            return out

        subject, body = render_otp_message(cred.code, self.settings.OTP_TTL_SECONDS, self.settings.OTP_SUBJECT)
        try:
            await self.channel.send(cred.identity, subject, body)
        except DeliveryError as exc:
            logger.error("OTP delivery via %s failed for %s: %s", self.channel.name, cred.identity, exc.detail)
            await self._record_async("error", "delivery_failed", **common)
            raise OtpDeliveryError(exc.detail) from exc

        logger.info("OTP sent via %s to %s", self.channel.name, cred.identity)
        await self._record_async("issued", "delivered", **common)
        return out

    # -------------------------------------------------------------------------
    # Verify
    # -------------------------------------------------------------------------
    def verify(
        self,
        identity,
        code,
        signature,
        expires_at,
        *,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        missing = [
            name
            for name, value in (("email", identity), ("otp", code), ("signature", signature), ("expiresAt", expires_at))
            if _is_missing(value)
        ]
        if missing:
            raise MissingFieldError("missing required fields: " + ", ".join(missing))

        if not isinstance(identity, str):
            raise InvalidFieldError("email must be a string")
        code = _coerce_code(code)
        expires_at = _coerce_expires_at(expires_at)
        common = dict(identity=identity, expires_at=expires_at, request_ip=request_ip, user_agent=user_agent)
        if isinstance(signature, str):
            common["signature"] = signature

        now = self.now_ms()
        if now > expires_at:
            logger.info("OTP for %s expired %d ms ago", identity, now - expires_at)
            self._record("denied", "expired", **common)
            raise OtpExpiredError()

        expected = sign_otp(self.settings.signing_secret, identity, code, expires_at)
        if not signatures_match(signature, expected):
            logger.warning("OTP verification failed for %s", identity)
            self._record("denied", "invalid_otp", **common)
            raise InvalidOtpError()

        user = SessionUser(
            id=subject_id(identity),
            username=identity,
            email=identity,
            name=display_name(identity),
            role=derive_role(identity, self.settings.ADMIN_EMAIL),
        )
        token = self.mint_session_token(user, now)

        logger.info("OTP verified for %s (role=%s)", identity, user.role)
        self._record("approved", "otp_valid", **common)
        return {"success": True, "token": token, "user": user.as_dict()}

    def mint_session_token(self, user: SessionUser, now_ms: Optional[int] = None) -> str:
        now_ms = self.now_ms() if now_ms is None else now_ms
        payload = {
            "v": TOKEN_VERSION,
            "typ": TOKEN_TYPE,
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "exp": now_ms + self.settings.session_ttl_ms,
        }
        return sign_session_token(self.settings.signing_secret, payload)
