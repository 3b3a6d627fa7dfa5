# canvass_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the protocol implemented in otp.py.
#   - It MUST NOT implement crypto itself (signing.py + tokens.py do that).
#   - It keeps NO per-request state. Settings, the outbound channel and the
#     audit log are built once in create_app() and hung on app.state.
#
# Key modules / responsibilities:
#   - config.py      : environment-driven settings (secret, admin, mail, TTLs)
#   - channels.py    : outbound mail channel (SendGrid | SMTP | none)
#   - signing.py     : HMAC binding of (email, code, expiresAt)
#   - tokens.py      : signed session tokens (v1.<payload>.<sig>)
#   - otp.py         : issue / verify logic + error taxonomy
#   - deps.py        : bearer-token dependencies for downstream callers
#   - audit.py       : append-only hash-chained audit log
#
# Every route is served twice: at "/" and under "/api". Serverless rewrites
# forward "/api/send-otp" unchanged while local dev calls "/send-otp".
#
# WARNING (DEPLOYMENT):
# - Without OTP_SECRET the server signs with a public fallback key. Anyone
#   who knows it can mint OTP credentials and session tokens. Set
#   REQUIRE_OTP_SECRET=true in production to refuse to start instead.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .audit import AuditLog
from .channels import OutboundChannel, resolve_channel
from .config import Settings, get_settings
from .deps import get_current_user, get_otp_service, require_admin
from .logging_config import setup_logging
from .models import (
    ConfigReport,
    HealthOut,
    SendOtpResponse,
    SessionOut,
    VerifyOtpResponse,
)
from .otp import OtpError, OtpService

logger = logging.getLogger(__name__)

router = APIRouter()


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def _first_present(body: dict, *keys: str):
    """First non-None value among alias keys (e.g. signature / hash)."""
    for k in keys:
        if body.get(k) is not None:
            return body[k]
    return None


def _check_secret(settings: Settings) -> None:
    if not settings.uses_fallback_secret:
        return
    if settings.REQUIRE_OTP_SECRET:
        raise RuntimeError("OTP_SECRET is not set and REQUIRE_OTP_SECRET is enabled")
    logger.critical(
        "OTP_SECRET is not set: signing with the built-in fallback secret. "
        "OTP credentials and session tokens are forgeable. Never run like this in production."
    )


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@router.get("/health", response_model=HealthOut)
def health():
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@router.post("/send-otp", response_model=SendOtpResponse, response_model_exclude_none=True)
async def send_otp(
    request: Request,
    body: dict = Body(...),
    service: OtpService = Depends(get_otp_service),
):
    try:
        return await service.send_otp(
            body.get("email"),
            request_ip=_client_ip(request),
            user_agent=_user_agent(request),
        )
    except OtpError:
        raise
    except Exception as e:
        logger.exception("send-otp error")
        return JSONResponse(status_code=500, content={"error": "failed to send otp", "details": str(e)[:200]})


@router.post("/verify-otp", response_model=VerifyOtpResponse)
def verify_otp(
    request: Request,
    body: dict = Body(...),
    service: OtpService = Depends(get_otp_service),
):
    try:
        return service.verify(
            body.get("email"),
            body.get("otp"),
            _first_present(body, "signature", "hash"),
            _first_present(body, "expiresAt", "expires"),
            request_ip=_client_ip(request),
            user_agent=_user_agent(request),
        )
    except OtpError:
        raise
    except Exception:
        logger.exception("verify-otp error")
        return JSONResponse(status_code=500, content={"error": "failed to verify otp"})


@router.get("/session", response_model=SessionOut)
def session(user: Dict[str, Any] = Depends(get_current_user)):
    return user


@router.get("/admin/config", response_model=ConfigReport)
def admin_config(
    request: Request,
    _admin: Dict[str, Any] = Depends(require_admin),
):
    settings: Settings = request.app.state.settings
    channel: OutboundChannel = request.app.state.channel
    present = {
        key: getattr(settings, key) is not None
        for key in ("OTP_SECRET", "FROM_EMAIL", "SENDGRID_API_KEY", "SMTP_HOST", "SMTP_USER", "SMTP_PASS", "AUDIT_DIR")
    }
    return {
        "env": settings.ENV,
        "channel": channel.name,
        "fallback_secret": settings.uses_fallback_secret,
        "admin_email": settings.ADMIN_EMAIL,
        "otp_ttl_seconds": settings.OTP_TTL_SECONDS,
        "session_ttl_seconds": settings.SESSION_TTL_SECONDS,
        "settings_present": present,
    }


# -----------------------------------------------------------------------------
# Error rendering: every error body is {"error": ...[, "details": ...]}
# -----------------------------------------------------------------------------
async def _otp_error_handler(request: Request, exc: OtpError):
    return JSONResponse(status_code=exc.status_code, content=exc.as_body())


async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "invalid json body"})


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    channel: Optional[OutboundChannel] = None,
    clock: Optional[Callable[[], int]] = None,
) -> FastAPI:
    settings = settings or get_settings()
    _check_secret(settings)

    channel = channel if channel is not None else resolve_channel(settings)
    audit = AuditLog(Path(settings.AUDIT_DIR)) if settings.AUDIT_DIR else None

    service_kwargs: Dict[str, Any] = {"audit": audit}
    if clock is not None:
        service_kwargs["clock"] = clock

    app = FastAPI(title="Canvass OTP Auth", version="0.1.0")
    app.state.settings = settings
    app.state.channel = channel
    app.state.otp_service = OtpService(settings, channel, **service_kwargs)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.add_exception_handler(OtpError, _otp_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    app.include_router(router)
    app.include_router(router, prefix="/api")

    logger.info("OTP server ready (env=%s, channel=%s)", settings.ENV, channel.name)
    return app


def _default_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings)
    return create_app(settings)


# uvicorn canvass_auth.main:app
app = _default_app()
