# canvass_auth/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *session token* handed out after a successful OTP
# verification and presented as a bearer credential on privileged calls.
#
# Responsibilities:
#   - Create and verify compact, signed tokens
#   - Provide deterministic serialization
#   - Stay small and auditable
#
# What this module is NOT:
#   - Not a session store (tokens are self-contained; logout is client-side)
#   - Not a policy engine (role checks live in deps.py)
#
# Security model:
#   - Server holds ONE shared secret (OTP_SECRET), the same key that binds OTP
#     credentials. Domain separation comes from the token prefix and the
#     "typ" claim: an OTP signature is hex over "a.b.c", a session signature
#     is HMAC over a JSON object.
#   - Tokens are self-contained, verifiable without any storage, and expire
#     after SESSION_TTL_SECONDS. There is no revocation path.
#
# Token wire format (JWT-like but simpler):
#
#     v1.<payload_b64url>.<signature_b64url>
#
# Where:
#   - payload is canonical JSON (sorted keys, no whitespace)
#   - signature = HMAC-SHA256(secret, payload_bytes)
# -----------------------------------------------------------------------------

import base64
import binascii
import json
from typing import Tuple

from cryptography.hazmat.primitives import constant_time

from .signing import hmac_sha256

TOKEN_PREFIX = "v1"
TOKEN_VERSION = 1
TOKEN_TYPE = "session"


class TokenError(ValueError):
    """Raised for malformed, forged, or expired session tokens."""


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding (safe in headers and query strings)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Padding is restored automatically to allow lenient decoding.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    try:
        return base64.urlsafe_b64decode(s.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise TokenError("bad token encoding") from e


# -----------------------------------------------------------------------------
# Token wire format helpers
# -----------------------------------------------------------------------------
def encode_token(payload_bytes: bytes, sig: bytes) -> str:
    return TOKEN_PREFIX + "." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[bytes, bytes]:
    """
    Parse a token into payload bytes and signature.

    Format validation only. Cryptographic verification happens separately.
    """
    parts = str(token).strip().split(".")
    if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
        raise TokenError("bad token format")

    return b64url_decode(parts[1]), b64url_decode(parts[2])


def canonical_payload(payload_obj: dict) -> bytes:
    return json.dumps(
        payload_obj,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")


# -----------------------------------------------------------------------------
# Signing / verification
# -----------------------------------------------------------------------------
def sign_session_token(secret: bytes, payload_obj: dict) -> str:
    payload_bytes = canonical_payload(payload_obj)
    return encode_token(payload_bytes, hmac_sha256(secret, payload_bytes))


def verify_session_token(secret: bytes, token: str) -> dict:
    """
    Verify a token signature and return its decoded payload.

    IMPORTANT:
      - This function does NOT enforce semantic rules (typ, expiry).
        Use load_session_claims() for that.
    """
    payload_bytes, sig = decode_token(token)
    if not constant_time.bytes_eq(sig, hmac_sha256(secret, payload_bytes)):
        raise TokenError("bad token signature")

    try:
        obj = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TokenError("bad token payload") from e

    if not isinstance(obj, dict):
        raise TokenError("bad token payload")
    return obj


def load_session_claims(secret: bytes, token: str, now_ms: int) -> dict:
    """Verify signature, type/version claims and expiry of a session token."""
    claims = verify_session_token(secret, token)

    if claims.get("typ") != TOKEN_TYPE or claims.get("v") != TOKEN_VERSION:
        raise TokenError("bad token claims")

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int):
        raise TokenError("bad token expiry")
    if now_ms > exp:
        raise TokenError("token expired")

    return claims
