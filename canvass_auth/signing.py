# canvass_auth/signing.py
#
# -----------------------------------------------------------------------------
# OTP credential binding
# -----------------------------------------------------------------------------
# The server never stores issued codes. Instead it hands the caller a
# signature that binds (identity, code, expiresAt):
#
#     signature = hex( HMAC-SHA256( secret, identity "." code "." expiresAt ) )
#
# On verification the server recomputes the signature from what the caller
# presents. Changing any one of the three fields breaks the match, and only a
# holder of the secret can produce a matching value.
#
# Nothing here knows about expiry, roles or HTTP. Callers enforce those.
# -----------------------------------------------------------------------------

from cryptography.hazmat.primitives import constant_time, hashes, hmac

SEPARATOR = "."


def canonical_otp_message(identity: str, code: str, expires_at: int) -> bytes:
    """
    Canonical bytes for an OTP credential.

    expires_at is rendered as a plain base-10 integer (milliseconds since
    epoch) so the same triple always yields the same bytes.
    """
    return SEPARATOR.join((identity, code, str(int(expires_at)))).encode("utf-8")


def hmac_sha256(secret: bytes, data: bytes) -> bytes:
    h = hmac.HMAC(secret, hashes.SHA256())
    h.update(data)
    return h.finalize()


def sign_otp(secret: bytes, identity: str, code: str, expires_at: int) -> str:
    """Lowercase hex HMAC-SHA256 over the canonical OTP message."""
    return hmac_sha256(secret, canonical_otp_message(identity, code, expires_at)).hex()


def signatures_match(presented, expected: str) -> bool:
    """
    Constant-time comparison of a presented signature against the expected one.

    Anything that is not a string (None, numbers, lists from a JSON body)
    never matches.
    """
    if not isinstance(presented, str) or not isinstance(expected, str):
        return False
    return constant_time.bytes_eq(
        presented.strip().lower().encode("utf-8"),
        expected.encode("utf-8"),
    )
