"""
canvass_auth/audit.py

Tamper-evident OTP audit log.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in otp_audit.state
- Uses file locking (flock) to keep chain consistent across workers.

Raw OTP codes are never written. Signatures are stored as hash + length.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "otp_audit.jsonl"
STATE_NAME = "otp_audit.state"
LOCK_NAME = "otp_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    """Hash of one event (chain fields excluded) linked to its predecessor."""
    e = dict(event)
    e.pop("prev_hash", None)
    e.pop("hash", None)
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))


# -----------------------------------------------------------------------------
# Event helpers
# -----------------------------------------------------------------------------
def build_common(
    *,
    identity: Optional[str] = None,
    expires_at: Optional[int] = None,
    signature: Optional[str] = None,
    channel: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.
    """
    out: Dict[str, Any] = {"ts": int(time.time())}

    if identity:
        out["identity"] = identity
    if expires_at is not None:
        out["expires_at"] = expires_at
    if channel:
        out["channel"] = channel
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if isinstance(signature, str) and signature:
        sig_bytes = signature.encode("utf-8")
        out["signature_len"] = len(sig_bytes)
        out["signature_sha3_256"] = sha3_256_hex(sig_bytes)

    return out


class AuditLog:
    def __init__(self, directory: Path | str):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing/empty.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s.lower()

    def append(self, event: Dict[str, Any]) -> str:
        """
        Append one event with hash chaining. Returns the new chain head.
        """
        self.directory.mkdir(parents=True, exist_ok=True)

        # Lock a dedicated file so it works even if log/state don't exist yet.
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                stored = dict(event)
                stored.pop("prev_hash", None)
                stored.pop("hash", None)
                next_hash = chain_hash(prev_hash, stored)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash


def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    if not path.exists():
        return True

    prev = GENESIS_HASH
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return False
            if not isinstance(obj, dict) or obj.get("prev_hash") != prev:
                return False
            if chain_hash(prev, obj) != obj.get("hash"):
                return False
            prev = obj["hash"]

    return True
