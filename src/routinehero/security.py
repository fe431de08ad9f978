"""Parent PIN and family code helpers.

The parent PIN only keeps small hands out of the routine editor.  It is not an
access control boundary and nothing security relevant should depend on it.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional

FAMILY_CODE_PREFIX = "HERO-"
FAMILY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
FAMILY_CODE_LENGTH = 4
PIN_LENGTH = 4


def generate_family_code() -> str:
    suffix = "".join(secrets.choice(FAMILY_CODE_ALPHABET) for _ in range(FAMILY_CODE_LENGTH))
    return FAMILY_CODE_PREFIX + suffix


def normalize_family_code(code: str) -> str:
    return code.strip().upper()


def is_valid_pin(pin: Optional[str]) -> bool:
    return bool(pin) and len(pin) == PIN_LENGTH


def hash_pin(pin: str, salt: str) -> str:
    return hashlib.sha256(f"{pin}{salt}".encode("utf-8")).hexdigest()


def pin_matches(pin: str, digest: str, salt: str) -> bool:
    return hmac.compare_digest(hash_pin(pin, salt), digest)


class PinAttemptLimiter:
    """Throttle repeated PIN failures per family within a rolling window."""

    def __init__(self, *, max_attempts: int = 5, lockout_minutes: int = 15) -> None:
        self._max_attempts = max_attempts
        self._lockout_window = timedelta(minutes=lockout_minutes)
        self._attempts: Dict[int, Deque[datetime]] = {}

    def record(self, family_id: int, *, success: bool, at: Optional[datetime] = None) -> bool:
        """Record an attempt and return whether further attempts are allowed."""

        now = at or datetime.utcnow()
        bucket = self._attempts.setdefault(family_id, deque())
        self._prune(bucket, now)
        if success:
            bucket.clear()
            return True
        bucket.append(now)
        return len(bucket) < self._max_attempts

    def is_locked(self, family_id: int, *, at: Optional[datetime] = None) -> bool:
        now = at or datetime.utcnow()
        bucket = self._attempts.get(family_id)
        if not bucket:
            return False
        self._prune(bucket, now)
        return len(bucket) >= self._max_attempts

    def reset(self) -> None:
        self._attempts.clear()

    def _prune(self, bucket: Deque[datetime], now: datetime) -> None:
        while bucket and now - bucket[0] > self._lockout_window:
            bucket.popleft()


__all__ = [
    "FAMILY_CODE_ALPHABET",
    "FAMILY_CODE_LENGTH",
    "FAMILY_CODE_PREFIX",
    "PIN_LENGTH",
    "PinAttemptLimiter",
    "generate_family_code",
    "hash_pin",
    "is_valid_pin",
    "normalize_family_code",
    "pin_matches",
]
