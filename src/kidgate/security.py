"""Security helpers for kid logins: PIN hashing, login keys and throttling."""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence

from .models import ThrottleStatus

PIN_HASH_PREFIX = "pbkdf2:sha256"
PIN_HASH_ITERATIONS = 260_000

_PIN_RE = re.compile(r"^\d{4}$")
_LOGIN_KEY_RE = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")
_LEGACY_PIN_RE = re.compile(r"^[0-9a-f]{64}$")
# No 0/O or 1/I/L so keys survive being read aloud.
_LOGIN_KEY_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


# ------------------------------------------------------------------
# PINs and login keys
# ------------------------------------------------------------------
def is_valid_pin(pin: Optional[str]) -> bool:
    return isinstance(pin, str) and bool(_PIN_RE.match(pin))


def is_valid_login_key(key: Optional[str]) -> bool:
    return isinstance(key, str) and bool(_LOGIN_KEY_RE.match(key.upper()))


def generate_login_key() -> str:
    groups = ("".join(secrets.choice(_LOGIN_KEY_ALPHABET) for _ in range(4)) for _ in range(3))
    return "-".join(groups)


def hash_pin(pin: str, *, iterations: int = PIN_HASH_ITERATIONS) -> str:
    """Return a salted PBKDF2 hash in ``pbkdf2:sha256:<n>$<salt>$<hex>`` form."""

    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{PIN_HASH_PREFIX}:{iterations}${salt}${digest.hex()}"


def is_legacy_pin_hash(stored: Optional[str]) -> bool:
    return not (stored or "").startswith(f"{PIN_HASH_PREFIX}:")


def verify_pin(pin: str, stored: Optional[str]) -> bool:
    """Check ``pin`` against a stored hash.  Never raises.

    Legacy hashes are unsalted SHA-256 hex digests.
    """

    if not pin or not stored:
        return False
    try:
        if is_legacy_pin_hash(stored):
            if not _LEGACY_PIN_RE.match(stored):
                return False
            candidate = hashlib.sha256(pin.encode("utf-8")).hexdigest()
            return hmac.compare_digest(candidate, stored)
        header, salt, expected = stored.split("$")
        iterations = int(header.rsplit(":", 1)[-1])
        digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt.encode("utf-8"), iterations)
        return hmac.compare_digest(digest.hex(), expected)
    except (AttributeError, ValueError, TypeError):
        return False


# ------------------------------------------------------------------
# Login throttling
# ------------------------------------------------------------------
@dataclass(slots=True)
class _Bucket:
    attempts: int = 0
    locked_until: Optional[datetime] = None
    last_attempt: Optional[datetime] = None


class LoginThrottle:
    """Escalating lockouts for repeated failed kid logins.

    Two independent stores are kept: one per login target (client IP plus
    child id or login key) and one per client IP across all targets.
    Failures accumulate across lockouts; each further ``max_attempts``
    failures moves to the next, longer lockout.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        lockout_minutes: Sequence[int] = (1, 2, 5, 15, 30),
        global_max_attempts: int = 20,
        global_lockout_minutes: Sequence[int] = (5, 15, 30, 60, 120),
        idle_minutes: int = 30,
        sweep_minutes: int = 5,
    ) -> None:
        self._max_attempts = max_attempts
        self._lockouts = tuple(timedelta(minutes=value) for value in lockout_minutes)
        self._global_max_attempts = global_max_attempts
        self._global_lockouts = tuple(timedelta(minutes=value) for value in global_lockout_minutes)
        self._idle_window = timedelta(minutes=idle_minutes)
        self._sweep_interval = timedelta(minutes=sweep_minutes)
        self._next_sweep: Optional[datetime] = None
        self._targets: Dict[str, _Bucket] = {}
        self._ips: Dict[str, _Bucket] = {}

    @staticmethod
    def target_key(ip: Optional[str], target: str) -> str:
        return f"{ip or 'unknown'}:{target}"

    def check(self, key: str, *, at: Optional[datetime] = None) -> ThrottleStatus:
        now = at or datetime.utcnow()
        bucket = self._live_bucket(self._targets, key, now)
        if bucket is None:
            return ThrottleStatus(locked=False, attempts_remaining=self._max_attempts)
        if bucket.locked_until and bucket.locked_until > now:
            return ThrottleStatus(locked=True, remaining_seconds=_ceil_seconds(bucket.locked_until - now))
        return ThrottleStatus(locked=False, attempts_remaining=max(0, self._max_attempts - bucket.attempts))

    def check_global(self, ip: Optional[str], *, at: Optional[datetime] = None) -> ThrottleStatus:
        if not ip or ip == "unknown":
            return ThrottleStatus(locked=False)
        now = at or datetime.utcnow()
        bucket = self._live_bucket(self._ips, ip, now)
        if bucket and bucket.locked_until and bucket.locked_until > now:
            return ThrottleStatus(locked=True, remaining_seconds=_ceil_seconds(bucket.locked_until - now))
        return ThrottleStatus(locked=False)

    def record_failure(self, key: str, *, at: Optional[datetime] = None) -> ThrottleStatus:
        now = at or datetime.utcnow()
        return self._record(self._targets, key, now, self._max_attempts, self._lockouts)

    def record_global_failure(self, ip: Optional[str], *, at: Optional[datetime] = None) -> ThrottleStatus:
        if not ip or ip == "unknown":
            return ThrottleStatus(locked=False)
        now = at or datetime.utcnow()
        return self._record(self._ips, ip, now, self._global_max_attempts, self._global_lockouts)

    def record_success(self, key: str) -> None:
        self._targets.pop(key, None)

    def clear_global(self, ip: Optional[str]) -> None:
        if ip:
            self._ips.pop(ip, None)

    def _record(
        self,
        store: Dict[str, _Bucket],
        key: str,
        now: datetime,
        max_attempts: int,
        lockouts: Sequence[timedelta],
    ) -> ThrottleStatus:
        self._sweep(now)
        bucket = self._live_bucket(store, key, now) or store.setdefault(key, _Bucket())
        bucket.attempts += 1
        bucket.last_attempt = now
        if bucket.attempts >= max_attempts:
            index = min((bucket.attempts - max_attempts) // max_attempts, len(lockouts) - 1)
            lockout = lockouts[index]
            bucket.locked_until = now + lockout
            return ThrottleStatus(locked=True, remaining_seconds=_ceil_seconds(lockout))
        return ThrottleStatus(locked=False, attempts_remaining=max_attempts - bucket.attempts)

    def _sweep(self, now: datetime) -> None:
        if self._next_sweep is not None and now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        for store in (self._targets, self._ips):
            for key in list(store):
                self._live_bucket(store, key, now)

    def _live_bucket(self, store: Dict[str, _Bucket], key: str, now: datetime) -> Optional[_Bucket]:
        bucket = store.get(key)
        if bucket is None:
            return None
        if bucket.last_attempt and now - bucket.last_attempt > self._idle_window:
            if not bucket.locked_until or bucket.locked_until <= now:
                store.pop(key, None)
                return None
        return bucket


def _ceil_seconds(delta: timedelta) -> int:
    seconds = delta.total_seconds()
    whole = int(seconds)
    return whole if whole == seconds else whole + 1


__all__ = [
    "LoginThrottle",
    "PIN_HASH_ITERATIONS",
    "generate_login_key",
    "hash_pin",
    "is_legacy_pin_hash",
    "is_valid_login_key",
    "is_valid_pin",
    "verify_pin",
]
