"""Signed, stateless kid session tokens.

A token is ``<payload>.<signature>`` where ``payload`` is the base64url
encoded JSON claims and ``signature`` is the lowercase hex HMAC-SHA256 of
the raw JSON bytes.  Nothing is stored server-side: a token is valid when
the signature matches the shared secret, ``isKidSession`` is ``true`` and
``expiresAt`` (epoch milliseconds) lies strictly in the future.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from .exceptions import ConfigurationError, InvalidSessionToken
from .models import IssuedSession, KidSession, VerificationResult
from .ops import StructuredLogger

SESSION_COOKIE_NAME = "kid_session"
SESSION_LIFETIME = timedelta(hours=24)
SESSION_MAX_AGE = int(SESSION_LIFETIME.total_seconds())

_LIFETIME_MS = SESSION_MAX_AGE * 1000


def now_ms() -> int:
    """Return the current time as epoch milliseconds."""

    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)


def sign(payload: bytes, secret: str) -> str:
    if not secret:
        raise ConfigurationError("A kid session secret must be configured.")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def encode_token(session: KidSession, secret: str) -> str:
    """Serialise and sign ``session`` into a cookie value."""

    payload = json.dumps(session.to_payload(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return f"{_b64url_encode(payload)}.{sign(payload, secret)}"


def decode_token(token: str, secret: str, *, at: Optional[int] = None) -> KidSession:
    """Return the claims of a valid token.

    Raises :class:`InvalidSessionToken` for any malformed, tampered, expired
    or wrong-audience token.
    """

    segments = token.split(".") if token else []
    if len(segments) < 2 or not segments[0] or not segments[1]:
        raise InvalidSessionToken("Malformed token")
    encoded_payload, signature = segments[0], segments[1]
    try:
        raw = _b64url_decode(encoded_payload)
    except (ValueError, UnicodeEncodeError) as exc:
        raise InvalidSessionToken("Payload is not base64url") from exc

    expected = sign(raw, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace")):
        raise InvalidSessionToken("Signature mismatch")

    try:
        payload = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        raise InvalidSessionToken("Payload is not JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidSessionToken("Payload is not an object")

    expires_at = payload.get("expiresAt")
    if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)) or not math.isfinite(expires_at):
        raise InvalidSessionToken("Missing expiry")
    moment = now_ms() if at is None else at
    if expires_at <= moment:
        raise InvalidSessionToken("Session expired")
    if payload.get("isKidSession") is not True:
        raise InvalidSessionToken("Not a kid session")
    child_id = payload.get("childId")
    if not isinstance(child_id, str) or not child_id:
        raise InvalidSessionToken("Missing child id")
    return KidSession.from_payload(payload)


def verify(
    cookie_value: str,
    *,
    secret: str,
    at: Optional[int] = None,
    logger: Optional[StructuredLogger] = None,
) -> VerificationResult:
    """Check a kid session cookie value.  Never raises."""

    try:
        session = decode_token(cookie_value, secret, at=at)
    except Exception as exc:
        if logger is not None:
            logger.log(
                "kid_session.verify",
                outcome="invalid",
                reason=str(exc),
                signature_prefix=_signature_prefix(cookie_value),
            )
        return VerificationResult.invalid()
    if logger is not None:
        logger.log(
            "kid_session.verify",
            outcome="valid",
            child_id=session.child_id,
            expires_at=session.expires_at,
            signature_prefix=_signature_prefix(cookie_value),
        )
    return VerificationResult(valid=True, child_id=session.child_id, session=session)


def _signature_prefix(token: object) -> str:
    if not isinstance(token, str) or "." not in token:
        return ""
    return token.split(".")[1][:8]


def _child_value(child: Any, key: str, default: Any = None) -> Any:
    if isinstance(child, Mapping):
        value = child.get(key, default)
    else:
        value = getattr(child, key, default)
    return default if value is None else value


def issue_session(
    child: Any,
    *,
    secret: str,
    at: Optional[int] = None,
    lifetime: timedelta = SESSION_LIFETIME,
) -> IssuedSession:
    """Create and sign a session for ``child``.

    ``child`` is a child profile row or a mapping with the same snake_case
    keys (``id``, ``name``, ``avatar_url``, ``parent_user_id``...).
    """

    created = now_ms() if at is None else at
    max_age = int(lifetime.total_seconds())
    session = KidSession(
        child_id=str(_child_value(child, "id", "")),
        name=_child_value(child, "name", ""),
        avatar_url=_child_value(child, "avatar_url"),
        parent_user_id=_child_value(child, "parent_user_id", ""),
        star_balance=_child_value(child, "star_balance", 0),
        screen_time_balance=_child_value(child, "screen_time_balance", 0),
        is_kid_session=True,
        created_at=created,
        expires_at=created + max_age * 1000,
        is_teen_mode=bool(_child_value(child, "is_teen_mode", False)),
        can_reconcile_transactions=bool(_child_value(child, "can_reconcile_transactions", False)),
        can_add_external_income=bool(_child_value(child, "can_add_external_income", False)),
        auto_graduation_date=_iso_or_none(_child_value(child, "auto_graduation_date")),
    )
    if not session.child_id:
        raise ValueError("Cannot issue a kid session without a child id.")
    return IssuedSession(
        session=session,
        token=encode_token(session, secret),
        cookie_name=SESSION_COOKIE_NAME,
        max_age=max_age,
    )


def _iso_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    isoformat = getattr(value, "isoformat", None)
    return isoformat() if callable(isoformat) else str(value)


def remaining_seconds(session: KidSession, *, at: Optional[int] = None) -> int:
    """Whole seconds until ``session`` expires, never negative."""

    moment = now_ms() if at is None else at
    return max(0, session.expires_at - moment) // 1000


def refresh_session(session: KidSession, *, secret: str, at: Optional[int] = None) -> Optional[IssuedSession]:
    """Re-sign ``session`` with a fresh expiry once half its lifetime is used.

    Returns ``None`` while more than half the lifetime remains.
    """

    moment = now_ms() if at is None else at
    if session.expires_at - moment > _LIFETIME_MS // 2:
        return None
    renewed = session.with_expiry(moment + _LIFETIME_MS)
    return IssuedSession(
        session=renewed,
        token=encode_token(renewed, secret),
        cookie_name=SESSION_COOKIE_NAME,
        max_age=SESSION_MAX_AGE,
    )


__all__ = [
    "SESSION_COOKIE_NAME",
    "SESSION_LIFETIME",
    "SESSION_MAX_AGE",
    "decode_token",
    "encode_token",
    "issue_session",
    "now_ms",
    "refresh_session",
    "remaining_seconds",
    "sign",
    "verify",
]
