"""KidGate: signed kid sessions and route gating for a household budgeting app."""

from .exceptions import (
    ChildNotFoundError,
    ConfigurationError,
    InvalidSessionToken,
    KidGateError,
    LoginRejected,
)
from .models import IssuedSession, KidSession, ThrottleStatus, VerificationResult
from .ops import StructuredLogger
from .routes import KID_LOGIN_PATH, KID_SECTIONS, KidRoute, kid_dashboard_path, match_kid_route
from .security import LoginThrottle, hash_pin, verify_pin
from .tokens import (
    SESSION_COOKIE_NAME,
    SESSION_LIFETIME,
    decode_token,
    encode_token,
    issue_session,
    refresh_session,
    remaining_seconds,
    verify,
)

__all__ = [
    "ChildNotFoundError",
    "ConfigurationError",
    "InvalidSessionToken",
    "IssuedSession",
    "KID_LOGIN_PATH",
    "KID_SECTIONS",
    "KidGateError",
    "KidRoute",
    "KidSession",
    "LoginRejected",
    "LoginThrottle",
    "SESSION_COOKIE_NAME",
    "SESSION_LIFETIME",
    "StructuredLogger",
    "ThrottleStatus",
    "VerificationResult",
    "decode_token",
    "encode_token",
    "hash_pin",
    "issue_session",
    "kid_dashboard_path",
    "match_kid_route",
    "refresh_session",
    "remaining_seconds",
    "verify",
    "verify_pin",
]
