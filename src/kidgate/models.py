"""Domain models used by the KidGate package."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

# Payload keys are the camelCase names carried inside the signed cookie.
_PAYLOAD_KEYS: Dict[str, str] = {
    "child_id": "childId",
    "name": "name",
    "avatar_url": "avatarUrl",
    "parent_user_id": "parentUserId",
    "star_balance": "starBalance",
    "screen_time_balance": "screenTimeBalance",
    "is_kid_session": "isKidSession",
    "created_at": "createdAt",
    "expires_at": "expiresAt",
    "is_teen_mode": "isTeenMode",
    "can_reconcile_transactions": "canReconcileTransactions",
    "can_add_external_income": "canAddExternalIncome",
    "auto_graduation_date": "autoGraduationDate",
}


@dataclass(frozen=True, slots=True)
class KidSession:
    """Claims carried by a signed kid session cookie.

    ``created_at`` and ``expires_at`` are epoch milliseconds.
    """

    child_id: str
    expires_at: int
    name: str = ""
    avatar_url: Optional[str] = None
    parent_user_id: str = ""
    star_balance: int = 0
    screen_time_balance: int = 0
    is_kid_session: bool = True
    created_at: int = 0
    is_teen_mode: bool = False
    can_reconcile_transactions: bool = False
    can_add_external_income: bool = False
    auto_graduation_date: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """Return the JSON payload in cookie key order."""

        values = asdict(self)
        return {wire: values[attr] for attr, wire in _PAYLOAD_KEYS.items()}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "KidSession":
        """Build a session from a decoded payload, ignoring unknown keys."""

        known = {attr: payload[wire] for attr, wire in _PAYLOAD_KEYS.items() if wire in payload}
        known.setdefault("child_id", "")
        known.setdefault("expires_at", 0)
        return cls(**known)

    def with_expiry(self, expires_at: int) -> "KidSession":
        return replace(self, expires_at=expires_at)

    def summary(self) -> Dict[str, Any]:
        """Public subset returned to the browser after login."""

        return {
            "childId": self.child_id,
            "name": self.name,
            "avatarUrl": self.avatar_url,
            "expiresAt": self.expires_at,
        }


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome of verifying a kid session cookie."""

    valid: bool
    child_id: Optional[str] = None
    session: Optional[KidSession] = field(default=None, compare=False)

    @classmethod
    def invalid(cls) -> "VerificationResult":
        return cls(valid=False)

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True, slots=True)
class IssuedSession:
    """A freshly signed session together with its cookie parameters."""

    session: KidSession
    token: str
    cookie_name: str
    max_age: int


@dataclass(frozen=True, slots=True)
class ThrottleStatus:
    """Snapshot of a login throttle bucket."""

    locked: bool
    remaining_seconds: int = 0
    attempts_remaining: int = 0
