"""Custom exception hierarchy for the KidGate package."""

from __future__ import annotations

from typing import Optional


class KidGateError(Exception):
    """Base class for all KidGate specific errors."""


class ConfigurationError(KidGateError):
    """Raised when settings cannot be used to issue or verify sessions."""


class InvalidSessionToken(KidGateError):
    """Raised when a kid session token is malformed, tampered with or stale."""


class ChildNotFoundError(KidGateError):
    """Raised when a child profile lookup fails."""


class LoginRejected(KidGateError):
    """Raised when a kid login attempt must be refused."""

    def __init__(self, message: str, *, status_code: int = 401, retry_after: Optional[int] = None, **extra: object) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.extra = extra

    def to_payload(self) -> dict:
        payload: dict = {"error": self.message, **self.extra}
        if self.retry_after is not None:
            payload["locked"] = True
            payload["remainingSeconds"] = self.retry_after
        return payload
