"""Configuration for the KidGate web frontend.

Values are read from the environment (and a ``.env`` file when present)
once, at import, into a frozen :class:`Settings` instance.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

from dotenv import load_dotenv

from ..routes import KID_LOGIN_PATH
from ..tokens import SESSION_COOKIE_NAME, SESSION_LIFETIME, SESSION_MAX_AGE

load_dotenv()

# Publicly known; only suitable for local development.
FALLBACK_KID_SESSION_SECRET = "kidgate-dev-kid-session-secret"
FALLBACK_PARENT_SESSION_SECRET = "change-this-session-secret"
AUDIT_MODE_VALUE = "true"
PARENT_LOGIN_PATH = "/login"

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    kid_session_secret: str
    parent_session_secret: str
    sqlite_file: str
    uses_fallback_secret: bool = False
    dev_mode: bool = False
    audit_mode: bool = False
    debug_sessions: bool = False
    secure_cookies: bool = False
    log_file: Optional[str] = None
    cookie_name: str = SESSION_COOKIE_NAME
    kid_login_path: str = KID_LOGIN_PATH
    parent_login_path: str = PARENT_LOGIN_PATH


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    secret = env.get("KID_SESSION_SECRET") or ""
    return Settings(
        kid_session_secret=secret or FALLBACK_KID_SESSION_SECRET,
        parent_session_secret=env.get("PARENT_SESSION_SECRET") or FALLBACK_PARENT_SESSION_SECRET,
        sqlite_file=env.get("KIDGATE_SQLITE", "kidgate.db"),
        uses_fallback_secret=not secret,
        dev_mode=_flag(env.get("KIDGATE_DEV")),
        # Only the exact value switches auditing on.
        audit_mode=env.get("KIDGATE_AUDIT_MODE") == AUDIT_MODE_VALUE,
        debug_sessions=_flag(env.get("KID_SESSION_DEBUG")),
        secure_cookies=_flag(env.get("KIDGATE_SECURE_COOKIES")),
        log_file=env.get("KIDGATE_LOG_FILE") or None,
    )


def settings_warnings(settings: Settings) -> List[str]:
    """Return startup warnings for risky configurations."""

    warnings: List[str] = []
    if settings.uses_fallback_secret and not settings.dev_mode:
        warnings.append(
            "KID_SESSION_SECRET is not set; using the public development fallback. "
            "Generate a secret with: openssl rand -hex 32"
        )
    if settings.audit_mode:
        warnings.append("KIDGATE_AUDIT_MODE is enabled; all authentication is bypassed.")
    return warnings


SETTINGS = load_settings()
KID_SESSION_SECRET = SETTINGS.kid_session_secret
PARENT_SESSION_SECRET = SETTINGS.parent_session_secret
SQLITE_FILE_NAME = SETTINGS.sqlite_file

__all__ = [
    "AUDIT_MODE_VALUE",
    "FALLBACK_KID_SESSION_SECRET",
    "KID_LOGIN_PATH",
    "KID_SESSION_SECRET",
    "PARENT_LOGIN_PATH",
    "PARENT_SESSION_SECRET",
    "SESSION_COOKIE_NAME",
    "SESSION_LIFETIME",
    "SESSION_MAX_AGE",
    "SETTINGS",
    "SQLITE_FILE_NAME",
    "Settings",
    "load_settings",
    "settings_warnings",
]
