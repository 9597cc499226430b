"""Recognise kid-area paths that require a kid session."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote

KID_SECTIONS: Tuple[str, ...] = ("dashboard", "chores", "money", "goals", "invoices", "shop", "wishlist")
KID_LOGIN_PATH = "/kids/login"

_KID_ROUTE_RE = re.compile(r"^/kids/(?P<child_id>[^/]+)/(?P<section>" + "|".join(KID_SECTIONS) + r")(?:/.*)?$")


@dataclass(frozen=True, slots=True)
class KidRoute:
    child_id: str
    section: str


def match_kid_route(path: str) -> Optional[KidRoute]:
    """Return the requested child and section for a kid route, else ``None``."""

    match = _KID_ROUTE_RE.match(path or "")
    if not match:
        return None
    return KidRoute(child_id=match.group("child_id"), section=match.group("section"))


def kid_dashboard_path(child_id: str) -> str:
    return f"/kids/{quote(child_id, safe='')}/dashboard"


__all__ = ["KID_LOGIN_PATH", "KID_SECTIONS", "KidRoute", "kid_dashboard_path", "match_kid_route"]
