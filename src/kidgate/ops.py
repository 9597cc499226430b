"""Operational utilities for KidGate."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredLogger:
    """Write JSON lines log entries for later inspection.

    A disabled logger accepts calls and records nothing, so callers never
    need to check whether diagnostics are switched on.
    """

    def __init__(self, *, path: Path | None = None, enabled: bool = True, limit: int = 500) -> None:
        self.path = path
        self.enabled = enabled
        self._limit = limit
        self._entries: list[dict] = []

    def log(self, event_type: str, **fields: object) -> Optional[dict]:
        if not self.enabled:
            return None
        entry = {"timestamp": datetime.utcnow().isoformat(), "event": event_type, **fields}
        self._entries.append(entry)
        if len(self._entries) > self._limit:
            del self._entries[: len(self._entries) - self._limit]
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        return tuple(self._entries[-limit:])

    def events(self, event_type: str) -> tuple[dict, ...]:
        return tuple(entry for entry in self._entries if entry["event"] == event_type)


__all__ = ["StructuredLogger"]
