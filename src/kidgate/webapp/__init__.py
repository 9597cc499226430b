"""KidGate web application package.

Submodules are imported lazily so that reading settings does not open the
database or build an app; ``uvicorn kidgate.webapp:app`` still works.
"""
from __future__ import annotations

from importlib import import_module
from types import ModuleType
from typing import Any, List

_SUBMODULES = (".persistence", ".application")


def _load(name: str) -> ModuleType:
    return import_module(name, __name__)


def __getattr__(name: str) -> Any:
    if name in {"application", "config", "middleware", "persistence"}:
        return _load(f".{name}")
    for submodule in _SUBMODULES:
        module = _load(submodule)
        if hasattr(module, name):
            return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> List[str]:
    names = set(globals())
    for submodule in _SUBMODULES:
        names |= set(getattr(_load(submodule), "__all__", ()))
    return sorted(names)
