from __future__ import annotations

import re
from contextvars import ContextVar
from typing import Optional

from fastapi import Depends, Header

from src.handoff.security import get_api_key, key_fingerprint


# Storage scope for the in-flight request. Vault and audit keys are prefixed
# with it so two callers sharing one store never see each other's sessions.
# Defaults to "default" so direct service calls in tests need no setup.
_current_scope: ContextVar[str] = ContextVar("handoff_storage_scope", default="default")

_SCOPE_SAFE_PATTERN = re.compile(r"[^A-Za-z0-9_.-]")


def get_current_scope() -> str:
    """Return the current storage scope identifier."""

    return _current_scope.get()


def set_current_scope(scope: str) -> None:
    _current_scope.set(_normalize_scope(scope))


def scoped_key(name: str) -> str:
    """Build a store key under the current scope, e.g. ``handoff:default:audit:log``."""

    return f"handoff:{get_current_scope()}:{name}"


def scoped_prefix(name: str) -> str:
    return f"{scoped_key(name)}:"


def _normalize_scope(raw: Optional[str]) -> str:
    value = _SCOPE_SAFE_PATTERN.sub("", (raw or "").strip())[:64]
    return value or "default"


async def scope_dependency(
    x_handoff_scope: Optional[str] = Header(None, alias="X-Handoff-Scope"),
    api_key: str = Depends(get_api_key),
) -> str:
    """FastAPI dependency that establishes the storage scope for a request.

    An explicit header wins. Otherwise an authenticated caller gets a scope
    derived from its key, and everyone else shares "default".
    """

    if not x_handoff_scope and api_key:
        x_handoff_scope = key_fingerprint(api_key)
    scope = _normalize_scope(x_handoff_scope)
    _current_scope.set(scope)
    return scope
