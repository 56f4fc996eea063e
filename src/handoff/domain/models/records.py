from __future__ import annotations

from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

from src.handoff.domain.models.handoff import PipelineResult

T = TypeVar("T")


class AuditAction(str, Enum):
    POLICY_BLOCKED = "policy_blocked"
    PIPELINE_RUN = "pipeline_run"
    SESSION_SAVED = "session_saved"
    SESSION_SHRED = "session_shred"
    ALL_DATA_PURGED = "all_data_purged"


class VaultRecord(BaseModel):
    """A de-identified PipelineResult persisted with an expiry (epoch ms)."""

    session_id: str
    created_at: int
    expires_at: int
    payload: PipelineResult


class AuditEvent(BaseModel):
    """Lifecycle event. Never carries transcript text or identifying tokens."""

    id: str
    at: int
    action: AuditAction
    session_id: Optional[str] = None
    detail: Optional[str] = None


class Outcome(BaseModel, Generic[T]):
    """Tagged success/failure returned by storage-facing boundary methods."""

    ok: bool
    value: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str) -> "Outcome[T]":
        return cls(ok=False, reason=reason)
