from __future__ import annotations

import logging
from typing import Callable, List, Optional

from pydantic import ValidationError

from src.handoff.config import settings
from src.handoff.domain.models.handoff import PipelineResult
from src.handoff.domain.models.records import AuditAction, Outcome, VaultRecord
from src.handoff.infra.storage.kv import KeyValueStore, get_kv_store
from src.handoff.scope import scoped_key, scoped_prefix
from src.handoff.services.audit.service import AuditLog, audit_log, epoch_ms
from src.handoff.services.privacy.deid import deidentify_result

logger = logging.getLogger(__name__)

STORAGE_UNAVAILABLE = "storage_unavailable"
NOT_FOUND = "not_found"
EXPIRED = "expired"


class SessionVault:
    """TTL-bounded store for completed, de-identified handoff sessions.

    Expiry is enforced on every read, so an expired record is never returned
    even if no purge has run yet. Storage failures come back as failed
    outcomes; they never raise.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        audit: Optional[AuditLog] = None,
        ttl_ms: Optional[int] = None,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        self._store = store
        self._audit = audit
        self.ttl_ms = ttl_ms if ttl_ms is not None else settings.vault_ttl_ms
        self._clock = clock

    @property
    def store(self) -> KeyValueStore:
        return self._store or get_kv_store()

    @property
    def audit(self) -> AuditLog:
        return self._audit or audit_log

    def _key(self, session_id: str) -> str:
        return scoped_key(f"vault:record:{session_id}")

    def _prefix(self) -> str:
        return scoped_prefix("vault:record")

    def _read(self, key: str) -> Optional[VaultRecord]:
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            return VaultRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("dropping unreadable vault record %s", key)
            self.store.delete(key)
            return None

    def save(self, session_id: str, result: PipelineResult) -> Outcome[VaultRecord]:
        now = self._clock()
        record = VaultRecord(
            session_id=session_id,
            created_at=now,
            expires_at=now + self.ttl_ms,
            payload=deidentify_result(result),
        )
        if not self.store.set(self._key(session_id), record.model_dump_json()):
            logger.warning("vault save failed for session %s", session_id)
            return Outcome.failure(STORAGE_UNAVAILABLE)
        self.audit.append(AuditAction.SESSION_SAVED, session_id=session_id)
        return Outcome.success(record)

    def get(self, session_id: str) -> Outcome[VaultRecord]:
        key = self._key(session_id)
        record = self._read(key)
        if record is None:
            return Outcome.failure(NOT_FOUND)
        if record.expires_at <= self._clock():
            self.store.delete(key)
            return Outcome.failure(EXPIRED)
        return Outcome.success(record)

    def list(self) -> Outcome[List[VaultRecord]]:
        """Live records, newest first. Expired ones are deleted on the way."""

        keys = self.store.keys(self._prefix())
        if keys is None:
            return Outcome.failure(STORAGE_UNAVAILABLE)
        now = self._clock()
        records: List[VaultRecord] = []
        for key in keys:
            record = self._read(key)
            if record is None:
                continue
            if record.expires_at <= now:
                self.store.delete(key)
                continue
            records.append(record)
        records.sort(key=lambda r: (r.created_at, r.session_id), reverse=True)
        return Outcome.success(records)

    def purge_expired(self, all_scopes: bool = False) -> int:
        """Delete expired records and return how many went.

        ``all_scopes`` sweeps every caller's records, not just the current
        scope's; the janitor uses it.
        """

        if all_scopes:
            keys = [k for k in self.store.keys("handoff:") or [] if ":vault:record:" in k]
        else:
            keys = self.store.keys(self._prefix()) or []
        now = self._clock()
        removed = 0
        for key in keys:
            record = self._read(key)
            if record is not None and record.expires_at <= now and self.store.delete(key):
                removed += 1
        return removed

    def shred(self, session_id: str) -> Outcome[bool]:
        """Delete a session now, regardless of its TTL."""

        key = self._key(session_id)
        existed = self.store.get(key) is not None
        if not self.store.delete(key):
            return Outcome.failure(STORAGE_UNAVAILABLE)
        self.audit.append(AuditAction.SESSION_SHRED, session_id=session_id, detail=f"deleted:{str(existed).lower()}")
        return Outcome.success(existed)

    def purge_all(self) -> int:
        """Delete every stored session and restart the audit log."""

        removed = 0
        for key in self.store.keys(self._prefix()) or []:
            if self.store.delete(key):
                removed += 1
        self.audit.clear()
        self.audit.append(AuditAction.ALL_DATA_PURGED, detail=f"records:{removed}")
        return removed


session_vault = SessionVault()
