from __future__ import annotations

import json
import logging
import re
import secrets
import time
from typing import Callable, List, Optional

from pydantic import ValidationError

from src.handoff.config import settings
from src.handoff.domain.models.records import AuditAction, AuditEvent
from src.handoff.infra.storage.kv import KeyValueStore, get_kv_store
from src.handoff.scope import scoped_key

logger = logging.getLogger("audit")

DETAIL_MAX_LENGTH = 180
DEFAULT_LIST_LIMIT = 30

_CONTROL = re.compile(r"[\r\n\t]+")
_DISALLOWED = re.compile(r"[^\w .:/()\-|%]", re.ASCII)
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def epoch_ms() -> int:
    return int(time.time() * 1000)


def sanitize_detail(detail: Optional[str]) -> Optional[str]:
    """Make free text safe for an exportable log.

    Control characters become spaces, anything outside a small allow-list is
    dropped and the result is cut to 180 characters.
    """

    if detail is None:
        return None
    cleaned = _DISALLOWED.sub("", _CONTROL.sub(" ", str(detail))).strip()
    return cleaned[:DETAIL_MAX_LENGTH] or None


def _base36(value: int) -> str:
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
        if value == 0:
            return "".join(reversed(digits))


class AuditLog:
    """Bounded, self-expiring lifecycle log.

    Events are stored newest first in a single document. The document is
    capped at ``max_events`` and expires as a whole ``ttl_ms`` after the last
    append. Every event is also written to the ``audit`` logger as JSON.
    Events hold ids, actions and sanitized detail only, never transcript text.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        ttl_ms: Optional[int] = None,
        max_events: Optional[int] = None,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        self._store = store
        self.ttl_ms = ttl_ms if ttl_ms is not None else settings.audit_ttl_ms
        self.max_events = max_events if max_events is not None else settings.audit_max_events
        self._clock = clock

    @property
    def store(self) -> KeyValueStore:
        return self._store or get_kv_store()

    def _key(self) -> str:
        return scoped_key("audit:log")

    def _load(self, key: Optional[str] = None) -> Optional[dict]:
        raw = self.store.get(key or self._key())
        if raw is None:
            return None
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("discarding unreadable audit log document")
            return None
        if not isinstance(doc, dict) or not isinstance(doc.get("events"), list):
            return None
        return doc

    def append(
        self,
        action: AuditAction,
        session_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> bool:
        """Record one event. Returns False if the store rejected the write."""

        now = self._clock()
        event = AuditEvent(
            id=f"audit_{_base36(now)}_{secrets.token_hex(3)}",
            at=now,
            action=AuditAction(action),
            session_id=sanitize_detail(session_id),
            detail=sanitize_detail(detail),
        )

        # Always log to the local structured logger first.
        logger.info(json.dumps(event.model_dump(mode="json")))

        doc = self._load()
        events = doc["events"] if doc and doc.get("expires_at", 0) > now else []
        events = [event.model_dump(mode="json")] + events
        payload = {"expires_at": now + self.ttl_ms, "events": events[: self.max_events]}
        return self.store.set(self._key(), json.dumps(payload))

    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[AuditEvent]:
        doc = self._load()
        if doc is None:
            return []
        if doc.get("expires_at", 0) <= self._clock():
            self.store.delete(self._key())
            return []
        events: List[AuditEvent] = []
        for entry in doc["events"][: max(0, limit)]:
            try:
                events.append(AuditEvent.model_validate(entry))
            except ValidationError:
                logger.warning("skipping malformed audit event")
        return events

    def purge_expired(self, all_scopes: bool = False) -> int:
        """Wipe the log if it has expired. Returns 1 if it was wiped, else 0.

        With ``all_scopes`` every scope's log is checked and the count of
        wiped logs is returned.
        """

        if not all_scopes:
            return self._purge_key(self._key())
        keys = [k for k in self.store.keys("handoff:") or [] if k.endswith(":audit:log")]
        return sum(self._purge_key(key) for key in keys)

    def _purge_key(self, key: str) -> int:
        doc = self._load(key)
        if doc is None or doc.get("expires_at", 0) > self._clock():
            return 0
        return 1 if self.store.delete(key) else 0

    def clear(self) -> bool:
        return self.store.delete(self._key())


audit_log = AuditLog()
