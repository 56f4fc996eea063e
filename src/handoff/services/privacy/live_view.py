from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from src.handoff.config import settings
from src.handoff.domain.models.handoff import PipelineResult
from src.handoff.services.privacy.deid import IDENTIFYING_FIELDS, deidentify_result

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class FieldState(str, Enum):
    HIDDEN = "hidden"
    REVEALED = "revealed"


class ViewEvent(str, Enum):
    REVEALED = "revealed"
    HIDDEN = "hidden"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    PURGED = "purged"


@dataclass
class PrivacyTimings:
    reveal_hold_ms: int = field(default_factory=lambda: settings.reveal_hold_ms)
    reveal_window_ms: int = field(default_factory=lambda: settings.reveal_window_ms)
    auto_lock_ms: int = field(default_factory=lambda: settings.auto_lock_ms)
    memory_purge_ms: int = field(default_factory=lambda: settings.memory_purge_ms)


class LiveViewSnapshot(BaseModel):
    session_id: str
    locked: bool
    purged: bool
    segment_count: int
    patient_count: int
    fields: Dict[str, FieldState] = Field(default_factory=dict)
    # Display copy: identifying values appear only for revealed fields.
    result: Optional[PipelineResult] = None


def field_id(patient_key: str, name: str) -> str:
    return f"{patient_key}.{name}"


class LiveSessionView:
    """Reveal/lock/purge state for one live handoff session.

    Every identifying field starts hidden. A press held for at least
    ``reveal_hold_ms`` reveals it for ``reveal_window_ms``. Inactivity locks
    the whole view after ``auto_lock_ms`` and drops the structured result from
    memory after ``memory_purge_ms``. ``evaluate`` is the only clock-driven
    transition; callers (timers, the janitor, tests) decide when to call it.
    """

    def __init__(
        self,
        session_id: str,
        result: Optional[PipelineResult] = None,
        segment_count: int = 0,
        timings: Optional[PrivacyTimings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session_id = session_id
        self.timings = timings or PrivacyTimings()
        self._clock = clock or monotonic_ms
        self._result: Optional[PipelineResult] = None
        self.segment_count = 0
        self.locked = False
        self.purged = False
        self._fields: Dict[str, FieldState] = {}
        self._press_started: Dict[str, int] = {}
        self._revealed_until: Dict[str, int] = {}
        self._last_activity = self._clock()
        if result is not None:
            self.load(result, segment_count)

    # -- content -------------------------------------------------------------

    def load(self, result: PipelineResult, segment_count: int = 0, now: Optional[int] = None) -> None:
        self._result = result.model_copy(deep=True)
        self.segment_count = max(0, segment_count)
        self.purged = False
        self.locked = False
        self._press_started.clear()
        self._revealed_until.clear()
        self._fields = {}
        for card in self._result.patients:
            for name in sorted(IDENTIFYING_FIELDS):
                if getattr(card, name):
                    self._fields[field_id(card.patient_key, name)] = FieldState.HIDDEN
        self._touch(now)

    @property
    def has_content(self) -> bool:
        return self._result is not None

    @property
    def patient_count(self) -> int:
        return len(self._result.patients) if self._result is not None else 0

    def field_state(self, fid: str) -> Optional[FieldState]:
        return self._fields.get(fid)

    # -- gestures ------------------------------------------------------------

    def press(self, fid: str, now: Optional[int] = None) -> bool:
        """Start a reveal gesture. Returns False when the gesture is not allowed."""

        if self.purged or self.locked or fid not in self._fields:
            return False
        now = self._now(now)
        self._press_started[fid] = now
        self._touch(now)
        return True

    def release(self, fid: str, now: Optional[int] = None) -> Optional[FieldState]:
        """End a reveal gesture; reveals only if the press was held long enough."""

        started = self._press_started.pop(fid, None)
        state = self._fields.get(fid)
        if started is None or state is None or self.locked or self.purged:
            return state
        now = self._now(now)
        self._touch(now)
        if now - started < self.timings.reveal_hold_ms:
            return state
        self._fields[fid] = FieldState.REVEALED
        self._revealed_until[fid] = now + self.timings.reveal_window_ms
        return FieldState.REVEALED

    def unlock(self, now: Optional[int] = None) -> bool:
        if self.purged or not self.locked:
            return False
        self.locked = False
        self._hide_all()
        self._touch(now)
        return True

    # -- clock ---------------------------------------------------------------

    def evaluate(self, now: Optional[int] = None) -> List[ViewEvent]:
        """Apply every timer-driven transition due at ``now``."""

        if self.purged:
            return []
        now = self._now(now)
        events: List[ViewEvent] = []

        for fid, until in list(self._revealed_until.items()):
            if now >= until:
                self._fields[fid] = FieldState.HIDDEN
                del self._revealed_until[fid]
                events.append(ViewEvent.HIDDEN)

        if not self.has_content:
            return events

        idle = now - self._last_activity
        if idle >= self.timings.memory_purge_ms:
            self.purge()
            events.append(ViewEvent.PURGED)
            return events

        if not self.locked and idle >= self.timings.auto_lock_ms:
            self.locked = True
            self._hide_all()
            events.append(ViewEvent.LOCKED)
        return events

    def next_deadline(self, now: Optional[int] = None) -> Optional[int]:
        """Earliest clock value at which ``evaluate`` would change something."""

        if self.purged:
            return None
        deadlines = list(self._revealed_until.values())
        if self.has_content:
            deadlines.append(self._last_activity + self.timings.memory_purge_ms)
            if not self.locked:
                deadlines.append(self._last_activity + self.timings.auto_lock_ms)
        return min(deadlines) if deadlines else None

    def purge(self) -> None:
        """Drop the structured result and every piece of derived state."""

        if self.purged:
            return
        self._result = None
        self.segment_count = 0
        self._fields.clear()
        self._press_started.clear()
        self._revealed_until.clear()
        self.locked = False
        self.purged = True
        logger.info("live session %s purged from memory", self.session_id)

    # -- rendering -----------------------------------------------------------

    def snapshot(self) -> LiveViewSnapshot:
        return LiveViewSnapshot(
            session_id=self.session_id,
            locked=self.locked,
            purged=self.purged,
            segment_count=self.segment_count,
            patient_count=self.patient_count,
            fields=dict(self._fields),
            result=self._display_result(),
        )

    def _display_result(self) -> Optional[PipelineResult]:
        if self._result is None or self.locked:
            return None
        display = deidentify_result(self._result)
        originals = {card.patient_key: card for card in self._result.patients}
        for card in display.patients:
            for name in IDENTIFYING_FIELDS:
                if self._fields.get(field_id(card.patient_key, name)) == FieldState.REVEALED:
                    setattr(card, name, getattr(originals[card.patient_key], name))
        return display

    # -- helpers -------------------------------------------------------------

    def _hide_all(self) -> None:
        for fid in self._fields:
            self._fields[fid] = FieldState.HIDDEN
        self._press_started.clear()
        self._revealed_until.clear()

    def _touch(self, now: Optional[int] = None) -> None:
        self._last_activity = self._now(now)

    def _now(self, now: Optional[int]) -> int:
        return self._clock() if now is None else now
