from __future__ import annotations

import asyncio
import logging
from threading import RLock
from typing import Callable, Dict, List, Optional

from src.handoff.domain.models.handoff import PipelineResult
from src.handoff.scope import get_current_scope
from src.handoff.services.privacy.live_view import (
    Clock,
    FieldState,
    LiveSessionView,
    PrivacyTimings,
    ViewEvent,
    monotonic_ms,
)

logger = logging.getLogger(__name__)


class LiveTimers:
    """Cancelable ``call_later`` handles keyed by session key.

    Each handle fires at the view's next deadline, evaluates it and
    reschedules itself until the view is purged or the session is cancelled.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(
        self,
        view: LiveSessionView,
        on_purged: Optional[Callable[[str], None]] = None,
        clock: Clock = monotonic_ms,
        key: Optional[str] = None,
    ) -> bool:
        """(Re)arm the timer for ``view``. No-op outside a running event loop."""

        key = key or view.session_id
        self.cancel(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        now = clock()
        deadline = view.next_deadline(now)
        if deadline is None:
            return False
        delay = max(0, deadline - now) / 1000
        self._handles[key] = loop.call_later(delay, self._fire, key, view, on_purged, clock)
        return True

    def _fire(
        self,
        key: str,
        view: LiveSessionView,
        on_purged: Optional[Callable[[str], None]],
        clock: Clock,
    ) -> None:
        self._handles.pop(key, None)
        try:
            events = view.evaluate(clock())
        except Exception:
            logger.exception("live view evaluation failed for %s", key)
            return
        if ViewEvent.PURGED in events:
            if on_purged is not None:
                on_purged(key)
            return
        self.schedule(view, on_purged, clock, key=key)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    def is_scheduled(self, key: str) -> bool:
        return key in self._handles


def live_key(session_id: str, scope: Optional[str] = None) -> str:
    return f"{scope or get_current_scope()}/{session_id}"


class LiveSessionRegistry:
    """Explicit registry of live views; the janitor sweeps over it.

    Views are keyed by storage scope and session id, so two callers can use
    the same session id without seeing each other's live state.
    """

    def __init__(
        self,
        timings: Optional[PrivacyTimings] = None,
        clock: Optional[Clock] = None,
        timers: Optional[LiveTimers] = None,
    ) -> None:
        self._timings = timings
        self._clock = clock or monotonic_ms
        self.timers = timers or LiveTimers()
        self._views: Dict[str, LiveSessionView] = {}
        self._lock = RLock()

    def open(self, session_id: str, result: PipelineResult, segment_count: int = 0) -> LiveSessionView:
        key = live_key(session_id)
        with self._lock:
            self._close_key(key)
            view = LiveSessionView(
                session_id,
                result=result,
                segment_count=segment_count,
                timings=self._timings or PrivacyTimings(),
                clock=self._clock,
            )
            self._views[key] = view
        self._arm(key, view)
        return view

    def get(self, session_id: str) -> Optional[LiveSessionView]:
        return self._views.get(live_key(session_id))

    def keys(self) -> List[str]:
        return list(self._views)

    def press(self, session_id: str, fid: str) -> Optional[bool]:
        view = self.get(session_id)
        if view is None:
            return None
        accepted = view.press(fid)
        self._arm(live_key(session_id), view)
        return accepted

    def release(self, session_id: str, fid: str) -> Optional[FieldState]:
        view = self.get(session_id)
        if view is None:
            return None
        state = view.release(fid)
        self._arm(live_key(session_id), view)
        return state

    def unlock(self, session_id: str) -> Optional[bool]:
        view = self.get(session_id)
        if view is None:
            return None
        unlocked = view.unlock()
        self._arm(live_key(session_id), view)
        return unlocked

    def close(self, session_id: str) -> bool:
        """End a live session: cancel its timers and tear its state down."""

        return self._close_key(live_key(session_id))

    def evaluate_all(self, now: Optional[int] = None) -> Dict[str, List[ViewEvent]]:
        """Evaluate every view in every scope; purged views leave the registry."""

        now = self._clock() if now is None else now
        transitions: Dict[str, List[ViewEvent]] = {}
        for key, view in list(self._views.items()):
            events = view.evaluate(now)
            if events:
                transitions[key] = events
            if view.purged:
                self._forget(key)
        return transitions

    def close_all(self) -> int:
        closed = 0
        for key in list(self._views):
            closed += int(self._close_key(key))
        return closed

    def _close_key(self, key: str) -> bool:
        self.timers.cancel(key)
        with self._lock:
            view = self._views.pop(key, None)
        if view is None:
            return False
        view.purge()
        return True

    def _arm(self, key: str, view: LiveSessionView) -> None:
        self.timers.schedule(view, on_purged=self._forget, clock=self._clock, key=key)

    def _forget(self, key: str) -> None:
        self.timers.cancel(key)
        with self._lock:
            self._views.pop(key, None)


live_registry = LiveSessionRegistry()
