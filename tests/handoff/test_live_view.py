import asyncio

from src.handoff.domain.models.handoff import DutyType
from src.handoff.scope import set_current_scope
from src.handoff.services.pipeline.service import pipeline_service
from src.handoff.services.privacy.live_view import (
    FieldState,
    LiveSessionView,
    PrivacyTimings,
    ViewEvent,
    field_id,
)
from src.handoff.services.privacy.timers import LiveSessionRegistry
from src.handoff.services.segmentation.service import segment

TIMINGS = PrivacyTimings(reveal_hold_ms=600, reveal_window_ms=3000, auto_lock_ms=120_000, memory_purge_ms=300_000)
ROOM = field_id("PATIENT_A", "room_token")
ALIAS = field_id("PATIENT_A", "alias_token")


def _result():
    return pipeline_service.run("live", DutyType.NIGHT, segment("Room 701 Kim OO BP 90/60, fluid bolus given."))


def _view(clock):
    return LiveSessionView("live", result=_result(), segment_count=1, timings=TIMINGS, clock=clock)


def test_identifying_fields_start_hidden(clock):
    view = _view(clock)

    snapshot = view.snapshot()

    assert snapshot.fields == {ALIAS: FieldState.HIDDEN, ROOM: FieldState.HIDDEN}
    card = snapshot.result.patients[0]
    assert card.room_token is None
    assert card.alias_token is None


def test_short_press_does_not_reveal(clock):
    view = _view(clock)

    assert view.press(ROOM, now=clock.advance(10))
    assert view.release(ROOM, now=clock.advance(599)) == FieldState.HIDDEN


def test_long_press_reveals_only_that_field_until_window_ends(clock):
    view = _view(clock)

    view.press(ROOM, now=clock.advance(10))
    assert view.release(ROOM, now=clock.advance(600)) == FieldState.REVEALED

    card = view.snapshot().result.patients[0]
    assert card.room_token == "Room 701"
    assert card.alias_token is None

    assert view.evaluate(clock.advance(2_999)) == []
    assert view.evaluate(clock.advance(1)) == [ViewEvent.HIDDEN]
    assert view.field_state(ROOM) == FieldState.HIDDEN


def test_inactivity_locks_and_unlock_hides_everything(clock):
    view = _view(clock)
    view.press(ROOM, now=clock.now)
    view.release(ROOM, now=clock.advance(700))

    events = view.evaluate(clock.advance(120_000))

    assert ViewEvent.LOCKED in events
    assert view.locked
    assert view.snapshot().result is None
    assert not view.press(ALIAS, now=clock.now)

    assert view.unlock(now=clock.advance(5))
    assert not view.locked
    assert set(view.snapshot().fields.values()) == {FieldState.HIDDEN}


def test_memory_purge_drops_result_and_counts(clock):
    view = _view(clock)
    assert view.patient_count == 1

    events = view.evaluate(clock.advance(300_000))

    assert events == [ViewEvent.PURGED]
    snapshot = view.snapshot()
    assert snapshot.purged
    assert snapshot.result is None
    assert snapshot.segment_count == 0
    assert snapshot.patient_count == 0
    assert snapshot.fields == {}
    assert view.next_deadline() is None


def test_activity_postpones_lock(clock):
    view = _view(clock)

    view.evaluate(clock.advance(100_000))
    view.press(ALIAS, now=clock.now)
    view.release(ALIAS, now=clock.advance(100))

    assert ViewEvent.LOCKED not in view.evaluate(clock.advance(100_000))
    assert not view.locked


def test_registry_sweep_removes_purged_views(clock):
    registry = LiveSessionRegistry(timings=TIMINGS, clock=clock)
    registry.open("live", _result(), segment_count=1)

    transitions = registry.evaluate_all(clock.advance(300_000))

    assert transitions == {"default/live": [ViewEvent.PURGED]}
    assert registry.get("live") is None


def test_registry_is_scoped(clock):
    registry = LiveSessionRegistry(timings=TIMINGS, clock=clock)
    set_current_scope("ward-a")
    registry.open("shared-id", _result())

    set_current_scope("ward-b")
    assert registry.get("shared-id") is None

    set_current_scope("ward-a")
    assert registry.close("shared-id")
    set_current_scope("default")


async def test_timers_lock_and_purge_at_accelerated_durations():
    timings = PrivacyTimings(reveal_hold_ms=10, reveal_window_ms=30, auto_lock_ms=50, memory_purge_ms=200)
    registry = LiveSessionRegistry(timings=timings)
    view = registry.open("fast", _result(), segment_count=1)
    assert registry.timers.is_scheduled("default/fast")

    await asyncio.sleep(0.1)
    assert view.locked
    assert not view.purged

    await asyncio.sleep(0.25)
    assert view.purged
    assert registry.get("fast") is None
    assert not registry.timers.is_scheduled("default/fast")


async def test_closing_a_session_cancels_its_timers():
    registry = LiveSessionRegistry(timings=TIMINGS)
    view = registry.open("closing", _result())

    assert registry.close("closing")

    assert view.purged
    assert not registry.timers.is_scheduled("default/closing")
