from src.handoff.domain.models.handoff import DutyType
from src.handoff.scope import set_current_scope
from src.handoff.services.audit.service import AuditLog
from src.handoff.services.janitor.service import Janitor
from src.handoff.services.pipeline.service import pipeline_service
from src.handoff.services.privacy.live_view import PrivacyTimings
from src.handoff.services.privacy.timers import LiveSessionRegistry
from src.handoff.services.segmentation.service import segment
from src.handoff.services.vault.service import SessionVault

TIMINGS = PrivacyTimings(reveal_hold_ms=600, reveal_window_ms=3000, auto_lock_ms=2_000, memory_purge_ms=3_000)


def _result(session_id: str):
    return pipeline_service.run(session_id, DutyType.DAY, segment("Room 701 Kim OO BP 90/60, fluid bolus given."))


def _janitor(store, clock):
    audit = AuditLog(store=store, ttl_ms=5_000, clock=clock)
    vault = SessionVault(store=store, audit=audit, ttl_ms=1_000, clock=clock)
    registry = LiveSessionRegistry(timings=TIMINGS, clock=clock)
    return Janitor(vault=vault, audit=audit, registry=registry, interval_ms=50)


def test_sweep_enforces_every_expiry_and_is_idempotent(store, clock):
    janitor = _janitor(store, clock)
    janitor.vault.save("s-1", _result("s-1"))
    janitor.registry.open("s-1", _result("s-1"))

    clock.advance(6_000)
    first = janitor.sweep()

    assert first.vault_records_purged == 1
    assert first.audit_logs_purged == 1
    assert first.live_sessions_purged == 1
    assert janitor.registry.keys() == []

    second = janitor.sweep()
    assert second.vault_records_purged == 0
    assert second.audit_logs_purged == 0
    assert second.live_sessions_purged == 0
    assert second.live_transitions == {}


def test_sweep_locks_idle_live_views_before_purging(store, clock):
    janitor = _janitor(store, clock)
    view = janitor.registry.open("s-1", _result("s-1"))

    report = janitor.sweep(clock.advance(2_000))

    assert report.live_transitions == {"default/s-1": ["locked"]}
    assert view.locked
    assert report.live_sessions_purged == 0


def test_sweep_covers_every_scope(store, clock):
    janitor = _janitor(store, clock)
    for scope in ("ward-a", "ward-b"):
        set_current_scope(scope)
        janitor.vault.save("s-1", _result("s-1"))
    set_current_scope("default")

    clock.advance(1_000)

    assert janitor.sweep().vault_records_purged == 2


def test_visibility_change_triggers_sweep_only_when_visible(store, clock):
    janitor = _janitor(store, clock)
    janitor.vault.save("s-1", _result("s-1"))
    clock.advance(1_000)

    assert janitor.on_visibility_change(False) is None
    report = janitor.on_visibility_change(True)
    assert report.vault_records_purged == 1


async def test_start_and_stop_periodic_sweeps(store, clock):
    janitor = _janitor(store, clock)

    assert janitor.start()
    assert janitor.running
    assert not janitor.start()

    await janitor.stop()
    assert not janitor.running
