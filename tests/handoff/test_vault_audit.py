from typing import List, Optional

from src.handoff.domain.models.handoff import DutyType
from src.handoff.domain.models.records import AuditAction
from src.handoff.infra.storage.kv import KeyValueStore
from src.handoff.scope import set_current_scope
from src.handoff.services.audit.service import AuditLog, sanitize_detail
from src.handoff.services.pipeline.service import pipeline_service
from src.handoff.services.privacy.deid import deidentify_result
from src.handoff.services.segmentation.service import segment
from src.handoff.services.vault.service import EXPIRED, NOT_FOUND, STORAGE_UNAVAILABLE, SessionVault


class UnavailableStore(KeyValueStore):
    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str) -> bool:
        return False

    def delete(self, key: str) -> bool:
        return False

    def keys(self, prefix: str = "") -> Optional[List[str]]:
        return None


def _result(session_id: str = "s-1"):
    transcript = "Room 703 Park OO glucose 280, recheck ordered for 02:00. Room 708 Jung OO urine output trending down."
    return pipeline_service.run(session_id, DutyType.NIGHT, segment(transcript))


def _vault(store, clock, ttl_ms=1_000):
    audit = AuditLog(store=store, ttl_ms=10_000, clock=clock)
    return SessionVault(store=store, audit=audit, ttl_ms=ttl_ms, clock=clock)


def test_save_stores_deidentified_copy(store, clock):
    vault = _vault(store, clock)
    result = _result()

    saved = vault.save("s-1", result)
    loaded = vault.get("s-1")

    assert saved.ok and loaded.ok
    assert loaded.value.expires_at == clock.now + 1_000
    assert loaded.value.payload == deidentify_result(result)
    assert result.patients[0].room_token == "Room 703"
    assert vault.audit.list()[0].action == AuditAction.SESSION_SAVED


def test_expired_records_are_never_returned(store, clock):
    vault = _vault(store, clock)
    vault.save("s-1", _result())

    clock.advance(999)
    assert vault.get("s-1").ok
    clock.advance(1)

    outcome = vault.get("s-1")
    assert not outcome.ok
    assert outcome.reason == EXPIRED
    assert vault.get("s-1").reason == NOT_FOUND
    assert vault.list().value == []


def test_list_is_newest_first_and_skips_expired(store, clock):
    vault = _vault(store, clock)
    vault.save("old", _result("old"))
    clock.advance(600)
    vault.save("new", _result("new"))
    clock.advance(500)

    assert [r.session_id for r in vault.list().value] == ["new"]


def test_resave_replaces_the_record(store, clock):
    vault = _vault(store, clock)
    vault.save("s-1", _result())
    clock.advance(800)
    vault.save("s-1", _result())

    clock.advance(800)
    assert vault.get("s-1").ok
    assert len(vault.list().value) == 1


def test_purge_expired_counts_removed_records(store, clock):
    vault = _vault(store, clock)
    vault.save("a", _result("a"))
    vault.save("b", _result("b"))
    clock.advance(1_000)
    vault.save("c", _result("c"))

    assert vault.purge_expired() == 2
    assert vault.purge_expired() == 0
    assert [r.session_id for r in vault.list().value] == ["c"]


def test_shred_deletes_immediately(store, clock):
    vault = _vault(store, clock)
    vault.save("s-1", _result())

    outcome = vault.shred("s-1")

    assert outcome.ok and outcome.value is True
    assert vault.get("s-1").reason == NOT_FOUND
    assert vault.shred("s-1").value is False
    events = vault.audit.list()
    assert [e.action for e in events[:2]] == [AuditAction.SESSION_SHRED, AuditAction.SESSION_SHRED]
    assert [e.detail for e in events[:2]] == ["deleted:false", "deleted:true"]


def test_purge_all_restarts_the_audit_log(store, clock):
    vault = _vault(store, clock)
    vault.save("a", _result("a"))
    vault.save("b", _result("b"))

    assert vault.purge_all() == 2

    assert vault.list().value == []
    events = vault.audit.list()
    assert [e.action for e in events] == [AuditAction.ALL_DATA_PURGED]
    assert events[0].detail == "records:2"


def test_scopes_do_not_see_each_other(store, clock):
    vault = _vault(store, clock)
    set_current_scope("ward-a")
    vault.save("s-1", _result())

    set_current_scope("ward-b")
    assert vault.get("s-1").reason == NOT_FOUND
    assert vault.list().value == []

    set_current_scope("default")


def test_unavailable_storage_returns_failures(clock):
    vault = _vault(UnavailableStore(), clock)
    result = _result()

    assert vault.save("s-1", result).reason == STORAGE_UNAVAILABLE
    assert vault.list().reason == STORAGE_UNAVAILABLE
    assert vault.shred("s-1").reason == STORAGE_UNAVAILABLE
    assert vault.purge_expired() == 0
    assert result.patients


def test_sanitize_detail():
    assert sanitize_detail("drop\ntable; <script>") == "drop table script"
    assert sanitize_detail("segments:3 patients:2 (ok) 50%") == "segments:3 patients:2 (ok) 50%"
    assert len(sanitize_detail("a" * 500)) == 180
    assert sanitize_detail("   ") is None
    assert sanitize_detail(None) is None


def test_audit_log_is_capped_newest_first(store, clock):
    audit = AuditLog(store=store, ttl_ms=10_000, max_events=5, clock=clock)
    for i in range(8):
        assert audit.append(AuditAction.PIPELINE_RUN, session_id=f"s{i}")
        clock.advance(1)

    events = audit.list()

    assert [e.session_id for e in events] == ["s7", "s6", "s5", "s4", "s3"]
    assert len(audit.list(limit=2)) == 2


def test_audit_log_expires_as_a_unit_after_last_append(store, clock):
    audit = AuditLog(store=store, ttl_ms=1_000, clock=clock)
    audit.append(AuditAction.PIPELINE_RUN, session_id="first")
    clock.advance(800)
    audit.append(AuditAction.PIPELINE_RUN, session_id="second")

    clock.advance(900)
    assert len(audit.list()) == 2

    clock.advance(100)
    assert audit.purge_expired() == 1
    assert audit.purge_expired() == 0
    assert audit.list() == []


def test_audit_detail_is_sanitized_before_storage(store, clock):
    audit = AuditLog(store=store, clock=clock)

    audit.append(AuditAction.POLICY_BLOCKED, session_id="s-1", detail="blocked <Room 701 Kim OO>\n")

    event = audit.list()[0]
    assert "<" not in event.detail
    assert "\n" not in event.detail
    assert event.id.startswith("audit_")
