import json
from uuid import uuid4

from fastapi import status
from httpx import ASGITransport, AsyncClient

from src.handoff.main import app

TRANSCRIPT = (
    "Room 703 Park OO glucose 280, recheck ordered for 02:00. "
    "Room 708 Jung OO urine output trending down, I/O monitoring."
)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _session_id() -> str:
    return f"api_{uuid4().hex[:10]}"


async def _run(ac: AsyncClient, session_id: str, headers=None) -> dict:
    response = await ac.post(
        "/api/v1/handoff/run",
        json={"session_id": session_id, "transcript": TRANSCRIPT, "duty_type": "night"},
        headers=headers,
    )
    assert response.status_code == status.HTTP_200_OK
    return response.json()


async def test_health_endpoints():
    async with _client() as ac:
        root = await ac.get("/health")
        v1 = await ac.get("/api/v1/health")

    assert root.status_code == status.HTTP_200_OK
    assert root.json() == {"status": "ok"}
    assert v1.json() == {"status": "ok", "version": "v1"}


async def test_segments_from_transcript_and_chunks():
    async with _client() as ac:
        text = await ac.post("/api/v1/handoff/segments", json={"transcript": "Room 701 stable.\nBP 120/80."})
        asr = await ac.post(
            "/api/v1/handoff/segments",
            json={"chunks": [{"text": "Room 701 stable", "start_ms": -20, "end_ms": 10, "confidence": 0.4}]},
        )

    assert text.status_code == status.HTTP_200_OK
    segments = text.json()["segments"]
    assert [s["id"] for s in segments] == ["seg-001", "seg-002"]
    assert segments[1]["start_ms"] == 5000

    chunk = asr.json()["segments"][0]
    assert chunk["id"] == "asr-001"
    assert chunk["start_ms"] == 0
    assert chunk["end_ms"] == 250
    assert asr.json()["confidence"] == {"asr-001": 0.4}


async def test_segments_require_some_input():
    async with _client() as ac:
        response = await ac.post("/api/v1/handoff/segments", json={})

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


async def test_run_returns_deidentified_result_and_audits():
    session_id = _session_id()
    async with _client() as ac:
        body = await _run(ac, session_id)
        audit = await ac.get("/api/v1/handoff/audit", params={"limit": 300})

    assert body["segment_count"] == 2
    assert body["refined"] is False
    result = body["result"]
    assert result["session_id"] == session_id
    assert [p["patient_key"] for p in result["patients"]] == ["PATIENT_A", "PATIENT_B"]
    assert all(p["room_token"] is None and p["alias_token"] is None for p in result["patients"])
    assert "Park" not in json.dumps(body)

    runs = [e for e in audit.json() if e["action"] == "pipeline_run" and e["session_id"] == session_id]
    assert len(runs) == 1
    assert runs[0]["detail"].startswith("segments:2 patients:2 ")


async def test_audit_limit_is_validated():
    async with _client() as ac:
        response = await ac.get("/api/v1/handoff/audit", params={"limit": 0})

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


async def test_session_save_get_list_and_shred():
    session_id = _session_id()
    async with _client() as ac:
        result = (await _run(ac, session_id))["result"]

        saved = await ac.post("/api/v1/handoff/sessions", json={"session_id": session_id, "result": result})
        fetched = await ac.get(f"/api/v1/handoff/sessions/{session_id}")
        listed = await ac.get("/api/v1/handoff/sessions")
        shredded = await ac.delete(f"/api/v1/handoff/sessions/{session_id}")
        missing = await ac.get(f"/api/v1/handoff/sessions/{session_id}")
        again = await ac.delete(f"/api/v1/handoff/sessions/{session_id}")

    assert saved.status_code == status.HTTP_201_CREATED
    record = saved.json()
    assert record["session_id"] == session_id
    assert record["expires_at"] > record["created_at"]

    assert fetched.status_code == status.HTTP_200_OK
    assert fetched.json()["payload"]["patients"][0]["patient_key"] == "PATIENT_A"
    assert session_id in [r["session_id"] for r in listed.json()]

    assert shredded.json() == {"session_id": session_id, "deleted": True}
    assert missing.status_code == status.HTTP_404_NOT_FOUND
    assert again.json() == {"session_id": session_id, "deleted": False}


async def test_sessions_are_isolated_by_scope():
    session_id = _session_id()
    ward_a = {"X-Handoff-Scope": f"ward-a-{uuid4().hex[:6]}"}
    ward_b = {"X-Handoff-Scope": f"ward-b-{uuid4().hex[:6]}"}
    async with _client() as ac:
        result = (await _run(ac, session_id, headers=ward_a))["result"]
        await ac.post("/api/v1/handoff/sessions", json={"session_id": session_id, "result": result}, headers=ward_a)

        own = await ac.get(f"/api/v1/handoff/sessions/{session_id}", headers=ward_a)
        other = await ac.get(f"/api/v1/handoff/sessions/{session_id}", headers=ward_b)
        other_list = await ac.get("/api/v1/handoff/sessions", headers=ward_b)

    assert own.status_code == status.HTTP_200_OK
    assert other.status_code == status.HTTP_404_NOT_FOUND
    assert other_list.json() == []


async def test_purge_all_sessions_in_scope():
    scope = {"X-Handoff-Scope": f"purge-{uuid4().hex[:6]}"}
    async with _client() as ac:
        for _ in range(2):
            session_id = _session_id()
            result = (await _run(ac, session_id, headers=scope))["result"]
            await ac.post("/api/v1/handoff/sessions", json={"session_id": session_id, "result": result}, headers=scope)

        purged = await ac.delete("/api/v1/handoff/sessions", headers=scope)
        listed = await ac.get("/api/v1/handoff/sessions", headers=scope)
        audit = await ac.get("/api/v1/handoff/audit", headers=scope)

    assert purged.json() == {"purged": 2}
    assert listed.json() == []
    assert [e["action"] for e in audit.json()] == ["all_data_purged"]


async def test_live_view_hides_identifiers_until_revealed():
    session_id = _session_id()
    async with _client() as ac:
        opened = await ac.post(
            "/api/v1/handoff/live",
            json={"session_id": session_id, "transcript": TRANSCRIPT},
        )
        fid = "PATIENT_A.room_token"
        pressed = await ac.post(f"/api/v1/handoff/live/{session_id}/press", json={"field_id": fid})
        released = await ac.post(f"/api/v1/handoff/live/{session_id}/release", json={"field_id": fid})
        unknown = await ac.post(f"/api/v1/handoff/live/{session_id}/release", json={"field_id": "PATIENT_Z.room_token"})
        unlocked = await ac.post(f"/api/v1/handoff/live/{session_id}/unlock")
        fetched = await ac.get(f"/api/v1/handoff/live/{session_id}")
        closed = await ac.delete(f"/api/v1/handoff/live/{session_id}")
        gone = await ac.get(f"/api/v1/handoff/live/{session_id}")
        closed_again = await ac.delete(f"/api/v1/handoff/live/{session_id}")

    assert opened.status_code == status.HTTP_201_CREATED
    snapshot = opened.json()
    assert snapshot["locked"] is False
    assert snapshot["patient_count"] == 2
    assert snapshot["segment_count"] == 2
    assert set(snapshot["fields"].values()) == {"hidden"}
    assert snapshot["result"]["patients"][0]["room_token"] is None

    assert pressed.json() == {"accepted": True}
    # A tap shorter than the hold threshold reveals nothing.
    assert released.json()["fields"][fid] == "hidden"
    assert unknown.status_code == status.HTTP_404_NOT_FOUND
    assert unlocked.json()["locked"] is False
    assert fetched.json()["session_id"] == session_id

    assert closed.json() == {"session_id": session_id, "closed": True}
    assert gone.status_code == status.HTTP_404_NOT_FOUND
    assert closed_again.status_code == status.HTTP_404_NOT_FOUND


async def test_janitor_sweep_endpoint():
    async with _client() as ac:
        first = await ac.post("/api/v1/system/janitor/sweep")
        second = await ac.post("/api/v1/system/janitor/sweep")

    assert first.status_code == status.HTTP_200_OK
    assert set(first.json()) == {
        "vault_records_purged",
        "audit_logs_purged",
        "live_sessions_purged",
        "live_transitions",
    }
    assert second.json()["vault_records_purged"] == 0
    assert second.json()["audit_logs_purged"] == 0


async def test_api_key_guard_and_per_key_scope(monkeypatch):
    from src.handoff.config import settings

    monkeypatch.setattr(settings, "enable_api_auth", True)
    monkeypatch.setattr(settings, "api_keys", "key-one, key-two")
    session_id = _session_id()
    async with _client() as ac:
        anonymous = await ac.get("/api/v1/handoff/sessions")
        wrong = await ac.get("/api/v1/handoff/sessions", headers={"X-API-Key": "nope"})
        sweep = await ac.post("/api/v1/system/janitor/sweep")

        one = {"X-API-Key": "key-one"}
        result = (await _run(ac, session_id, headers=one))["result"]
        await ac.post("/api/v1/handoff/sessions", json={"session_id": session_id, "result": result}, headers=one)
        own = await ac.get(f"/api/v1/handoff/sessions/{session_id}", headers=one)
        other = await ac.get(f"/api/v1/handoff/sessions/{session_id}", headers={"X-API-Key": "key-two"})

    assert anonymous.status_code == status.HTTP_401_UNAUTHORIZED
    assert wrong.status_code == status.HTTP_401_UNAUTHORIZED
    assert sweep.status_code == status.HTTP_401_UNAUTHORIZED
    assert own.status_code == status.HTTP_200_OK
    assert other.status_code == status.HTTP_404_NOT_FOUND


async def test_segments_clamp_overflowing_chunk_timing():
    async with _client() as ac:
        response = await ac.post(
            "/api/v1/handoff/segments",
            content='{"chunks": [{"text": "Room 701 stable", "start_ms": 1e400}]}',
            headers={"Content-Type": "application/json"},
        )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["segments"][0]["start_ms"] == 0
