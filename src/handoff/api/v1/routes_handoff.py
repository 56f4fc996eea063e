from __future__ import annotations

from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.handoff.domain.models.handoff import DutyType, ManualUncertainty, PipelineResult, RawSegment
from src.handoff.domain.models.records import AuditAction, AuditEvent, VaultRecord
from src.handoff.scope import scope_dependency
from src.handoff.security import get_api_key
from src.handoff.services.audit.service import audit_log
from src.handoff.services.pipeline.service import pipeline_service
from src.handoff.services.privacy.deid import deidentify_result
from src.handoff.services.privacy.live_view import LiveViewSnapshot
from src.handoff.services.privacy.timers import live_registry
from src.handoff.services.refinement.service import refinement_service
from src.handoff.services.segmentation.service import AsrChunk, SegmenterConfig, segment, segments_from_asr
from src.handoff.services.vault.service import EXPIRED, NOT_FOUND, session_vault

router = APIRouter(
    prefix="/handoff",
    tags=["handoff"],
    dependencies=[Depends(get_api_key), Depends(scope_dependency)],
)


class SegmentRequest(BaseModel):
    transcript: Optional[str] = None
    chunks: Optional[List[AsrChunk]] = None
    id_prefix: Optional[str] = None
    start_offset_ms: int = Field(0, ge=0)


class SegmentResponse(BaseModel):
    segments: List[RawSegment]
    confidence: Dict[str, float] = Field(default_factory=dict)


class RunRequest(SegmentRequest):
    session_id: Optional[str] = None
    duty_type: DutyType = DutyType.DAY
    segments: Optional[List[RawSegment]] = None
    manual_uncertainties: List[ManualUncertainty] = Field(default_factory=list)
    refine: bool = False


class RunResponse(BaseModel):
    # De-identified; identifying fields are only reachable through a live view.
    result: PipelineResult
    segment_count: int
    refined: bool = False
    refine_reason: Optional[str] = None


class SaveSessionRequest(BaseModel):
    session_id: str
    result: PipelineResult


class ShredResponse(BaseModel):
    session_id: str
    deleted: bool


class FieldGesture(BaseModel):
    field_id: str


def _segment(payload: SegmentRequest) -> SegmentResponse:
    if payload.chunks is not None:
        asr = segments_from_asr(payload.chunks, id_prefix=payload.id_prefix or "asr")
        return SegmentResponse(segments=asr.segments, confidence=asr.confidence)
    if payload.transcript is not None:
        config = SegmenterConfig(id_prefix=payload.id_prefix or "seg", start_offset_ms=payload.start_offset_ms)
        return SegmentResponse(segments=segment(payload.transcript, config))
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail="Provide a transcript, ASR chunks or segments",
    )


async def _run(payload: RunRequest) -> RunResponse:
    if payload.segments is not None:
        segmented = SegmentResponse(segments=payload.segments)
    else:
        segmented = _segment(payload)

    session_id = payload.session_id or f"handoff_{uuid4().hex[:12]}"
    result = pipeline_service.run(
        session_id,
        payload.duty_type,
        segmented.segments,
        manual_uncertainties=payload.manual_uncertainties,
        confidence=segmented.confidence,
    )

    refined, reason = False, None
    if payload.refine:
        outcome = await refinement_service.refine(result)
        result, refined, reason = outcome.result, outcome.refined, outcome.reason

    audit_log.append(
        AuditAction.PIPELINE_RUN,
        session_id=session_id,
        detail=(
            f"segments:{len(segmented.segments)} patients:{len(result.patients)} "
            f"uncertainties:{len(result.uncertainty_items)}"
        ),
    )
    return RunResponse(
        result=result,
        segment_count=len(segmented.segments),
        refined=refined,
        refine_reason=reason,
    )


@router.post("/segments", response_model=SegmentResponse)
async def create_segments(payload: SegmentRequest) -> SegmentResponse:
    return _segment(payload)


@router.post("/run", response_model=RunResponse)
async def run_pipeline(payload: RunRequest) -> RunResponse:
    response = await _run(payload)
    response.result = deidentify_result(response.result)
    return response


# -- vault -------------------------------------------------------------------


@router.post("/sessions", response_model=VaultRecord, status_code=status.HTTP_201_CREATED)
async def save_session(payload: SaveSessionRequest) -> VaultRecord:
    outcome = session_vault.save(payload.session_id, payload.result)
    if not outcome.ok:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=outcome.reason)
    return outcome.value


@router.get("/sessions", response_model=List[VaultRecord])
async def list_sessions() -> List[VaultRecord]:
    outcome = session_vault.list()
    if not outcome.ok:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=outcome.reason)
    return outcome.value


@router.get("/sessions/{session_id}", response_model=VaultRecord)
async def get_session(session_id: str) -> VaultRecord:
    outcome = session_vault.get(session_id)
    if outcome.reason in (NOT_FOUND, EXPIRED):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if not outcome.ok:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=outcome.reason)
    return outcome.value


@router.delete("/sessions/{session_id}", response_model=ShredResponse)
async def shred_session(session_id: str) -> ShredResponse:
    outcome = session_vault.shred(session_id)
    if not outcome.ok:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=outcome.reason)
    return ShredResponse(session_id=session_id, deleted=bool(outcome.value))


@router.delete("/sessions")
async def purge_all_sessions() -> dict:
    return {"purged": session_vault.purge_all()}


@router.get("/audit", response_model=List[AuditEvent])
async def list_audit_events(limit: int = Query(30, ge=1, le=300)) -> List[AuditEvent]:
    return audit_log.list(limit=limit)


# -- live view ---------------------------------------------------------------


def _live_snapshot(session_id: str) -> LiveViewSnapshot:
    view = live_registry.get(session_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Live session not found")
    view.evaluate()
    if view.purged:
        live_registry.close(session_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Live session purged")
    return view.snapshot()


@router.post("/live", response_model=LiveViewSnapshot, status_code=status.HTTP_201_CREATED)
async def open_live_session(payload: RunRequest) -> LiveViewSnapshot:
    response = await _run(payload)
    view = live_registry.open(response.result.session_id, response.result, segment_count=response.segment_count)
    return view.snapshot()


@router.get("/live/{session_id}", response_model=LiveViewSnapshot)
async def get_live_session(session_id: str) -> LiveViewSnapshot:
    return _live_snapshot(session_id)


@router.post("/live/{session_id}/press")
async def press_field(session_id: str, payload: FieldGesture) -> dict:
    _live_snapshot(session_id)
    return {"accepted": bool(live_registry.press(session_id, payload.field_id))}


@router.post("/live/{session_id}/release", response_model=LiveViewSnapshot)
async def release_field(session_id: str, payload: FieldGesture) -> LiveViewSnapshot:
    _live_snapshot(session_id)
    state = live_registry.release(session_id, payload.field_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Field not found")
    return _live_snapshot(session_id)


@router.post("/live/{session_id}/unlock", response_model=LiveViewSnapshot)
async def unlock_live_session(session_id: str) -> LiveViewSnapshot:
    _live_snapshot(session_id)
    live_registry.unlock(session_id)
    return _live_snapshot(session_id)


@router.delete("/live/{session_id}")
async def close_live_session(session_id: str) -> dict:
    if not live_registry.close(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Live session not found")
    return {"session_id": session_id, "closed": True}
