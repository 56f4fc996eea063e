from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from src.handoff.domain.models.handoff import (
    DutyType,
    ManualUncertainty,
    PatientCard,
    PipelineResult,
    RawSegment,
    UncertaintyItem,
    UncertaintyKind,
)
from src.handoff.services.pipeline.normalizer import NormalizedSegment, inline_definitions, normalize_segments
from src.handoff.services.pipeline.patients import (
    MaskedPiece,
    PatientRegistry,
    assign_pieces,
    mask_segments,
)
from src.handoff.services.pipeline.structure import build_facts, build_global_top, build_patient_cards
from src.handoff.services.segmentation.service import LOW_CONFIDENCE_THRESHOLD, MIN_ASR_WINDOW_MS

logger = logging.getLogger(__name__)

MAX_UNCERTAINTIES = 24
MIN_UNCERTAINTIES = 4
SEGMENTS_PER_UNCERTAINTY = 8
MAX_QUESTIONS = 3

_KIND_RANK = {
    UncertaintyKind.PARSE_FAILURE: 0,
    UncertaintyKind.AMBIGUOUS_REFERENCE: 1,
    UncertaintyKind.UNRESOLVED_ABBREVIATION: 2,
    UncertaintyKind.LOW_CONFIDENCE_VALUE: 3,
    UncertaintyKind.MISSING_VALUE: 4,
    UncertaintyKind.MISSING_TIME: 5,
    UncertaintyKind.MANUAL_REVIEW: 6,
}

# Missing-value topic -> vital name that resolves it.
_TOPIC_VITALS = {
    "glucose": "Glucose",
    "blood pressure": "BP",
    "heart rate": "HR",
    "respiratory rate": "RR",
    "oxygen saturation": "SpO2",
    "temperature": "Temp",
    "urine output": "UrineOutput",
}


def uncertainty_cap(segment_count: int) -> int:
    return min(MAX_UNCERTAINTIES, max(MIN_UNCERTAINTIES, math.ceil(segment_count / SEGMENTS_PER_UNCERTAINTY)))


@dataclass
class _Candidate:
    item: UncertaintyItem
    dedupe_key: Tuple[str, ...]
    patient_key: Optional[str]
    order: int


def _question_for(item: UncertaintyItem) -> Optional[str]:
    if item.kind == UncertaintyKind.MISSING_TIME:
        return f"When is this due: {item.text}?"
    if item.kind == UncertaintyKind.MISSING_VALUE:
        return f"What was the latest value? ({item.reason})"
    if item.kind == UncertaintyKind.UNRESOLVED_ABBREVIATION:
        return f"Please clarify: {item.reason}"
    if item.kind in (UncertaintyKind.MANUAL_REVIEW, UncertaintyKind.LOW_CONFIDENCE_VALUE):
        return f"Please confirm: {item.text}"
    return None


class PipelineService:
    """Transcript segments in, structured de-identified handoff out.

    ``run`` is pure and synchronous. It never raises: malformed input and
    internal errors both come back as a result with a ``parse_failure``
    uncertainty.
    """

    def run(
        self,
        session_id: str,
        duty_type: DutyType,
        raw_segments: Sequence[RawSegment],
        manual_uncertainties: Optional[Iterable[ManualUncertainty]] = None,
        confidence: Optional[Mapping[str, float]] = None,
    ) -> PipelineResult:
        try:
            duty = DutyType(duty_type)
        except ValueError:
            duty = DutyType.DAY

        try:
            return self._run(session_id, duty, list(raw_segments or []), manual_uncertainties, confidence)
        except Exception:
            logger.exception("handoff pipeline failed for session %s", session_id)
            return self._parse_failure(session_id, duty, "Internal error while structuring the transcript")

    def _parse_failure(self, session_id: str, duty_type: DutyType, reason: str) -> PipelineResult:
        return PipelineResult(
            session_id=session_id,
            duty_type=duty_type,
            uncertainty_items=[
                UncertaintyItem(kind=UncertaintyKind.PARSE_FAILURE, text="", reason=reason)
            ],
        )

    def _run(
        self,
        session_id: str,
        duty_type: DutyType,
        raw_segments: List[RawSegment],
        manual_uncertainties: Optional[Iterable[ManualUncertainty]],
        confidence: Optional[Mapping[str, float]],
    ) -> PipelineResult:
        normalized = normalize_segments(raw_segments)
        if not normalized:
            return self._parse_failure(session_id, duty_type, "Transcript contained no usable text")

        registry = PatientRegistry()
        pieces = mask_segments(normalized, registry)
        assignment = assign_pieces(pieces, registry)
        facts = build_facts(assignment, duty_type)
        patients = build_patient_cards(assignment, facts)
        global_top = build_global_top(facts, duty_type)

        auto = self._collect_uncertainties(normalized, pieces, assignment.unmatched, patients, confidence)
        cap = uncertainty_cap(len(normalized))
        auto.sort(key=lambda c: (_KIND_RANK[c.item.kind], c.order))
        kept = sorted(auto[:cap], key=lambda c: c.order)

        self._attach_questions(patients, kept)

        items = [c.item for c in kept]
        items.extend(self._manual_items(manual_uncertainties))

        logger.debug(
            "pipeline session=%s segments=%d patients=%d uncertainties=%d",
            session_id,
            len(normalized),
            len(patients),
            len(items),
        )
        return PipelineResult(
            session_id=session_id,
            duty_type=duty_type,
            patients=patients,
            global_top=global_top,
            uncertainty_items=items,
            ward_events=assignment.ward_events,
        )

    def _collect_uncertainties(
        self,
        normalized: List[NormalizedSegment],
        pieces: List[MaskedPiece],
        unmatched: List[Tuple[MaskedPiece, str]],
        patients: List[PatientCard],
        confidence: Optional[Mapping[str, float]],
    ) -> List[_Candidate]:
        masked_text: Dict[str, str] = {}
        segment_patient: Dict[str, Optional[str]] = {}
        for piece in pieces:
            masked_text[piece.segment_id] = f"{masked_text.get(piece.segment_id, '')} {piece.text}".strip()
            if segment_patient.get(piece.segment_id) is None:
                segment_patient[piece.segment_id] = piece.patient_key

        resolved_vitals = {
            (card.patient_key, vital.name) for card in patients for vital in card.vitals if vital.value is not None
        }
        defined = inline_definitions(seg.text for seg in normalized)

        candidates: List[_Candidate] = []
        seen = set()

        def push(item: UncertaintyItem, dedupe_key: Tuple[str, ...], patient_key: Optional[str]) -> None:
            if dedupe_key in seen:
                return
            seen.add(dedupe_key)
            candidates.append(_Candidate(item, dedupe_key, patient_key, len(candidates)))

        for segment in normalized:
            patient_key = segment_patient.get(segment.segment_id)
            text = masked_text.get(segment.segment_id, "")
            for issue in segment.issues:
                if issue.kind == UncertaintyKind.UNRESOLVED_ABBREVIATION:
                    if issue.token in defined:
                        continue
                    key: Tuple[str, ...] = (issue.kind.value, issue.token)
                elif issue.kind == UncertaintyKind.MISSING_VALUE:
                    vital = _TOPIC_VITALS.get(issue.token)
                    if vital and (patient_key, vital) in resolved_vitals:
                        continue
                    key = (issue.kind.value, patient_key or "", issue.token)
                else:
                    key = (issue.kind.value, issue.token)
                push(
                    UncertaintyItem(
                        kind=issue.kind,
                        text=text,
                        source_segment_id=segment.segment_id,
                        reason=issue.reason,
                        start_ms=segment.start_ms,
                        end_ms=segment.end_ms,
                    ),
                    key,
                    patient_key,
                )

            score = (confidence or {}).get(segment.segment_id)
            if score is not None and score < LOW_CONFIDENCE_THRESHOLD:
                push(
                    UncertaintyItem(
                        kind=UncertaintyKind.LOW_CONFIDENCE_VALUE,
                        text=text,
                        source_segment_id=segment.segment_id,
                        reason=f"Speech recognition confidence {score:.2f}",
                        start_ms=segment.start_ms,
                        end_ms=segment.end_ms,
                    ),
                    (UncertaintyKind.LOW_CONFIDENCE_VALUE.value, segment.segment_id),
                    patient_key,
                )

        for piece, reason in unmatched:
            push(
                UncertaintyItem(
                    kind=UncertaintyKind.AMBIGUOUS_REFERENCE,
                    text=piece.text,
                    source_segment_id=piece.segment_id,
                    reason=reason,
                    start_ms=piece.start_ms,
                    end_ms=piece.end_ms,
                ),
                (UncertaintyKind.AMBIGUOUS_REFERENCE.value, piece.segment_id, str(piece.order)),
                None,
            )

        return candidates

    def _attach_questions(self, patients: List[PatientCard], kept: List[_Candidate]) -> None:
        by_key = {card.patient_key: card for card in patients}
        for candidate in kept:
            card = by_key.get(candidate.patient_key or "")
            if card is None or len(card.questions) >= MAX_QUESTIONS:
                continue
            question = _question_for(candidate.item)
            if question and question not in card.questions:
                card.questions.append(question)

    def _manual_items(self, manual: Optional[Iterable[ManualUncertainty]]) -> List[UncertaintyItem]:
        items: List[UncertaintyItem] = []
        for index, entry in enumerate(manual or [], start=1):
            start_ms = max(0, entry.start_ms or 0)
            end_ms = max(start_ms + MIN_ASR_WINDOW_MS, entry.end_ms if entry.end_ms is not None else start_ms + 1000)
            items.append(
                UncertaintyItem(
                    kind=entry.kind,
                    text=entry.text,
                    source_segment_id=f"manual-{index}",
                    reason=entry.reason,
                    start_ms=start_ms,
                    end_ms=end_ms,
                )
            )
        return items


pipeline_service = PipelineService()


def run(
    session_id: str,
    duty_type: DutyType,
    raw_segments: Sequence[RawSegment],
    manual_uncertainties: Optional[Iterable[ManualUncertainty]] = None,
    confidence: Optional[Mapping[str, float]] = None,
) -> PipelineResult:
    return pipeline_service.run(session_id, duty_type, raw_segments, manual_uncertainties, confidence)
