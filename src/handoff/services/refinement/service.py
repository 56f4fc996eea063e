from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from src.handoff.config import settings
from src.handoff.domain.models.handoff import CONCRETE_DUES, Due, PatientCard, PipelineResult, PlanItem, Priority
from src.handoff.domain.models.records import AuditAction
from src.handoff.services.audit.service import AuditLog, audit_log
from src.handoff.services.pipeline.service import MAX_QUESTIONS
from src.handoff.services.pipeline.structure import MAX_PLAN_ITEMS, MAX_WATCH_FOR
from src.handoff.services.privacy.deid import deidentify_result, scrub_identifiers
from src.handoff.services.privacy.policy import PrivacyPolicy
from src.handoff.services.refinement.backends import (
    DEFAULT_DUE,
    LLMRefinementAdapter,
    NullRefinementAdapter,
    RefinementAdapter,
    default_question,
    get_refinement_adapter_from_env,
    normalize_whitespace,
    unique_strings,
)

logger = logging.getLogger(__name__)

MAX_SUMMARY_LENGTH = 240

POLICY_BLOCKED = "policy_blocked"
REFINE_OUTPUT_INVALID = "refine_output_invalid"
REFINE_RUNTIME_ERROR = "refine_runtime_error"
REFINE_TIMEOUT = "refine_timeout"
REFINE_NO_CHANGE = "refine_no_change"


class PlanPatch(BaseModel):
    text: str
    priority: Optional[str] = None
    due: Optional[str] = None


class PatientPatch(BaseModel):
    patient_key: str
    summary: Optional[str] = None
    plan: Optional[List[PlanPatch]] = None
    questions: Optional[List[str]] = None
    watch_for: Optional[List[str]] = None


class ResultPatch(BaseModel):
    patients: List[PatientPatch]


@dataclass
class RefineOutcome:
    result: PipelineResult
    refined: bool
    reason: Optional[str] = None


def _enum_or(enum_cls, raw: Optional[str], fallback):
    if raw is None:
        return fallback
    try:
        return enum_cls(raw)
    except ValueError:
        return fallback


def _task_key(text: Optional[str]) -> str:
    return normalize_whitespace(text).lower()


def _as_patch(raw: Any) -> Optional[ResultPatch]:
    if isinstance(raw, PipelineResult):
        raw = raw.model_dump(mode="json")
    if isinstance(raw, dict) and "result" in raw and "patients" not in raw:
        raw = raw["result"]
    if not isinstance(raw, dict):
        return None
    try:
        return ResultPatch.model_validate(raw)
    except ValidationError:
        return None


def enforce_invariants(card: PatientCard) -> None:
    """Give untimed P0/P1 items a due and make sure a question exists."""

    for item in card.plan:
        if item.priority in DEFAULT_DUE and item.due not in CONCRETE_DUES:
            item.due = DEFAULT_DUE[item.priority]
    if not card.questions:
        card.questions.append(default_question(card.patient_key))


class RefinementService:
    """Runs an optional refinement adapter behind the privacy policy.

    The adapter only ever sees the de-identified copy and its output is merged
    onto summary, plan, questions and watch_for of the original, matched by
    patient key. Every failure falls back to the unrefined result with a
    reason; nothing raises.
    """

    def __init__(
        self,
        adapter: Optional[RefinementAdapter] = None,
        policy: Optional[PrivacyPolicy] = None,
        audit: Optional[AuditLog] = None,
        timeout_ms: Optional[int] = None,
        adapter_url: Optional[str] = None,
        backend: Optional[str] = None,
    ) -> None:
        self._adapter = adapter
        self._policy = policy
        self._audit = audit
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.refine_timeout_ms
        self.adapter_url = adapter_url if adapter_url is not None else settings.refine_adapter_url
        self.backend = (backend or settings.refine_backend).lower()

    @property
    def audit(self) -> AuditLog:
        return self._audit or audit_log

    async def refine(
        self,
        result: PipelineResult,
        adapter: Optional[RefinementAdapter] = None,
        policy: Optional[PrivacyPolicy] = None,
    ) -> RefineOutcome:
        adapter = adapter or self._adapter or get_refinement_adapter_from_env()
        if isinstance(adapter, NullRefinementAdapter):
            return RefineOutcome(result, False, REFINE_NO_CHANGE)

        decision = (policy or self._policy or PrivacyPolicy.from_settings()).check_refine_adapter(
            self.adapter_url, backend="llm" if isinstance(adapter, LLMRefinementAdapter) else self.backend
        )
        if not decision.allowed:
            logger.warning("refinement blocked for session %s: %s", result.session_id, decision.reason)
            self.audit.append(AuditAction.POLICY_BLOCKED, session_id=result.session_id, detail=decision.reason)
            return RefineOutcome(result, False, POLICY_BLOCKED)

        safe_input = deidentify_result(result)
        try:
            raw = await asyncio.wait_for(self._invoke(adapter, safe_input), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning("refinement timed out for session %s", result.session_id)
            return RefineOutcome(result, False, REFINE_TIMEOUT)
        except Exception:
            logger.exception("refinement adapter failed for session %s", result.session_id)
            return RefineOutcome(result, False, REFINE_RUNTIME_ERROR)

        merged = self._merge(result, _as_patch(raw))
        if merged is None:
            logger.warning("discarding invalid refinement output for session %s", result.session_id)
            return RefineOutcome(result, False, REFINE_OUTPUT_INVALID)

        # An identity answer is a pass-through: nothing was enriched.
        if merged.patients == result.patients:
            return RefineOutcome(result, False, REFINE_NO_CHANGE)
        for card in merged.patients:
            enforce_invariants(card)
        merged.refined = True
        return RefineOutcome(merged, True)

    async def _invoke(self, adapter: RefinementAdapter, payload: PipelineResult) -> Any:
        if inspect.iscoroutinefunction(adapter.refine):
            return await adapter.refine(payload)
        raw = await asyncio.to_thread(adapter.refine, payload)
        if inspect.isawaitable(raw):
            raw = await raw
        return raw

    def _merge(self, base: PipelineResult, patch: Optional[ResultPatch]) -> Optional[PipelineResult]:
        if patch is None or len(patch.patients) != len(base.patients):
            return None
        by_key: Dict[str, PatientPatch] = {p.patient_key: p for p in patch.patients}
        if set(by_key) != {card.patient_key for card in base.patients}:
            return None

        merged = base.model_copy(deep=True)
        for card in merged.patients:
            self._apply(card, by_key[card.patient_key])
        return merged

    def _apply(self, card: PatientCard, patch: PatientPatch) -> None:
        if patch.summary is not None:
            summary = scrub_identifiers(normalize_whitespace(patch.summary))
            if summary:
                if not summary.startswith(card.patient_key):
                    summary = f"{card.patient_key}: {summary}"
                card.summary = summary[:MAX_SUMMARY_LENGTH]
        if patch.questions is not None:
            card.questions = [scrub_identifiers(q) for q in unique_strings(patch.questions)][:MAX_QUESTIONS]
        if patch.watch_for is not None:
            card.watch_for = [scrub_identifiers(w) for w in unique_strings(patch.watch_for)][:MAX_WATCH_FOR]
        if patch.plan:
            card.plan = self._merge_plan(card.plan, patch.plan)

    def _merge_plan(self, base: List[PlanItem], patches: List[PlanPatch]) -> List[PlanItem]:
        """Map each refined item back to the original it came from.

        Items are matched by normalized text first and by position second, so
        reordering keeps every item's source segment.
        """

        by_text: Dict[str, List[PlanItem]] = {}
        for item in base:
            by_text.setdefault(_task_key(item.text), []).append(item)

        plan: List[PlanItem] = []
        for index, patch in enumerate(patches):
            text = scrub_identifiers(normalize_whitespace(patch.text))
            bucket = by_text.get(_task_key(text))
            current = bucket.pop(0) if bucket else (base[index] if index < len(base) else None)
            plan.append(
                PlanItem(
                    text=text or (current.text if current else ""),
                    priority=_enum_or(Priority, patch.priority, current.priority if current else Priority.P2),
                    due=_enum_or(Due, patch.due, current.due if current else Due.UNSPECIFIED),
                    source_segment_id=current.source_segment_id if current else None,
                )
            )
        return [item for item in plan if item.text][:MAX_PLAN_ITEMS]


refinement_service = RefinementService()
