from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from src.handoff.config import settings
from src.handoff.domain.models.handoff import Due, PipelineResult, PlanItem, Priority

_PRIORITY_RANK = {Priority.P0: 0, Priority.P1: 1, Priority.P2: 2}

# Due assigned to urgent plan items the pipeline could not time.
DEFAULT_DUE = {Priority.P0: Due.NOW, Priority.P1: Due.WITHIN_1H}


class RefinementAdapter(Protocol):
    """Protocol for optional post-processing of a de-identified pipeline result.

    ``refine`` may be sync or async. It receives a de-identified copy and
    returns either a full result or a patch of the form
    ``{"patients": [{"patient_key", "summary", "plan", "questions", "watch_for"}]}``.
    Only those non-identifying fields are ever merged back.
    """

    def refine(self, result: PipelineResult) -> Any:  # pragma: no cover - interface
        raise NotImplementedError


def normalize_whitespace(text: Optional[str]) -> str:
    return " ".join(str(text or "").split())


def unique_strings(values: Optional[List[str]]) -> List[str]:
    out: List[str] = []
    seen = set()
    for value in values or []:
        text = normalize_whitespace(value)
        if text and text.lower() not in seen:
            seen.add(text.lower())
            out.append(text)
    return out


def default_question(patient_key: str) -> str:
    return f"Anything pending for {patient_key} that the next shift should confirm?"


class NullRefinementAdapter:
    """Identity adapter: hands the result back untouched."""

    def refine(self, result: PipelineResult) -> PipelineResult:
        return result


class HeuristicRefinementAdapter:
    """Deterministic, local clean-up pass.

    Plans are deduped by text and ordered by priority, untimed P0/P1 items get
    a default due, list fields are deduped and every patient ends up with at
    least one question.
    """

    def _plan(self, plan: List[PlanItem]) -> List[Dict[str, Any]]:
        seen = set()
        items: List[PlanItem] = []
        for item in plan:
            text = normalize_whitespace(item.text)
            if not text or text.lower() in seen:
                continue
            seen.add(text.lower())
            due = item.due
            if due == Due.UNSPECIFIED and item.priority in DEFAULT_DUE:
                due = DEFAULT_DUE[item.priority]
            items.append(item.model_copy(update={"text": text, "due": due}))
        items.sort(key=lambda i: _PRIORITY_RANK[i.priority])
        return [{"text": i.text, "priority": i.priority.value, "due": i.due.value} for i in items]

    def refine(self, result: PipelineResult) -> Dict[str, Any]:
        patients = []
        for card in result.patients:
            questions = unique_strings(card.questions) or [default_question(card.patient_key)]
            patients.append(
                {
                    "patient_key": card.patient_key,
                    "summary": normalize_whitespace(card.summary),
                    "plan": self._plan(card.plan),
                    "questions": questions,
                    "watch_for": unique_strings(card.watch_for),
                }
            )
        return {"patients": patients}


class LLMRefinementAdapter:
    """Refinement adapter that asks an LLM via the OpenAI Python client.

    Expects OPENAI_API_KEY to be set and uses the model from LLM_MODEL. Only
    the de-identified result is ever sent. The privacy policy blocks this
    backend entirely in ``local_only`` execution mode.
    """

    def __init__(self, model: str | None = None) -> None:  # pragma: no cover - external service
        self._model = model or settings.llm_model

    def refine(self, result: PipelineResult) -> Dict[str, Any]:  # pragma: no cover - external service
        import json

        api_key = settings.openai_api_key
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY must be set to use LLMRefinementAdapter")

        try:
            from openai import OpenAI
        except ImportError as exc:
            raise RuntimeError(
                "LLMRefinementAdapter requires the 'openai' package. Install it with 'pip install openai'"
            ) from exc

        client = OpenAI(api_key=api_key)

        payload = {
            "patients": [
                {
                    "patient_key": card.patient_key,
                    "summary": card.summary,
                    "plan": [item.model_dump(mode="json", exclude={"source_segment_id"}) for item in card.plan],
                    "questions": card.questions,
                    "watch_for": card.watch_for,
                }
                for card in result.patients
            ]
        }
        prompt = {
            "role": "user",
            "content": (
                "You are a nursing handoff editor. Tighten the wording of each patient's "
                "summary, plan, questions and watch_for. Keep every patient_key, keep the "
                "same patients in the same order, never invent identifiers or values. "
                "Respond ONLY as compact JSON with the same shape as the input.\n\n"
                f"Input:\n{json.dumps(payload)}\n"
            ),
        }

        response = client.responses.create(
            model=self._model,
            input=[prompt],
        )

        raw_text: str | None = None
        for output in response.output:
            for item in output.content:
                if getattr(item, "type", "") == "output_text" and getattr(item, "text", None):
                    raw_text = item.text
                    break
            if raw_text is not None:
                break

        if not raw_text:
            raise RuntimeError("LLM refinement returned no text output")
        return json.loads(raw_text)


def get_refinement_adapter_from_env() -> RefinementAdapter:
    """Select a refinement adapter based on HANDOFF_REFINE_BACKEND.

    Supports:
    - "none" (default) – NullRefinementAdapter; results are used as produced
    - "heuristic" – HeuristicRefinementAdapter, local and deterministic
    - "llm" – LLMRefinementAdapter using an external LLM
    """

    backend_name = settings.refine_backend.lower()
    if backend_name == "heuristic":
        return HeuristicRefinementAdapter()
    if backend_name == "llm":
        return LLMRefinementAdapter()
    return NullRefinementAdapter()
