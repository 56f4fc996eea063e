from __future__ import annotations

from typing import Iterator, List

from src.handoff.domain.models.handoff import PipelineResult
from src.handoff.services.pipeline import lexicon

# The only PatientCard fields that may carry a room number or a name.
IDENTIFYING_FIELDS = frozenset({"alias_token", "room_token"})

_IDENTIFIER_PATTERNS = (
    lexicon.ROOM_PATTERN,
    lexicon.HANGUL_ROOM_PATTERN,
    lexicon.BED_PATTERN,
    lexicon.MASKED_NAME_PATTERN,
    lexicon.HANGUL_MASKED_NAME_PATTERN,
    lexicon.HONORIFIC_NAME_PATTERN,
    lexicon.MRN_PATTERN,
    lexicon.PHONE_PATTERN,
    lexicon.EMAIL_PATTERN,
)


def scrub_identifiers(text: str) -> str:
    if not text:
        return text
    for pattern in _IDENTIFIER_PATTERNS:
        text = pattern.sub(lexicon.REDACTED, text)
    return text


def find_residual_identifiers(text: str) -> List[str]:
    """Identifier-looking fragments still present in ``text``."""

    hits: List[str] = []
    for pattern in _IDENTIFIER_PATTERNS:
        hits.extend(match.group(0) for match in pattern.finditer(text or ""))
    return hits


def iter_result_text(result: PipelineResult) -> Iterator[str]:
    """Every free-text field of a result, identifying fields excluded."""

    for card in result.patients:
        yield card.summary
        for item in card.plan:
            yield item.text
        for risk in card.risks:
            yield risk.text
        yield from card.questions
        yield from card.watch_for
    for top in result.global_top:
        yield top.text
    for uncertainty in result.uncertainty_items:
        yield uncertainty.text
        if uncertainty.reason:
            yield uncertainty.reason
    for event in result.ward_events:
        yield event.text


def residual_identifiers(result: PipelineResult) -> List[str]:
    hits: List[str] = []
    for text in iter_result_text(result):
        hits.extend(find_residual_identifiers(text))
    return hits


def deidentify_result(result: PipelineResult) -> PipelineResult:
    """Return a copy with identifying fields blanked and text scrubbed.

    The input is never modified.
    """

    clean = result.model_copy(deep=True)
    for card in clean.patients:
        for name in IDENTIFYING_FIELDS:
            setattr(card, name, None)
        card.summary = scrub_identifiers(card.summary)
        for item in card.plan:
            item.text = scrub_identifiers(item.text)
        for risk in card.risks:
            risk.text = scrub_identifiers(risk.text)
        card.questions = [scrub_identifiers(q) for q in card.questions]
        card.watch_for = [scrub_identifiers(w) for w in card.watch_for]
    for top in clean.global_top:
        top.text = scrub_identifiers(top.text)
    for uncertainty in clean.uncertainty_items:
        uncertainty.text = scrub_identifiers(uncertainty.text)
        if uncertainty.reason:
            uncertainty.reason = scrub_identifiers(uncertainty.reason)
    for event in clean.ward_events:
        event.text = scrub_identifiers(event.text)
    return clean
