from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from src.handoff.domain.models.handoff import RawSegment, UncertaintyKind
from src.handoff.services.pipeline import lexicon

_WHITESPACE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,;:!?])")


@dataclass
class SegmentIssue:
    kind: UncertaintyKind
    reason: str
    # What the issue is about; issues with the same kind and token are one issue.
    token: str


@dataclass
class NormalizedSegment:
    segment_id: str
    text: str
    start_ms: int
    end_ms: int
    issues: List[SegmentIssue] = field(default_factory=list)


def normalize_whitespace(text: str) -> str:
    collapsed = _WHITESPACE.sub(" ", text or "").strip()
    return _SPACE_BEFORE_PUNCT.sub(r"\1", collapsed)


def expand_abbreviations(text: str) -> str:
    """Return the matching copy of ``text`` with known abbreviations spelled out."""

    expanded = text
    for pattern, replacement in lexicon.ABBREVIATION_RULES:
        expanded = pattern.sub(replacement, expanded)
    return normalize_whitespace(expanded)


def _is_strict_abbreviation(token: str) -> bool:
    letters = re.sub(r"[^A-Za-z]", "", token)
    if len(letters) < 2 or len(token) > 10:
        return False
    has_digit = any(ch.isdigit() for ch in token)
    upper_count = sum(1 for ch in token if ch.isupper())
    return has_digit or token == token.upper() or upper_count >= 2


def detect_unknown_abbreviations(text: str, max_count: int = 2) -> List[str]:
    unknown: List[str] = []
    for token in lexicon.ABBREVIATION_TOKEN.findall(text or ""):
        if not _is_strict_abbreviation(token):
            continue
        if re.fullmatch(r"[OX0]{2,4}", token, re.I):
            continue
        if token.lower() in lexicon.SAFE_WORDS:
            continue
        if re.fullmatch(r"q\d{1,2}h", token, re.I):
            continue
        upper = token.upper()
        compact = re.sub(r"[^A-Z0-9/]", "", upper)
        letters_only = re.sub(r"[0-9]", "", compact)
        if {upper, compact, letters_only} & lexicon.KNOWN_ABBREVIATIONS:
            continue
        if compact not in unknown:
            unknown.append(compact)
        if len(unknown) >= max_count:
            break
    return unknown


def inline_definitions(texts: Iterable[str]) -> Set[str]:
    """Abbreviations spelled out somewhere in the session, e.g. ``ICP (intracranial pressure)``."""

    defined: Set[str] = set()
    for text in texts:
        for match in lexicon.INLINE_DEFINITION.finditer(text or ""):
            defined.add(re.sub(r"[^A-Z0-9/]", "", match.group(1).upper()))
    return defined


def has_time_cue(text: str) -> bool:
    return bool(
        lexicon.CLOCK_TIME.search(text)
        or lexicon.DUE_NOW.search(text)
        or lexicon.DUE_WITHIN_HOUR.search(text)
        or lexicon.DUE_NEXT_SHIFT.search(text)
        or lexicon.DUE_TODAY.search(text)
        or lexicon.RECURRING_TIME.search(text)
    )


def should_flag_missing_time(expanded: str) -> bool:
    if not lexicon.TASK_CUE.search(expanded):
        return False
    if has_time_cue(expanded):
        return False
    if lexicon.LAB_PENDING.search(expanded):
        return False
    if lexicon.ROUTINE_OBSERVATION.search(expanded) and not lexicon.ACTIVE_TASK.search(expanded):
        return False

    pending = bool(lexicon.TASK_PENDING.search(expanded))
    completed = bool(lexicon.TASK_COMPLETED.search(expanded)) and not lexicon.TASK_STILL_OPEN.search(expanded)
    if completed and not pending:
        return False
    return pending or bool(lexicon.STRONG_TASK_CUE.search(expanded))


def missing_value_topic(expanded: str) -> str:
    """Return the vital/lab topic mentioned without any value, or ``""``."""

    topic = lexicon.VALUE_TOPIC.search(expanded)
    if not topic:
        return ""
    if lexicon.VALUE_PRESENT.search(expanded):
        return ""
    if lexicon.VALUE_QUALITATIVE.search(expanded):
        return ""
    if lexicon.LAB_PENDING.search(expanded):
        return ""
    if re.search(r"\d+(?:\.\d+)?", expanded):
        return ""
    return topic.group(1).lower()


def detect_issues(segment_id: str, original: str, expanded: str) -> List[SegmentIssue]:
    issues: List[SegmentIssue] = []

    if lexicon.MANUAL_REVIEW_CUE.search(original):
        issues.append(
            SegmentIssue(
                kind=UncertaintyKind.MANUAL_REVIEW,
                reason="Narration contains an explicit confirm/unsure cue",
                token=segment_id,
            )
        )

    if should_flag_missing_time(expanded):
        issues.append(
            SegmentIssue(
                kind=UncertaintyKind.MISSING_TIME,
                reason="Task or order has no time attached",
                token=segment_id,
            )
        )

    topic = missing_value_topic(expanded)
    if topic:
        issues.append(
            SegmentIssue(
                kind=UncertaintyKind.MISSING_VALUE,
                reason=f"{topic} mentioned without a value",
                token=topic,
            )
        )

    for abbreviation in detect_unknown_abbreviations(original):
        issues.append(
            SegmentIssue(
                kind=UncertaintyKind.UNRESOLVED_ABBREVIATION,
                reason=f"Unresolved abbreviation ({abbreviation})",
                token=abbreviation,
            )
        )

    return issues


def normalize_segments(segments: Iterable[RawSegment]) -> List[NormalizedSegment]:
    normalized: List[NormalizedSegment] = []
    for segment in segments:
        text = normalize_whitespace(segment.raw_text)
        if not text:
            continue
        normalized.append(
            NormalizedSegment(
                segment_id=segment.id,
                text=text,
                start_ms=segment.start_ms,
                end_ms=segment.end_ms,
                issues=detect_issues(segment.id, text, expand_abbreviations(text)),
            )
        )
    return normalized
