from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from src.handoff.domain.models.handoff import (
    Due,
    DutyType,
    GlobalTopItem,
    PatientCard,
    PlanItem,
    Priority,
    RiskItem,
    Severity,
    VitalSign,
)
from src.handoff.services.pipeline import lexicon
from src.handoff.services.pipeline.patients import MaskedPiece, PatientAssignment
from src.handoff.services.pipeline.priority import (
    PriorityScore,
    badge_for,
    extract_vitals,
    is_unstable,
    plan_priority,
    resolve_due,
    score_priority,
)

MAX_PLAN_ITEMS = 4
MAX_RISK_ITEMS = 4
MAX_SUMMARY_FACTS = 3
MAX_WATCH_FOR = 3
GLOBAL_TOP_SIZE = 5
FREQUENCY_STEP = 5
MAX_COUNTED_MENTIONS = 4

_LEADING_KEY = re.compile(r"^(?:PATIENT_[A-Z]+[\s,:;.\-]*)+")
_LEADING_BULLET = re.compile(r"^[-*•·]\s*")
_PRIORITY_RANK = {Priority.P0: 0, Priority.P1: 1, Priority.P2: 2}

# Code to fall back on when a reading is out of range but no rule fired.
_UNSTABLE_VITAL_CODES = {
    "BP": "CIRCULATION",
    "HR": "ARRHYTHMIA",
    "RR": "BREATHING",
    "SpO2": "BREATHING",
    "Temp": "SEPSIS",
    "Glucose": "GLUCOSE_CRITICAL",
    "UrineOutput": "IO_DECREASE",
}
_WATCH_FOR = {rule.code: rule.watch_for for rule in lexicon.RISK_RULES}


@dataclass
class Fact:
    patient_key: str
    segment_id: str
    order: int
    text: str
    topic: str
    priority: PriorityScore
    weighted: int
    vitals: List[VitalSign]
    due: Due
    is_task: bool
    risk_code: Optional[str]
    plan_priority: Priority


def clean_fact_text(text: str) -> str:
    stripped = _LEADING_KEY.sub("", text.strip())
    stripped = _LEADING_BULLET.sub("", stripped)
    return re.sub(r"\s+", " ", stripped).strip(" ,;")


def fold_text(text: str) -> str:
    folded = text.lower()
    folded = re.sub(r"\d{1,2}:\d{2}", "#time", folded)
    folded = re.sub(r"\d+(?:\.\d+)?", "#", folded)
    return re.sub(r"\s+", " ", folded).strip()


def _risk_code(score: PriorityScore, vitals: List[VitalSign]) -> Optional[str]:
    if score.codes:
        return score.codes[0]
    for vital in vitals:
        if is_unstable(vital):
            return _UNSTABLE_VITAL_CODES.get(vital.name)
    return None


def build_fact(patient_key: str, piece: MaskedPiece, duty_type: DutyType) -> Optional[Fact]:
    text = clean_fact_text(piece.text)
    if not text:
        return None
    vitals = extract_vitals(piece.expanded)
    score = score_priority(piece.expanded, duty_type, vitals)
    topic = lexicon.classify_topic(piece.expanded)
    due = resolve_due(piece.expanded)
    is_task = bool(lexicon.TASK_CUE.search(piece.expanded)) or (
        bool(lexicon.TASK_PENDING.search(piece.expanded)) and due != Due.UNSPECIFIED
    )
    return Fact(
        patient_key=patient_key,
        segment_id=piece.segment_id,
        order=piece.order,
        text=text,
        topic=topic,
        priority=score,
        weighted=min(lexicon.MAX_SCORE, score.score + lexicon.topic_weight(topic, duty_type)),
        vitals=vitals,
        due=due,
        is_task=is_task,
        risk_code=_risk_code(score, vitals),
        plan_priority=plan_priority(score, piece.expanded, due),
    )


def _dedupe_folded(items, text_of=lambda item: item.text):
    seen = set()
    unique = []
    for item in items:
        key = fold_text(text_of(item))
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def _merge_vitals(facts: List[Fact]) -> List[VitalSign]:
    latest: Dict[str, VitalSign] = {}
    for fact in facts:
        for vital in fact.vitals:
            previous = latest.get(vital.name)
            if previous is None or vital.value is not None or previous.value is None:
                latest[vital.name] = vital
    return list(latest.values())


def _summary(patient_key: str, facts: List[Fact]) -> str:
    best: Dict[str, Fact] = {}
    for fact in facts:
        current = best.get(fact.topic)
        if current is None or fact.weighted > current.weighted:
            best[fact.topic] = fact
    top = sorted(best.values(), key=lambda f: (-f.weighted, f.order))[:MAX_SUMMARY_FACTS]
    if not top:
        return f"{patient_key}: no clinical detail captured"
    summary = f"{patient_key}: " + "; ".join(f.text for f in top)
    return summary if len(summary) <= 240 else summary[:237].rstrip() + "..."


def build_patient_card(
    patient_key: str,
    facts: List[Fact],
    alias_token: Optional[str] = None,
    room_token: Optional[str] = None,
) -> PatientCard:
    plan_facts = sorted((f for f in facts if f.is_task), key=lambda f: (_PRIORITY_RANK[f.plan_priority], f.order))
    plan = [
        PlanItem(text=f.text, priority=f.plan_priority, due=f.due, source_segment_id=f.segment_id)
        for f in _dedupe_folded(plan_facts)
    ][:MAX_PLAN_ITEMS]

    risk_facts = sorted((f for f in facts if f.risk_code), key=lambda f: (-f.priority.score, f.order))
    risks = [
        RiskItem(
            text=f.text,
            severity=f.priority.severity,
            code=f.risk_code,
            score=f.priority.score,
            source_segment_id=f.segment_id,
        )
        for f in _dedupe_folded(risk_facts)
    ][:MAX_RISK_ITEMS]

    watch_for: List[str] = []
    for risk in risks:
        hint = _WATCH_FOR.get(risk.code)
        if hint and hint not in watch_for:
            watch_for.append(hint)

    return PatientCard(
        patient_key=patient_key,
        alias_token=alias_token,
        room_token=room_token,
        summary=_summary(patient_key, facts),
        vitals=_merge_vitals(facts),
        plan=plan,
        risks=risks,
        watch_for=watch_for[:MAX_WATCH_FOR],
    )


def build_facts(assignment: PatientAssignment, duty_type: DutyType) -> Dict[str, List[Fact]]:
    facts: Dict[str, List[Fact]] = {}
    for key, pieces in assignment.buckets.items():
        facts[key] = [f for f in (build_fact(key, p, duty_type) for p in pieces) if f is not None]
    return facts


def build_patient_cards(assignment: PatientAssignment, facts: Dict[str, List[Fact]]) -> List[PatientCard]:
    return [
        build_patient_card(
            key,
            facts.get(key, []),
            alias_token=assignment.alias_tokens.get(key),
            room_token=assignment.room_tokens.get(key),
        )
        for key in assignment.buckets
    ]


def _is_global_candidate(fact: Fact) -> bool:
    if fact.risk_code:
        return True
    return fact.is_task and fact.plan_priority in (Priority.P0, Priority.P1)


def _badge(fact: Fact) -> str:
    if fact.is_task and fact.plan_priority == Priority.P0:
        return badge_for(Severity.HIGH)
    return fact.priority.badge


def build_global_top(facts: Dict[str, List[Fact]], duty_type: DutyType) -> List[GlobalTopItem]:
    """Rank the most urgent findings across patients.

    Weight is the severity score plus the topic weight plus a bonus per repeat
    mention of the same topic for the same patient. The bonus is capped so a
    severity cue always outranks repetition. Only the best item per
    ``(patient, topic)`` survives; ties go to the earlier mention.
    """

    best: Dict[tuple, tuple] = {}
    for key, patient_facts in facts.items():
        mentions: Dict[str, int] = {}
        for fact in patient_facts:
            mentions[fact.topic] = mentions.get(fact.topic, 0) + 1
        for fact in patient_facts:
            if not _is_global_candidate(fact):
                continue
            frequency = min(mentions[fact.topic], MAX_COUNTED_MENTIONS)
            weight = (
                fact.priority.score
                + lexicon.topic_weight(fact.topic, duty_type)
                + FREQUENCY_STEP * (frequency - 1)
            )
            slot = (key, fact.topic)
            current = best.get(slot)
            if current is None or weight > current[0]:
                best[slot] = (weight, fact)

    ranked = sorted(best.values(), key=lambda item: (-item[0], item[1].order))
    return [
        GlobalTopItem(text=fact.text, patient_key=fact.patient_key, weight=weight, badge=_badge(fact))
        for weight, fact in ranked[:GLOBAL_TOP_SIZE]
    ]
