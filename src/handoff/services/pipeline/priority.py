from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Tuple

from src.handoff.domain.models.handoff import Due, DutyType, Priority, Severity, VitalSign
from src.handoff.services.pipeline import lexicon

_BADGES = {
    Severity.HIGH: "immediate",
    Severity.MEDIUM: "priority",
    Severity.LOW: "monitor",
}

_TREND_DOWN = re.compile(r"\b(drop\w*|down|decreas\w*|declin\w*|falling|fell|low\w*|reduc\w*)\b", re.I)
_TREND_UP = re.compile(r"\b(rising|rose|up|increas\w*|elevat\w*|climb\w*|spik\w*)\b", re.I)

_VITAL_PATTERNS: List[Tuple[str, Pattern[str], Optional[str]]] = [
    ("BP", re.compile(r"blood pressure\D{0,20}?(\d{2,3}\s*/\s*\d{2,3})", re.I), "mmHg"),
    ("HR", re.compile(r"heart rate\D{0,15}?(\d{2,3})\b", re.I), "bpm"),
    ("RR", re.compile(r"respiratory rate\D{0,15}?(\d{1,2})\b", re.I), "/min"),
    ("SpO2", re.compile(r"oxygen saturation\D{0,15}?(\d{2,3})\b", re.I), "%"),
    ("Temp", re.compile(r"(?:temperature|febrile to|fever of)\D{0,12}?(\d{2,3}(?:\.\d)?)", re.I), None),
    ("Glucose", re.compile(r"glucose\D{0,15}?(\d{2,3})\b", re.I), "mg/dL"),
    ("UrineOutput", re.compile(r"urine output(?:\D{0,15}?(\d{1,4})\s*(?:ml|cc)\b)?", re.I), "mL"),
]


@dataclass
class PriorityScore:
    score: int
    severity: Severity
    badge: str
    codes: List[str] = field(default_factory=list)
    urgent: bool = False
    unstable: bool = False


def severity_from_score(score: int) -> Severity:
    if score >= lexicon.HIGH_THRESHOLD:
        return Severity.HIGH
    if score >= lexicon.MEDIUM_THRESHOLD:
        return Severity.MEDIUM
    return Severity.LOW


def badge_for(severity: Severity) -> str:
    return _BADGES[severity]


def _trend(window: str) -> Optional[str]:
    if _TREND_DOWN.search(window):
        return "down"
    if _TREND_UP.search(window):
        return "up"
    return None


def extract_vitals(expanded: str) -> List[VitalSign]:
    """Pull the first reading of each vital sign out of expanded text."""

    vitals: List[VitalSign] = []
    for name, pattern, unit in _VITAL_PATTERNS:
        match = pattern.search(expanded)
        if not match:
            continue
        value = match.group(1)
        window = expanded[match.start() : match.end() + 30]
        trend = _trend(window)
        if value is None and trend is None:
            continue
        if value is not None:
            value = re.sub(r"\s+", "", value)
        vital_unit = unit
        if name == "Temp" and value is not None:
            vital_unit = "F" if float(value) > 45 else "C"
        vitals.append(VitalSign(name=name, value=value, unit=vital_unit if value else None, trend=trend))
    return vitals


def is_unstable(vital: VitalSign) -> bool:
    if vital.value is None:
        return False
    try:
        if vital.name == "BP":
            systolic = int(vital.value.split("/", 1)[0])
            return systolic <= 90 or systolic >= 180
        number = float(vital.value)
    except ValueError:
        return False
    if vital.name == "HR":
        return number > 120 or number < 50
    if vital.name == "RR":
        return number > 24 or number < 10
    if vital.name == "SpO2":
        return number < 92
    if vital.name == "Temp":
        if vital.unit == "F":
            return number >= 101.3 or number < 95.9
        return number >= 38.5 or number < 35.5
    if vital.name == "Glucose":
        return number < 70 or number > 250
    if vital.name == "UrineOutput":
        return number < 30
    return False


def _rank(score: int, duty_type: DutyType) -> int:
    night = lexicon.NIGHT_BONUS if duty_type == DutyType.NIGHT else 0
    return min(lexicon.MAX_SCORE, score + night)


def evaluate_risks(expanded: str, duty_type: DutyType, unstable: bool = False) -> List[Tuple[lexicon.RiskRule, int]]:
    """Matched risk rules with their scores, best first."""

    bonus = lexicon.URGENCY_BONUS if (unstable or lexicon.URGENCY_CUE.search(expanded)) else 0
    matched: List[Tuple[lexicon.RiskRule, int]] = []
    seen_codes = set()
    for rule in lexicon.RISK_RULES:
        if rule.code in seen_codes or not rule.pattern.search(expanded):
            continue
        seen_codes.add(rule.code)
        matched.append((rule, _rank(rule.weight + bonus, duty_type)))
    matched.sort(key=lambda item: -item[1])
    return matched


def score_priority(expanded: str, duty_type: DutyType, vitals: Optional[List[VitalSign]] = None) -> PriorityScore:
    unstable = any(is_unstable(v) for v in (vitals or []))
    urgent = bool(lexicon.URGENCY_CUE.search(expanded))
    risks = evaluate_risks(expanded, duty_type, unstable=unstable)
    if risks:
        score = risks[0][1]
    else:
        score = _rank(lexicon.DEFAULT_SCORE + (lexicon.DEFAULT_URGENCY_BONUS if urgent else 0), duty_type)
    severity = severity_from_score(score)
    return PriorityScore(
        score=score,
        severity=severity,
        badge=badge_for(severity),
        codes=[rule.code for rule, _ in risks],
        urgent=urgent,
        unstable=unstable,
    )


def resolve_due(text: str) -> Due:
    if lexicon.DUE_NOW.search(text):
        return Due.NOW
    if lexicon.CLOCK_TIME.search(text) or lexicon.DUE_WITHIN_HOUR.search(text):
        return Due.WITHIN_1H
    if lexicon.DUE_NEXT_SHIFT.search(text):
        return Due.NEXT_SHIFT
    if lexicon.DUE_TODAY.search(text):
        return Due.TODAY
    return Due.UNSPECIFIED


def plan_priority(score: PriorityScore, expanded: str, due: Due) -> Priority:
    if score.unstable or score.urgent or score.score >= lexicon.HIGH_THRESHOLD:
        return Priority.P0
    if score.score >= lexicon.MEDIUM_THRESHOLD:
        return Priority.P1
    if lexicon.RECHECK_CUE.search(expanded) and due != Due.UNSPECIFIED:
        return Priority.P1
    return Priority.P2
