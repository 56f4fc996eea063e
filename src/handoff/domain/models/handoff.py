from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DutyType(str, Enum):
    DAY = "day"
    EVENING = "evening"
    NIGHT = "night"


class Priority(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"


class Due(str, Enum):
    NOW = "now"
    WITHIN_1H = "within_1h"
    TODAY = "today"
    NEXT_SHIFT = "next_shift"
    UNSPECIFIED = "unspecified"


CONCRETE_DUES = frozenset({Due.NOW, Due.WITHIN_1H, Due.TODAY, Due.NEXT_SHIFT})


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class UncertaintyKind(str, Enum):
    UNRESOLVED_ABBREVIATION = "unresolved_abbreviation"
    AMBIGUOUS_REFERENCE = "ambiguous_reference"
    LOW_CONFIDENCE_VALUE = "low_confidence_value"
    MISSING_TIME = "missing_time"
    MISSING_VALUE = "missing_value"
    PARSE_FAILURE = "parse_failure"
    MANUAL_REVIEW = "manual_review"


class WardEventCategory(str, Enum):
    DISCHARGE = "discharge"
    ADMISSION = "admission"
    ROUND = "round"
    EQUIPMENT = "equipment"
    COMPLAINT = "complaint"


class RawSegment(BaseModel):
    """A bounded, time-stamped chunk of transcript text.

    Frozen: once the segmenter produces a segment nothing downstream may
    rewrite it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    raw_text: str
    start_ms: int = Field(ge=0)
    end_ms: int = Field(ge=0)


class VitalSign(BaseModel):
    name: str  # BP, HR, RR, SpO2, Temp, Glucose, UrineOutput
    # None when only a trend was reported ("urine output trending down").
    value: Optional[str] = None
    unit: Optional[str] = None
    trend: Optional[str] = None  # "up", "down" or None


class PlanItem(BaseModel):
    text: str
    priority: Priority = Priority.P2
    due: Due = Due.UNSPECIFIED
    source_segment_id: Optional[str] = None


class RiskItem(BaseModel):
    text: str
    severity: Severity
    code: str
    score: int = 0
    source_segment_id: Optional[str] = None


class PatientCard(BaseModel):
    """Structured per-patient record.

    ``patient_key`` is the de-identified handle used everywhere downstream.
    ``alias_token`` and ``room_token`` are the only identifying fields.
    """

    patient_key: str
    alias_token: Optional[str] = None
    room_token: Optional[str] = None
    summary: str = ""
    vitals: List[VitalSign] = Field(default_factory=list)
    plan: List[PlanItem] = Field(default_factory=list)
    risks: List[RiskItem] = Field(default_factory=list)
    questions: List[str] = Field(default_factory=list)
    watch_for: List[str] = Field(default_factory=list)


class UncertaintyItem(BaseModel):
    kind: UncertaintyKind
    text: str
    source_segment_id: Optional[str] = None
    reason: Optional[str] = None
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None


class GlobalTopItem(BaseModel):
    text: str
    patient_key: str
    weight: int
    badge: str = "monitor"


class WardEvent(BaseModel):
    category: WardEventCategory
    text: str
    source_segment_id: str


class PipelineResult(BaseModel):
    session_id: str
    duty_type: DutyType
    patients: List[PatientCard] = Field(default_factory=list)
    global_top: List[GlobalTopItem] = Field(default_factory=list)
    uncertainty_items: List[UncertaintyItem] = Field(default_factory=list)
    ward_events: List[WardEvent] = Field(default_factory=list)
    # True once a refinement stage has been merged into the result.
    refined: bool = False


# Same shape as PipelineResult; kept as a distinct name at the refinement
# boundary so signatures say which side of enrichment a value is on.
EnrichedResult = PipelineResult


class ManualUncertainty(BaseModel):
    """Reviewer-entered uncertainty attached to a pipeline run."""

    kind: UncertaintyKind = UncertaintyKind.MANUAL_REVIEW
    text: str
    reason: Optional[str] = None
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
