"""Clinical vocabulary and cue patterns shared by the extraction stages.

Everything here is data: abbreviation expansions, the weighted risk table,
topic weights, and the regular expressions used to recognise patients, tasks,
time cues and ward announcements. Stages import from this module only, so the
rule tables can be tuned in one place.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Pattern, Tuple

from src.handoff.domain.models.handoff import DutyType, WardEventCategory

# ---------------------------------------------------------------------------
# Abbreviations
# ---------------------------------------------------------------------------

# Expansions applied to masked text before rule matching. Display text keeps
# the nurse's own wording; only the matching copy is expanded.
ABBREVIATION_RULES: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\bV/?S\b", re.I), "vital signs"),
    (re.compile(r"\bBST\b", re.I), "blood glucose"),
    (re.compile(r"\bBGL?\b"), "blood glucose"),
    (re.compile(r"\bSpO\s*2?\b|\bSaO2\b|\bsats?\b", re.I), "oxygen saturation"),
    (re.compile(r"\bBP\b", re.I), "blood pressure"),
    (re.compile(r"\bHR\b", re.I), "heart rate"),
    (re.compile(r"\bRR\b", re.I), "respiratory rate"),
    (re.compile(r"\bPCA\b", re.I), "patient-controlled analgesia"),
    (re.compile(r"\bABx\b", re.I), "antibiotics"),
    (re.compile(r"\bPRN\b", re.I), "as needed"),
    (re.compile(r"\bU/?O\b"), "urine output"),
    (re.compile(r"\bNPO\b", re.I), "nothing by mouth"),
    (re.compile(r"\bIV\b", re.I), "intravenous"),
    (re.compile(r"\bPO\b"), "by mouth"),
    (re.compile(r"\bRA\b"), "room air"),
    (re.compile(r"\bHb\b|\bHgb\b", re.I), "hemoglobin"),
    (re.compile(r"\bI\s*/\s*O\b|\bI&O\b", re.I), "intake and output"),
    (re.compile(r"\bLabs?\b", re.I), "laboratory tests"),
    (re.compile(r"\bCBC\b", re.I), "complete blood count"),
    (re.compile(r"\bCRP\b", re.I), "C-reactive protein"),
    (re.compile(r"\bNRS\b", re.I), "pain score"),
    (re.compile(r"\bDM\b"), "diabetes"),
    (re.compile(r"\bPOD\s*#?\s*(\d+)", re.I), r"postoperative day \1"),
    (re.compile(r"\bq\s*(\d{1,2})\s*h\b", re.I), r"every \1 hours"),
    (re.compile(r"\bBID\b", re.I), "twice daily"),
    (re.compile(r"\bTID\b", re.I), "three times daily"),
    (re.compile(r"\bQID\b", re.I), "four times daily"),
    (re.compile(r"\bQD\b", re.I), "daily"),
    (re.compile(r"\bK\+?(?=\s*\d)"), "potassium"),
    (re.compile(r"\bNa\+?(?=\s*\d)"), "sodium"),
    (re.compile(r"\bT(?:emp)?\.?(?=\s*\d{2}(?:\.\d)?\b)", re.I), "temperature"),
]

# Abbreviations the pipeline understands even if it does not expand them.
KNOWN_ABBREVIATIONS = frozenset(
    {
        "V", "VS", "V/S", "BST", "BG", "BGL", "SPO", "SPO2", "SAO2", "BP", "HR", "RR",
        "PCA", "ABX", "PRN", "UO", "U/O", "NPO", "IV", "PO", "RA", "HB", "HGB", "IO",
        "I/O", "LAB", "LABS", "CBC", "CRP", "MRI", "CT", "CXR", "ABG", "ABGA", "ECG",
        "EKG", "K", "NA", "KCL", "DM", "POD", "NRS", "Q2H", "Q4H", "Q6H", "Q8H",
        "Q12H", "QD", "BID", "TID", "QID", "ICU", "ER", "ED", "OR", "PACU", "NG",
        "NGT", "ETT", "CVC", "PICC", "WBC", "INR", "PTT", "APTT", "BUN", "CR", "GCS",
        "LOC", "DNR", "SOB", "CPR", "MAP", "AF", "VF", "VT", "DVT", "PE", "UTI",
        "CHF", "COPD", "CKD", "HTN", "CVA", "MI", "MD", "RN", "SC", "IM", "SL",
        "TPN", "PT", "OT", "HD", "PRBC", "FFP", "EGFR", "MG", "ML", "MMHG", "BPM",
        "AM", "PM", "OK", "STAT", "ASAP", "TBD", "BMP", "CMP", "LFT", "HBA1C",
    }
)

# Words that look like abbreviations when shouted but are plain English.
SAFE_WORDS = frozenset(
    {
        "vital", "signs", "stable", "blood", "pressure", "hypotension", "fluid", "bolus",
        "mental", "status", "orientation", "pain", "score", "analgesic", "respiratory",
        "sputum", "yellowish", "intake", "output", "urine", "monitoring", "laboratory",
        "test", "tests", "antibiotics", "first", "dose", "fall", "risk", "bed", "alarm",
        "ambulation", "assist", "check", "alert", "patient", "room", "note", "no", "ok",
    }
)

ABBREVIATION_TOKEN = re.compile(r"\b[A-Za-z][A-Za-z0-9/]{1,10}\b")
# "ICP (intracranial pressure)" resolves ICP for the rest of the session.
INLINE_DEFINITION = re.compile(r"\b([A-Za-z][A-Za-z0-9/]{1,10})\s*\(([A-Za-z][^)]{2,60})\)")

# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

ROOM_PATTERN = re.compile(r"\b(?:room|rm\.?)\s*#?\s*(\d{2,4}[A-Za-z]?)\b", re.I)
BED_PATTERN = re.compile(r"\bbed\s*#?\s*(\d{1,3}[A-Za-z]?)\b", re.I)
HANGUL_ROOM_PATTERN = re.compile(r"(\d{3,4})\s*호")
MASKED_NAME_PATTERN = re.compile(r"\b([A-Z][a-z]{1,15})\s+(?:OO|00|○○)\b")
HANGUL_MASKED_NAME_PATTERN = re.compile(r"[가-힣]{1,3}[O○0]{2}")
HONORIFIC_NAME_PATTERN = re.compile(r"\b(Mr|Mrs|Ms|Miss|Mx)\.?\s+([A-Z][a-z]+(?:[-'][A-Z][a-z]+)?)\b")

PHONE_PATTERN = re.compile(r"\b(?:\+?\d{1,2}[-. ])?\(?\d{3}\)?[-. ]\d{3,4}[-. ]\d{4}\b")
MRN_PATTERN = re.compile(r"\b(?:MRN|chart(?:\s*(?:no|number))?|record\s*(?:no|number))\s*[:#]?\s*\d{5,}\b", re.I)
EMAIL_PATTERN = re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")

REDACTED = "[REDACTED]"

# ---------------------------------------------------------------------------
# Segment cues
# ---------------------------------------------------------------------------

TRANSITION_CUE = re.compile(
    r"\b(next patient|next up|next is|moving on|another patient|other patient|new patient|"
    r"new admission|meanwhile|on the other hand|switching to)\b",
    re.I,
)
PRONOUN_REFERENCE = re.compile(r"\b(same patient|this patient|that patient|the patient|he|she|his|her|him)\b", re.I)
CONTINUATION_HINT = re.compile(
    r"(glucose|blood pressure|heart rate|respirat|oxygen|saturation|order|medicat|antibiotic|laboratory|"
    r"pain|urine|vital|temperature|fever|call|monitor|check|recheck|repeat|level|intake and output|"
    r"dressing|wound|fall|bed alarm|ambulat|insulin|fluid|bolus|cannula|complete blood count|"
    r"C-reactive protein|hemoglobin|potassium|sodium|drain|foley)",
    re.I,
)

WARD_RULES: List[Tuple[WardEventCategory, Pattern[str]]] = [
    (WardEventCategory.DISCHARGE, re.compile(r"\bdischarg", re.I)),
    (WardEventCategory.ADMISSION, re.compile(r"\b(admission|admissions|admit|admits|admitted|admitting)\b", re.I)),
    (WardEventCategory.ROUND, re.compile(r"\brounds?\b", re.I)),
    (WardEventCategory.EQUIPMENT, re.compile(r"\b(equipment|pumps?|machines?|devices?|suction|supply|supplies)\b", re.I)),
    (WardEventCategory.COMPLAINT, re.compile(r"\b(complain\w*|grievance)\b", re.I)),
]
WARD_CONTEXT = re.compile(
    r"(\b\d+\s*(patients?|beds?)\b|\b(two|three|four|five)\s+(patients?|beds?|discharges|admissions)\b|"
    r"\b(available|scheduled|expected|planned|tomorrow|today|ward|unit|floor|new|team|charge nurse|pharmacy)\b)",
    re.I,
)

URGENCY_CUE = re.compile(
    r"\b(immediately|right away|emergen\w*|urgent\w*|stat|asap|shortness of breath|short of breath|"
    r"unresponsive|decreased consciousness|rapid response|code blue)\b",
    re.I,
)

TASK_CUE = re.compile(
    r"\b(recheck|re-check|repeat|order|ordered|orders|check|call|notify|monitor|monitoring|give|"
    r"administer|draw|follow[- ]up|reassess|titrate|report|dressing|page)\b",
    re.I,
)
RECHECK_CUE = re.compile(r"\b(recheck|re-check|repeat|reassess|check|draw|follow[- ]up)\b", re.I)
STRONG_TASK_CUE = re.compile(r"\b(recheck|re-check|repeat|check|call|notify|follow[- ]up|report|monitor)\b", re.I)

CLOCK_TIME = re.compile(r"\b(?:[01]?\d|2[0-3]):[0-5]\d\b|\b(?:1[0-2]|0?[1-9])\s*(?:am|pm)\b", re.I)
DUE_NOW = re.compile(r"\b(now|stat|immediately|right away|asap)\b", re.I)
DUE_WITHIN_HOUR = re.compile(
    r"\b(in\s+\d{1,2}\s*(?:min|mins|minutes)|in\s+(?:an|one|1)\s+hour|within\s+(?:the|an|one|1)\s+hour)\b",
    re.I,
)
DUE_NEXT_SHIFT = re.compile(
    r"\b(next shift|tomorrow|overnight|morning team|day team|night team|oncoming( shift| nurse)?)\b",
    re.I,
)
DUE_TODAY = re.compile(
    r"\b(today|this afternoon|this evening|this morning|tonight|by evening|before end of shift|end of shift)\b",
    re.I,
)
RECURRING_TIME = re.compile(r"\b(every\s+\d{1,2}\s+hours|q\s*\d{1,2}\s*h|twice daily|daily)\b", re.I)

LAB_PENDING = re.compile(
    r"(results?\s+pending|pending\s+results?|awaiting\s+results?|results?\s+to\s+follow|sent,?\s+results?|"
    r"follow\s*up\s+(?:on\s+)?(?:the\s+)?results?|\bpending\b)",
    re.I,
)
ROUTINE_OBSERVATION = re.compile(r"\b(monitor|monitoring|observe|observation|continue|maintain|maintained|keep)\b", re.I)
ACTIVE_TASK = re.compile(r"\b(recheck|re-check|repeat|again|order|give|call|notify|draw|dressing|report)\b", re.I)
TASK_COMPLETED = re.compile(r"\b(done|completed|given|finished|administered|started|drawn|sent)\b", re.I)
TASK_STILL_OPEN = re.compile(r"\b(again|recheck|re-check|repeat|additional|needed|need|needs)\b", re.I)
TASK_PENDING = re.compile(r"\b(needed|need|needs|due|scheduled|planned|please|to be|again|before|after|later)\b", re.I)

VALUE_TOPIC = re.compile(
    r"\b(glucose|hemoglobin|temperature|urine output|vital signs|blood pressure|heart rate|respiratory rate|"
    r"oxygen saturation|potassium|sodium|intake and output|C-reactive protein)\b",
    re.I,
)
VALUE_PRESENT = re.compile(
    r"((glucose|hemoglobin|temperature|urine output|vital signs|blood pressure|heart rate|respiratory rate|"
    r"oxygen saturation|potassium|sodium)[^.!?\n]{0,20}?\d+(?:\.\d+)?|\d+(?:\.\d+)?\s*(mg|ml|cc|l|mmhg|bpm|%))",
    re.I,
)
VALUE_QUALITATIVE = re.compile(
    r"\b(normal|stable|within normal limits|wnl|unchanged|improv\w*|no change|negative|positive|low|high|"
    r"trending|balanced|decreas\w*|increas\w*|elevated|adequate|good|clear|dropp\w*|rising|falling)\b",
    re.I,
)
MANUAL_REVIEW_CUE = re.compile(
    r"\b(not sure|unsure|unclear|tbd|to be confirmed|unknown|don't remember|do not remember|can't recall|"
    r"cannot recall|please confirm|double[- ]check|verify with)\b",
    re.I,
)

# ---------------------------------------------------------------------------
# Risk rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskRule:
    code: str
    weight: int
    pattern: Pattern[str]
    watch_for: str


RISK_RULES: List[RiskRule] = [
    RiskRule(
        "AIRWAY", 40,
        re.compile(r"(airway|intubat|\bETT\b|endotracheal|stridor|aspirat|suctioning)", re.I),
        "Airway patency and tube position",
    ),
    RiskRule(
        "BREATHING", 40,
        re.compile(
            r"(shortness of breath|short of breath|dyspnea|desaturat|hypoxi|oxygen saturation|ventilator|"
            r"respiratory rate|respiratory distress|work of breathing)",
            re.I,
        ),
        "Respiratory rate and oxygen saturation",
    ),
    RiskRule(
        "CIRCULATION", 40,
        re.compile(
            r"(hypotensi|\bshock\b|\bMAP\b|blood pressure\D{0,20}\d{2,3}\s*/\s*\d{2,3}|circulat|pressor)",
            re.I,
        ),
        "Blood pressure and perfusion",
    ),
    RiskRule(
        "IO_DECREASE", 36,
        re.compile(r"(urine output|intake and output|oliguri|anuri|low urine)", re.I),
        "Urine output and intake/output trend",
    ),
    RiskRule(
        "BLEEDING", 30,
        re.compile(r"(bleed|melena|hematemesis|hematochezia|bruis|coagul|\bPTT\b|\bINR\b|heparin|anticoagul)", re.I),
        "Bleeding signs and coagulation results",
    ),
    RiskRule(
        "SEPSIS", 25,
        re.compile(r"(fever|febrile|chills|rigors|\bseps|septic|infect|central line|C-reactive protein|\bWBC\b|lactate)", re.I),
        "Temperature and infection markers",
    ),
    RiskRule(
        "ARRHYTHMIA", 25,
        re.compile(r"(arrhythm|\bA-?fib\b|\bAF\b|\bVF\b|\bVT\b|bradycard|tachycard|palpitation)", re.I),
        "Cardiac rhythm on monitor",
    ),
    RiskRule(
        "HIGH_ALERT_MED", 20,
        re.compile(
            r"(vasopressor|norepinephrine|levophed|insulin|heparin|opioid|morphine|hydromorphone|fentanyl|"
            r"potassium chloride|\bKCl\b|sedat|propofol|patient-controlled analgesia)",
            re.I,
        ),
        "High-alert medication rate and route",
    ),
    RiskRule(
        "DEVICE_FAILURE", 15,
        re.compile(
            r"(occlusion|occluded|pump (?:failure|error|alarm)|device (?:error|failure|malfunction)|"
            r"vent(?:ilator)? alarm|high pressure alarm)",
            re.I,
        ),
        "Device alarms and line connections",
    ),
    RiskRule(
        "NEURO_CHANGE", 20,
        re.compile(
            r"(confus|delirium|altered mental|decreased (?:level of )?consciousness|\bGCS\b|neuro (?:check|change)|"
            r"disorient|pupil|letharg|drows)",
            re.I,
        ),
        "Level of consciousness",
    ),
    RiskRule(
        "ALLERGY_REACTION", 20,
        re.compile(r"(allerg|hives|urticaria|anaphyla)", re.I),
        "Reaction after exposure",
    ),
    RiskRule(
        "TRANSFUSION_REACTION", 20,
        re.compile(r"(transfus|blood product|\bPRBC\b)", re.I),
        "Transfusion reaction signs",
    ),
    RiskRule(
        "ELECTROLYTE_CRITICAL", 15,
        re.compile(r"(potassium|sodium|hyperkal|hypokal|hyponat|hypernat|electrolyte|magnesium)", re.I),
        "Electrolyte results",
    ),
    RiskRule(
        "GLUCOSE_CRITICAL", 15,
        re.compile(r"(hypoglyc|hyperglyc|glucose\D{0,12}\d{2,3}|insulin sliding|sliding scale)", re.I),
        "Blood glucose on recheck",
    ),
    RiskRule(
        "FALL_RISK", 12,
        re.compile(r"(fall risk|fall precaution|\bfall\b|unsteady|gait|bed alarm|needs assist|assist needed)", re.I),
        "Fall precautions and bed alarm",
    ),
    RiskRule(
        "PRESSURE_INJURY", 10,
        re.compile(r"(pressure injur|pressure ulcer|bedsore|reposition|turn(?:ing)? every|skin breakdown)", re.I),
        "Skin checks and repositioning",
    ),
]

URGENCY_BONUS = 20
NIGHT_BONUS = 4
DEFAULT_SCORE = 12
DEFAULT_URGENCY_BONUS = 8
MAX_SCORE = 100
HIGH_THRESHOLD = 70
MEDIUM_THRESHOLD = 40

# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------

TOPIC_RULES: List[Tuple[str, Pattern[str]]] = [
    ("respiratory", re.compile(r"(respirat|oxygen|hypoxi|shortness of breath|dyspnea|nasal cannula|breath)", re.I)),
    ("hemodynamic", re.compile(r"(blood pressure|shock|heart rate|pulse|hypotens|hypertens|tachycard|bradycard|circulat)", re.I)),
    ("glycemic", re.compile(r"(glucose|hypoglyc|hyperglyc|insulin|sliding scale)", re.I)),
    ("infection", re.compile(r"(infect|antibiotic|fever|febrile|temperature|seps|C-reactive protein|\bWBC\b)", re.I)),
    ("io", re.compile(r"(urine output|intake and output|\bvoid|foley|oliguri)", re.I)),
    ("medication", re.compile(r"(medicat|\bdose|order|as needed|patient-controlled analgesia|anticoag|warfarin|apixaban|heparin)", re.I)),
    ("lab", re.compile(r"(laboratory|complete blood count|hemoglobin|\blevel|result|redraw|\bdraw)", re.I)),
    ("neuro", re.compile(r"(conscious|confus|delirium|neuro|orient|dizz)", re.I)),
    ("fall", re.compile(r"(\bfall|gait|ambulat|assist|bed alarm)", re.I)),
]

TOPIC_WEIGHTS: Dict[str, int] = {
    "respiratory": 9,
    "hemodynamic": 8,
    "glycemic": 7,
    "infection": 6,
    "io": 5,
    "medication": 5,
    "lab": 4,
    "neuro": 6,
    "fall": 4,
    "general": 2,
}

_NIGHT_TOPIC_BONUS: Dict[str, int] = {
    "respiratory": 4,
    "hemodynamic": 4,
    "glycemic": 2,
    "io": 2,
    "neuro": 2,
}


def classify_topic(text: str) -> str:
    for topic, pattern in TOPIC_RULES:
        if pattern.search(text):
            return topic
    return "general"


def topic_weight(topic: str, duty_type: DutyType) -> int:
    base = TOPIC_WEIGHTS.get(topic, TOPIC_WEIGHTS["general"])
    if duty_type == DutyType.NIGHT:
        return base + _NIGHT_TOPIC_BONUS.get(topic, 0)
    return base
