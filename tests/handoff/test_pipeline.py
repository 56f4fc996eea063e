import re

from src.handoff.domain.models.handoff import (
    CONCRETE_DUES,
    DutyType,
    ManualUncertainty,
    Priority,
    RawSegment,
    UncertaintyKind,
    WardEventCategory,
)
from src.handoff.services.pipeline.patients import patient_key_for_index
from src.handoff.services.pipeline.service import pipeline_service, uncertainty_cap
from src.handoff.services.privacy.deid import residual_identifiers
from src.handoff.services.segmentation.service import segment


def _run(transcript: str, duty_type: DutyType = DutyType.DAY, **kwargs):
    return pipeline_service.run("session-1", duty_type, segment(transcript), **kwargs)


def _kinds(result):
    return [item.kind for item in result.uncertainty_items]


def test_single_patient_handoff_has_few_uncertainties():
    transcript = "\n".join(
        [
            "Room 701 Mr. Kim handoff.",
            "Vital signs stable today, BP dropped to 90/60, fluid bolus given.",
            "SpO2 96% on nasal cannula 2L, I/O balanced.",
            "CBC and CRP sent, results pending. Fall risk, bed alarm on.",
        ]
    )

    result = _run(transcript)

    assert [p.patient_key for p in result.patients] == ["PATIENT_A"]
    card = result.patients[0]
    assert card.room_token == "Room 701"
    assert card.alias_token == "Mr. Kim"
    assert card.summary.startswith("PATIENT_A")
    assert len(result.uncertainty_items) <= 4
    assert UncertaintyKind.UNRESOLVED_ABBREVIATION not in _kinds(result)
    assert {v.name for v in card.vitals} >= {"BP", "SpO2"}


def test_inline_multi_patient_narration_is_split():
    transcript = (
        "Room 701 Choi OO BP 90/60 fluid bolus given, room 703 Park OO glucose 280 recheck at 02:00, "
        "room 701 Choi OO oxygen 2L maintained."
    )

    result = _run(transcript)

    keys = [p.patient_key for p in result.patients]
    assert keys == ["PATIENT_A", "PATIENT_B"]
    first, second = result.patients
    assert first.room_token == "Room 701"
    assert second.room_token == "Room 703"
    assert any("glucose" in item.text for item in second.plan)
    assert not any("glucose" in item.text for item in first.plan)


def test_long_multi_room_transcript_stays_bounded():
    transcript = ". ".join(f"Room {701 + i % 4} BP {88 + i % 10}/60 fluid bolus given" for i in range(180))

    result = _run(transcript)

    assert len(result.patients) >= 3
    assert result.global_top
    assert len(result.global_top) <= 5
    assert len(result.uncertainty_items) <= 24
    for card in result.patients:
        assert len(card.plan) <= 4
        assert len(card.risks) <= 4


def test_global_top_covers_glucose_and_urine_output():
    transcript = (
        "Room 703 Park OO glucose 280, recheck ordered for 02:00. "
        "Room 708 Jung OO urine output trending down, I/O monitoring."
    )

    result = _run(transcript, DutyType.NIGHT)

    texts = [item.text for item in result.global_top]
    assert any(re.search(r"glucose|recheck", t, re.I) for t in texts)
    assert any(re.search(r"urine output|I/O", t, re.I) for t in texts)
    top_keys = {item.patient_key for item in result.global_top}
    assert top_keys == {"PATIENT_A", "PATIENT_B"}


def test_urgent_plan_items_carry_a_due():
    result = _run("Room 703 Park OO glucose 280, recheck ordered for 02:00.")

    plan = result.patients[0].plan
    assert plan[0].priority == Priority.P0
    assert plan[0].due in CONCRETE_DUES
    assert plan[0].source_segment_id == "seg-001"


def test_uncertainties_are_capped_by_segment_count():
    transcript = "\n".join(f"Room 701 Kim OO ZQX{i} noted" for i in range(10))

    result = _run(transcript)

    assert uncertainty_cap(10) == 4
    assert len(result.uncertainty_items) == 4
    assert set(_kinds(result)) == {UncertaintyKind.UNRESOLVED_ABBREVIATION}


def test_inline_definition_resolves_abbreviation():
    transcript = "Room 701 Kim OO ICP (intracranial pressure) stable.\nRoom 701 Kim OO ICP unchanged."

    result = _run(transcript)

    assert UncertaintyKind.UNRESOLVED_ABBREVIATION not in _kinds(result)


def test_unbound_pronoun_becomes_ambiguous_reference():
    transcript = "\n".join(
        [
            "Room 701 Kim OO stable.",
            "Next patient.",
            "She needs a glucose check.",
            "Room 702 Lee OO BP 120/80.",
        ]
    )

    result = _run(transcript)

    ambiguous = [i for i in result.uncertainty_items if i.kind == UncertaintyKind.AMBIGUOUS_REFERENCE]
    assert [i.source_segment_id for i in ambiguous] == ["seg-003"]
    assert ambiguous[0].reason.startswith("Pronoun reference")


def test_ward_announcements_stay_out_of_patient_cards():
    transcript = "Room 701 Kim OO BP 90/60, fluid bolus given.\nTwo discharges scheduled for tomorrow on the ward."

    result = _run(transcript)

    assert len(result.patients) == 1
    assert [e.category for e in result.ward_events] == [WardEventCategory.DISCHARGE]


def test_unanchored_content_falls_back_to_first_patient():
    result = _run("Blood pressure 150/90, recheck in 30 minutes.")

    assert [p.patient_key for p in result.patients] == ["PATIENT_A"]
    assert result.patients[0].room_token is None


def test_empty_input_reports_parse_failure():
    result = pipeline_service.run("empty", DutyType.DAY, [])

    assert result.patients == []
    assert _kinds(result) == [UncertaintyKind.PARSE_FAILURE]


def test_blank_segments_report_parse_failure():
    segments = [RawSegment(id="seg-001", raw_text="   ", start_ms=0, end_ms=5000)]

    result = pipeline_service.run("blank", DutyType.DAY, segments)

    assert _kinds(result) == [UncertaintyKind.PARSE_FAILURE]


def test_low_confidence_segments_are_flagged():
    segments = segment("Room 701 Kim OO glucose 180.")

    result = pipeline_service.run("asr", DutyType.DAY, segments, confidence={"seg-001": 0.3})

    assert UncertaintyKind.LOW_CONFIDENCE_VALUE in _kinds(result)


def test_manual_uncertainties_are_clamped_and_kept():
    manual = [ManualUncertainty(text="Confirm allergy list", start_ms=-50)]

    result = _run("Room 701 Kim OO stable.", manual_uncertainties=manual)

    item = result.uncertainty_items[-1]
    assert item.kind == UncertaintyKind.MANUAL_REVIEW
    assert item.source_segment_id == "manual-1"
    assert item.start_ms == 0
    assert item.end_ms - item.start_ms >= 250


def test_pipeline_output_has_no_residual_identifiers():
    transcript = (
        "Room 701 Choi OO BP 90/60 fluid bolus given, room 703 Park OO glucose 280 recheck at 02:00. "
        "Call family at 010-1234-5678 about MRN 12345678."
    )

    result = _run(transcript)

    assert residual_identifiers(result) == []


def test_pipeline_is_deterministic():
    transcript = "Room 703 Park OO glucose 280, recheck ordered for 02:00. Room 708 Jung OO urine output trending down."

    assert _run(transcript) == _run(transcript)


def test_patient_keys_follow_first_mention_order():
    assert patient_key_for_index(0) == "PATIENT_A"
    assert patient_key_for_index(25) == "PATIENT_Z"
    assert patient_key_for_index(26) == "PATIENT_AA"


def test_patient_keys_never_repeat():
    keys = [patient_key_for_index(i) for i in range(1000)]

    assert len(set(keys)) == 1000
    assert keys[701] == "PATIENT_ZZ"
    assert keys[702] == "PATIENT_AAA"
