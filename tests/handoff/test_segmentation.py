import math

from src.handoff.services.segmentation.service import (
    SegmenterConfig,
    overflow_marker,
    segment,
    segments_from_asr,
    split_transcript,
)


def test_split_on_lines_and_sentence_terminators():
    chunks = split_transcript("Room 701 stable.  BP 120/80!\n\n  Next patient?   Room 702。 Sleeping")
    assert chunks == ["Room 701 stable.", "BP 120/80!", "Next patient?", "Room 702。", "Sleeping"]


def test_titles_do_not_end_a_sentence():
    chunks = split_transcript("Room 701 Mr. Kim handoff. Dr. Lee aware.")
    assert chunks == ["Room 701 Mr. Kim handoff.", "Dr. Lee aware."]


def test_segment_ids_and_windows_are_sequential():
    segments = segment("one. two. three.", SegmenterConfig(id_prefix="t", segment_duration_ms=1000, start_offset_ms=500))

    assert [s.id for s in segments] == ["t-001", "t-002", "t-003"]
    assert [(s.start_ms, s.end_ms) for s in segments] == [(500, 1500), (1500, 2500), (2500, 3500)]


def test_empty_transcript_yields_no_segments():
    assert segment("   \n\n  ") == []


def test_overflow_is_folded_into_last_segment():
    transcript = "\n".join(f"line {i} vital signs stable" for i in range(520))
    segments = segment(transcript, SegmenterConfig(segment_duration_ms=5000, max_segments=360))

    assert len(segments) == 360
    assert segments[-1].raw_text.endswith(overflow_marker(160))
    assert "line 519" in segments[-1].raw_text
    assert segments[-1].end_ms == 520 * 5000
    starts = [s.start_ms for s in segments]
    assert starts == sorted(starts)


def test_segmenter_is_deterministic():
    transcript = "Room 701 Kim OO BP 90/60. Recheck in 30 minutes.\nRoom 702 Lee OO sleeping."
    assert segment(transcript) == segment(transcript)


def test_asr_timing_is_clamped_and_monotonic():
    result = segments_from_asr(
        [
            {"text": "room 701 stable", "start_ms": -40, "end_ms": 100, "confidence": 0.9},
            {"text": "   "},
            {"text": "glucose 280", "startMs": 50, "endMs": 60, "confidence": 0.3},
            {"text": "recheck at 02:00"},
        ]
    )

    segments = result.segments
    assert [s.id for s in segments] == ["asr-001", "asr-002", "asr-003"]
    assert segments[0].start_ms == 0
    assert segments[0].end_ms == 250
    assert segments[1].start_ms == 50
    assert segments[1].end_ms == 300
    assert segments[2].start_ms == 50
    assert all(s.end_ms - s.start_ms >= 250 for s in segments)
    assert result.low_confidence_ids() == ["asr-002"]


def test_asr_overflow_keeps_the_bound():
    chunks = [{"text": f"chunk {i}", "start_ms": i * 100, "end_ms": i * 100 + 300, "confidence": 0.9} for i in range(10)]
    chunks[8]["confidence"] = 0.2

    result = segments_from_asr(chunks, max_segments=5)

    assert len(result.segments) == 5
    assert result.segments[-1].raw_text.endswith(overflow_marker(5))
    assert result.confidence["asr-005"] == 0.2


def test_non_finite_asr_timing_clamps_to_zero():
    result = segments_from_asr(
        [
            {"text": "Room 701 stable", "start_ms": math.inf, "end_ms": math.nan},
            {"text": "BP 120/80", "start_ms": -math.inf, "end_ms": "1e400"},
        ]
    )

    assert [(s.start_ms, s.end_ms) for s in result.segments] == [(0, 250), (0, 250)]
