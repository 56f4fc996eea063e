from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel

from src.handoff.config import settings
from src.handoff.domain.models.handoff import RawSegment

_LINE_SPLIT = re.compile(r"\n+")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。])\s+")
# A chunk ending like this is a title or label, not the end of a sentence.
_TRAILING_TITLE = re.compile(r"\b(?:Mr|Mrs|Ms|Mx|Dr|Rm|No|vs)\.$", re.IGNORECASE)

MIN_ASR_WINDOW_MS = 250
LOW_CONFIDENCE_THRESHOLD = 0.5


@dataclass
class SegmenterConfig:
    id_prefix: str = "seg"
    segment_duration_ms: int = field(default_factory=lambda: settings.segment_duration_ms)
    max_segments: int = field(default_factory=lambda: settings.max_segments)
    start_offset_ms: int = 0


class AsrChunk(BaseModel):
    """One finalized utterance from an external speech recognizer."""

    text: str
    start_ms: Optional[float] = None
    end_ms: Optional[float] = None
    confidence: Optional[float] = None


@dataclass
class AsrSegments:
    segments: List[RawSegment]
    # Segment id -> recognizer confidence, only for chunks that reported one.
    confidence: Dict[str, float] = field(default_factory=dict)

    def low_confidence_ids(self, threshold: float = LOW_CONFIDENCE_THRESHOLD) -> List[str]:
        return [seg_id for seg_id, value in self.confidence.items() if value < threshold]


def split_transcript(transcript: str) -> List[str]:
    """Split text into trimmed, non-empty utterance chunks."""

    chunks: List[str] = []
    for line in _LINE_SPLIT.split(transcript or ""):
        pending = ""
        for part in _SENTENCE_SPLIT.split(line):
            text = " ".join(part.split())
            if not text:
                continue
            text = f"{pending} {text}" if pending else text
            if _TRAILING_TITLE.search(text):
                pending = text
                continue
            pending = ""
            chunks.append(text)
        if pending:
            chunks.append(pending)
    return chunks


def overflow_marker(folded: int) -> str:
    return f"[overflow merged: {folded} segments]"


def _fold_overflow(texts: List[str], max_segments: int) -> List[str]:
    if len(texts) <= max_segments:
        return texts
    keep = texts[: max_segments - 1]
    tail = texts[max_segments - 1 :]
    folded = len(tail) - 1
    keep.append(f"{' '.join(tail)} {overflow_marker(folded)}")
    return keep


def segment(transcript: str, config: Optional[SegmenterConfig] = None) -> List[RawSegment]:
    """Turn a transcript into ordered, bounded RawSegments.

    Windows are synthetic: each chunk gets ``segment_duration_ms`` starting at
    ``start_offset_ms``. When the transcript has more chunks than
    ``max_segments`` the excess is folded into the last segment, whose window
    stretches to cover what it absorbed.
    """

    cfg = config or SegmenterConfig()
    max_segments = max(1, cfg.max_segments)
    duration = max(1, cfg.segment_duration_ms)
    offset = max(0, cfg.start_offset_ms)

    texts = split_transcript(transcript)
    total = len(texts)
    texts = _fold_overflow(texts, max_segments)

    segments: List[RawSegment] = []
    for index, text in enumerate(texts):
        start_ms = offset + index * duration
        end_ms = start_ms + duration
        if index == len(texts) - 1 and total > len(texts):
            end_ms = offset + total * duration
        segments.append(
            RawSegment(
                id=f"{cfg.id_prefix}-{index + 1:03d}",
                raw_text=text,
                start_ms=start_ms,
                end_ms=end_ms,
            )
        )
    return segments


def _as_chunk(raw: Any) -> AsrChunk:
    if isinstance(raw, AsrChunk):
        return raw
    if isinstance(raw, Mapping):
        return AsrChunk(
            text=str(raw.get("text") or ""),
            start_ms=raw.get("start_ms", raw.get("startMs")),
            end_ms=raw.get("end_ms", raw.get("endMs")),
            confidence=raw.get("confidence"),
        )
    return AsrChunk(text=str(raw or ""))


def _as_ms(value: Optional[float]) -> int:
    try:
        number = float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, int(round(number)))


def segments_from_asr(
    chunks: Iterable[Any],
    id_prefix: str = "asr",
    max_segments: Optional[int] = None,
) -> AsrSegments:
    """Build RawSegments from recognizer output.

    Provider timing is untrusted: negative or missing values clamp to zero,
    every window is at least 250 ms wide and start times never move backwards.
    """

    limit = max(1, max_segments if max_segments is not None else settings.max_segments)

    cleaned: List[tuple] = []
    last_start = 0
    for raw in chunks:
        chunk = _as_chunk(raw)
        text = " ".join(chunk.text.split())
        if not text:
            continue
        start_ms = max(_as_ms(chunk.start_ms), last_start)
        end_ms = max(_as_ms(chunk.end_ms), start_ms + MIN_ASR_WINDOW_MS)
        last_start = start_ms
        cleaned.append((text, start_ms, end_ms, chunk.confidence))

    if len(cleaned) > limit:
        tail = cleaned[limit - 1 :]
        merged_text = f"{' '.join(t[0] for t in tail)} {overflow_marker(len(tail) - 1)}"
        known = [t[3] for t in tail if t[3] is not None]
        merged_conf = min(known) if known else None
        cleaned = cleaned[: limit - 1] + [
            (merged_text, tail[0][1], max(t[2] for t in tail), merged_conf)
        ]

    result = AsrSegments(segments=[])
    for index, (text, start_ms, end_ms, confidence) in enumerate(cleaned):
        seg_id = f"{id_prefix}-{index + 1:03d}"
        result.segments.append(RawSegment(id=seg_id, raw_text=text, start_ms=start_ms, end_ms=end_ms))
        if confidence is not None:
            try:
                result.confidence[seg_id] = float(confidence)
            except (TypeError, ValueError):
                continue
    return result
