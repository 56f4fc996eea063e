"""Patient resolution: anchors, masking and segment-to-patient assignment.

Room and alias mentions are merged through an explicit ``token -> patient key``
map, so the same room or alias always lands on the same card and keys are
handed out in first-mention order (``PATIENT_A``, ``PATIENT_B`` ...).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from src.handoff.domain.models.handoff import WardEvent, WardEventCategory
from src.handoff.services.pipeline import lexicon
from src.handoff.services.pipeline.normalizer import NormalizedSegment, expand_abbreviations

_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_ANCHOR_GAP = re.compile(r"^[\s,;:()\-/.]*(?:patient|pt\.?|환자)?[\s,;:()\-/.]*$", re.I)
_REPEATED_KEY = re.compile(r"\b(PATIENT_[A-Z]+)(?:[\s,;:]+\1\b)+")
_PIECE_TRIM = " ,;:-"


@dataclass(frozen=True)
class Anchor:
    start: int
    end: int
    kind: str  # "room" or "alias"
    token: str  # normalized merge key, e.g. "room:701"
    raw: str

    def shifted(self, offset: int) -> "Anchor":
        return Anchor(self.start - offset, self.end - offset, self.kind, self.token, self.raw)


@dataclass
class MaskedPiece:
    """A segment, or one patient's share of an inline multi-patient segment."""

    segment_id: str
    text: str
    expanded: str
    start_ms: int
    end_ms: int
    order: int
    patient_key: Optional[str] = None


@dataclass
class PatientAssignment:
    buckets: Dict[str, List[MaskedPiece]] = field(default_factory=dict)
    ward_events: List[WardEvent] = field(default_factory=list)
    unmatched: List[Tuple[MaskedPiece, str]] = field(default_factory=list)
    room_tokens: Dict[str, str] = field(default_factory=dict)
    alias_tokens: Dict[str, str] = field(default_factory=dict)


def patient_key_for_index(index: int) -> str:
    """Spreadsheet-style letters: A..Z, AA..ZZ, AAA ... so keys never repeat."""

    letters = ""
    remaining = index + 1
    while remaining:
        remaining, offset = divmod(remaining - 1, len(_ALPHABET))
        letters = _ALPHABET[offset] + letters
    return f"PATIENT_{letters}"


def _room_label(kind: str, number: str) -> str:
    return f"Bed {number}" if kind == "bed" else f"Room {number}"


def find_anchors(text: str) -> List[Anchor]:
    found: List[Anchor] = []
    for match in lexicon.ROOM_PATTERN.finditer(text):
        found.append(Anchor(match.start(), match.end(), "room", f"room:{match.group(1).upper()}", match.group(0)))
    for match in lexicon.HANGUL_ROOM_PATTERN.finditer(text):
        found.append(Anchor(match.start(), match.end(), "room", f"room:{match.group(1)}", match.group(0)))
    for match in lexicon.BED_PATTERN.finditer(text):
        found.append(Anchor(match.start(), match.end(), "room", f"bed:{match.group(1).upper()}", match.group(0)))
    for match in lexicon.MASKED_NAME_PATTERN.finditer(text):
        found.append(Anchor(match.start(), match.end(), "alias", f"alias:{match.group(1).lower()} oo", match.group(0)))
    for match in lexicon.HANGUL_MASKED_NAME_PATTERN.finditer(text):
        token = re.sub(r"[O○0]{2}$", "OO", match.group(0))
        found.append(Anchor(match.start(), match.end(), "alias", f"alias:{token}", match.group(0)))
    for match in lexicon.HONORIFIC_NAME_PATTERN.finditer(text):
        token = f"alias:{match.group(1).lower()} {match.group(2).lower()}"
        found.append(Anchor(match.start(), match.end(), "alias", token, match.group(0)))

    # Longest match wins where patterns overlap.
    found.sort(key=lambda a: (a.start, -(a.end - a.start)))
    anchors: List[Anchor] = []
    for anchor in found:
        if anchors and anchor.start < anchors[-1].end:
            continue
        anchors.append(anchor)
    return anchors


def _cluster(text: str, anchors: List[Anchor]) -> List[List[Anchor]]:
    clusters: List[List[Anchor]] = []
    for anchor in anchors:
        if clusters and _ANCHOR_GAP.match(text[clusters[-1][-1].end : anchor.start]):
            clusters[-1].append(anchor)
        else:
            clusters.append([anchor])
    return clusters


def split_inline(text: str) -> List[Tuple[str, List[Anchor]]]:
    """Split text narrating several patients at each new anchor group.

    Adjacent anchors ("room 701, Kim OO") belong to one patient. Text before
    the first anchor group stays with the first piece.
    """

    anchors = find_anchors(text)
    clusters = _cluster(text, anchors)
    if len(clusters) <= 1:
        return [(text, anchors)]

    boundaries = [0] + [cluster[0].start for cluster in clusters[1:]] + [len(text)]
    pieces: List[Tuple[str, List[Anchor]]] = []
    for index, cluster in enumerate(clusters):
        start, end = boundaries[index], boundaries[index + 1]
        raw_piece = text[start:end]
        lead = len(raw_piece) - len(raw_piece.lstrip(_PIECE_TRIM))
        piece = raw_piece.strip(_PIECE_TRIM)
        if not piece:
            continue
        pieces.append((piece, [a.shifted(start + lead) for a in cluster]))
    return pieces


def scrub_contact_identifiers(text: str) -> str:
    for pattern in (lexicon.MRN_PATTERN, lexicon.PHONE_PATTERN, lexicon.EMAIL_PATTERN):
        text = pattern.sub(lexicon.REDACTED, text)
    return text


def mask_text(text: str, anchors: List[Anchor], key: Optional[str]) -> str:
    if key is None or not anchors:
        return scrub_contact_identifiers(text)
    parts: List[str] = []
    cursor = 0
    for anchor in anchors:
        parts.append(text[cursor : anchor.start])
        parts.append(key)
        cursor = anchor.end
    parts.append(text[cursor:])
    masked = _REPEATED_KEY.sub(r"\1", "".join(parts))
    return scrub_contact_identifiers(masked)


class PatientRegistry:
    """Keyed union of mention tokens onto patient keys."""

    def __init__(self) -> None:
        self._token_to_key: Dict[str, str] = {}
        self._keys: List[str] = []
        self.room_tokens: Dict[str, str] = {}
        self.alias_tokens: Dict[str, str] = {}

    def resolve(self, anchors: List[Anchor]) -> Optional[str]:
        if not anchors:
            return None
        key = next((self._token_to_key[a.token] for a in anchors if a.token in self._token_to_key), None)
        if key is None:
            key = patient_key_for_index(len(self._keys))
            self._keys.append(key)
        for anchor in anchors:
            self._token_to_key.setdefault(anchor.token, key)
            if anchor.kind == "room":
                kind, number = anchor.token.split(":", 1)
                self.room_tokens.setdefault(key, _room_label(kind, number))
            else:
                self.alias_tokens.setdefault(key, anchor.raw)
        return key


def mask_segments(segments: Iterable[NormalizedSegment], registry: PatientRegistry) -> List[MaskedPiece]:
    pieces: List[MaskedPiece] = []
    for segment in segments:
        for text, anchors in split_inline(segment.text):
            key = registry.resolve(anchors)
            masked = mask_text(text, anchors, key)
            pieces.append(
                MaskedPiece(
                    segment_id=segment.segment_id,
                    text=masked,
                    expanded=expand_abbreviations(masked),
                    start_ms=segment.start_ms,
                    end_ms=segment.end_ms,
                    order=len(pieces),
                    patient_key=key,
                )
            )
    return pieces


def classify_ward_event(text: str) -> Optional[WardEventCategory]:
    for category, pattern in lexicon.WARD_RULES:
        if pattern.search(text):
            return category
    return None


def has_transition_cue(text: str) -> bool:
    return bool(lexicon.TRANSITION_CUE.search(text))


def is_clinical_continuation(text: str) -> bool:
    return bool(lexicon.CONTINUATION_HINT.search(text) or lexicon.PRONOUN_REFERENCE.search(text))


def _assign(assignment: PatientAssignment, key: str, piece: MaskedPiece) -> None:
    piece.patient_key = key
    assignment.buckets.setdefault(key, []).append(piece)


def assign_pieces(pieces: List[MaskedPiece], registry: PatientRegistry) -> PatientAssignment:
    """Distribute masked pieces across patients, ward events and unmatched."""

    assignment = PatientAssignment()
    ordered = sorted(pieces, key=lambda p: (p.start_ms, p.order))

    timeline: List[Tuple[MaskedPiece, Optional[str]]] = []
    unmatched: List[MaskedPiece] = []
    active: Optional[str] = None
    transition_pending = False

    for piece in ordered:
        transition = has_transition_cue(piece.expanded)
        key = piece.patient_key
        category = classify_ward_event(piece.expanded)

        if (
            key is None
            and category is not None
            and lexicon.WARD_CONTEXT.search(piece.expanded)
            and not is_clinical_continuation(piece.expanded)
        ):
            assignment.ward_events.append(
                WardEvent(category=category, text=piece.text, source_segment_id=piece.segment_id)
            )
            timeline.append((piece, None))
            transition_pending = transition
            continue

        if key is not None:
            _assign(assignment, key, piece)
            timeline.append((piece, key))
            active = key
            transition_pending = False
            continue

        if not transition_pending and not transition and active and is_clinical_continuation(piece.expanded):
            _assign(assignment, active, piece)
            timeline.append((piece, active))
            continue

        unmatched.append(piece)
        timeline.append((piece, None))
        if transition:
            active = None
        transition_pending = transition

    unmatched_ids = {id(p) for p in unmatched}
    adopted = set()
    for index, (piece, key) in enumerate(timeline):
        if key is not None or id(piece) not in unmatched_ids:
            continue
        if has_transition_cue(piece.expanded) or not is_clinical_continuation(piece.expanded):
            continue
        previous = next((k for _, k in reversed(timeline[:index]) if k), None)
        following = next((k for _, k in timeline[index + 1 :] if k), None)
        if previous and (following is None or following == previous):
            _assign(assignment, previous, piece)
            adopted.add(id(piece))

    # A bare "next patient" carries no content of its own.
    remaining = [
        p
        for p in unmatched
        if id(p) not in adopted
        and not (has_transition_cue(p.expanded) and not is_clinical_continuation(p.expanded))
    ]
    if not assignment.buckets and remaining:
        fallback = patient_key_for_index(0)
        for piece in remaining:
            _assign(assignment, fallback, piece)
        remaining = []

    for piece in remaining:
        if lexicon.PRONOUN_REFERENCE.search(piece.expanded):
            reason = "Pronoun reference could not be bound to a patient"
        else:
            reason = "Patient could not be determined for this segment"
        assignment.unmatched.append((piece, reason))

    # Cards follow first-mention order, not the order pieces were appended.
    for key in sorted(assignment.buckets, key=_key_rank):
        assignment.buckets[key] = sorted(assignment.buckets.pop(key), key=lambda p: (p.start_ms, p.order))
    assignment.room_tokens = dict(registry.room_tokens)
    assignment.alias_tokens = dict(registry.alias_tokens)
    return assignment


def _key_rank(key: str) -> Tuple[int, str]:
    suffix = key.split("_", 1)[-1]
    return (len(suffix), suffix)
