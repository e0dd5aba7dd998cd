"""Base and event classification against the reference base.

Mismatch counts use a dense 3-slot basis: the reference base's own slot is
dropped and every base above it shifts down by one. Insertion counts use the
full 4-slot basis, but an insertion riding on a mismatch is tallied at the
mismatch's dense index.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import InvariantError, UpstreamError
from .models import DELETION, MATCH, MISMATCH, NORMAL_INDEL, PileupEvent

_BASE_INDEX = {"A": 0, "C": 1, "G": 2, "T": 3}


@dataclass(frozen=True)
class ClassifiedEvent:
    category: str  # match, mismatch or deletion
    index: int
    insertion: bool
    counts_as_deletion: bool
    depth_delta: int


def base_index(base: str) -> Optional[int]:
    """Return the natural index of A/C/G/T, or None for anything else (N included)."""
    return _BASE_INDEX.get(base.upper()) if base else None


def dense_mismatch_index(ref_idx: int, base_idx: int) -> int:
    """Map a base index != ref_idx onto [0, 2]."""
    if base_idx == ref_idx:
        raise InvariantError(
            f"Mismatch event reports the reference base itself (index {ref_idx})"
        )
    if base_idx > ref_idx:
        return base_idx - 1
    return base_idx


def classify_match(ref_idx: int, insertion: bool, *, depth_delta: int = 0) -> ClassifiedEvent:
    return ClassifiedEvent(
        category=MATCH,
        index=ref_idx,
        insertion=insertion,
        counts_as_deletion=False,
        depth_delta=depth_delta,
    )


def classify_mismatch(ref_idx: int, base: Optional[str], insertion: bool) -> Optional[ClassifiedEvent]:
    """Classify a mismatch; None when the read base is undefined."""
    base_idx = base_index(base or "")
    if base_idx is None:
        return None
    return ClassifiedEvent(
        category=MISMATCH,
        index=dense_mismatch_index(ref_idx, base_idx),
        insertion=insertion,
        counts_as_deletion=False,
        depth_delta=0,
    )


def classify_deletion(ref_idx: int, indel_type: str) -> ClassifiedEvent:
    if indel_type == NORMAL_INDEL:
        return ClassifiedEvent(DELETION, ref_idx, False, True, 0)
    # skipped region (intron etc.): the read is absent here
    return ClassifiedEvent(DELETION, ref_idx, False, False, -1)


def classify_event(ref_idx: int, event: PileupEvent) -> ClassifiedEvent:
    """Classify one pileup event relative to the reference base index.

    A mismatch against an undefined base (N) is counted as a match for
    insertion purposes, at the reference slot, and removes the read from the
    depth.
    """
    if event.kind == MATCH:
        return classify_match(ref_idx, event.insertion)
    if event.kind == MISMATCH:
        res = classify_mismatch(ref_idx, event.mismatch_base, event.insertion)
        if res is None:
            res = classify_match(ref_idx, event.insertion, depth_delta=-1)
        return res
    if event.kind == DELETION:
        return classify_deletion(ref_idx, event.indel_type)
    raise UpstreamError(f"Unknown pileup event kind: {event.kind!r}")
