from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

# Event kinds reported by the pileup source.
MATCH = "match"
MISMATCH = "mismatch"
DELETION = "deletion"

# Indel subtypes carried by deletion events.
NORMAL_INDEL = "normal"
INTRON_INDEL = "intron"


@dataclass(frozen=True)
class PileupEvent:
    """One observation of one read at one reference position.

    Attributes
    ----------
    kind:
        ``match``, ``mismatch`` or ``deletion``.
    insertion:
        True if the read carries an insertion immediately after this position.
    indel_type:
        For deletions: ``normal`` for a true gap, anything else (``intron``)
        for a region the read skips.
    mismatch_base:
        For mismatches: the base the read shows (uppercase), possibly ``N``.
    """

    kind: str
    insertion: bool = False
    indel_type: str = NORMAL_INDEL
    mismatch_base: Optional[str] = None


@dataclass(frozen=True)
class PositionRecord:
    """Finalized statistics for one reportable reference position."""

    ref_pos: int  # 1-based
    ref_base: str
    depth: int
    mismatch_counts: Tuple[int, int, int]
    insertion_counts: Tuple[int, int, int, int]
    deletion_count: int
