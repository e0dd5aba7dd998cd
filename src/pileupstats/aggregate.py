from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

import numpy as np

from .classify import base_index, classify_event
from .models import MISMATCH, PileupEvent, PositionRecord

logger = logging.getLogger(__name__)


@dataclass
class PositionState:
    """Mutable counters for the position being scanned."""

    depth: int
    mismatch_counts: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.uint32))
    insertion_counts: np.ndarray = field(default_factory=lambda: np.zeros(4, dtype=np.uint32))
    deletion_count: int = 0

    def apply(self, ref_idx: int, event: PileupEvent) -> None:
        ev = classify_event(ref_idx, event)
        if ev.counts_as_deletion:
            self.deletion_count += 1
        else:
            if ev.category == MISMATCH:
                self.mismatch_counts[ev.index] += 1
            if ev.insertion:
                self.insertion_counts[ev.index] += 1
        self.depth += ev.depth_delta

    def finalize(self, ref_pos: int, ref_base: str) -> PositionRecord:
        return PositionRecord(
            ref_pos=ref_pos,
            ref_base=ref_base,
            depth=int(self.depth),
            mismatch_counts=tuple(int(x) for x in self.mismatch_counts),  # type: ignore[arg-type]
            insertion_counts=tuple(int(x) for x in self.insertion_counts),  # type: ignore[arg-type]
            deletion_count=int(self.deletion_count),
        )


def aggregate_position(
    reference_base: str,
    depth: int,
    events: Iterable[PileupEvent],
    cutoff: int,
    *,
    ref_pos: int,
) -> Optional[PositionRecord]:
    """Fold the events of one position into a record, or return None if not reportable.

    ``events`` is only iterated when the reference base is defined and the
    reported depth exceeds ``cutoff``. Depth can shrink during the sweep
    (N read bases, skipped regions), so the cutoff is checked again at the end.

    ``ref_pos`` is the 1-based position stamped on the record.
    """
    ref_idx = base_index(reference_base)
    if ref_idx is None:
        return None
    if depth <= cutoff:
        return None

    state = PositionState(depth=int(depth))
    for event in events:
        state.apply(ref_idx, event)

    if state.depth <= cutoff:
        return None
    return state.finalize(ref_pos, reference_base.upper())


@dataclass
class ScanStats:
    positions: int = 0
    skipped_undefined_base: int = 0
    below_cutoff: int = 0
    emitted: int = 0

    def add(self, other: "ScanStats") -> None:
        self.positions += other.positions
        self.skipped_undefined_base += other.skipped_undefined_base
        self.below_cutoff += other.below_cutoff
        self.emitted += other.emitted


def _deferred_events(position) -> Iterator[PileupEvent]:
    # position.events() is not touched until the aggregator asks for an event
    yield from position.events()


def scan_reference(
    positions: Iterable,
    *,
    cutoff: int,
    sink: Callable[[PositionRecord], None],
) -> ScanStats:
    """Aggregate every position of one reference, in stream order.

    Each item of ``positions`` exposes ``reference_position`` (0-based),
    ``reference_base``, ``depth`` and ``events()``. Records go to ``sink``
    with 1-based positions. Upstream errors propagate unchanged.
    """
    stats = ScanStats()
    for position in positions:
        stats.positions += 1
        ref_base = position.reference_base
        if base_index(ref_base) is None:
            stats.skipped_undefined_base += 1
            continue

        zpos = int(position.reference_position)
        record = aggregate_position(
            ref_base,
            int(position.depth),
            _deferred_events(position),
            cutoff,
            ref_pos=zpos + 1,
        )
        if record is None:
            stats.below_cutoff += 1
            continue

        sink(record)
        stats.emitted += 1

    logger.debug(
        "Scanned %d positions: %d emitted, %d below cutoff, %d undefined reference base",
        stats.positions,
        stats.emitted,
        stats.below_cutoff,
        stats.skipped_undefined_base,
    )
    return stats
