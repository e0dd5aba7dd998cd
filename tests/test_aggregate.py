import pytest

from pileupstats.aggregate import aggregate_position, scan_reference
from pileupstats.errors import UpstreamError
from pileupstats.models import DELETION, INTRON_INDEL, MATCH, MISMATCH, PileupEvent


def _never_iterated():
    raise AssertionError("events must not be read")
    yield  # pragma: no cover


class FakePosition:
    def __init__(self, zpos, base, depth, events):
        self.reference_position = zpos
        self.reference_base = base
        self.depth = depth
        self._events = events
        self.events_calls = 0

    def events(self):
        self.events_calls += 1
        return iter(self._events)


def test_all_matches_reported():
    rec = aggregate_position("A", 5, [PileupEvent(MATCH)] * 5, 2, ref_pos=11)
    assert rec is not None
    assert rec.ref_pos == 11
    assert rec.depth == 5
    assert rec.mismatch_counts == (0, 0, 0)
    assert rec.insertion_counts == (0, 0, 0, 0)
    assert rec.deletion_count == 0


def test_mismatches_counted_at_dense_index():
    events = [
        PileupEvent(MISMATCH, mismatch_base="C"),
        PileupEvent(MISMATCH, mismatch_base="C"),
        PileupEvent(MATCH),
    ]
    rec = aggregate_position("A", 3, events, 2, ref_pos=1)
    assert rec is not None
    assert rec.mismatch_counts == (2, 0, 0)
    assert rec.depth == 3


def test_n_mismatch_drops_depth_to_cutoff():
    events = [PileupEvent(MISMATCH, mismatch_base="N"), PileupEvent(MATCH), PileupEvent(MATCH)]
    assert aggregate_position("A", 3, events, 2, ref_pos=1) is None


def test_undefined_reference_reads_no_events():
    assert aggregate_position("N", 100, _never_iterated(), 0, ref_pos=1) is None


def test_depth_at_cutoff_reads_no_events():
    assert aggregate_position("C", 4, _never_iterated(), 4, ref_pos=1) is None


def test_n_mismatch_insertion_goes_to_reference_slot():
    rec = aggregate_position("G", 5, [PileupEvent(MISMATCH, insertion=True, mismatch_base="N")], 0, ref_pos=1)
    assert rec is not None
    assert rec.depth == 4
    assert rec.mismatch_counts == (0, 0, 0)
    assert rec.insertion_counts == (0, 0, 1, 0)


def test_mismatch_insertion_uses_dense_index():
    rec = aggregate_position("C", 2, [PileupEvent(MISMATCH, insertion=True, mismatch_base="T")], 0, ref_pos=1)
    assert rec is not None
    assert rec.mismatch_counts == (0, 0, 1)
    assert rec.insertion_counts == (0, 0, 1, 0)


def test_match_insertion_at_reference_index():
    rec = aggregate_position("T", 2, [PileupEvent(MATCH, insertion=True), PileupEvent(MATCH)], 0, ref_pos=1)
    assert rec is not None
    assert rec.insertion_counts == (0, 0, 0, 1)


def test_deletions_and_skipped_regions():
    events = [
        PileupEvent(DELETION),
        PileupEvent(DELETION, indel_type=INTRON_INDEL),
        PileupEvent(MATCH),
        PileupEvent(MATCH),
    ]
    rec = aggregate_position("A", 4, events, 2, ref_pos=1)
    assert rec is not None
    assert rec.deletion_count == 1
    assert rec.depth == 3

    assert aggregate_position("A", 4, events, 3, ref_pos=1) is None


def test_scan_reference_positions_and_counters():
    positions = [
        FakePosition(9, "A", 3, [PileupEvent(MATCH)] * 3),
        FakePosition(10, "N", 3, [PileupEvent(MATCH)] * 3),
        FakePosition(11, "C", 1, [PileupEvent(MATCH)]),
        FakePosition(12, "g", 2, [PileupEvent(MISMATCH, mismatch_base="A"), PileupEvent(MATCH)]),
    ]
    records = []
    stats = scan_reference(positions, cutoff=1, sink=records.append)

    assert [r.ref_pos for r in records] == [10, 13]
    assert records[1].ref_base == "G"
    assert records[1].mismatch_counts == (1, 0, 0)
    assert positions[1].events_calls == 0
    assert positions[2].events_calls == 0
    assert (stats.positions, stats.emitted, stats.below_cutoff, stats.skipped_undefined_base) == (4, 2, 1, 1)


def test_scan_reference_propagates_upstream_failure():
    def positions():
        yield FakePosition(0, "A", 2, [PileupEvent(MATCH)] * 2)
        raise UpstreamError("pileup iterator broke")

    records = []
    with pytest.raises(UpstreamError):
        scan_reference(positions(), cutoff=0, sink=records.append)
    assert len(records) == 1


def test_ref_pos_is_required():
    with pytest.raises(TypeError):
        aggregate_position("A", 1, [PileupEvent(MATCH)], 0)
