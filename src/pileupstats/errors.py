"""Error taxonomy.

Every failure that aborts a run is a :class:`PileupStatsError`. The ``kind``
tag tells the process boundary which family the failure belongs to:

- ``argument``: bad invocation, rejected before any processing.
- ``upstream``: the alignment data source could not produce the next item.
- ``protocol``: the general loader stream was driven incorrectly.
- ``invariant``: input data violated an assumption that well-formed data
  never breaks (e.g. a mismatch against the reference's own base).
"""

from __future__ import annotations


class PileupStatsError(RuntimeError):
    """Base class for errors that abort a run."""

    kind = "error"


class ArgumentError(PileupStatsError):
    kind = "argument"


class UpstreamError(PileupStatsError):
    kind = "upstream"


class ProtocolError(PileupStatsError):
    kind = "protocol"


class InvariantError(PileupStatsError):
    kind = "invariant"
