"""pileup-stats: per-position alignment statistics for a sequencing run.

Public API is intentionally small; most users should use the CLI:

    pileup-stats stats --ref ref.fa run.bam > run.gl

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
