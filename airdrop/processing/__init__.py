"""
Snapshot processing: reputation allocation, commitment building and exports.
"""

from .distribution import allocate_reputation, distribution_report, gini_coefficient
from .snapshot_builder import Commitment, SnapshotBuilder, SnapshotRun

__all__ = [
    "Commitment",
    "SnapshotBuilder",
    "SnapshotRun",
    "allocate_reputation",
    "distribution_report",
    "gini_coefficient",
]
