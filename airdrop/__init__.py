"""
Reputation Snapshot & Merkle Commitment
=======================================

Builds a deterministic account -> reputation ledger from on-chain events and
indexer data, and commits to it with a sorted-pairs keccak Merkle tree whose
proofs verify on-chain.

Structure:
- collectors/: Event scanner, graph indexer client, balance files
- processing/: Allocation, snapshot builder, exporters
- ledger, merkle: Merge stage and commitment primitives
"""

from .errors import (EmptyTreeError, EncodingError, InvalidContributionError, LeafNotFoundError,
                     NetworkFetchError, SnapshotError)
from .ledger import Ledger, LedgerEntry, MergeMode, RecoveryDelta
from .merkle import MerkleTree, build_tree, compute_leaf, get_proof, verify

__version__ = "1.0.0"
__author__ = "Reputation Snapshot Team"

__all__ = [
    "EmptyTreeError",
    "EncodingError",
    "InvalidContributionError",
    "LeafNotFoundError",
    "Ledger",
    "LedgerEntry",
    "MergeMode",
    "MerkleTree",
    "NetworkFetchError",
    "RecoveryDelta",
    "SnapshotError",
    "build_tree",
    "compute_leaf",
    "get_proof",
    "verify",
]
