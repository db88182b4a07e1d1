"""
Snapshot Error Handling
Exception hierarchy for the snapshot and commitment builder
"""

from typing import Optional, Dict, Any


class SnapshotError(Exception):
    """Base exception for all snapshot errors.

    Attributes:
        message: Human-readable error message
        metadata: Additional context (account, source, block range...)
    """

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}
        self.cause = cause
        if cause is not None:
            self.metadata["cause_type"] = type(cause).__name__
            self.metadata["cause_message"] = str(cause)


class ConfigurationError(SnapshotError):
    """Invalid or missing configuration."""


class InvalidContributionError(SnapshotError):
    """A merge would produce a negative contribution or got bad input."""

    def __init__(self, message: str, account: str = None, source: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if account:
            self.metadata["account"] = account
        if source:
            self.metadata["source"] = source


class InvalidRecordError(SnapshotError):
    """Malformed event log or indexer row rejected at ingestion."""


class EncodingError(SnapshotError):
    """Account or balance cannot be ABI encoded into a leaf."""


class EmptyTreeError(SnapshotError):
    """Merkle tree requested for an empty leaf set."""


class LeafNotFoundError(SnapshotError):
    """Proof requested for a leaf that is not part of the tree."""

    def __init__(self, message: str, leaf: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if leaf:
            self.metadata["leaf"] = leaf


class NetworkFetchError(SnapshotError):
    """Timeout, 5xx or RPC failure while fetching remote data."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.metadata["status_code"] = status_code


class SkipLimitExceeded(NetworkFetchError):
    """Indexer refused a page because `skip` went past its limit."""
