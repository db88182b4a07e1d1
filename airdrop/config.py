"""
Snapshot configuration
Explicit configuration object handed to the builder; loaded from the environment and a sources file
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from dotenv import load_dotenv

from .errors import ConfigurationError
from .ledger import MergeMode
from .merkle import HashFunction, keccak
from .records import normalize_address
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

SOURCE_KINDS = ("events", "graph", "file")


@dataclass
class SourceSpec:
    """
    One contribution source

    Args:
        name: Source name recorded in every ledger entry ("mint-events-fuse")
        kind: "events" (on-chain logs), "graph" (indexer) or "file" (JSON balances)
        mode: How batches from this source merge into the ledger; defaults to ADD for
            event deltas and SET for absolute balances (graph and file sources)
        chain: Chain key into `rpc_endpoints` for event sources
        address: Contract emitting the events
        events: Event names to scan, e.g. ["Mint", "StateHashProof"]
        start_block / end_block: Scan range, end defaults to the latest block
        url: Indexer endpoint for graph sources
        query: Indexer query template for graph sources
        entity: Result field holding the rows ("goodBalances")
        account_field / balance_field: Row fields holding account and balance
        window_field: Timestamp field used to window indexer queries
        start / end / window: Indexer time range and initial window size
        path: Balance file for file sources
    """
    name: str
    kind: str
    mode: Optional[MergeMode] = None
    chain: Optional[str] = None
    address: Optional[str] = None
    events: List[str] = field(default_factory=list)
    start_block: int = 0
    end_block: Optional[int] = None
    url: Optional[str] = None
    query: Optional[str] = None
    entity: Optional[str] = None
    account_field: str = "id"
    balance_field: str = "balance"
    window_field: Optional[str] = None
    start: int = 0
    end: Optional[int] = None
    window: int = 86400
    path: Optional[str] = None

    def __post_init__(self):
        if self.mode is None:
            self.mode = MergeMode.ADD if self.kind == "events" else MergeMode.SET

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceSpec":
        try:
            spec = cls(
                name=data["name"],
                kind=data["kind"],
                mode=MergeMode(str(data["mode"]).lower()) if data.get("mode") else None,
                chain=data.get("chain"),
                address=data.get("address"),
                events=list(data.get("events", [])),
                start_block=int(data.get("startBlock", 0)),
                end_block=int(data["endBlock"]) if data.get("endBlock") is not None else None,
                url=data.get("url"),
                query=data.get("query"),
                entity=data.get("entity"),
                account_field=data.get("accountField", "id"),
                balance_field=data.get("balanceField", "balance"),
                window_field=data.get("windowField"),
                start=int(data.get("start", 0)),
                end=int(data["end"]) if data.get("end") is not None else None,
                window=int(data.get("window", 86400)),
                path=data.get("path"),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"invalid source definition {data!r}: {e}", cause=e) from e
        spec.validate()
        return spec

    def validate(self):
        if self.kind not in SOURCE_KINDS:
            raise ConfigurationError(f"source {self.name}: unknown kind {self.kind!r}")
        if self.kind == "events" and not (self.chain and self.address and self.events):
            raise ConfigurationError(f"source {self.name}: event sources need chain, address and events")
        if self.kind == "graph" and not (self.url and self.query and self.entity):
            raise ConfigurationError(f"source {self.name}: graph sources need url, query and entity")
        if self.kind == "file" and not self.path:
            raise ConfigurationError(f"source {self.name}: file sources need a path")
        if self.window <= 0:
            raise ConfigurationError(f"source {self.name}: window must be positive")


@dataclass
class SnapshotConfig:
    """Everything the builder needs; nothing is read from module globals"""
    sources: List[SourceSpec] = field(default_factory=list)
    rpc_endpoints: Dict[str, str] = field(default_factory=dict)
    hash_function: HashFunction = keccak
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    concurrency: int = 10
    block_step: int = 10000
    page_size: int = 1000
    max_skip: int = 5000
    include_zero_balances: bool = False
    excluded_accounts: Set[str] = field(default_factory=set)
    allocations: Dict[str, int] = field(default_factory=dict)
    output_dir: str = "snapshot"
    log_file: str = "snapshot.log"

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigurationError("concurrency must be at least 1")
        if self.block_step < 1:
            raise ConfigurationError("block step must be at least 1")
        try:
            self.excluded_accounts = {normalize_address(a) for a in self.excluded_accounts}
        except ValueError as e:
            raise ConfigurationError(f"invalid excluded account: {e}", cause=e) from e

    def rpc_url(self, chain: str) -> str:
        url = self.rpc_endpoints.get(chain)
        if not url:
            raise ConfigurationError(f"no RPC endpoint configured for chain {chain!r} (set RPC_URL_{chain.upper()})")
        return url

    def output_path(self, filename: str) -> str:
        return os.path.join(self.output_dir, filename)

    @classmethod
    def from_env(cls, sources_file: Optional[str] = None) -> "SnapshotConfig":
        """
        Load configuration from the environment (.env supported)

        Args:
            sources_file: JSON sources file, defaults to SNAPSHOT_SOURCES_FILE

        Returns:
            SnapshotConfig
        """
        load_dotenv()

        rpc_endpoints = {
            key[len("RPC_URL_"):].lower(): value
            for key, value in os.environ.items()
            if key.startswith("RPC_URL_") and value
        }

        retry_policy = RetryPolicy(
            max_attempts=int(os.getenv("SNAPSHOT_MAX_ATTEMPTS", "5")),
            base_delay=float(os.getenv("SNAPSHOT_BACKOFF_BASE", "1.0")),
            max_delay=float(os.getenv("SNAPSHOT_BACKOFF_MAX", "30.0")),
        )

        sources: List[SourceSpec] = []
        excluded: Set[str] = set()
        allocations: Dict[str, int] = {}
        sources_file = sources_file or os.getenv("SNAPSHOT_SOURCES_FILE", "sources.json")
        if os.path.exists(sources_file):
            try:
                with open(sources_file, "r") as f:
                    definition = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigurationError(f"could not read sources file {sources_file}: {e}", cause=e) from e
            sources = [SourceSpec.from_dict(item) for item in definition.get("sources", [])]
            excluded = set(definition.get("excludedAccounts", []))
            allocations = {name: int(value) for name, value in definition.get("allocations", {}).items()}
            logger.info(f"Loaded {len(sources)} sources from {sources_file}")
        else:
            logger.warning(f"Sources file {sources_file} not found, no sources configured")

        return cls(
            sources=sources,
            rpc_endpoints=rpc_endpoints,
            retry_policy=retry_policy,
            concurrency=int(os.getenv("SNAPSHOT_CONCURRENCY", "10")),
            block_step=int(os.getenv("SNAPSHOT_BLOCK_STEP", "10000")),
            include_zero_balances=os.getenv("SNAPSHOT_INCLUDE_ZERO", "false").lower() in ("1", "true", "yes"),
            excluded_accounts=excluded,
            allocations=allocations,
            output_dir=os.getenv("SNAPSHOT_OUTPUT_DIR", "snapshot"),
            log_file=os.getenv("SNAPSHOT_LOG_FILE", "snapshot.log"),
        )
