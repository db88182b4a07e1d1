"""
Snapshot Builder
Coordinates one batch run: collect every source, merge into a ledger, commit to a
Merkle root and export the artifacts.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from ..collectors.balance_file import load_balance_file
from ..collectors.event_scanner import CollectionResult, EventScanner, Gap, Web3LogSource
from ..collectors.graph_indexer import GraphCollector, GraphIndexerClient
from ..config import SnapshotConfig, SourceSpec
from ..errors import NetworkFetchError
from ..ledger import Ledger, MergeMode, RecoveryDelta
from ..merkle import MerkleTree, build_tree, compute_leaf, find_suspicious_nodes
from . import exporter
from .distribution import allocate_reputation, distribution_report

logger = logging.getLogger(__name__)

LEDGER_FILE = "ledger.json"
COMMITMENT_FILE = "commitment.json"
CSV_FILE = "ledger.csv"
GAPS_FILE = "gaps.json"
PROOFS_FILE = "proofs.json"


@dataclass
class Commitment:
    """Finalised balances, their leaves and the tree built over them"""
    balances: Dict[str, int]
    hashes: Dict[str, bytes]
    tree: MerkleTree

    @property
    def root(self) -> bytes:
        return self.tree.root

    def proof_for(self, account: str) -> Dict[str, Any]:
        return exporter.proof_result(self.tree, account, self.balances, self.hashes)


@dataclass
class SnapshotRun:
    ledger: Ledger
    commitment: Commitment
    gaps: List[Gap] = field(default_factory=list)


class SnapshotBuilder:
    """
    Batch snapshot pipeline

    Args:
        config: Snapshot configuration
        log_source_factory: (rpc_url, address) -> object with async get_logs/latest_block,
            defaults to Web3LogSource
        session: requests session shared by indexer clients
    """

    def __init__(self, config: SnapshotConfig, log_source_factory: Optional[Callable[[str, str], Any]] = None,
                 session: Optional[requests.Session] = None):
        self.config = config
        self.log_source_factory = log_source_factory or Web3LogSource
        self.session = session or requests.Session()

    async def _collect_events(self, spec: SourceSpec, semaphore: asyncio.Semaphore) -> CollectionResult:
        log_source = self.log_source_factory(self.config.rpc_url(spec.chain), spec.address)
        latest_block = spec.end_block
        if latest_block is None:
            try:
                async with semaphore:
                    latest_block = await self.config.retry_policy.run(
                        log_source.latest_block, description=f"{spec.name} latest block")
            except NetworkFetchError as e:
                logger.error(f"{spec.name}: could not determine the latest block, skipping source: {e}")
                return CollectionResult(source=spec.name, gaps=[Gap(
                    source=spec.name, kind="block_range", start=spec.start_block, end=-1,
                    attempts=e.metadata.get("attempts", self.config.retry_policy.max_attempts), error=str(e),
                )])
        scanner = EventScanner(spec, log_source.get_logs, self.config.retry_policy, semaphore,
                               block_step=self.config.block_step)
        return await scanner.scan(latest_block)

    async def _collect_graph(self, spec: SourceSpec, semaphore: asyncio.Semaphore) -> CollectionResult:
        client = GraphIndexerClient(spec.url, session=self.session, page_size=self.config.page_size,
                                    max_skip=self.config.max_skip)
        return await GraphCollector(spec, client, self.config.retry_policy, semaphore).collect()

    async def collect(self) -> List[CollectionResult]:
        """Fetch all sources concurrently; results come back in source order"""
        semaphore = asyncio.Semaphore(self.config.concurrency)
        tasks = []
        for spec in self.config.sources:
            if spec.kind == "events":
                tasks.append(self._collect_events(spec, semaphore))
            elif spec.kind == "graph":
                tasks.append(self._collect_graph(spec, semaphore))
            else:
                tasks.append(asyncio.to_thread(load_balance_file, spec))
        logger.info(f"Collecting {len(tasks)} sources with concurrency {self.config.concurrency}")
        return list(await asyncio.gather(*tasks))

    def merge(self, results: Iterable[CollectionResult], ledger: Optional[Ledger] = None) -> Ledger:
        """Merge collected records in source order"""
        if ledger is None:
            ledger = Ledger()
        modes = {spec.name: spec.mode for spec in self.config.sources}
        for result in results:
            summary = ledger.merge_records(result.records, result.source, modes.get(result.source, MergeMode.ADD),
                                           exclude=self.config.excluded_accounts)
            logger.info(f"Merged {result.source}: {summary.merged} contributions, "
                        f"{summary.rejected} rejected, {summary.excluded} excluded")
        return ledger

    def apply_recovery(self, ledger: Ledger, deltas: Iterable[RecoveryDelta]) -> Ledger:
        applied = ledger.apply_recovery_deltas(deltas)
        logger.info(f"Applied {applied} recovery deltas ({len(ledger.applied_deltas)} total)")
        return ledger

    def build_commitment(self, ledger: Ledger) -> Commitment:
        """
        Hash every committed account and build the tree

        Raises:
            EmptyTreeError: no account qualifies for a leaf
            EncodingError: a balance does not fit in uint256
        """
        balances = {
            account: balance
            for account, balance in ledger.balances().items()
            if balance > 0 or self.config.include_zero_balances
        }
        hashes = {
            account: compute_leaf(account, balance, self.config.hash_function)
            for account, balance in balances.items()
        }
        tree = build_tree(hashes.values(), self.config.hash_function)
        logger.info(f"Built tree over {len(tree)} leaves ({len(ledger) - len(balances)} accounts skipped), "
                    f"root {tree.hex_root}")

        for node in find_suspicious_nodes(tree):
            logger.warning(f"Suspicious internal node {node}")

        report = distribution_report(balances)
        logger.info(f"Distribution: {report}")
        return Commitment(balances=balances, hashes=hashes, tree=tree)

    def export(self, ledger: Ledger, commitment: Commitment, gaps: Optional[List[Gap]] = None):
        exporter.write_ledger_snapshot(ledger, self.config.output_path(LEDGER_FILE), commitment.hashes)
        exporter.write_commitment(self.config.output_path(COMMITMENT_FILE), commitment.balances,
                                  commitment.hashes, commitment.tree)
        exporter.write_csv(ledger, self.config.output_path(CSV_FILE), commitment.hashes.keys())
        if gaps is not None:
            exporter.write_gap_report(gaps, self.config.output_path(GAPS_FILE))

    def finalize(self, ledger: Ledger, gaps: Optional[List[Gap]] = None, write: bool = True) -> SnapshotRun:
        commitment = self.build_commitment(ledger)
        if write:
            self.export(ledger, commitment, gaps)
        return SnapshotRun(ledger=ledger, commitment=commitment, gaps=list(gaps or []))

    def run(self, deltas: Optional[Iterable[RecoveryDelta]] = None, write: bool = True) -> SnapshotRun:
        """Full batch: collect, merge, allocate, recover, commit, export"""
        results = asyncio.run(self.collect())
        gaps = [gap for result in results for gap in result.gaps]
        ledger = self.merge(results)
        if self.config.allocations:
            ledger = allocate_reputation(ledger, self.config.allocations)
        if deltas:
            self.apply_recovery(ledger, deltas)
        snapshot = self.finalize(ledger, gaps, write)
        if gaps:
            logger.warning(f"Run finished with {len(gaps)} gaps")
        else:
            logger.info("Run finished without gaps")
        return snapshot

    def recover(self, snapshot_path: str, deltas: Iterable[RecoveryDelta], write: bool = True) -> SnapshotRun:
        """Apply recovery deltas to a saved ledger and recommit"""
        ledger = exporter.load_ledger_snapshot(snapshot_path)
        self.apply_recovery(ledger, deltas)
        return self.finalize(ledger, write=write)

    def write_proofs(self, commitment: Commitment, accounts: Iterable[str], path: Optional[str] = None) -> Dict[str, Any]:
        proofs = exporter.bulk_proofs(commitment.tree, accounts, commitment.balances, commitment.hashes)
        exporter.write_json(path or self.config.output_path(PROOFS_FILE), proofs)
        return proofs
