"""
Chunked on-chain event scanner
Scans contract logs in bounded block ranges with bounded concurrency; ranges that
keep failing are skipped and reported as gaps instead of aborting the run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from ..config import SourceSpec
from ..errors import InvalidRecordError, NetworkFetchError
from ..records import Record, parse_event
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)

# Transport and node errors; anything else propagates unwrapped
RPC_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)

LogFetcher = Callable[[str, int, int], Awaitable[List[Mapping[str, Any]]]]

EVENT_ABI = [
    {
        "anonymous": False,
        "name": "Mint",
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "_to", "type": "address"},
            {"indexed": False, "name": "_amount", "type": "uint256"},
        ],
    },
    {
        "anonymous": False,
        "name": "Transfer",
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
    },
    {
        "anonymous": False,
        "name": "Staked",
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "staker", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
            {"indexed": False, "name": "_globalYieldPerToken", "type": "uint256"},
        ],
    },
    {
        "anonymous": False,
        "name": "StateHashProof",
        "type": "event",
        "inputs": [
            {"indexed": False, "name": "id", "type": "string"},
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "repBalance", "type": "uint256"},
        ],
    },
]


@dataclass
class Gap:
    """Block range or indexer window skipped after retries ran out"""
    source: str
    kind: str
    start: int
    end: int
    attempts: int
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "kind": self.kind,
            "start": self.start,
            "end": self.end,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class CollectionResult:
    """Records gathered for one source, in deterministic order"""
    source: str
    records: List[Record] = field(default_factory=list)
    gaps: List[Gap] = field(default_factory=list)
    invalid: int = 0


def block_ranges(start_block: int, end_block: int, step: int) -> List[Tuple[int, int]]:
    """Inclusive [from, to] ranges covering start..end in chunks of `step` blocks"""
    if step < 1:
        raise ValueError("step must be at least 1")
    return [(b, min(b + step - 1, end_block)) for b in range(start_block, end_block + 1, step)]


class Web3LogSource:
    """Async web3 access to one contract's events"""

    def __init__(self, rpc_url: str, address: str, abi: Optional[List[Dict[str, Any]]] = None,
                 timeout: int = 60):
        self.rpc_url = rpc_url
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi or EVENT_ABI)

    async def get_logs(self, event_name: str, from_block: int, to_block: int) -> List[Mapping[str, Any]]:
        event = getattr(self.contract.events, event_name)
        try:
            return list(await event.get_logs(from_block=from_block, to_block=to_block))
        except RPC_ERRORS as e:
            raise NetworkFetchError(f"{event_name} logs {from_block}-{to_block} from {self.rpc_url}: {e}",
                                    cause=e) from e

    async def latest_block(self) -> int:
        try:
            return int(await self.w3.eth.block_number)
        except RPC_ERRORS as e:
            raise NetworkFetchError(f"could not read latest block from {self.rpc_url}: {e}", cause=e) from e


class EventScanner:
    """
    Scan one event source

    Args:
        source: Source definition (events, block range)
        fetch_logs: async (event_name, from_block, to_block) -> decoded logs
        retry_policy: Retry policy applied to every range
        semaphore: Shared concurrency limit for network calls
        block_step: Blocks per range
    """

    def __init__(self, source: SourceSpec, fetch_logs: LogFetcher, retry_policy: RetryPolicy,
                 semaphore: asyncio.Semaphore, block_step: int = 10000):
        self.source = source
        self.fetch_logs = fetch_logs
        self.retry_policy = retry_policy
        self.semaphore = semaphore
        self.block_step = block_step

    async def _scan_range(self, event_name: str, from_block: int,
                          to_block: int) -> Tuple[List[Mapping[str, Any]], Optional[Gap]]:
        description = f"{self.source.name} {event_name} logs {from_block}-{to_block}"
        async with self.semaphore:
            try:
                logs = await self.retry_policy.run(self.fetch_logs, event_name, from_block, to_block,
                                                   description=description)
            except NetworkFetchError as e:
                logger.error(f"Giving up on {description}: {e}")
                return [], Gap(
                    source=self.source.name,
                    kind="block_range",
                    start=from_block,
                    end=to_block,
                    attempts=e.metadata.get("attempts", self.retry_policy.max_attempts),
                    error=str(e),
                )
        logger.debug(f"Found {len(logs)} logs for {description}")
        return [dict(log, event=log.get("event") or event_name) for log in logs], None

    async def scan(self, latest_block: int) -> CollectionResult:
        end_block = self.source.end_block if self.source.end_block is not None else latest_block
        ranges = block_ranges(self.source.start_block, end_block, self.block_step)
        logger.info(f"Scanning {self.source.name}: {len(ranges)} ranges x {len(self.source.events)} events "
                    f"({self.source.start_block}-{end_block})")

        tasks = [
            self._scan_range(event_name, from_block, to_block)
            for from_block, to_block in ranges
            for event_name in self.source.events
        ]
        outcomes = await asyncio.gather(*tasks)

        result = CollectionResult(source=self.source.name)
        logs: List[Mapping[str, Any]] = []
        for range_logs, gap in outcomes:
            if gap is not None:
                result.gaps.append(gap)
            logs.extend(range_logs)

        # chain order across all event types of the source
        logs.sort(key=lambda log: (int(log.get("blockNumber", 0)), int(log.get("logIndex", 0))))
        for log in logs:
            try:
                record = parse_event(log)
            except InvalidRecordError as e:
                result.invalid += 1
                logger.warning(f"Skipping invalid log in {self.source.name}: {e}")
                continue
            result.records.append(record)

        logger.info(f"{self.source.name}: {len(result.records)} records, {len(result.gaps)} gaps, "
                    f"{result.invalid} invalid")
        return result
