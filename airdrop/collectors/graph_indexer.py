"""
Graph indexer collector
Pages through first/skip GraphQL queries over time windows; a window that hits the
indexer's skip limit is split into smaller windows.
"""

import asyncio
import logging
import time
from string import Template
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..config import SourceSpec
from ..errors import InvalidRecordError, NetworkFetchError, SkipLimitExceeded
from ..records import GraphBalanceRow
from ..retry import RetryPolicy
from .event_scanner import CollectionResult, Gap

logger = logging.getLogger(__name__)

SPLIT_FACTOR = 4


class GraphIndexerClient:
    """Blocking HTTP client for one GraphQL endpoint"""

    def __init__(self, url: str, session: Optional[requests.Session] = None, timeout: int = 30,
                 page_size: int = 1000, max_skip: int = 5000):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.page_size = page_size
        self.max_skip = max_skip

    def query(self, query: str) -> Dict[str, Any]:
        """
        Post a query and return its `data` object

        Raises:
            SkipLimitExceeded: the indexer refused the requested skip
            NetworkFetchError: transport failures, 5xx/429 and GraphQL errors
        """
        try:
            response = self.session.post(self.url, json={"query": query}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NetworkFetchError(f"indexer request to {self.url} failed: {e}", cause=e) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkFetchError(f"indexer returned HTTP {response.status_code}", status_code=response.status_code)
        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise NetworkFetchError(f"bad indexer response: {e}", status_code=response.status_code, cause=e) from e

        errors = payload.get("errors") or []
        if errors:
            message = str(errors[0].get("message", errors[0]))
            if "skip" in message.lower():
                raise SkipLimitExceeded(message)
            raise NetworkFetchError(f"indexer error: {message}")
        return payload.get("data") or {}

    def fetch_page(self, source: SourceSpec, start: int, end: int, skip: int) -> List[Dict[str, Any]]:
        if skip > self.max_skip:
            raise SkipLimitExceeded(f"skip {skip} is above the indexer limit {self.max_skip}")
        query = Template(source.query).safe_substitute(first=self.page_size, skip=skip, start=start, end=end)
        rows = self.query(query).get(source.entity) or []
        if not isinstance(rows, list):
            raise NetworkFetchError(f"unexpected {source.entity} payload: {type(rows).__name__}")
        return rows


class GraphCollector:
    """
    Collect absolute balance rows for one graph source

    Args:
        source: Graph source definition
        client: Indexer client
        retry_policy: Retry policy applied to every page
        semaphore: Shared concurrency limit for network calls
    """

    def __init__(self, source: SourceSpec, client: GraphIndexerClient, retry_policy: RetryPolicy,
                 semaphore: asyncio.Semaphore):
        self.source = source
        self.client = client
        self.retry_policy = retry_policy
        self.semaphore = semaphore

    def windows(self, now: Optional[int] = None) -> List[Tuple[int, int]]:
        if not self.source.window_field:
            return [(self.source.start, self.source.end or 0)]
        end = self.source.end if self.source.end is not None else int(now or time.time())
        return [(s, min(s + self.source.window, end)) for s in range(self.source.start, end, self.source.window)]

    async def _fetch_window(self, start: int, end: int) -> Tuple[List[Dict[str, Any]], List[Gap]]:
        rows: List[Dict[str, Any]] = []
        skip = 0
        while True:
            description = f"{self.source.name} window {start}-{end} skip {skip}"
            try:
                async with self.semaphore:
                    page = await self.retry_policy.run(asyncio.to_thread, self.client.fetch_page,
                                                       self.source, start, end, skip, description=description)
            except SkipLimitExceeded:
                return await self._split_window(start, end)
            except NetworkFetchError as e:
                logger.error(f"Giving up on {description}: {e}")
                return [], [Gap(
                    source=self.source.name,
                    kind="window",
                    start=start,
                    end=end,
                    attempts=e.metadata.get("attempts", self.retry_policy.max_attempts),
                    error=str(e),
                )]
            rows.extend(page)
            if len(page) < self.client.page_size:
                return rows, []
            skip += self.client.page_size

    async def _split_window(self, start: int, end: int) -> Tuple[List[Dict[str, Any]], List[Gap]]:
        step = (end - start) // SPLIT_FACTOR
        if not self.source.window_field or step < 1:
            logger.error(f"{self.source.name}: window {start}-{end} cannot be split further")
            return [], [Gap(source=self.source.name, kind="window", start=start, end=end, attempts=1,
                            error="skip limit exceeded and window cannot be split")]
        logger.info(f"{self.source.name}: splitting window {start}-{end} into sub windows of {step}")
        bounds = [(s, min(s + step, end)) for s in range(start, end, step)]
        outcomes = await asyncio.gather(*(self._fetch_window(s, e) for s, e in bounds))
        rows: List[Dict[str, Any]] = []
        gaps: List[Gap] = []
        for window_rows, window_gaps in outcomes:
            rows.extend(window_rows)
            gaps.extend(window_gaps)
        return rows, gaps

    async def collect(self, now: Optional[int] = None) -> CollectionResult:
        windows = self.windows(now)
        logger.info(f"Querying {self.source.name}: {len(windows)} windows from {self.client.url}")
        outcomes = await asyncio.gather(*(self._fetch_window(s, e) for s, e in windows))

        result = CollectionResult(source=self.source.name)
        for rows, gaps in outcomes:
            result.gaps.extend(gaps)
            for row in rows:
                try:
                    result.records.append(GraphBalanceRow.from_graph(
                        row, self.source.account_field, self.source.balance_field))
                except InvalidRecordError as e:
                    result.invalid += 1
                    logger.warning(f"Skipping invalid row in {self.source.name}: {e}")

        logger.info(f"{self.source.name}: {len(result.records)} rows, {len(result.gaps)} gaps, "
                    f"{result.invalid} invalid")
        return result
