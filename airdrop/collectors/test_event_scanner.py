#!/usr/bin/env python3
"""
Tests for the chunked event scanner
Range splitting, ordering, bounded concurrency and gap reporting
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from airdrop.collectors.event_scanner import EventScanner, Web3LogSource, block_ranges
from airdrop.config import SourceSpec
from airdrop.errors import NetworkFetchError
from airdrop.ledger import Ledger
from airdrop.records import MintEvent, StateHashProofEvent
from airdrop.retry import RetryPolicy

CONTRACT = "0x" + "cc" * 20


def account(n: int) -> str:
    return "0x" + f"{n:040x}"


def mint_log(block: int, index: int, to: str, amount: int) -> dict:
    return {"args": {"_to": to, "_amount": amount}, "blockNumber": block, "logIndex": index}


def make_source(**overrides) -> SourceSpec:
    values = dict(name="mints", kind="events", chain="fuse", address=CONTRACT, events=["Mint"],
                  start_block=0, end_block=29)
    values.update(overrides)
    return SourceSpec(**values)


class TestBlockRanges:
    """Test class for block_ranges"""

    def test_inclusive_ranges(self):
        assert block_ranges(0, 25, 10) == [(0, 9), (10, 19), (20, 25)]

    def test_single_block(self):
        assert block_ranges(5, 5, 100) == [(5, 5)]

    def test_invalid_step(self):
        with pytest.raises(ValueError):
            block_ranges(0, 10, 0)


class TestEventScanner:
    """Test class for EventScanner.scan"""

    def setup_method(self):
        self.policy = RetryPolicy(max_attempts=2, base_delay=0, jitter=0)

    def scan(self, fetch_logs, source=None, concurrency=10, latest_block=29):
        async def go():
            scanner = EventScanner(source or make_source(), fetch_logs, self.policy,
                                   asyncio.Semaphore(concurrency), block_step=10)
            return await scanner.scan(latest_block)
        return asyncio.run(go())

    def test_records_in_block_order(self):
        """Test logs come back sorted by block and log index across ranges"""
        async def fetch_logs(event_name, from_block, to_block):
            # reversed on purpose
            logs = [mint_log(b, 1, account(b), b) for b in range(from_block, to_block + 1, 5)]
            logs.append(mint_log(from_block, 0, account(from_block + 100), 1))
            return list(reversed(logs))

        result = self.scan(fetch_logs)
        blocks = [(r.block_number, r.account) for r in result.records]
        assert blocks[0] == (0, account(100))
        assert [b for b, _ in blocks] == sorted(b for b, _ in blocks)
        assert len(result.records) == 9
        assert result.gaps == []

    @pytest.mark.parametrize("events", [["Mint", "StateHashProof"], ["StateHashProof", "Mint"]])
    def test_event_types_interleaved_in_chain_order(self, events):
        """Test logs of different events in one range merge in block order whatever the event order"""
        holder = account(7)
        chain = {
            "Mint": [mint_log(5, 0, holder, 100), mint_log(9, 2, holder, 10)],
            "StateHashProof": [{"args": {"id": "rep", "user": holder, "repBalance": 40},
                                "blockNumber": 7, "logIndex": 3}],
        }

        async def fetch_logs(event_name, from_block, to_block):
            return [dict(log, event=event_name) for log in chain[event_name]
                    if from_block <= log["blockNumber"] <= to_block]

        result = self.scan(fetch_logs, source=make_source(events=events))
        assert [(type(r), r.block_number) for r in result.records] == [
            (MintEvent, 5), (StateHashProofEvent, 7), (MintEvent, 9),
        ]

        ledger = Ledger()
        summary = ledger.merge_records(result.records, "rep")
        assert summary.rejected == 0
        assert ledger.balance_of(holder) == 70

    def test_failing_range_becomes_gap(self):
        """Test a range failing after all retries is skipped and reported"""
        calls = []

        async def fetch_logs(event_name, from_block, to_block):
            calls.append((from_block, to_block))
            if from_block == 10:
                raise NetworkFetchError("upstream 503", status_code=503)
            return [mint_log(from_block, 0, account(1), 10)]

        result = self.scan(fetch_logs)
        assert len(result.records) == 2
        assert len(result.gaps) == 1
        gap = result.gaps[0]
        assert (gap.source, gap.kind, gap.start, gap.end, gap.attempts) == ("mints", "block_range", 10, 19, 2)
        assert "503" in gap.error
        assert calls.count((10, 19)) == 2

    def test_invalid_logs_are_counted(self):
        """Test malformed logs are skipped without failing the range"""
        async def fetch_logs(event_name, from_block, to_block):
            return [mint_log(from_block, 0, "0xnope", 1), mint_log(from_block, 1, account(2), 3)]

        result = self.scan(fetch_logs)
        assert result.invalid == 3
        assert all(isinstance(r, MintEvent) for r in result.records)
        assert len(result.records) == 3

    def test_open_end_uses_latest_block(self):
        """Test the scan stops at the given latest block"""
        seen = []

        async def fetch_logs(event_name, from_block, to_block):
            seen.append((event_name, from_block, to_block))
            return []

        self.scan(fetch_logs, source=make_source(end_block=None, events=["Mint", "StateHashProof"]),
                  latest_block=14)
        assert sorted(seen) == [("Mint", 0, 9), ("Mint", 10, 14), ("StateHashProof", 0, 9),
                                ("StateHashProof", 10, 14)]

    def test_concurrency_is_bounded(self):
        """Test no more than `concurrency` fetches run at once"""
        state = {"active": 0, "peak": 0}

        async def fetch_logs(event_name, from_block, to_block):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.01)
            state["active"] -= 1
            return []

        self.scan(fetch_logs, source=make_source(end_block=99), concurrency=2, latest_block=99)
        assert state["peak"] == 2


class TestWeb3LogSource:
    """Test class for the web3 backed log source"""

    @patch("airdrop.collectors.event_scanner.AsyncHTTPProvider")
    @patch("airdrop.collectors.event_scanner.AsyncWeb3")
    def test_rpc_failure_is_wrapped(self, mock_web3, mock_provider):
        """Test provider errors surface as NetworkFetchError"""
        w3 = MagicMock()
        mock_web3.return_value = w3
        contract = w3.eth.contract.return_value
        contract.events.Mint.get_logs = AsyncMock(side_effect=aiohttp.ClientConnectionError("connection reset by peer"))

        source = Web3LogSource("http://rpc.local", CONTRACT)
        with pytest.raises(NetworkFetchError) as exc_info:
            asyncio.run(source.get_logs("Mint", 0, 10))
        assert exc_info.value.metadata["cause_type"] == "ClientConnectionError"
        mock_provider.assert_called_once_with("http://rpc.local", request_kwargs={"timeout": 60})

    @patch("airdrop.collectors.event_scanner.AsyncHTTPProvider")
    @patch("airdrop.collectors.event_scanner.AsyncWeb3")
    def test_get_logs_passes_range(self, mock_web3, mock_provider):
        w3 = MagicMock()
        mock_web3.return_value = w3
        get_logs = AsyncMock(return_value=[{"blockNumber": 1}])
        w3.eth.contract.return_value.events.Mint.get_logs = get_logs

        source = Web3LogSource("http://rpc.local", CONTRACT)
        assert asyncio.run(source.get_logs("Mint", 5, 15)) == [{"blockNumber": 1}]
        get_logs.assert_awaited_once_with(from_block=5, to_block=15)

    @patch("airdrop.collectors.event_scanner.AsyncHTTPProvider")
    @patch("airdrop.collectors.event_scanner.AsyncWeb3")
    def test_programming_errors_propagate(self, mock_web3, mock_provider):
        """Test non-transport errors are not turned into retryable fetch errors"""
        w3 = MagicMock()
        mock_web3.return_value = w3
        w3.eth.contract.return_value.events.Mint.get_logs = AsyncMock(side_effect=TypeError("bad filter"))

        source = Web3LogSource("http://rpc.local", CONTRACT)
        with pytest.raises(TypeError):
            asyncio.run(source.get_logs("Mint", 0, 10))
