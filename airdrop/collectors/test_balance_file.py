#!/usr/bin/env python3
"""
Tests for local balance file loading
"""

import json

import pytest

from airdrop.collectors.balance_file import load_balance_file
from airdrop.config import SourceSpec
from airdrop.errors import ConfigurationError
from airdrop.records import GraphBalanceRow

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
BIG = str(2 ** 100)


def file_source(path, **overrides) -> SourceSpec:
    return SourceSpec(name="previous", kind="file", path=str(path), **overrides)


class TestLoadBalanceFile:
    """Test class for load_balance_file"""

    def test_csv_keeps_large_integers(self, tmp_path):
        """Test balances above int64 survive the CSV reader"""
        path = tmp_path / "balances.csv"
        path.write_text(f"account,balance\n{ALICE},{BIG}\n{BOB},5\n")
        result = load_balance_file(file_source(path, account_field="account"))
        assert result.records == [GraphBalanceRow(account=ALICE, balance=2 ** 100),
                                  GraphBalanceRow(account=BOB, balance=5)]
        assert result.source == "previous"

    def test_csv_missing_columns(self, tmp_path):
        path = tmp_path / "balances.csv"
        path.write_text("address,amount\n")
        with pytest.raises(ConfigurationError):
            load_balance_file(file_source(path))

    def test_json_map_and_ledger_layout(self, tmp_path):
        """Test flat maps and ledger.json files both load"""
        flat = tmp_path / "flat.json"
        flat.write_text(json.dumps({ALICE: BIG}))
        assert load_balance_file(file_source(flat)).records == [GraphBalanceRow(account=ALICE, balance=2 ** 100)]

        ledger = tmp_path / "ledger.json"
        ledger.write_text(json.dumps({"accounts": {BOB: {"balance": "7", "contributions": {}}},
                                      "appliedDeltas": []}))
        assert load_balance_file(file_source(ledger)).records == [GraphBalanceRow(account=BOB, balance=7)]

    def test_json_pairs_with_invalid_row(self, tmp_path):
        """Test [[address, balance]] lists; bad rows are counted"""
        path = tmp_path / "pairs.json"
        path.write_text(json.dumps([[ALICE, "1"], ["0x1", "2"], [BOB, "0x10"]]))
        result = load_balance_file(file_source(path))
        assert [r.balance for r in result.records] == [1, 16]
        assert result.invalid == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_balance_file(file_source(tmp_path / "nope.json"))
