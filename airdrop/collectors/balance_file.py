"""
Local balance files
Loads pre-computed (account, balance) tables, e.g. a previous snapshot or a manual import
"""

import json
import logging
import os

import pandas as pd

from ..config import SourceSpec
from ..errors import ConfigurationError, InvalidRecordError
from ..records import GraphBalanceRow
from .event_scanner import CollectionResult

logger = logging.getLogger(__name__)


def _load_rows(path: str, account_field: str, balance_field: str) -> list:
    if path.endswith(".csv"):
        # balances exceed int64, keep them as text
        data = pd.read_csv(path, dtype=str)
        if account_field not in data.columns or balance_field not in data.columns:
            raise ConfigurationError(f"{path} needs {account_field!r} and {balance_field!r} columns")
        return data[[account_field, balance_field]].to_dict("records")

    with open(path, "r") as f:
        data = json.load(f)
    if isinstance(data, dict):
        # ledger.json layout or a flat account -> balance map
        data = data.get("accounts", data)
        return [
            {account_field: account, balance_field: value.get("balance") if isinstance(value, dict) else value}
            for account, value in data.items()
        ]
    if isinstance(data, list):
        return [
            {account_field: item[0], balance_field: item[1]} if isinstance(item, (list, tuple)) else item
            for item in data
        ]
    raise ConfigurationError(f"{path}: unsupported balance file layout")


def load_balance_file(source: SourceSpec) -> CollectionResult:
    """
    Load a balance file into absolute balance rows

    Args:
        source: File source; `path` ends in .csv or .json

    Returns:
        CollectionResult with one GraphBalanceRow per valid row

    Raises:
        ConfigurationError: if the file is missing or unreadable
    """
    if not os.path.exists(source.path):
        raise ConfigurationError(f"balance file not found: {source.path}")
    try:
        rows = _load_rows(source.path, source.account_field, source.balance_field)
    except (OSError, ValueError, pd.errors.ParserError) as e:
        raise ConfigurationError(f"could not read balance file {source.path}: {e}", cause=e) from e

    result = CollectionResult(source=source.name)
    for row in rows:
        try:
            result.records.append(GraphBalanceRow.from_graph(row, source.account_field, source.balance_field))
        except InvalidRecordError as e:
            result.invalid += 1
            logger.warning(f"Skipping invalid row in {source.path}: {e}")
    logger.info(f"Successfully loaded {len(result.records)} balances from {source.path}")
    return result
