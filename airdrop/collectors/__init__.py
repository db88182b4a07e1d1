"""
Contribution collectors: on-chain event scans, graph indexer pages and local balance files.
"""

from .balance_file import load_balance_file
from .event_scanner import CollectionResult, EventScanner, Gap, Web3LogSource, block_ranges
from .graph_indexer import GraphCollector, GraphIndexerClient

__all__ = [
    "CollectionResult",
    "EventScanner",
    "Gap",
    "GraphCollector",
    "GraphIndexerClient",
    "Web3LogSource",
    "block_ranges",
    "load_balance_file",
]
