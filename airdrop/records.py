"""
Ingestion records
Tagged, validated shapes for event logs and indexer rows before they reach the ledger
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from web3 import Web3

from .errors import InvalidRecordError

Contribution = Tuple[str, int]


def normalize_address(address: Any) -> str:
    """
    Canonical lower-case form of a 20-byte hex address

    Args:
        address: 0x-prefixed address, lower-case or valid checksum

    Returns:
        Lower-cased address

    Raises:
        ValueError: if the address is malformed or fails its checksum
    """
    if not isinstance(address, str):
        raise ValueError(f"address must be a string, got {type(address).__name__}")
    address = address.strip()
    if not address.startswith(("0x", "0X")) or not Web3.is_address(address):
        raise ValueError(f"invalid address: {address}")
    return "0x" + address[2:].lower()


def parse_amount(value: Any, allow_negative: bool = False) -> int:
    """Parse an integer amount from an int, a decimal string or a 0x hex string."""
    if isinstance(value, bool):
        raise ValueError(f"invalid amount: {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            amount = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            raise ValueError(f"invalid amount: {value!r}")
    else:
        raise ValueError(f"invalid amount type: {type(value).__name__}")
    if amount < 0 and not allow_negative:
        raise ValueError(f"amount must not be negative: {amount}")
    return amount


def _arg(args: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in args:
            return args[name]
    raise KeyError(names[0])


@dataclass(frozen=True)
class MintEvent:
    """Reputation/token minted to an account"""
    account: str
    amount: int
    block_number: int
    kind = "mint"

    def contributions(self) -> List[Contribution]:
        return [(self.account, self.amount)]


@dataclass(frozen=True)
class TransferEvent:
    """Token transfer; only marks both parties as active"""
    sender: str
    recipient: str
    amount: int
    block_number: int
    kind = "transfer"

    def contributions(self) -> List[Contribution]:
        return [(self.sender, 0), (self.recipient, 0)]


@dataclass(frozen=True)
class StakedEvent:
    """Stake deposited by a staker"""
    staker: str
    amount: int
    block_number: int
    kind = "staked"

    def contributions(self) -> List[Contribution]:
        return [(self.staker, self.amount)]


@dataclass(frozen=True)
class StateHashProofEvent:
    """Reputation claimed on-chain from a previous commitment"""
    account: str
    rep_balance: int
    block_number: int
    kind = "state_hash_proof"

    def contributions(self) -> List[Contribution]:
        return [(self.account, -self.rep_balance)]


@dataclass(frozen=True)
class GraphBalanceRow:
    """Absolute balance row returned by a graph indexer"""
    account: str
    balance: int
    kind = "graph_balance"

    def contributions(self) -> List[Contribution]:
        return [(self.account, self.balance)]

    @classmethod
    def from_graph(cls, row: Mapping[str, Any], account_field: str = "id",
                   balance_field: str = "balance") -> "GraphBalanceRow":
        try:
            return cls(
                account=normalize_address(row[account_field]),
                balance=parse_amount(row[balance_field]),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidRecordError(f"bad indexer row {dict(row)!r}: {e}", cause=e) from e


Record = Union[MintEvent, TransferEvent, StakedEvent, StateHashProofEvent, GraphBalanceRow]

EVENT_RECORDS = {
    "Mint": MintEvent,
    "Transfer": TransferEvent,
    "Staked": StakedEvent,
    "StateHashProof": StateHashProofEvent,
}


def parse_event(log: Mapping[str, Any], event_name: Optional[str] = None) -> Record:
    """
    Build a tagged record from a decoded web3 event log

    Args:
        log: Decoded log (web3 EventData) with `args` and `blockNumber`
        event_name: Event name, defaults to `log['event']`

    Returns:
        One of the event record types

    Raises:
        InvalidRecordError: for unknown events or malformed fields
    """
    name = event_name or log.get("event")
    try:
        args: Dict[str, Any] = dict(log["args"])
        block_number = int(log["blockNumber"])
        if name == "Mint":
            return MintEvent(
                account=normalize_address(_arg(args, "_to", "to", "account")),
                amount=parse_amount(_arg(args, "_amount", "amount", "value")),
                block_number=block_number,
            )
        if name == "Transfer":
            return TransferEvent(
                sender=normalize_address(_arg(args, "from", "_from")),
                recipient=normalize_address(_arg(args, "to", "_to")),
                amount=parse_amount(_arg(args, "value", "amount")),
                block_number=block_number,
            )
        if name == "Staked":
            return StakedEvent(
                staker=normalize_address(_arg(args, "staker", "account")),
                amount=parse_amount(_arg(args, "value", "amount")),
                block_number=block_number,
            )
        if name == "StateHashProof":
            return StateHashProofEvent(
                account=normalize_address(_arg(args, "user", "account")),
                rep_balance=parse_amount(_arg(args, "repBalance", "amount")),
                block_number=block_number,
            )
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidRecordError(f"bad {name} log at block {log.get('blockNumber')}: {e}", cause=e) from e
    raise InvalidRecordError(f"unsupported event: {name}")
