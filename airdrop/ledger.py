"""
Reputation Ledger
Deterministic account -> balance ledger merged from several contribution sources
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from .errors import InvalidContributionError
from .records import Record, normalize_address, parse_amount

logger = logging.getLogger(__name__)

RECOVERY_SOURCE = "historical-recovery"


class MergeMode(Enum):
    """How a contribution batch combines with what a source already holds"""
    ADD = "add"
    SET = "set"


@dataclass
class LedgerEntry:
    """Per-account contributions; the balance is always their sum"""
    account: str
    contributions: Dict[str, int] = field(default_factory=dict)

    @property
    def balance(self) -> int:
        return sum(self.contributions.values())


@dataclass(frozen=True)
class RecoveryDelta:
    """Correction to an already computed snapshot"""
    delta_id: str
    account: str
    amount: int
    sign: int = 1
    source: str = RECOVERY_SOURCE


@dataclass
class MergeSummary:
    merged: int = 0
    rejected: int = 0
    excluded: int = 0


class Ledger:
    """
    Account ledger feeding the Merkle commitment

    Keys are lower-cased addresses. Every mutation goes through
    `merge_contribution`, which validates before touching state so a failed
    merge never leaves a partial update behind.
    """

    def __init__(self):
        self._entries: Dict[str, LedgerEntry] = {}
        self.applied_deltas: Set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, account: str) -> bool:
        try:
            return normalize_address(account) in self._entries
        except ValueError:
            return False

    def __iter__(self) -> Iterator[LedgerEntry]:
        for account in sorted(self._entries):
            yield self._entries[account]

    def get(self, account: str) -> Optional[LedgerEntry]:
        try:
            return self._entries.get(normalize_address(account))
        except ValueError:
            return None

    def balance_of(self, account: str) -> int:
        entry = self.get(account)
        return entry.balance if entry else 0

    def balances(self) -> Dict[str, int]:
        """Account -> balance in canonical (sorted) account order"""
        return {entry.account: entry.balance for entry in self}

    @property
    def total_balance(self) -> int:
        return sum(entry.balance for entry in self._entries.values())

    def sources(self) -> List[str]:
        names: Set[str] = set()
        for entry in self._entries.values():
            names.update(entry.contributions)
        return sorted(names)

    def merge_contribution(self, account: str, source_name: str, amount: int,
                           mode: MergeMode = MergeMode.ADD) -> LedgerEntry:
        """
        Merge one contribution into the ledger

        Args:
            account: Account address, any case
            source_name: Contribution origin, e.g. "mint-events-fuse"
            amount: ADD: signed delta for the source; SET: new absolute value
            mode: MergeMode.ADD or MergeMode.SET

        Returns:
            The updated entry

        Raises:
            InvalidContributionError: bad input or a negative resulting contribution
        """
        try:
            key = normalize_address(account)
        except ValueError as e:
            raise InvalidContributionError(str(e), source=source_name, cause=e) from e
        if not source_name:
            raise InvalidContributionError("source name is required", account=key)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidContributionError(f"amount must be an integer, got {amount!r}",
                                           account=key, source=source_name)

        entry = self._entries.get(key)
        current = entry.contributions.get(source_name, 0) if entry else 0
        if mode is MergeMode.ADD:
            updated = current + amount
        elif mode is MergeMode.SET:
            updated = amount
        else:
            raise InvalidContributionError(f"unknown merge mode: {mode!r}", account=key, source=source_name)

        if updated < 0:
            raise InvalidContributionError(
                f"{source_name} contribution for {key} would become negative ({current} -> {updated})",
                account=key, source=source_name,
            )

        if entry is None:
            entry = LedgerEntry(account=key)
            self._entries[key] = entry
        entry.contributions[source_name] = updated
        return entry

    def merge_records(self, records: Iterable[Record], source_name: str,
                      mode: MergeMode = MergeMode.ADD,
                      exclude: Optional[Set[str]] = None) -> MergeSummary:
        """Merge a batch of validated records, skipping excluded accounts and rejected contributions"""
        summary = MergeSummary()
        exclude = exclude or set()
        for record in records:
            for account, amount in record.contributions():
                if account in exclude:
                    summary.excluded += 1
                    continue
                try:
                    self.merge_contribution(account, source_name, amount, mode)
                    summary.merged += 1
                except InvalidContributionError as e:
                    summary.rejected += 1
                    logger.warning(f"Rejected {record.kind} contribution: {e}")
        return summary

    def apply_recovery_deltas(self, deltas: Iterable[RecoveryDelta]) -> int:
        """
        Apply correction deltas once each, keyed by their delta id

        Returns:
            Number of deltas applied in this call (duplicates are skipped)
        """
        applied = 0
        for delta in deltas:
            if delta.delta_id in self.applied_deltas:
                logger.info(f"Skipping already applied recovery delta {delta.delta_id}")
                continue
            if delta.sign not in (1, -1):
                raise InvalidContributionError(f"delta {delta.delta_id} has invalid sign {delta.sign}",
                                               account=delta.account, source=delta.source)
            if isinstance(delta.amount, bool) or not isinstance(delta.amount, int) or delta.amount < 0:
                raise InvalidContributionError(f"delta {delta.delta_id} has invalid amount {delta.amount!r}",
                                               account=delta.account, source=delta.source)
            self.merge_contribution(delta.account, delta.source, delta.sign * delta.amount, MergeMode.ADD)
            self.applied_deltas.add(delta.delta_id)
            applied += 1
        return applied

    def copy(self) -> "Ledger":
        return copy.deepcopy(self)

    def to_dict(self, hashes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Serializable snapshot; integers are written as decimal strings"""
        accounts = {}
        for entry in self:
            item: Dict[str, Any] = {
                "balance": str(entry.balance),
                "contributions": {name: str(value) for name, value in sorted(entry.contributions.items())},
            }
            if hashes is not None and entry.account in hashes:
                item["hash"] = hashes[entry.account]
            accounts[entry.account] = item
        return {"accounts": accounts, "appliedDeltas": sorted(self.applied_deltas)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ledger":
        ledger = cls()
        for account, item in data.get("accounts", {}).items():
            contributions = item.get("contributions")
            if not contributions:
                # snapshots without a breakdown keep the balance as a single source
                contributions = {"snapshot": item.get("balance", "0")}
            for name, value in contributions.items():
                ledger.merge_contribution(account, name, parse_amount(value), MergeMode.SET)
        ledger.applied_deltas = set(data.get("appliedDeltas", []))
        return ledger


def recovery_deltas_from_events(mints: Iterable[Record], claims: Iterable[Record],
                                prefix: str = "recover") -> List[RecoveryDelta]:
    """
    Net reputation minted after a snapshot minus reputation already claimed

    Only accounts with a positive net amount produce a delta. Delta ids are
    derived from the account so the same event set always yields the same ids.
    """
    net: Dict[str, int] = {}
    for record in list(mints) + list(claims):
        for account, amount in record.contributions():
            net[account] = net.get(account, 0) + amount
    return [
        RecoveryDelta(delta_id=f"{prefix}:{account}", account=account, amount=amount)
        for account, amount in sorted(net.items())
        if amount > 0
    ]
