"""
Reputation Distribution
Pool based reputation allocation and distribution statistics for a finished ledger
"""

import logging
import math
from typing import Dict, List, Union

from ..errors import ConfigurationError
from ..ledger import Ledger, MergeMode

logger = logging.getLogger(__name__)

# Default reputation pools, in wei
DEFAULT_ALLOCATIONS = {
    "claimers": 48_000_000 * 10 ** 18,
    "holders": 24_000_000 * 10 ** 18,
    "stakers": 24_000_000 * 10 ** 18,
}

QUANTILES = (0.001, 0.01, 0.1, 0.5)


def allocate_reputation(ledger: Ledger, allocations: Dict[str, int]) -> Ledger:
    """
    Turn raw per-source contributions into reputation

    Each source named in `allocations` is a pool: every account receives
    floor(pool * contribution / pool_total). Sources without an allocation are
    copied over unchanged.

    Args:
        ledger: Merged ledger of raw contributions
        allocations: Pool (source name) -> total reputation to hand out

    Returns:
        New ledger holding reputation per pool; the input is not modified
    """
    for name, pool in allocations.items():
        if isinstance(pool, bool) or not isinstance(pool, int) or pool < 0:
            raise ConfigurationError(f"allocation for {name} must be a non-negative integer, got {pool!r}")

    totals: Dict[str, int] = {}
    for entry in ledger:
        for name, value in entry.contributions.items():
            totals[name] = totals.get(name, 0) + value

    result = Ledger()
    result.applied_deltas = set(ledger.applied_deltas)
    for entry in ledger:
        for name, value in sorted(entry.contributions.items()):
            if name in allocations:
                total = totals[name]
                value = allocations[name] * value // total if total else 0
            result.merge_contribution(entry.account, name, value, MergeMode.SET)

    for name in sorted(allocations):
        handed_out = sum(e.contributions.get(name, 0) for e in result)
        logger.info(f"Pool {name}: allocated {handed_out} of {allocations[name]} "
                    f"(dust {allocations[name] - handed_out})")
    return result


def gini_coefficient(balances: List[int]) -> float:
    """
    Gini coefficient of a balance distribution

    Args:
        balances: Non-negative balances

    Returns:
        0.0 for perfect equality up to (n-1)/n when one account holds everything
    """
    total = sum(balances)
    n = len(balances)
    if n == 0 or total == 0:
        return 0.0
    cumsum = 0
    for i, balance in enumerate(sorted(balances)):
        cumsum += (i + 1) * balance
    return (2 * cumsum) / (n * total) - (n + 1) / n


def distribution_report(balances: Dict[str, int]) -> Dict[str, Union[int, float]]:
    """
    Concentration statistics for a set of balances

    Args:
        balances: Account -> balance

    Returns:
        Dictionary with total, account count, the share of the total held by
        the top 0.1%/1%/10%/50% of accounts and the Gini coefficient
    """
    values = sorted(balances.values(), reverse=True)
    total = sum(values)
    report: Dict[str, Union[int, float]] = {
        "total": total,
        "accounts": len(values),
    }
    for q in QUANTILES:
        top = max(1, math.ceil(len(values) * q)) if values else 0
        share = sum(values[:top]) / total * 100 if total > 0 else 0.0
        report[f"top_{q * 100:g}%_share"] = share
    report["gini"] = gini_coefficient(values)
    return report
