"""
Snapshot Exporter
Reads and writes ledger snapshots, commitments, proofs, gap reports and CSV exports
"""

import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from ..collectors.event_scanner import Gap
from ..errors import ConfigurationError, LeafNotFoundError
from ..ledger import RECOVERY_SOURCE, Ledger, RecoveryDelta
from ..merkle import (HashFunction, MerkleTree, build_tree, compute_leaf, get_proof, keccak,
                      leaf_index, to_bytes32, to_hex)
from ..records import normalize_address, parse_amount

logger = logging.getLogger(__name__)

PROOF_CHUNK_SIZE = 50


def write_json(path: str, data: Any):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    logger.info(f"Wrote {path}")


def read_json(path: str) -> Any:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"could not read {path}: {e}", cause=e) from e


def write_ledger_snapshot(ledger: Ledger, path: str, hashes: Optional[Dict[str, bytes]] = None):
    """Write ledger.json including the applied recovery delta ids"""
    hex_hashes = {account: to_hex(leaf) for account, leaf in (hashes or {}).items()}
    write_json(path, ledger.to_dict(hex_hashes if hashes is not None else None))


def load_ledger_snapshot(path: str) -> Ledger:
    ledger = Ledger.from_dict(read_json(path))
    logger.info(f"Loaded {len(ledger)} accounts and {len(ledger.applied_deltas)} applied deltas from {path}")
    return ledger


def commitment_data(balances: Dict[str, int], hashes: Dict[str, bytes], tree: MerkleTree) -> Dict[str, Any]:
    return {
        "treeData": {
            account: {"balance": str(balances[account]), "hash": to_hex(hashes[account])}
            for account in sorted(hashes)
        },
        "merkleRoot": tree.hex_root,
    }


def write_commitment(path: str, balances: Dict[str, int], hashes: Dict[str, bytes], tree: MerkleTree):
    write_json(path, commitment_data(balances, hashes, tree))


def load_commitment(path: str, hash_fn: HashFunction = keccak) -> Tuple[Dict[str, int], Dict[str, bytes], MerkleTree]:
    """
    Rebuild a tree from commitment.json

    Leaves are recomputed from the stored balances. A stored hash or root that
    does not match the recomputed one is logged as a warning; the recomputed
    values win.

    Returns:
        (balances, leaf hashes, tree)
    """
    data = read_json(path)
    balances: Dict[str, int] = {}
    hashes: Dict[str, bytes] = {}
    for account, item in data.get("treeData", {}).items():
        key = normalize_address(account)
        balances[key] = parse_amount(item["balance"])
        hashes[key] = compute_leaf(key, balances[key], hash_fn)
        stored = item.get("hash")
        if stored and to_bytes32(stored) != hashes[key]:
            logger.warning(f"Stored leaf hash for {key} does not match its balance, using recomputed hash")

    tree = build_tree(hashes.values(), hash_fn)
    stored_root = data.get("merkleRoot")
    if stored_root and to_bytes32(stored_root) != tree.root:
        logger.warning(f"Recomputed root {tree.hex_root} differs from stored merkleRoot {stored_root}")
    else:
        logger.info(f"Loaded commitment with {len(tree)} leaves, root {tree.hex_root}")
    return balances, hashes, tree


def proof_result(tree: MerkleTree, account: str, balances: Dict[str, int],
                 hashes: Dict[str, bytes]) -> Dict[str, Any]:
    """
    Proof answer for one account

    Returns:
        {"proofIndex", "proof", "leafData": {"account", "balance", "hash"}}

    Raises:
        LeafNotFoundError: account has no leaf in the commitment
    """
    key = normalize_address(account)
    if key not in hashes:
        raise LeafNotFoundError(f"account {key} is not part of the commitment", leaf=key)
    leaf = hashes[key]
    return {
        "proofIndex": leaf_index(tree, leaf),
        "proof": [to_hex(node) for node in get_proof(tree, leaf)],
        "leafData": {"account": key, "balance": str(balances[key]), "hash": to_hex(leaf)},
    }


def bulk_proofs(tree: MerkleTree, accounts: Iterable[str], balances: Dict[str, int],
                hashes: Dict[str, bytes], chunk_size: int = PROOF_CHUNK_SIZE) -> Dict[str, Dict[str, Any]]:
    """Proofs for many accounts keyed by account; accounts without a leaf are logged and skipped"""
    accounts = list(accounts)
    proofs: Dict[str, Dict[str, Any]] = {}
    for start in range(0, len(accounts), chunk_size):
        for account in accounts[start:start + chunk_size]:
            try:
                result = proof_result(tree, account, balances, hashes)
            except (LeafNotFoundError, ValueError) as e:
                logger.warning(f"No proof for {account}: {e}")
                continue
            proofs[result["leafData"]["account"]] = result
        logger.info(f"Generated proofs {start + 1}-{min(start + chunk_size, len(accounts))} of {len(accounts)}")
    return proofs


def write_csv(ledger: Ledger, path: str, committed: Optional[Iterable[str]] = None):
    """
    Export address, amount, flags rows

    Flags: "zero" for zero balances, "recovered" for accounts carrying a
    recovery delta, "uncommitted" for accounts without a leaf.
    """
    committed = set(committed) if committed is not None else None
    rows: List[Dict[str, Any]] = []
    for entry in ledger:
        flags = []
        if entry.balance == 0:
            flags.append("zero")
        if RECOVERY_SOURCE in entry.contributions:
            flags.append("recovered")
        if committed is not None and entry.account not in committed:
            flags.append("uncommitted")
        rows.append({"address": entry.account, "amount": str(entry.balance), "flags": "|".join(flags)})

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    pd.DataFrame(rows, columns=["address", "amount", "flags"]).to_csv(path, index=False)
    logger.info(f"Wrote {len(rows)} rows to {path}")


def write_gap_report(gaps: Iterable[Gap], path: str):
    gaps = list(gaps)
    write_json(path, {"gaps": [gap.to_dict() for gap in gaps], "count": len(gaps)})
    if gaps:
        logger.warning(f"{len(gaps)} ranges/windows were skipped, see {path}")


def load_recovery_deltas(path: str) -> List[RecoveryDelta]:
    """
    Read a delta file

    Either a list or {"deltas": [...]}, each item
    {"id", "account", "amount", "sign" (optional, +1/-1), "source" (optional)}.
    """
    data = read_json(path)
    items = data.get("deltas", []) if isinstance(data, dict) else data
    deltas = []
    for item in items:
        try:
            deltas.append(RecoveryDelta(
                delta_id=str(item["id"]),
                account=normalize_address(item["account"]),
                amount=parse_amount(item["amount"]),
                sign=int(item.get("sign", 1)),
                source=item.get("source", RECOVERY_SOURCE),
            ))
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"invalid recovery delta {item!r} in {path}: {e}", cause=e) from e
    logger.info(f"Loaded {len(deltas)} recovery deltas from {path}")
    return deltas
