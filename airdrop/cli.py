#!/usr/bin/env python3
"""
airdrop-snapshot command line
One-shot batch runs: collect a snapshot, rebuild a commitment, answer proof queries, apply recovery deltas
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import SnapshotConfig
from .errors import SnapshotError
from .processing import exporter
from .processing.snapshot_builder import COMMITMENT_FILE, LEDGER_FILE, SnapshotBuilder

logger = logging.getLogger(__name__)


def setup_logging(log_file: str, verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="airdrop-snapshot", description="Reputation snapshot and Merkle commitment builder")
    parser.add_argument("--sources", help="Sources JSON file (default: SNAPSHOT_SOURCES_FILE)")
    parser.add_argument("--output-dir", help="Output directory (default: SNAPSHOT_OUTPUT_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    collect = commands.add_parser("collect", help="Collect all sources and build the commitment")
    collect.add_argument("--deltas", help="Recovery delta file applied after merging")

    build = commands.add_parser("build", help="Rebuild the commitment from a saved ledger")
    build.add_argument("--ledger", help="Ledger snapshot (default: <output-dir>/ledger.json)")

    proof = commands.add_parser("proof", help="Print or write proofs for accounts")
    proof.add_argument("accounts", nargs="*", help="Account addresses")
    proof.add_argument("--accounts-file", help="File with one address per line")
    proof.add_argument("--commitment", help="Commitment file (default: <output-dir>/commitment.json)")
    proof.add_argument("--out", help="Write all proofs to this file instead of stdout")

    recover = commands.add_parser("recover", help="Apply recovery deltas to a saved ledger")
    recover.add_argument("deltas", help="Recovery delta file")
    recover.add_argument("--ledger", help="Ledger snapshot (default: <output-dir>/ledger.json)")
    return parser


def _read_accounts(args) -> List[str]:
    accounts = list(args.accounts)
    if args.accounts_file:
        with open(args.accounts_file, "r") as f:
            accounts.extend(line.strip() for line in f if line.strip())
    return accounts


def run_command(args, config: SnapshotConfig) -> int:
    builder = SnapshotBuilder(config)

    if args.command == "collect":
        deltas = exporter.load_recovery_deltas(args.deltas) if args.deltas else None
        snapshot = builder.run(deltas)
        print(f"Merkle root: {snapshot.commitment.tree.hex_root} ({len(snapshot.gaps)} gaps)")
        return 0

    if args.command == "build":
        ledger = exporter.load_ledger_snapshot(args.ledger or config.output_path(LEDGER_FILE))
        snapshot = builder.finalize(ledger)
        print(f"Merkle root: {snapshot.commitment.tree.hex_root}")
        return 0

    if args.command == "recover":
        deltas = exporter.load_recovery_deltas(args.deltas)
        snapshot = builder.recover(args.ledger or config.output_path(LEDGER_FILE), deltas)
        print(f"Merkle root: {snapshot.commitment.tree.hex_root}")
        return 0

    if args.command == "proof":
        balances, hashes, tree = exporter.load_commitment(
            args.commitment or config.output_path(COMMITMENT_FILE), config.hash_function)
        accounts = _read_accounts(args)
        if args.out:
            proofs = exporter.bulk_proofs(tree, accounts, balances, hashes)
            exporter.write_json(args.out, proofs)
            print(f"Wrote {len(proofs)} of {len(accounts)} proofs to {args.out}")
            return 0 if len(proofs) == len(accounts) else 1
        for account in accounts:
            print(json.dumps(exporter.proof_result(tree, account, balances, hashes), indent=2))
        return 0

    raise SnapshotError(f"unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = SnapshotConfig.from_env(args.sources)
        if args.output_dir:
            config.output_dir = args.output_dir
        setup_logging(config.log_file, args.verbose)
        return run_command(args, config)
    except SnapshotError as e:
        logger.error(f"{type(e).__name__}: {e} {e.metadata or ''}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid input: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
