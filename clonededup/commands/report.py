"""CLI command for summarising space reclaimed by past runs."""
from __future__ import annotations

import argparse
from argparse import _SubParsersAction
from pathlib import Path
from typing import Optional, Sequence

from ..config import load_config
from ..journal import get_savings_report
from ..util import whole_megabytes


def _configure_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default="config/clonededup.yaml", help="Configuration file (used when --journal omitted)")
    parser.add_argument("--journal", help="Explicit path to the SQLite journal")
    parser.add_argument("--limit", type=int, default=20, help="Number of runs and digests to show")


def add_parser(subparsers: _SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "report",
        help="Show space reclaimed by previous runs",
        description="Summarise journalled runs and the digests that reclaimed the most space.",
    )
    _configure_parser(parser)
    parser.set_defaults(handler=run_from_args)
    return parser


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog or "clonededup report", description="Show space reclaimed by previous runs")
    _configure_parser(parser)
    return parser


def run_from_args(args: argparse.Namespace) -> int:
    db_path = args.journal
    if not db_path:
        cfg = load_config(Path(args.config))
        db_path = cfg.journal.path
    if not Path(db_path).expanduser().exists():
        print(f"No journal found at {db_path}")
        return 1

    report = get_savings_report(Path(db_path), limit=args.limit)

    print("\n" + "=" * 70)
    print("RECENT RUNS")
    print("=" * 70)
    if not report["runs"]:
        print("(none)")
    for run in report["runs"]:
        mode = "dry-run" if run["dry_run"] else "clone"
        status = "" if run["finished_at"] else " (unfinished)"
        print(
            f"#{run['run_id']:<5} {run['started_at'][:19]}  {mode:<7} "
            f"cloned={run['files_cloned'] or 0:>8,}  reclaimed={whole_megabytes(run['bytes_reclaimed'] or 0):>8,} MB  "
            f"errors={run['errors'] or 0:,}{status}"
        )

    print("\n" + "=" * 70)
    print("TOP DIGESTS BY SPACE RECLAIMED")
    print("=" * 70)
    if not report["top_digests"]:
        print("(none)")
    for row in report["top_digests"]:
        print(
            f"{row['digest'][:16]}  clones={row['clones']:>6,}  "
            f"reclaimed={whole_megabytes(row['bytes_reclaimed'] or 0):>8,} MB  {row['master_path']}"
        )
    print("=" * 70)
    return 0


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return run_from_args(args)


__all__ = ["add_parser", "build_parser", "run_cli", "run_from_args"]
