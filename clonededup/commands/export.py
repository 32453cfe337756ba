"""CLI command for exporting the dedup journal to Parquet."""
from __future__ import annotations

import argparse
from argparse import _SubParsersAction
from pathlib import Path
from typing import Optional, Sequence

from ..config import load_config
from ..export import export_journal


def _configure_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default="config/clonededup.yaml", help="Configuration file (used when --journal/--out omitted)")
    parser.add_argument("--journal", help="Explicit path to the SQLite journal")
    parser.add_argument("--out", help="Destination folder for Parquet files")


def add_parser(subparsers: _SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "export",
        help="Export journal tables to Parquet",
        description="Write the run and action journal to Parquet files for downstream analytics.",
    )
    _configure_parser(parser)
    parser.set_defaults(handler=run_from_args)
    return parser


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog or "clonededup export", description="Export journal tables to Parquet")
    _configure_parser(parser)
    return parser


def run_from_args(args: argparse.Namespace) -> int:
    cfg = load_config(Path(args.config))
    db_path = args.journal or cfg.journal.path
    out_dir = args.out or cfg.export.parquet_dir
    written = export_journal(Path(db_path), Path(out_dir))
    for table, path in written.items():
        print(f"[EXPORT] {table} -> {path}")
    return 0


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return run_from_args(args)


__all__ = ["add_parser", "build_parser", "run_cli", "run_from_args"]
