"""CLI command for reclaiming space from duplicate files with copy-on-write clones."""
from __future__ import annotations

import argparse
import signal
import sys
import threading
from argparse import _SubParsersAction
from pathlib import Path
from typing import Optional, Sequence

from ..config import ClonededupConfig, load_config
from ..dedupe import DATA_LOSS_RISK, run_dedupe
from ..errors import MissingDependencyError, UnsupportedPlatformError


def _configure_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("roots", nargs="*", help="Root directories to scan for duplicates")
    parser.add_argument("--config", default="config/clonededup.yaml", help="Configuration file (defaults are used if it does not exist)")
    parser.add_argument("--max-workers", type=int, help="Override hashing worker thread count")
    parser.add_argument("--chunk-bytes", type=int, help="Chunk size (bytes) for streaming reads")
    parser.add_argument("--blake3", action="store_true", help="Use BLAKE3 instead of SHA-256 (requires the blake3 package)")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be cloned without touching any file")
    parser.add_argument("--verify", action="store_true", help="Compare file contents byte-for-byte before replacing a duplicate")
    parser.add_argument("--keep", choices=["first", "oldest", "newest"], help="Which file in each group becomes the clone master")
    parser.add_argument("--min-size", type=int, help="Ignore files smaller than this many bytes")
    parser.add_argument("--exclude", action="append", help="Skip paths containing this substring (may repeat)")
    parser.add_argument("--journal", help="Path to the SQLite journal")
    parser.add_argument("--no-journal", action="store_true", help="Do not record this run in the journal")


def add_parser(subparsers: _SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "dedupe",
        help="Replace duplicate files with copy-on-write clones",
        description="Find files with identical content and replace the copies with clones of one master file.",
    )
    _configure_parser(parser)
    parser.set_defaults(handler=run_from_args)
    return parser


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog or "clonededup dedupe", description="Replace duplicate files with copy-on-write clones")
    _configure_parser(parser)
    return parser


def apply_overrides(cfg: ClonededupConfig, args: argparse.Namespace) -> ClonededupConfig:
    if args.max_workers is not None:
        cfg.hashing.max_workers = args.max_workers
    if args.chunk_bytes is not None:
        cfg.hashing.chunk_bytes = args.chunk_bytes
    if args.blake3:
        cfg.hashing.algorithm = "blake3"
    if args.dry_run:
        cfg.dedupe.dry_run = True
    if args.verify:
        cfg.dedupe.verify_content = True
    if args.keep:
        cfg.dedupe.keep_strategy = args.keep
    if args.min_size is not None:
        cfg.dedupe.min_file_size = args.min_size
    if args.exclude:
        cfg.exclude_paths.extend(args.exclude)
    if args.journal:
        cfg.journal.path = args.journal
    if args.no_journal:
        cfg.journal.enabled = False
    return cfg


def run_from_args(args: argparse.Namespace) -> int:
    cfg = apply_overrides(load_config(Path(args.config)), args)
    roots = list(args.roots or [])
    if not roots and not cfg.roots:
        raise SystemExit("No root paths given. Pass one or more directories or configure roots.")

    cancel = threading.Event()

    def _handle_sigint(signum, frame):  # noqa: ARG001
        cancel.set()

    previous = None
    try:
        previous = signal.signal(signal.SIGINT, _handle_sigint)
    except ValueError:
        # not the main thread
        pass

    try:
        result = run_dedupe(cfg, roots, cancel_event=cancel)
    except (UnsupportedPlatformError, MissingDependencyError) as e:
        print(f"[FATAL] {e}", file=sys.stderr)
        return 2
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    stats = result.dedupe
    print("\n" + "=" * 70)
    print("CLONE DEDUPLICATION SUMMARY")
    print("=" * 70)
    print(f"Files scanned:         {result.scan.files_recorded:>10,}")
    print(f"Candidates hashed:     {result.hashing.hashed:>10,}")
    print(f"Hash errors:           {result.hashing.errors:>10,}")
    print(f"Duplicate groups:      {stats.groups:>10,}")
    print(f"Duplicates considered: {stats.duplicates_considered:>10,}")
    print(f"Files cloned:          {stats.cloned:>10,}")
    print(f"Skipped:               {stats.skipped:>10,}")
    print(f"Errors:                {stats.errors:>10,}")
    if stats.multi_link_duplicates:
        print(f"Multi-link duplicates: {stats.multi_link_duplicates:>10,}  (counted, blocks still held by other links)")
    if cfg.dedupe.dry_run:
        print(f"Potential savings:     {stats.potential_bytes // 1_000_000:>10,} MB")
    else:
        print(f"Space reclaimed:       {result.reclaimed_mb:>10,} MB")
    print("=" * 70)

    risky = [a for a in stats.actions if a.status == DATA_LOSS_RISK]
    if risky:
        print("\nFiles needing manual recovery:")
        for action in risky:
            print(f"  - {action.error}")

    if result.cancelled:
        print("Cancelled.")
        return 130
    return 0


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return run_from_args(args)


__all__ = ["add_parser", "apply_overrides", "build_parser", "run_cli", "run_from_args"]
