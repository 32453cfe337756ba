# clonededup/scan.py
from __future__ import annotations
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Set

from .config import ClonededupConfig
from .errors import EnumerationError
from .index import FileRecord, SizeIndex
from .util import TEMP_MARKER, _emit

ProgressCallback = Callable[[str, int, int, str], None]
LogCallback = Callable[[str], None]


def should_skip_path(p: Path, excludes: List[str]) -> bool:
    s = str(p)
    for pat in excludes:
        if pat and pat in s:
            return True
    return False


@dataclass
class ScanStats:
    roots: int = 0
    directories: int = 0
    files_recorded: int = 0
    skipped_non_regular: int = 0
    skipped_small: int = 0
    errors: int = 0


def stat_record(path: Path) -> Optional[FileRecord]:
    """lstat ``path``; None for anything that is not a regular file."""
    try:
        st = os.lstat(path)
    except OSError as e:
        raise EnumerationError(f"{path}: {e}") from e
    if not stat.S_ISREG(st.st_mode):
        return None
    return FileRecord(path=os.path.abspath(path), size=st.st_size)


def iter_files(
    root: str,
    excludes: List[str],
    stats: ScanStats,
    log: LogCallback,
) -> Iterator[FileRecord]:
    def on_walk_error(err: OSError) -> None:
        stats.errors += 1
        log(f"[WARN] Cannot list {err.filename}: {err.strerror}")

    # os.walk does not descend into symlinked directories by default
    for dirpath, dirnames, filenames in os.walk(root, onerror=on_walk_error):
        dpath = Path(dirpath)
        if should_skip_path(dpath, excludes):
            dirnames[:] = []
            continue
        stats.directories += 1
        for name in filenames:
            p = dpath / name
            # leftover clones from an interrupted run
            if TEMP_MARKER in name and name.endswith(".tmp"):
                continue
            if should_skip_path(p, excludes):
                continue
            try:
                rec = stat_record(p)
            except EnumerationError as e:
                stats.errors += 1
                log(f"[WARN] Skipping {p}: {e}")
                continue
            if rec is None:
                stats.skipped_non_regular += 1
                continue
            yield rec


def scan_roots(
    roots: Sequence[str],
    cfg: ClonededupConfig,
    index: SizeIndex,
    progress_cb: Optional[ProgressCallback] = None,
    log_cb: Optional[LogCallback] = None,
) -> ScanStats:
    """Walk every root and feed regular files into ``index``, one root at a time."""

    def emit_progress(stage: str, current: int, total: int, message: str) -> None:
        _emit(progress_cb, stage, current, total, message)

    def emit_log(message: str) -> None:
        print(message)
        _emit(log_cb, message)

    stats = ScanStats()
    seen: Set[str] = set()
    excludes = cfg.exclude_paths or []
    min_size = cfg.dedupe.min_file_size

    emit_progress("enumerating", 0, 0, "Walking directories...")
    for root in roots:
        if not Path(root).is_dir():
            emit_log(f"[WARN] Root does not exist or is not a directory: {root}")
            stats.errors += 1
            continue
        stats.roots += 1
        emit_log(f"[SCAN] Enumerating {root}")
        for rec in iter_files(root, excludes, stats, emit_log):
            if rec.path in seen:
                continue
            seen.add(rec.path)
            if rec.size < min_size:
                stats.skipped_small += 1
                continue
            index.add(rec)
            stats.files_recorded += 1
            if stats.files_recorded % 1000 == 0:
                emit_progress(
                    "enumerating",
                    stats.files_recorded,
                    0,
                    f"Scanned {stats.directories} folders, recorded {stats.files_recorded} files",
                )

    emit_progress("enumerating", stats.files_recorded, stats.files_recorded, "Enumeration complete")
    emit_log(
        f"[SCAN] {stats.files_recorded:,} files across {stats.directories:,} folders "
        f"({len(index):,} distinct sizes, {stats.errors:,} errors)"
    )
    return stats
