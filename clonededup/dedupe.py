# clonededup/dedupe.py
"""
Duplicate reclamation pipeline:
1. Size index over every regular file under the roots (singletons never hashed)
2. Concurrent content hashing of same-size candidates
3. Each digest group's duplicates swapped for copy-on-write clones of one master
"""
from __future__ import annotations
import filecmp
import os
import secrets
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .clone import (
    CloneFunc,
    FileMetadata,
    capture_metadata,
    extents_shared,
    get_clone_primitive,
    require_xattr_support,
    restore_metadata,
)
from .config import ClonededupConfig
from .errors import CloneError, DataLossRiskError, MetadataError
from .hashing import HashStats, hash_candidates
from .index import DedupGroup, SizeIndex, drain_candidates
from .journal import Journal
from .scan import ScanStats, scan_roots
from .util import TEMP_MARKER, _emit, require_algorithm, whole_megabytes

ProgressCallback = Callable[[str, int, int, str], None]
LogCallback = Callable[[str], None]

CLONED = "cloned"
WOULD_CLONE = "would-clone"
ALREADY_LINKED = "already-linked"
ALREADY_CLONED = "already-cloned"
CONTENT_MISMATCH = "content-mismatch"
SIZE_CHANGED = "size-changed"
MASTER_UNAVAILABLE = "master-unavailable"
CAPTURE_FAILED = "capture-failed"
CLONE_FAILED = "clone-failed"
DATA_LOSS_RISK = "data-loss-risk"

ERROR_STATUSES = {MASTER_UNAVAILABLE, CAPTURE_FAILED, CLONE_FAILED, DATA_LOSS_RISK}


@dataclass
class DedupAction:
    digest: str
    master: str
    duplicate: str
    size_bytes: int
    status: str
    error: Optional[str] = None


@dataclass
class DedupStats:
    groups: int = 0
    duplicates_considered: int = 0
    cloned: int = 0
    skipped: int = 0
    errors: int = 0
    data_loss_risks: int = 0
    metadata_warnings: int = 0
    multi_link_duplicates: int = 0
    bytes_reclaimed: int = 0
    potential_bytes: int = 0
    cancelled: bool = False
    actions: List[DedupAction] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "groups": self.groups,
            "duplicates_considered": self.duplicates_considered,
            "cloned": self.cloned,
            "skipped": self.skipped,
            "errors": self.errors,
            "data_loss_risks": self.data_loss_risks,
            "metadata_warnings": self.metadata_warnings,
            "multi_link_duplicates": self.multi_link_duplicates,
            "bytes_reclaimed": self.bytes_reclaimed,
            "potential_bytes": self.potential_bytes,
            "cancelled": self.cancelled,
        }


def select_master(paths: Sequence[str], strategy: str = "first") -> str:
    """Pick the group representative.

    ``first`` keeps hash-completion order, so the choice is stable within one
    run only. ``oldest``/``newest`` order by mtime, ties broken by path.
    """
    strategy = strategy.lower()
    if strategy == "first":
        return paths[0]
    if strategy not in {"oldest", "newest"}:
        raise ValueError("keep_strategy must be 'first', 'oldest' or 'newest'")

    def mtime(p: str) -> int:
        try:
            return os.lstat(p).st_mtime_ns
        except OSError:
            return -1

    stamped = [(mtime(p), p) for p in paths]
    existing = [s for s in stamped if s[0] >= 0] or stamped
    if strategy == "newest":
        return sorted(existing, key=lambda s: (-s[0], s[1]))[0][1]
    return sorted(existing, key=lambda s: (s[0], s[1]))[0][1]


def build_groups(buckets: Sequence[tuple], strategy: str = "first") -> List[DedupGroup]:
    groups: List[DedupGroup] = []
    for digest, paths in buckets:
        if len(paths) < 2:
            continue
        master = select_master(paths, strategy)
        groups.append(DedupGroup(digest, master, tuple(p for p in paths if p != master)))
    return groups


def temp_sibling(path: str) -> str:
    d, name = os.path.split(path)
    return os.path.join(d, f".{name}{TEMP_MARKER}{os.getpid()}-{secrets.token_hex(4)}.tmp")


class DedupExecutor:
    """Replace each duplicate with a clone of its group's master.

    The replacement never deletes first: the master is cloned to a temporary
    sibling, the duplicate's attributes are applied to the clone, and the clone
    is renamed over the duplicate.
    """

    def __init__(
        self,
        cfg: ClonededupConfig,
        clone_fn: Optional[CloneFunc] = None,
        journal: Optional[Journal] = None,
        cancel_event: Optional[threading.Event] = None,
        log_cb: Optional[LogCallback] = None,
    ) -> None:
        self.cfg = cfg
        self.dry_run = cfg.dedupe.dry_run
        if clone_fn is None and not self.dry_run:
            clone_fn = get_clone_primitive()
        self.clone_fn = clone_fn
        self.journal = journal
        self.cancel_event = cancel_event
        self.log_cb = log_cb
        self.stats = DedupStats()

    def emit_log(self, message: str) -> None:
        print(message)
        _emit(self.log_cb, message)

    def _record(self, group: DedupGroup, duplicate: str, size: int, status: str, error: Optional[str] = None) -> None:
        action = DedupAction(group.digest, group.master, duplicate, size, status, error)
        self.stats.actions.append(action)
        if status == CLONED:
            self.stats.cloned += 1
        else:
            self.stats.skipped += 1
        if status in ERROR_STATUSES:
            self.stats.errors += 1
        if status == DATA_LOSS_RISK:
            self.stats.data_loss_risks += 1
        if self.journal is not None:
            self.journal.record_action(group.digest, group.master, duplicate, size, status, error)

    def run(self, groups: Sequence[DedupGroup]) -> DedupStats:
        self.stats.groups = len(groups)
        for group in groups:
            if self._cancelled():
                break
            self.process_group(group)
        return self.stats

    def _cancelled(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            if not self.stats.cancelled:
                self.emit_log("[CANCEL] Stopping before the next duplicate")
            self.stats.cancelled = True
            return True
        return False

    def process_group(self, group: DedupGroup) -> None:
        try:
            master_meta = capture_metadata(group.master, include_xattrs=False)
        except MetadataError as e:
            self.emit_log(f"[ERROR] Master unavailable, skipping group {group.digest[:16]}: {e}")
            for dup in group.duplicates:
                self.stats.duplicates_considered += 1
                self._record(group, dup, 0, MASTER_UNAVAILABLE, str(e))
            return

        for dup in group.duplicates:
            if self._cancelled():
                return
            self.stats.duplicates_considered += 1
            self.process_duplicate(group, dup, master_meta)

    def process_duplicate(self, group: DedupGroup, dup: str, master_meta: FileMetadata) -> None:
        master = group.master
        try:
            meta = capture_metadata(dup, include_xattrs=self.cfg.dedupe.restore_xattrs)
        except MetadataError as e:
            self.emit_log(f"[ERROR] {e}; leaving {dup} untouched")
            self._record(group, dup, 0, CAPTURE_FAILED, str(e))
            return

        if meta.same_inode(master_meta):
            self._record(group, dup, meta.size, ALREADY_LINKED)
            return
        if meta.size != master_meta.size:
            self.emit_log(f"[WARN] {dup} changed size since hashing; skipping")
            self._record(group, dup, meta.size, SIZE_CHANGED)
            return
        if self.journal is not None and self.journal.already_shared(group.digest, master, master_meta, dup, meta):
            self._record(group, dup, meta.size, ALREADY_CLONED)
            return
        if extents_shared(master, dup):
            self._record(group, dup, meta.size, ALREADY_CLONED)
            return
        if self.cfg.dedupe.verify_content:
            try:
                identical = filecmp.cmp(master, dup, shallow=False)
            except OSError as e:
                self.emit_log(f"[ERROR] Cannot compare {dup} with {master}: {e}")
                self._record(group, dup, meta.size, CAPTURE_FAILED, str(e))
                return
            if not identical:
                self.emit_log(f"[WARN] Content differs despite equal digest: {dup} vs {master}")
                self._record(group, dup, meta.size, CONTENT_MISMATCH)
                return

        if self.dry_run:
            self.emit_log(f"[DEDUPE] Would deduplicate: {dup} from {master}")
            self.stats.potential_bytes += meta.size
            self._record(group, dup, meta.size, WOULD_CLONE)
            return

        self.emit_log(f"[DEDUPE] deduplicating: {dup} from {master}")
        tmp = temp_sibling(dup)
        try:
            self.clone_fn(master, tmp)
        except CloneError as e:
            self._discard(tmp)
            self.emit_log(f"[ERROR] {e}")
            self._record(group, dup, meta.size, CLONE_FAILED, str(e))
            return

        warning: Optional[str] = None
        try:
            restore_metadata(
                tmp,
                meta,
                restore_ownership=self.cfg.dedupe.restore_ownership,
                restore_xattrs=self.cfg.dedupe.restore_xattrs,
            )
        except MetadataError as e:
            warning = str(e)
            self.stats.metadata_warnings += 1
            self.emit_log(f"[WARN] {e}")

        try:
            os.replace(tmp, dup)
        except OSError as e:
            if os.path.lexists(dup):
                self._discard(tmp)
                msg = f"Cannot swap clone into place for {dup}: {e}"
                self.emit_log(f"[ERROR] {msg}")
                self._record(group, dup, meta.size, CLONE_FAILED, msg)
            else:
                err = DataLossRiskError(dup, tmp, f"{dup} is missing after a failed swap; clone kept at {tmp}: {e}")
                self.emit_log(f"[ERROR][DATA-LOSS-RISK] {err}")
                self._record(group, dup, meta.size, DATA_LOSS_RISK, str(err))
            return

        self.stats.bytes_reclaimed += meta.size
        if meta.nlink > 1:
            self.stats.multi_link_duplicates += 1
            self.emit_log(
                f"[WARN] {dup} had {meta.nlink - 1} other hard link(s); "
                f"those keep its old blocks allocated, so the counted {meta.size:,} bytes are not freed"
            )
        self._record(group, dup, meta.size, CLONED, warning)
        if self.journal is not None:
            try:
                after = capture_metadata(dup, include_xattrs=False)
            except MetadataError as e:
                self.emit_log(f"[WARN] Not journalling clone identity for {dup}: {e}")
            else:
                self.journal.mark_shared(group.digest, [(master, master_meta), (dup, after)])

    def _discard(self, tmp: str) -> None:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.emit_log(f"[WARN] Could not remove temporary clone {tmp}: {e}")


@dataclass
class DedupeResult:
    scan: ScanStats
    hashing: HashStats
    dedupe: DedupStats
    candidates: int = 0
    cancelled: bool = False
    run_id: Optional[int] = None

    @property
    def reclaimed_mb(self) -> int:
        return whole_megabytes(self.dedupe.bytes_reclaimed)


def run_dedupe(
    cfg: ClonededupConfig,
    roots: Optional[Sequence[str]] = None,
    clone_fn: Optional[CloneFunc] = None,
    cancel_event: Optional[threading.Event] = None,
    progress_cb: Optional[ProgressCallback] = None,
    log_cb: Optional[LogCallback] = None,
) -> DedupeResult:
    """
    Run the full pipeline over ``roots`` (plus ``cfg.roots``).

    Raises UnsupportedPlatformError up front for a real run on a host without
    a clone primitive, and MissingDependencyError when the configured hash
    algorithm is unavailable; every per-file problem is logged and recorded
    instead.
    """

    def emit_progress(stage: str, current: int, total: int, message: str) -> None:
        _emit(progress_cb, stage, current, total, message)

    def emit_log(message: str) -> None:
        print(message)
        _emit(log_cb, message)

    all_roots = list(cfg.roots) + [r for r in (roots or []) if r not in cfg.roots]
    dry_run = cfg.dedupe.dry_run
    if clone_fn is None and not dry_run:
        clone_fn = get_clone_primitive()
    require_algorithm(cfg.hashing.algorithm)
    if cfg.dedupe.restore_xattrs:
        require_xattr_support()

    emit_progress("start", 0, 0, "Preparing deduplication...")
    emit_log(
        f"[RUN] roots={len(all_roots)} mode={'dry-run' if dry_run else 'clone'} "
        f"keep={cfg.dedupe.keep_strategy} verify={'on' if cfg.dedupe.verify_content else 'off'}"
    )

    if not cfg.journal.enabled:
        emit_log(
            "[WARN] Journal disabled; pairs cloned by earlier runs are only recognised "
            "where the filesystem reports shared extents"
        )
    emit_log("[SCAN] Making duplicate candidate list")
    size_index = SizeIndex()
    scan_stats = scan_roots(all_roots, cfg, size_index, progress_cb=progress_cb, log_cb=log_cb)
    worklist = drain_candidates(size_index)
    del size_index

    hash_index, hash_stats = hash_candidates(
        worklist,
        cfg,
        cancel_event=cancel_event,
        progress_cb=progress_cb,
        log_cb=log_cb,
    )
    result = DedupeResult(scan=scan_stats, hashing=hash_stats, dedupe=DedupStats(), candidates=len(worklist))
    del worklist

    if cancel_event is not None and cancel_event.is_set():
        emit_log("[CANCEL] Hashing was interrupted; no files were modified")
        emit_progress("cancelled", 0, 0, "Cancelled")
        result.cancelled = True
        return result

    groups = build_groups(hash_index.groups(), cfg.dedupe.keep_strategy)
    del hash_index
    emit_log(f"[DEDUPE] Indexing finished - {len(groups):,} duplicate groups found")
    emit_progress("dedupe", 0, len(groups), f"{len(groups):,} duplicate groups")

    journal: Optional[Journal] = None
    if cfg.journal.enabled:
        journal = Journal(Path(cfg.journal.path))
        result.run_id = journal.start_run(all_roots, dry_run)
    try:
        executor = DedupExecutor(cfg, clone_fn=clone_fn, journal=journal, cancel_event=cancel_event, log_cb=log_cb)
        result.dedupe = executor.run(groups)
        if journal is not None:
            journal.finish_run(result.dedupe.bytes_reclaimed, result.dedupe.cloned, result.dedupe.errors)
    finally:
        if journal is not None:
            journal.close()

    result.cancelled = result.dedupe.cancelled
    emit_progress("done", result.dedupe.duplicates_considered, result.dedupe.duplicates_considered, "Done")
    if dry_run:
        emit_log(f"[DONE] Dry run: {whole_megabytes(result.dedupe.potential_bytes)} MB could be reclaimed")
    else:
        emit_log(f"[DONE] Reclaimed {result.reclaimed_mb} MB")
    return result
