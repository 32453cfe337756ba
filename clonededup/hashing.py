from __future__ import annotations

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

from .config import ClonededupConfig
from .errors import HashError
from .index import HashIndex
from .util import HashCancelled, _emit, digest_file, require_algorithm

ProgressCallback = Callable[[str, int, int, str], None]
LogCallback = Callable[[str], None]


@dataclass
class HashStats:
    total_candidates: int = 0
    hashed: int = 0
    errors: int = 0
    cancelled: int = 0
    elapsed: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "total_candidates": self.total_candidates,
            "hashed": self.hashed,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "elapsed": self.elapsed,
        }


class ProgressReporter:
    """Percent complete for the hashing stage.

    Hash workers call ``advance`` once per finished file (hashed or failed);
    a log line is emitted whenever the whole percentage moves.
    """

    def __init__(
        self,
        total: int,
        emit_progress: Callable[[str, int, int, str], None],
        emit_log: Callable[[str], None],
    ) -> None:
        self.total = total
        self.done = 0
        self._last_percent = -1
        self._lock = threading.Lock()
        self._emit_progress = emit_progress
        self._emit_log = emit_log

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return (self.done * 100) // self.total

    def on_insert(self, digest: str, path: str) -> None:  # noqa: ARG002
        self.advance()

    def advance(self) -> None:
        # emit while holding the lock so lines come out in percent order
        with self._lock:
            self.done += 1
            pct = self.percent
            if pct == self._last_percent:
                return
            self._last_percent = pct
            self._emit_progress("hash", self.done, self.total, f"{pct}% hashed ({self.done:,}/{self.total:,})")
            self._emit_log(f"[HASH] {pct}%")


class HashEngine:
    def __init__(
        self,
        algorithm: str = "sha256",
        chunk_bytes: int = 100_000_000,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        require_algorithm(algorithm)
        self.algorithm = algorithm
        self.chunk_bytes = chunk_bytes
        self.cancel_event = cancel_event

    def hash(self, path: str) -> str:
        try:
            return digest_file(Path(path), self.algorithm, self.chunk_bytes, self.cancel_event)
        except HashCancelled:
            raise
        except (OSError, ValueError) as e:
            raise HashError(path, str(e)) from e


def hash_candidates(
    paths: Sequence[str],
    cfg: ClonededupConfig,
    engine: Optional[HashEngine] = None,
    cancel_event: Optional[threading.Event] = None,
    progress_cb: Optional[ProgressCallback] = None,
    log_cb: Optional[LogCallback] = None,
) -> Tuple[HashIndex, HashStats]:
    """Hash every candidate on a thread pool and return the populated index.

    Returns only after every submitted file has been hashed, failed, or been
    cancelled, so callers may read the index freely afterwards.
    """

    def emit_progress(stage: str, current: int, total: int, message: str) -> None:
        _emit(progress_cb, stage, current, total, message)

    def emit_log(message: str) -> None:
        with log_lock:
            print(message)
        _emit(log_cb, message)

    log_lock = threading.Lock()
    workers = cfg.hashing.max_workers or os.cpu_count() or 4
    engine = engine or HashEngine(cfg.hashing.algorithm, cfg.hashing.chunk_bytes, cancel_event)
    if cancel_event is None:
        cancel_event = engine.cancel_event

    stats = HashStats(total_candidates=len(paths))
    reporter = ProgressReporter(stats.total_candidates, emit_progress, emit_log)
    index = HashIndex(observer=reporter.on_insert)
    stats_lock = threading.Lock()

    if not paths:
        emit_log("[HASH] No duplicate candidates; nothing to hash")
        emit_progress("hash", 0, 0, "No files to hash")
        return index, stats

    emit_log(
        f"[HASH] Generating {engine.algorithm} checksums for {stats.total_candidates:,} files "
        f"with up to {workers} workers | chunk={engine.chunk_bytes:,} bytes"
    )
    emit_progress("hash", 0, stats.total_candidates, "Preparing workers")
    start = time.time()

    def work(path: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            with stats_lock:
                stats.cancelled += 1
            return
        try:
            digest = engine.hash(path)
        except HashCancelled:
            with stats_lock:
                stats.cancelled += 1
            return
        except HashError as e:
            with stats_lock:
                stats.errors += 1
            emit_log(f"[ERROR] Error while hashing {e}")
            reporter.advance()
            return
        with stats_lock:
            stats.hashed += 1
        index.insert(digest, path)

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(work, p) for p in paths]
        wait(futures)
    for fut in futures:
        # work() handles per-file failures; anything else is a bug worth surfacing
        fut.result()

    stats.elapsed = time.time() - start
    rate = stats.hashed / stats.elapsed if stats.elapsed > 0 else 0
    if stats.cancelled:
        emit_log(f"[CANCEL] Hashing stopped; {stats.cancelled:,} files not hashed")
    emit_log(
        f"[HASH] Complete: hashed={stats.hashed:,} errors={stats.errors:,} | {rate:.1f} files/sec"
    )
    return index, stats
