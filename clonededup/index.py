"""
In-memory indexes for the two-stage duplicate filter:
1. SizeIndex groups paths by byte length (single-threaded enumeration phase)
2. HashIndex groups paths by content digest (shared by all hash workers)
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

InsertObserver = Callable[[str, str], None]


@dataclass(frozen=True)
class FileRecord:
    path: str
    size: int


@dataclass(frozen=True)
class DedupGroup:
    digest: str
    master: str
    duplicates: Tuple[str, ...]

    @property
    def paths(self) -> Tuple[str, ...]:
        return (self.master,) + self.duplicates


class SizeIndex:
    """Size -> insertion-ordered paths. Not thread-safe."""

    def __init__(self) -> None:
        self._buckets: Dict[int, List[str]] = {}
        self.files_recorded = 0

    def record(self, path: str, size: int) -> None:
        bucket = self._buckets.get(size)
        if bucket is None:
            self._buckets[size] = [path]
        else:
            bucket.append(path)
        self.files_recorded += 1

    def add(self, rec: FileRecord) -> None:
        self.record(rec.path, rec.size)

    def __len__(self) -> int:
        return len(self._buckets)

    def buckets(self) -> Dict[int, List[str]]:
        return self._buckets


def candidate_paths(index: SizeIndex) -> List[str]:
    """Every path whose size is shared with at least one other path."""
    out: List[str] = []
    for paths in index.buckets().values():
        if len(paths) < 2:
            continue
        out.extend(paths)
    return out


def drain_candidates(index: SizeIndex) -> List[str]:
    """Build the hashing worklist and release the size buckets."""
    worklist = candidate_paths(index)
    index.buckets().clear()
    return worklist


class HashIndex:
    """Digest -> paths, appended to by concurrent hash workers."""

    def __init__(self, observer: Optional[InsertObserver] = None) -> None:
        self._buckets: Dict[str, List[str]] = {}
        self._lock = threading.Lock()
        self._observer = observer

    def insert(self, digest: str, path: str) -> None:
        with self._lock:
            bucket = self._buckets.get(digest)
            if bucket is None:
                self._buckets[digest] = [path]
            else:
                bucket.append(path)
        if self._observer is not None:
            self._observer(digest, path)

    def bucket(self, digest: str) -> List[str]:
        with self._lock:
            return list(self._buckets.get(digest, ()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def groups(self) -> List[Tuple[str, List[str]]]:
        # Only valid once every hash worker has finished.
        return [(digest, list(paths)) for digest, paths in self._buckets.items() if len(paths) >= 2]
