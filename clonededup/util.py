from __future__ import annotations
from pathlib import Path
import hashlib
import threading
from typing import Any, Callable, Optional

from .errors import MissingDependencyError

DEFAULT_CHUNK_BYTES = 100_000_000
TEMP_MARKER = ".clonededup-"


class HashCancelled(Exception):
    """Raised inside a hash loop when the cancel event is set."""


def _emit(cb: Optional[Callable[..., None]], *args, **kwargs) -> None:
    if not cb:
        return
    try:
        cb(*args, **kwargs)
    except Exception:
        pass


def _new_hasher(algorithm: str) -> Any:
    if algorithm == "sha256":
        return hashlib.sha256()
    if algorithm == "blake3":
        try:
            import blake3  # type: ignore
        except ImportError:
            raise MissingDependencyError(
                "The 'blake3' package is not installed. Install it with 'pip install blake3'."
            ) from None
        return blake3.blake3()
    raise ValueError(f"Unsupported hash algorithm: {algorithm}")


def require_algorithm(algorithm: str) -> None:
    """Fail before any work starts if ``algorithm`` cannot be used."""
    _new_hasher(algorithm)


def digest_file(
    path: Path,
    algorithm: str = "sha256",
    chunk_size: int = DEFAULT_CHUNK_BYTES,
    cancel_event: Optional[threading.Event] = None,
) -> str:
    """Stream ``path`` through ``algorithm`` and return the hex digest.

    The cancel event is checked between chunks, so a cancelled worker finishes
    its current read and stops.
    """
    h = _new_hasher(algorithm)
    with open(path, "rb") as f:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise HashCancelled(str(path))
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def sha256_file(path: Path, chunk_size: int = DEFAULT_CHUNK_BYTES) -> str:
    return digest_file(path, "sha256", chunk_size)


def whole_megabytes(num_bytes: int) -> int:
    return num_bytes // 1_000_000
