import os
import shutil
from pathlib import Path

import pytest

from clonededup.config import ClonededupConfig


def copy_clone(src: str, dst: str) -> None:
    """Stand-in for a reflink: a plain copy that, like FICLONE, refuses an existing destination."""
    with open(src, "rb") as s, open(dst, "xb") as d:
        shutil.copyfileobj(s, d)


def write(path: Path, data: bytes, mtime: int = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def leftover_temps(root: Path):
    return [p for p in root.rglob("*") if ".clonededup-" in p.name]


@pytest.fixture
def cfg(tmp_path):
    c = ClonededupConfig()
    c.hashing.max_workers = 4
    c.hashing.chunk_bytes = 4
    c.journal.path = str(tmp_path / "state" / "journal.db")
    return c


@pytest.fixture
def root(tmp_path):
    r = tmp_path / "data"
    r.mkdir()
    return r
