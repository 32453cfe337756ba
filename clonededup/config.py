from __future__ import annotations
import os
from pathlib import Path
from typing import List, Literal, Optional
from pydantic import BaseModel, Field
import yaml

def default_journal_path() -> str:
    # one journal per user, independent of the working directory
    base = os.environ.get("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return str(Path(base) / "clonededup" / "journal.db")

class HashingConfig(BaseModel):
    max_workers: Optional[int] = None  # None -> os.cpu_count()
    chunk_bytes: int = 100_000_000
    algorithm: Literal["sha256", "blake3"] = "sha256"

class DedupeConfig(BaseModel):
    dry_run: bool = False
    verify_content: bool = False
    keep_strategy: Literal["first", "oldest", "newest"] = "first"
    min_file_size: int = 0
    restore_ownership: bool = True
    restore_xattrs: bool = True

class JournalConfig(BaseModel):
    enabled: bool = True
    path: str = Field(default_factory=default_journal_path)

class ExportConfig(BaseModel):
    parquet_dir: str = "data/parquet"

class ClonededupConfig(BaseModel):
    roots: List[str] = Field(default_factory=list)
    exclude_paths: List[str] = Field(default_factory=list)
    hashing: HashingConfig = Field(default_factory=HashingConfig)
    dedupe: DedupeConfig = Field(default_factory=DedupeConfig)
    journal: JournalConfig = Field(default_factory=JournalConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)

def load_config(path: Optional[Path]) -> ClonededupConfig:
    if path is None or not Path(path).exists():
        return ClonededupConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return ClonededupConfig(**data)
