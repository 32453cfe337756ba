from __future__ import annotations
import sqlite3
from pathlib import Path

DDL = r"""
CREATE TABLE IF NOT EXISTS runs (
  run_id INTEGER PRIMARY KEY,
  started_at TEXT NOT NULL,
  finished_at TEXT,
  roots TEXT NOT NULL,
  host TEXT NOT NULL,
  user TEXT NOT NULL,
  dry_run INTEGER NOT NULL DEFAULT 0,
  bytes_reclaimed INTEGER NOT NULL DEFAULT 0,
  files_cloned INTEGER NOT NULL DEFAULT 0,
  errors INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS actions (
  action_id INTEGER PRIMARY KEY,
  run_id INTEGER NOT NULL REFERENCES runs(run_id),
  digest TEXT NOT NULL,
  master_path TEXT NOT NULL,
  duplicate_path TEXT NOT NULL,
  size_bytes INTEGER NOT NULL,
  status TEXT NOT NULL,
  error_msg TEXT,
  created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS clones (
  path TEXT PRIMARY KEY,
  digest TEXT NOT NULL,
  device INTEGER NOT NULL,
  inode INTEGER NOT NULL,
  mtime_ns INTEGER NOT NULL,
  size_bytes INTEGER NOT NULL,
  run_id INTEGER REFERENCES runs(run_id)
);
CREATE INDEX IF NOT EXISTS idx_actions_run ON actions(run_id);
CREATE INDEX IF NOT EXISTS idx_actions_digest ON actions(digest);
CREATE INDEX IF NOT EXISTS idx_actions_status ON actions(status);
CREATE INDEX IF NOT EXISTS idx_clones_digest ON clones(digest);
"""

def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(str(db_path))
    con.execute("PRAGMA foreign_keys=ON;")
    con.execute("PRAGMA journal_mode=WAL;")
    con.execute("PRAGMA synchronous=NORMAL;")
    con.execute("PRAGMA busy_timeout=5000;")
    return con

def migrate(con: sqlite3.Connection) -> None:
  con.executescript(DDL)
  con.commit()
