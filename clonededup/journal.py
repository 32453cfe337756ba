"""
SQLite journal of dedup runs.

Besides an audit trail of every action, the journal remembers the on-disk
identity (device, inode, mtime, size) of each path known to share blocks for a
digest. A later run can then tell that a master/duplicate pair is already
cloned and skip it instead of cloning it again.
"""
from __future__ import annotations

import getpass
import os
import json
import socket
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .clone import FileMetadata
from .db import connect, migrate


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        # no passwd entry for this uid (containers)
        return str(os.getuid()) if hasattr(os, "getuid") else "unknown"


class Journal:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path).expanduser()
        self.con: sqlite3.Connection = connect(self.db_path)
        migrate(self.con)
        self.run_id: Optional[int] = None

    def close(self) -> None:
        self.con.close()

    def __enter__(self) -> "Journal":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def start_run(self, roots: Sequence[str], dry_run: bool) -> int:
        cur = self.con.cursor()
        cur.execute(
            "INSERT INTO runs(started_at, roots, host, user, dry_run) VALUES (?,?,?,?,?)",
            (_now(), json.dumps(list(roots)), socket.gethostname(), _current_user(), int(dry_run)),
        )
        self.con.commit()
        self.run_id = int(cur.lastrowid)
        return self.run_id

    def finish_run(self, bytes_reclaimed: int, files_cloned: int, errors: int) -> None:
        if self.run_id is None:
            return
        self.con.execute(
            "UPDATE runs SET finished_at=?, bytes_reclaimed=?, files_cloned=?, errors=? WHERE run_id=?",
            (_now(), bytes_reclaimed, files_cloned, errors, self.run_id),
        )
        self.con.commit()

    def record_action(
        self,
        digest: str,
        master: str,
        duplicate: str,
        size_bytes: int,
        status: str,
        error_msg: Optional[str] = None,
    ) -> None:
        if self.run_id is None:
            raise RuntimeError("start_run() must be called before recording actions")
        self.con.execute(
            """INSERT INTO actions
            (run_id, digest, master_path, duplicate_path, size_bytes, status, error_msg, created_at)
            VALUES (?,?,?,?,?,?,?,?)""",
            (self.run_id, digest, master, duplicate, size_bytes, status, error_msg, _now()),
        )
        self.con.commit()

    def mark_shared(self, digest: str, entries: Sequence[tuple]) -> None:
        """Remember ``(path, FileMetadata)`` pairs as sharing ``digest``'s blocks."""
        self.con.executemany(
            """INSERT INTO clones(path, digest, device, inode, mtime_ns, size_bytes, run_id)
            VALUES (?,?,?,?,?,?,?)
            ON CONFLICT(path) DO UPDATE SET
              digest=excluded.digest, device=excluded.device, inode=excluded.inode,
              mtime_ns=excluded.mtime_ns, size_bytes=excluded.size_bytes, run_id=excluded.run_id""",
            [
                (path, digest, meta.device, meta.inode, meta.mtime_ns, meta.size, self.run_id)
                for path, meta in entries
            ],
        )
        self.con.commit()

    def _matches(self, path: str, digest: str, meta: FileMetadata) -> bool:
        row = self.con.execute(
            "SELECT digest, device, inode, mtime_ns, size_bytes FROM clones WHERE path=?",
            (path,),
        ).fetchone()
        if row is None:
            return False
        return tuple(row) == (digest, meta.device, meta.inode, meta.mtime_ns, meta.size)

    def already_shared(
        self,
        digest: str,
        master: str,
        master_meta: FileMetadata,
        duplicate: str,
        duplicate_meta: FileMetadata,
    ) -> bool:
        return self._matches(master, digest, master_meta) and self._matches(duplicate, digest, duplicate_meta)


def get_savings_report(db_path: Path, limit: int = 20) -> Dict[str, List[Dict[str, Any]]]:
    """
    Summarise the journal.

    Returns:
    - runs: most recent runs with their totals
    - top_digests: digests with the most bytes reclaimed across all runs
    """
    con = connect(Path(db_path).expanduser())
    try:
        migrate(con)
        cur = con.cursor()
        cur.execute(
            """
            SELECT run_id, started_at, finished_at, roots, dry_run, bytes_reclaimed, files_cloned, errors
            FROM runs ORDER BY run_id DESC LIMIT ?
            """,
            (limit,),
        )
        runs = [
            {
                "run_id": r[0],
                "started_at": r[1],
                "finished_at": r[2],
                "roots": json.loads(r[3]),
                "dry_run": bool(r[4]),
                "bytes_reclaimed": r[5],
                "files_cloned": r[6],
                "errors": r[7],
            }
            for r in cur.fetchall()
        ]

        cur.execute(
            """
            SELECT digest, COUNT(*) AS clones, SUM(size_bytes) AS reclaimed, MIN(master_path)
            FROM actions
            WHERE status = 'cloned'
            GROUP BY digest
            ORDER BY reclaimed DESC
            LIMIT ?
            """,
            (limit,),
        )
        top = [
            {"digest": r[0], "clones": r[1], "bytes_reclaimed": r[2], "master_path": r[3]}
            for r in cur.fetchall()
        ]
        return {"runs": runs, "top_digests": top}
    finally:
        con.close()
