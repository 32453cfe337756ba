from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Tuple

import duckdb

from .db import connect, migrate

# (table, duckdb column DDL)
TABLES: List[Tuple[str, str]] = [
    (
        "runs",
        "run_id BIGINT, started_at VARCHAR, finished_at VARCHAR, roots VARCHAR, host VARCHAR, "
        '"user" VARCHAR, dry_run INTEGER, bytes_reclaimed BIGINT, files_cloned BIGINT, errors BIGINT',
    ),
    (
        "actions",
        "action_id BIGINT, run_id BIGINT, digest VARCHAR, master_path VARCHAR, duplicate_path VARCHAR, "
        "size_bytes BIGINT, status VARCHAR, error_msg VARCHAR, created_at VARCHAR",
    ),
]


def export_journal(db_path: Path, out_dir: Path) -> Dict[str, Path]:
    """Write each journal table to ``out_dir/<table>.parquet``; returns the written paths."""
    db_path = Path(db_path).expanduser()
    if not db_path.exists():
        raise FileNotFoundError(f"Journal database not found: {db_path}")
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    src = connect(db_path)
    try:
        migrate(src)
        rows = {table: src.execute(f"SELECT * FROM {table}").fetchall() for table, _ in TABLES}
    finally:
        src.close()

    written: Dict[str, Path] = {}
    con = duckdb.connect(database=":memory:")
    try:
        for table, columns in TABLES:
            con.execute(f"CREATE TABLE {table} ({columns})")
            if rows[table]:
                placeholders = ",".join("?" for _ in rows[table][0])
                con.executemany(f"INSERT INTO {table} VALUES ({placeholders})", rows[table])
            target = out / f"{table}.parquet"
            if target.exists():
                target.unlink()
            # COPY targets cannot be bound as parameters; quote by doubling single quotes
            quoted = str(target).replace("'", "''")
            con.execute(f"COPY {table} TO '{quoted}' (FORMAT PARQUET)")
            written[table] = target
    finally:
        con.close()
    return written
