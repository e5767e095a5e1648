"""
DuckDB warehouse storage.

Creates the catalog tables plus the engine's bookkeeping tables:
- etl_watermark:   last loaded source timestamp per table
- etl_dead_letter: rows rejected by a load, kept for reprocessing
"""

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import duckdb

from healthdw.config import WAREHOUSE_CONFIG
from healthdw.errors import SchemaError

logger = logging.getLogger(__name__)

WATERMARK_TABLE = 'etl_watermark'
DEAD_LETTER_TABLE = 'etl_dead_letter'

INTERNAL_DDL = [
    f"""
    CREATE TABLE IF NOT EXISTS {WATERMARK_TABLE} (
        table_name VARCHAR NOT NULL,
        last_loaded_value TIMESTAMP,
        last_run_status VARCHAR NOT NULL,
        updated_at TIMESTAMP
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {DEAD_LETTER_TABLE} (
        run_id VARCHAR NOT NULL,
        table_name VARCHAR NOT NULL,
        row_identifier VARCHAR,
        error_kind VARCHAR NOT NULL,
        reason VARCHAR,
        payload VARCHAR,
        rejected_at TIMESTAMP NOT NULL
    )
    """,
]


def get_duckdb_connection(local_path: str = None) -> duckdb.DuckDBPyConnection:
    """Get DuckDB connection. ':memory:' gives a throwaway warehouse."""
    if local_path is None:
        local_path = WAREHOUSE_CONFIG['duckdb_path']
    if local_path != ':memory:':
        os.makedirs(os.path.dirname(local_path) or '.', exist_ok=True)
    return duckdb.connect(local_path)


def setup_schema(conn: duckdb.DuckDBPyConnection, catalog) -> int:
    """
    Create sequences and tables for every catalog table (IF NOT EXISTS).
    Existing tables and data are preserved. Returns number of statements run.
    """
    statements = catalog.ddl() + [s.strip() for s in INTERNAL_DDL]
    for stmt in statements:
        try:
            conn.execute(stmt)
        except duckdb.Error as e:
            logger.error(f"Schema setup failed on statement: {stmt.splitlines()[0]}... ({e})")
            raise SchemaError(f"Schema setup failed: {e}") from e

    logger.info(f"Schema ready: {len(catalog.tables())} tables, {len(statements)} statements")
    return len(statements)


def table_exists(conn: duckdb.DuckDBPyConnection, table_name: str) -> bool:
    result = conn.execute("""
        SELECT COUNT(*) FROM information_schema.tables
        WHERE table_name = ?
    """, [table_name]).fetchone()
    return bool(result and result[0] > 0)


def fetch_dicts(conn: duckdb.DuckDBPyConnection, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    """Run a query and return rows as dicts keyed by column name."""
    cur = conn.execute(sql, list(params or []))
    names = [d[0] for d in cur.description]
    return [dict(zip(names, row)) for row in cur.fetchall()]


def write_dead_letters(
    conn: duckdb.DuckDBPyConnection,
    run_id: str,
    dead_letters: List[Any],
    rejected_at: datetime
) -> int:
    """Insert dead letters inside the caller's transaction."""
    for letter in dead_letters:
        conn.execute(f"""
            INSERT INTO {DEAD_LETTER_TABLE} (run_id, table_name, row_identifier, error_kind, reason, payload, rejected_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [
            run_id,
            letter.table,
            str(letter.row_identifier) if letter.row_identifier is not None else None,
            letter.error_kind,
            letter.reason,
            json.dumps(letter.row, default=str, ensure_ascii=False),
            rejected_at,
        ])
    return len(dead_letters)


def read_dead_letters(conn: duckdb.DuckDBPyConnection, table_name: str = None) -> List[Dict[str, Any]]:
    """Dead letters for reprocessing, oldest first."""
    if table_name:
        return fetch_dicts(conn, f"""
            SELECT * FROM {DEAD_LETTER_TABLE} WHERE table_name = ? ORDER BY rejected_at
        """, [table_name])
    return fetch_dicts(conn, f"SELECT * FROM {DEAD_LETTER_TABLE} ORDER BY rejected_at")
