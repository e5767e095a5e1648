"""
Watermark tracking.

One record per table: the last successfully loaded source timestamp. A new
value is staged inside the batch transaction and only becomes visible through
the tracker after COMMIT (publish). Values never move backwards except through
an explicit reset().
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

import duckdb

from ...storage.warehouse import WATERMARK_TABLE

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'


@dataclass(frozen=True)
class Watermark:
    table_name: str
    last_loaded_value: Optional[datetime]
    last_run_status: RunStatus
    updated_at: Optional[datetime] = None


class InMemoryWatermarkStore:
    """Process-local store. Not transactional, written on publish."""

    transactional = False

    def __init__(self):
        self._rows: Dict[str, Watermark] = {}

    def read_all(self) -> Dict[str, Watermark]:
        return dict(self._rows)

    def write(self, watermark: Watermark, conn=None):
        self._rows[watermark.table_name] = watermark

    def delete(self, table_name: str, conn=None):
        self._rows.pop(table_name, None)


class DuckDBWatermarkStore:
    """
    Store backed by the etl_watermark table.

    write() runs on the caller's connection/cursor so the watermark row is part
    of the batch transaction.
    """

    transactional = True

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def read_all(self) -> Dict[str, Watermark]:
        rows = self.conn.execute(f"""
            SELECT table_name, last_loaded_value, last_run_status, updated_at
            FROM {WATERMARK_TABLE}
        """).fetchall()
        return {
            r[0]: Watermark(r[0], r[1], RunStatus(r[2]), r[3])
            for r in rows
        }

    def write(self, watermark: Watermark, conn=None):
        conn = conn if conn is not None else self.conn
        # delete + insert, the table carries no key constraint
        conn.execute(f"DELETE FROM {WATERMARK_TABLE} WHERE table_name = ?", [watermark.table_name])
        conn.execute(f"""
            INSERT INTO {WATERMARK_TABLE} (table_name, last_loaded_value, last_run_status, updated_at)
            VALUES (?, ?, ?, ?)
        """, [
            watermark.table_name,
            watermark.last_loaded_value,
            watermark.last_run_status.value,
            watermark.updated_at,
        ])

    def delete(self, table_name: str, conn=None):
        conn = conn if conn is not None else self.conn
        conn.execute(f"DELETE FROM {WATERMARK_TABLE} WHERE table_name = ?", [table_name])


class WatermarkTracker:
    """Per-table watermarks, injected into loaders and the pipeline."""

    def __init__(self, store=None, clock: Callable[[], datetime] = datetime.now):
        self.store = store if store is not None else InMemoryWatermarkStore()
        self.clock = clock
        self._lock = threading.Lock()
        # store writes outside a batch share the store connection
        self._store_lock = threading.Lock()
        self._current: Dict[str, Watermark] = {}
        self._pending: Dict[str, Watermark] = {}

    def load(self) -> 'WatermarkTracker':
        """Read committed watermarks from the store (startup)."""
        with self._lock:
            self._current = self.store.read_all()
            self._pending.clear()
        logger.info(f"Watermarks loaded: {len(self._current)} tables")
        return self

    def get(self, table_name: str) -> Optional[Watermark]:
        with self._lock:
            return self._current.get(table_name)

    def since(self, table_name: str) -> Optional[datetime]:
        """Lower bound for the next extract of a table (None = full extract)."""
        watermark = self.get(table_name)
        return watermark.last_loaded_value if watermark else None

    def all(self) -> Dict[str, Watermark]:
        with self._lock:
            return dict(self._current)

    def stage(self, table_name: str, value: Optional[datetime], conn=None) -> Watermark:
        """
        Prepare the post-batch watermark. With a transactional store the row is
        written on `conn` inside the batch transaction.
        """
        with self._lock:
            previous = self._current.get(table_name)
        previous_value = previous.last_loaded_value if previous else None

        if previous_value is not None and (value is None or value < previous_value):
            if value is not None:
                logger.debug(f"{table_name}: batch max {value} is behind watermark {previous_value}, keeping it")
            value = previous_value

        watermark = Watermark(table_name, value, RunStatus.SUCCESS, self.clock())
        if self.store.transactional:
            self.store.write(watermark, conn=conn)
        with self._lock:
            self._pending[table_name] = watermark
        return watermark

    def publish(self, table_name: str) -> Optional[Watermark]:
        """Make a staged watermark visible. Call after COMMIT."""
        with self._lock:
            watermark = self._pending.pop(table_name, None)
            if watermark is None:
                return None
            self._current[table_name] = watermark
        if not self.store.transactional:
            with self._store_lock:
                self.store.write(watermark)
        logger.debug(f"{table_name}: watermark -> {watermark.last_loaded_value}")
        return watermark

    def discard(self, table_name: str):
        with self._lock:
            self._pending.pop(table_name, None)

    def record_failure(self, table_name: str) -> Watermark:
        """Mark the last run FAILED, keeping the previous value."""
        self.discard(table_name)
        with self._lock:
            previous = self._current.get(table_name)
        if previous is not None:
            watermark = replace(previous, last_run_status=RunStatus.FAILED, updated_at=self.clock())
        else:
            watermark = Watermark(table_name, None, RunStatus.FAILED, self.clock())

        try:
            with self._store_lock:
                self.store.write(watermark)
        except duckdb.Error as e:
            logger.error(f"{table_name}: could not record failed run: {e}")
        with self._lock:
            self._current[table_name] = watermark
        return watermark

    def reset(self, table_name: str, value: Optional[datetime] = None) -> Optional[Watermark]:
        """
        Move a watermark back for reprocessing. value=None drops the record,
        the next extract is then a full one.
        """
        with self._lock:
            self._pending.pop(table_name, None)
            if value is None:
                self._current.pop(table_name, None)
                watermark = None
            else:
                watermark = Watermark(table_name, value, RunStatus.SUCCESS, self.clock())
                self._current[table_name] = watermark

        with self._store_lock:
            if watermark is None:
                self.store.delete(table_name)
            else:
                self.store.write(watermark)
        logger.info(f"{table_name}: watermark reset to {value}")
        return watermark
