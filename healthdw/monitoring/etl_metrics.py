"""ETL Metrics Logger - Track per-table load performance."""

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import psycopg2

logger = logging.getLogger(__name__)


@dataclass
class ETLMetrics:
    """Metrics of one table batch."""
    run_id: str
    table_name: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: float = 0.0
    rows_in: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_unchanged: int = 0
    rows_dead_lettered: int = 0
    watermark: Optional[datetime] = None
    status: str = 'running'
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def rows_out(self) -> int:
        return self.rows_inserted + self.rows_updated

    @property
    def throughput(self) -> float:
        """Rows per second."""
        if self.duration_seconds > 0:
            return self.rows_in / self.duration_seconds
        return 0.0

    @classmethod
    def from_load_result(cls, run_id: str, result) -> 'ETLMetrics':
        duration = 0.0
        if result.started_at and result.finished_at:
            duration = (result.finished_at - result.started_at).total_seconds()
        return cls(
            run_id=run_id,
            table_name=result.table,
            start_time=result.started_at,
            end_time=result.finished_at,
            duration_seconds=duration,
            rows_in=result.rows_in,
            rows_inserted=result.inserted,
            rows_updated=result.updated,
            rows_unchanged=result.unchanged,
            rows_dead_lettered=result.dead_lettered,
            watermark=result.watermark,
            status=result.status,
            error_message=result.error_message,
            metadata={'dead_letters_by_kind': _count_kinds(result.dead_letters)} if result.dead_letters else {},
        )


def _count_kinds(dead_letters) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for letter in dead_letters:
        counts[letter.error_kind] = counts.get(letter.error_kind, 0) + 1
    return counts


class ETLMetricsLogger:
    """Logger for load metrics to the monitoring.etl_metrics table."""

    def __init__(self, pg_conn_string: str):
        self.conn_string = pg_conn_string

    def log(self, metrics: ETLMetrics) -> bool:
        """Log metrics to etl_metrics table. Failures are logged, never raised."""
        try:
            with psycopg2.connect(self.conn_string) as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO monitoring.etl_metrics (
                            run_id, table_name, status, duration_seconds,
                            rows_in, rows_out, rows_inserted, rows_updated,
                            rows_unchanged, rows_dead_lettered, throughput, watermark,
                            error_message, metadata, started_at, completed_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """, (
                        metrics.run_id, metrics.table_name, metrics.status,
                        metrics.duration_seconds, metrics.rows_in, metrics.rows_out,
                        metrics.rows_inserted, metrics.rows_updated, metrics.rows_unchanged,
                        metrics.rows_dead_lettered, metrics.throughput, metrics.watermark,
                        metrics.error_message,
                        json.dumps(metrics.metadata) if metrics.metadata else None,
                        metrics.start_time, metrics.end_time
                    ))
                conn.commit()
            logger.info(
                f"ETL metrics logged: {metrics.table_name} - {metrics.rows_out} rows "
                f"in {metrics.duration_seconds:.2f}s"
            )
            return True
        except psycopg2.Error as e:
            logger.warning(f"Failed to log ETL metrics: {e}")
            return False

    def log_results(self, run_id: str, results: Iterable) -> int:
        """Log a LoadResult per table. Returns number of rows written."""
        return sum(1 for result in results if self.log(ETLMetrics.from_load_result(run_id, result)))

    @contextmanager
    def track(self, run_id: str, table_name: str):
        """Context manager to track a step that is not a table batch (export, upload)."""
        metrics = ETLMetrics(run_id=run_id, table_name=table_name, start_time=datetime.now())
        start = time.time()

        try:
            yield metrics
            metrics.status = 'success'
        except Exception as e:
            metrics.status = 'failed'
            metrics.error_message = str(e)
            raise
        finally:
            metrics.end_time = datetime.now()
            metrics.duration_seconds = time.time() - start
            self.log(metrics)
