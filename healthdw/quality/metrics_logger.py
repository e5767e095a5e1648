"""Metrics Logger - Log integrity validation metrics to PostgreSQL."""

import json
import logging

import psycopg2

from .gates import GateResult
from .validators import ValidationReport

logger = logging.getLogger(__name__)


class MetricsLogger:
    """Logger for integrity audits to the monitoring.integrity_metrics table."""

    def __init__(self, pg_conn_string: str):
        self.conn_string = pg_conn_string

    def log(self, report: ValidationReport, gate: GateResult, run_id: str = None) -> bool:
        """Log one validation report. Returns True on success."""
        try:
            with psycopg2.connect(self.conn_string) as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO monitoring.integrity_metrics (
                            catalog_name, run_timestamp, run_id, tables_checked, rows_checked,
                            error_count, warning_count, issues_by_kind, gate_status, gate_message
                        ) VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
                    """, (
                        report.catalog_name, report.timestamp, run_id,
                        report.tables_checked, report.rows_checked,
                        len(report.errors), len(report.warnings),
                        json.dumps(report.by_kind()),
                        gate.status, gate.message
                    ))
                conn.commit()
            return True
        except psycopg2.Error as e:
            logger.warning(f"Failed to log integrity metrics: {e}")
            return False
