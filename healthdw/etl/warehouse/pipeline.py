"""
ETL Pipeline: source batches to the DuckDB star schema.
Main orchestrator for the load process.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import duckdb

from ...config import PG_CONN_STRING, WAREHOUSE_CONFIG
from ...errors import CommitError, IntegrityError
from ...monitoring.etl_metrics import ETLMetricsLogger
from ...quality.gates import GateResult, IntegrityGate
from ...quality.metrics_logger import MetricsLogger
from ...quality.validators import IntegrityValidator, ValidationReport
from ...schema.healthcare import build_healthcare_catalog
from ...storage.minio import backup_duckdb, download_duckdb, export_parquet, upload_duckdb
from ...storage.warehouse import get_duckdb_connection, setup_schema
from .base import LoadResult, TableLocks
from .dimensions import DATE_DIMENSION, DimensionLoader, build_date_rows, date_range_from_batches
from .facts import FactLoader
from .watermark import DuckDBWatermarkStore, WatermarkTracker

logger = logging.getLogger(__name__)


class LoadEngine:
    """
    Loads dimension and fact batches in dependency waves.

    Tables of one wave load concurrently, each on its own DuckDB cursor. A
    table whose batch fails (CommitError) makes every table depending on it
    skip this run.
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        catalog=None,
        watermarks: Optional[WatermarkTracker] = None,
        max_workers: Optional[int] = None,
        clock: Callable[[], datetime] = None,
        persist_dead_letters: Optional[bool] = None,
        validator: Optional[IntegrityValidator] = None,
        gate: Optional[IntegrityGate] = None,
        metrics_logger: Optional[ETLMetricsLogger] = None,
        integrity_logger: Optional[MetricsLogger] = None
    ):
        self.conn = conn
        self.catalog = catalog or build_healthcare_catalog()
        self.watermarks = watermarks
        self.max_workers = max_workers or WAREHOUSE_CONFIG['max_workers']
        self.clock = clock
        self.persist_dead_letters = persist_dead_letters
        self.validator = validator or IntegrityValidator(conn)
        self.gate = gate or IntegrityGate()
        self.metrics_logger = metrics_logger
        self.integrity_logger = integrity_logger
        self.locks = TableLocks()
        self._initialized = False

    def initialize(self) -> 'LoadEngine':
        """Freeze the catalog, create tables, load watermarks."""
        self.catalog.freeze()
        setup_schema(self.conn, self.catalog)
        if self.watermarks is None:
            self.watermarks = WatermarkTracker(DuckDBWatermarkStore(self.conn))
        self.watermarks.load()
        self._initialized = True
        return self

    def _ensure_initialized(self):
        if not self._initialized:
            self.initialize()

    # -------------------------------------------------------------------------
    # Single table loads
    # -------------------------------------------------------------------------

    def dimension_loader(self, conn=None) -> DimensionLoader:
        self._ensure_initialized()
        return DimensionLoader(
            conn if conn is not None else self.conn, self.catalog, self.watermarks,
            clock=self.clock, locks=self.locks, persist_dead_letters=self.persist_dead_letters
        )

    def fact_loader(self, conn=None) -> FactLoader:
        self._ensure_initialized()
        return FactLoader(
            conn if conn is not None else self.conn, self.catalog, self.watermarks,
            clock=self.clock, locks=self.locks, persist_dead_letters=self.persist_dead_letters
        )

    def load_table(self, table_name: str, rows, conn=None) -> LoadResult:
        if self.catalog.is_dimension(table_name):
            return self.dimension_loader(conn).load(table_name, rows)
        return self.fact_loader(conn).load(table_name, rows)

    def _load_on_cursor(self, table_name: str, rows, cursor) -> LoadResult:
        try:
            return self.load_table(table_name, rows, conn=cursor)
        finally:
            cursor.close()

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    def check_integrity(self) -> ValidationReport:
        """Validate catalog (and committed rows) and pass the gate. Raises IntegrityError."""
        self._ensure_initialized()
        report = self.validator.validate(self.catalog)
        self._pass_gate(report)
        return report

    def _pass_gate(self, report: ValidationReport, run_id: str = None) -> GateResult:
        try:
            gate = self.gate.evaluate(report)
        except IntegrityError as e:
            if self.integrity_logger is not None:
                failed = GateResult('failed', len(report.errors), len(report.warnings), str(e))
                self.integrity_logger.log(report, failed, run_id)
            raise
        if self.integrity_logger is not None:
            self.integrity_logger.log(report, gate, run_id)
        return gate

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        batches: Mapping[str, Any],
        parallel: bool = True,
        validate: bool = True,
        generate_dates: bool = False,
        today: Optional[date] = None
    ) -> Dict[str, Any]:
        """
        Load a set of batches {table_name: rows}.

        Flow:
        1. Integrity gate (blocks on errors)
        2. Optional DimDate generation from the fact batches
        3. Waves of dimensions, then waves of facts
        """
        self._ensure_initialized()
        for name in batches:
            self.catalog.get(name)

        start_time = datetime.now()
        result: Dict[str, Any] = {
            'success': False,
            'start_time': start_time.isoformat(),
            'stats': {},
            'results': {},
            'failed': [],
            'skipped': [],
        }
        batches = dict(batches)
        run_id = start_time.strftime('%Y%m%d%H%M%S')
        result['run_id'] = run_id

        try:
            logger.info("=" * 60)
            logger.info(f"LOAD START: {start_time}")
            logger.info("=" * 60)

            if validate:
                report = self.validator.validate(self.catalog)
                result['integrity'] = report.to_dict()
                self._pass_gate(report, run_id)

            if generate_dates and DATE_DIMENSION not in batches and DATE_DIMENSION in self.catalog:
                start, end = date_range_from_batches(self.catalog, batches, today=today)
                batches[DATE_DIMENSION] = build_date_rows(start, end)

            for wave in self.catalog.load_waves():
                names = [n for n in wave if n in batches]
                if names:
                    self._run_wave(names, batches, parallel, result)

            results: Dict[str, LoadResult] = result['results']
            result['stats'] = {
                'tables_loaded': sum(1 for r in results.values() if r.succeeded),
                'rows_in': sum(r.rows_in for r in results.values()),
                'inserted': sum(r.inserted for r in results.values()),
                'updated': sum(r.updated for r in results.values()),
                'unchanged': sum(r.unchanged for r in results.values()),
                'dead_lettered': sum(r.dead_lettered for r in results.values()),
            }
            result['success'] = not result['failed'] and not result['skipped']
            result['message'] = (
                'Load completed successfully' if result['success']
                else f"Failed: {result['failed']}, skipped: {result['skipped']}"
            )

            if self.metrics_logger is not None:
                self.metrics_logger.log_results(run_id, results.values())

        except IntegrityError as e:
            logger.error(f"Load blocked by integrity gate: {e}")
            result['message'] = str(e)

        finally:
            end_time = datetime.now()
            result['end_time'] = end_time.isoformat()
            result['duration_seconds'] = (end_time - start_time).total_seconds()

            logger.info("=" * 60)
            logger.info(f"LOAD END: Duration {result['duration_seconds']:.2f}s")
            logger.info(f"Status: {'SUCCESS' if result['success'] else 'FAILED'}")
            logger.info("=" * 60)

        return result

    def _blocked_by(self, table_name: str, result: Dict[str, Any]) -> List[str]:
        unavailable = set(result['failed']) | set(result['skipped'])
        return [d for d in self.catalog.dependencies(table_name) if d in unavailable]

    def _run_wave(self, names: List[str], batches: Dict[str, Any], parallel: bool, result: Dict[str, Any]):
        runnable = []
        for name in names:
            blocked = self._blocked_by(name, result)
            if blocked:
                logger.warning(f"{name}: skipped, dependency failed: {blocked}")
                result['skipped'].append(name)
                result['results'][name] = LoadResult(
                    table=name, status='skipped', error_message=f"dependency failed: {blocked}"
                )
            else:
                runnable.append(name)

        if parallel and len(runnable) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                # cursors are opened on the calling thread, one per worker task
                futures = {
                    name: executor.submit(self._load_on_cursor, name, batches[name], self.conn.cursor())
                    for name in runnable
                }
                outcomes = {}
                for name, future in futures.items():
                    try:
                        outcomes[name] = future.result()
                    except CommitError as e:
                        outcomes[name] = e
        else:
            outcomes = {}
            for name in runnable:
                try:
                    outcomes[name] = self.load_table(name, batches[name])
                except CommitError as e:
                    outcomes[name] = e

        for name in runnable:
            outcome = outcomes[name]
            if isinstance(outcome, CommitError):
                result['failed'].append(name)
                result['results'][name] = LoadResult(table=name, status='failed', error_message=str(outcome))
            else:
                result['results'][name] = outcome


def run_etl(
    batches: Mapping[str, Any],
    force_new: bool = False,
    pg_conn_string: str = None,
    export: bool = True,
    generate_dates: bool = True
) -> Dict[str, Any]:
    """
    Run the full load against the warehouse file on MinIO.

    Flow:
    1. Download DuckDB from MinIO (or create new)
    2. Backup to MinIO
    3. Load batches (integrity gate, dimensions, facts)
    4. Export Parquet to MinIO
    5. Upload DuckDB back to MinIO
    """
    local_db_path = download_duckdb(force_new=force_new)
    result: Dict[str, Any] = {}

    try:
        if not force_new:
            result['backup_object'] = backup_duckdb(local_db_path)

        pg_conn_string = pg_conn_string or PG_CONN_STRING
        with get_duckdb_connection(local_db_path) as conn:
            engine = LoadEngine(
                conn,
                metrics_logger=ETLMetricsLogger(pg_conn_string),
                integrity_logger=MetricsLogger(pg_conn_string)
            ).initialize()
            result.update(engine.run(batches, generate_dates=generate_dates))

            if result['success'] and export:
                result['parquet_export'] = export_parquet(conn, engine.catalog)

        if result['success']:
            upload_duckdb(local_db_path)
    finally:
        for ext in ['', '.wal']:
            path = local_db_path + ext
            if os.path.exists(path):
                os.remove(path)

    return result
