"""
CLI entry point for the healthcare warehouse.

Usage:
    python -m healthdw ddl
    python -m healthdw init [--db PATH]
    python -m healthdw validate [--db PATH] [--catalog-only] [--json]
    python -m healthdw load --input-dir DIR [--db PATH] [--serial] [--generate-dates]
    python -m healthdw watermarks [--db PATH]
    python -m healthdw reset-watermark TABLE [--to TIMESTAMP] [--db PATH]
"""

import argparse
import json
import logging
import os
import sys

import pandas as pd

from healthdw.config import WAREHOUSE_CONFIG
from healthdw.errors import IntegrityError, WarehouseError
from healthdw.etl.warehouse import DuckDBWatermarkStore, LoadEngine, WatermarkTracker
from healthdw.etl.warehouse.base import parse_timestamp
from healthdw.quality import IntegrityGate, IntegrityValidator
from healthdw.schema import build_healthcare_catalog
from healthdw.storage import get_duckdb_connection, setup_schema

logger = logging.getLogger(__name__)


def _print_ddl(args) -> int:
    catalog = build_healthcare_catalog()
    for stmt in catalog.ddl():
        print(stmt + ';')
        print()
    return 0


def _init(args) -> int:
    catalog = build_healthcare_catalog()
    with get_duckdb_connection(args.db) as conn:
        count = setup_schema(conn, catalog)
    print(f"Initialized {args.db}: {len(catalog.tables())} tables ({count} statements)")
    return 0


def _validate(args) -> int:
    catalog = build_healthcare_catalog()
    if args.catalog_only:
        report = IntegrityValidator(check_rows=False).validate(catalog)
    else:
        with get_duckdb_connection(args.db) as conn:
            report = IntegrityValidator(conn, check_rows=True).validate(catalog)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print("=" * 60)
        print(f"INTEGRITY AUDIT: {report.catalog_name}")
        print("=" * 60)
        for issue in report.issues:
            row = f" [{issue.row_identifier}]" if issue.row_identifier is not None else ''
            print(f"{issue.severity.upper():8} {issue.table}.{issue.issue_kind}{row}: {issue.detail}")
        print(f"\nerrors={len(report.errors)}, warnings={len(report.warnings)}")

    try:
        IntegrityGate().evaluate(report)
    except IntegrityError:
        return 1
    return 0


def _read_csv(path: str) -> pd.DataFrame:
    # keep IDs as text ('001', nullable numeric codes); loaders coerce by column type
    return pd.read_csv(path, dtype=str)


def _read_batches(input_dir: str, catalog) -> dict:
    """One CSV or Parquet file per table, named after the table."""
    batches = {}
    for name in catalog.tables():
        for ext, reader in (('.parquet', pd.read_parquet), ('.csv', _read_csv)):
            path = os.path.join(input_dir, name + ext)
            if os.path.exists(path):
                batches[name] = reader(path)
                logger.info(f"Read {len(batches[name])} rows for {name} from {path}")
                break
    return batches


def _load(args) -> int:
    catalog = build_healthcare_catalog()
    batches = _read_batches(args.input_dir, catalog)
    if not batches:
        print(f"No table files found in {args.input_dir}")
        return 1

    with get_duckdb_connection(args.db) as conn:
        engine = LoadEngine(conn, catalog=catalog).initialize()
        result = engine.run(batches, parallel=not args.serial, generate_dates=args.generate_dates)

    for name, table_result in result['results'].items():
        print(
            f"{name:22} {table_result.status:8} inserted={table_result.inserted} "
            f"updated={table_result.updated} unchanged={table_result.unchanged} "
            f"dead_lettered={table_result.dead_lettered}"
        )
    print(result.get('message', ''))
    return 0 if result['success'] else 1


def _watermarks(args) -> int:
    with get_duckdb_connection(args.db) as conn:
        setup_schema(conn, build_healthcare_catalog())
        tracker = WatermarkTracker(DuckDBWatermarkStore(conn)).load()
        for name, watermark in sorted(tracker.all().items()):
            print(f"{name:22} {watermark.last_run_status.value:8} {watermark.last_loaded_value}")
    return 0


def _reset_watermark(args) -> int:
    catalog = build_healthcare_catalog()
    catalog.get(args.table)
    value = parse_timestamp(args.to) if args.to else None
    with get_duckdb_connection(args.db) as conn:
        setup_schema(conn, catalog)
        tracker = WatermarkTracker(DuckDBWatermarkStore(conn)).load()
        tracker.reset(args.table, value)
    print(f"{args.table}: watermark reset to {value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='healthdw',
        description="Healthcare dimensional warehouse: schema, integrity audit and loading",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('ddl', help="Print CREATE statements for every table").set_defaults(func=_print_ddl)

    def with_db(p):
        p.add_argument(
            "--db",
            default=WAREHOUSE_CONFIG['duckdb_path'],
            help=f"DuckDB warehouse file (default: {WAREHOUSE_CONFIG['duckdb_path']})"
        )
        return p

    with_db(sub.add_parser('init', help="Create the warehouse tables")).set_defaults(func=_init)

    p = with_db(sub.add_parser('validate', help="Run the integrity audit"))
    p.add_argument("--catalog-only", action="store_true", help="Skip row-level checks")
    p.add_argument("--json", action="store_true", help="Print the report as JSON")
    p.set_defaults(func=_validate)

    p = with_db(sub.add_parser('load', help="Load <Table>.csv / <Table>.parquet files"))
    p.add_argument("--input-dir", required=True, help="Directory with one file per table")
    p.add_argument("--serial", action="store_true", help="Load one table at a time")
    p.add_argument("--generate-dates", action="store_true", help="Generate DimDate from the fact files")
    p.set_defaults(func=_load)

    with_db(sub.add_parser('watermarks', help="Show watermarks")).set_defaults(func=_watermarks)

    p = with_db(sub.add_parser('reset-watermark', help="Move a watermark back for reprocessing"))
    p.add_argument("table", help="Table name, e.g. FactEncounter")
    p.add_argument("--to", help="New watermark (omit to drop it and reload everything)")
    p.set_defaults(func=_reset_watermark)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        return args.func(args)
    except WarehouseError as e:
        logger.error(f"{args.command} failed: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
