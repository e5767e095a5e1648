"""Warehouse configuration (DuckDB file, loader settings)"""
import os

WAREHOUSE_CONFIG = {
    "duckdb_path": os.getenv("WAREHOUSE_DUCKDB_PATH", "/tmp/healthdw/healthcare_dwh.duckdb"),
    "local_temp_dir": os.getenv("WAREHOUSE_TEMP_DIR", "/tmp/healthdw"),
    "duckdb_object": os.getenv("WAREHOUSE_DUCKDB_OBJECT", "dwh/healthcare_dwh.duckdb"),
    "max_workers": int(os.getenv("LOADER_MAX_WORKERS", "4")),
    "persist_dead_letters": os.getenv("LOADER_PERSIST_DEAD_LETTERS", "true").lower() == "true",
    "keep_backups": int(os.getenv("WAREHOUSE_KEEP_BACKUPS", "5")),
}
