"""
MinIO storage operations.

Buckets:
- healthdw-warehouse: DuckDB warehouse file + Parquet exports for reporting
- healthdw-backup:    DuckDB backups
"""

import io
import logging
import os
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import duckdb
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from minio import Minio
from minio.error import S3Error

from healthdw.config import MINIO_CONFIG, WAREHOUSE_CONFIG
from healthdw.schema.definitions import IS_CURRENT, DimensionDef, quote_ident

logger = logging.getLogger(__name__)

# Buckets
WAREHOUSE_BUCKET = MINIO_CONFIG["bucket"]
BACKUP_BUCKET = MINIO_CONFIG["backup_bucket"]

ALL_BUCKETS = [WAREHOUSE_BUCKET, BACKUP_BUCKET]

# DWH paths
PARQUET_PREFIX = 'parquet'
BACKUP_PREFIX = 'dwh_backups'


def get_minio_client() -> Minio:
    """Get MinIO client."""
    return Minio(
        MINIO_CONFIG["endpoint"],
        access_key=MINIO_CONFIG["access_key"],
        secret_key=MINIO_CONFIG["secret_key"],
        secure=MINIO_CONFIG["secure"]
    )


def _ensure_bucket(client: Minio, bucket: str):
    if not client.bucket_exists(bucket):
        client.make_bucket(bucket)
        logger.info(f"Created bucket: {bucket}")


def init_minio_buckets(client: Minio = None):
    """Initialize all MinIO buckets on startup."""
    client = client or get_minio_client()
    try:
        for bucket in ALL_BUCKETS:
            _ensure_bucket(client, bucket)
        logger.info("MinIO initialization completed")
    except S3Error as e:
        logger.error(f"MinIO initialization error: {e}")
        raise


def local_duckdb_path() -> str:
    return WAREHOUSE_CONFIG['duckdb_path']


def download_duckdb(force_new: bool = False, local_path: str = None, client: Minio = None) -> str:
    """Download the warehouse file from MinIO. Returns local path."""
    local_path = local_path or local_duckdb_path()
    os.makedirs(os.path.dirname(local_path) or '.', exist_ok=True)

    for ext in ['', '.wal', '.tmp']:
        path = local_path + ext
        if os.path.exists(path):
            os.remove(path)

    if force_new:
        logger.info("Creating fresh DuckDB")
        return local_path

    client = client or get_minio_client()
    object_name = WAREHOUSE_CONFIG['duckdb_object']
    try:
        client.stat_object(WAREHOUSE_BUCKET, object_name)
    except S3Error as e:
        if e.code in ('NoSuchKey', 'NoSuchBucket', 'NoSuchObject'):
            logger.info("No existing DuckDB, will create new")
            return local_path
        logger.error(f"Download DuckDB error: {e}")
        raise

    client.fget_object(WAREHOUSE_BUCKET, object_name, local_path)
    logger.info("Downloaded DuckDB from MinIO")
    return local_path


def upload_duckdb(local_path: str, client: Minio = None):
    """Upload the warehouse file to MinIO."""
    client = client or get_minio_client()
    try:
        _ensure_bucket(client, WAREHOUSE_BUCKET)
        client.fput_object(WAREHOUSE_BUCKET, WAREHOUSE_CONFIG['duckdb_object'], local_path)
        logger.info("Uploaded DuckDB to MinIO")
    except S3Error as e:
        logger.error(f"Upload DuckDB error: {e}")
        raise


def backup_duckdb(local_path: str, keep: int = None, client: Minio = None) -> Optional[str]:
    """Backup the warehouse file to MinIO. Keeps the last `keep` backups."""
    if not os.path.exists(local_path):
        return None
    keep = WAREHOUSE_CONFIG['keep_backups'] if keep is None else keep

    try:
        client = client or get_minio_client()
        _ensure_bucket(client, BACKUP_BUCKET)

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        backup_object = f'{BACKUP_PREFIX}/healthdw_{timestamp}.duckdb'

        client.fput_object(BACKUP_BUCKET, backup_object, local_path)
        logger.info(f"Backed up DuckDB: {backup_object}")

        # Cleanup old backups
        objects = list(client.list_objects(BACKUP_BUCKET, prefix=f'{BACKUP_PREFIX}/', recursive=True))
        backups = sorted([o.object_name for o in objects if o.object_name.endswith('.duckdb')])
        while len(backups) > keep:
            client.remove_object(BACKUP_BUCKET, backups.pop(0))

        return backup_object
    except S3Error as e:
        logger.error(f"Backup DuckDB error: {e}")
        return None


def to_parquet_bytes(df: pd.DataFrame) -> bytes:
    """Serialize a DataFrame to snappy-compressed Parquet."""
    table = pa.Table.from_pandas(df, preserve_index=False)
    buffer = io.BytesIO()
    pq.write_table(table, buffer, compression='snappy')
    return buffer.getvalue()


def export_parquet(
    conn: duckdb.DuckDBPyConnection,
    catalog,
    tables: Iterable[str] = None,
    export_date: str = None,
    client: Minio = None
) -> Dict[str, int]:
    """
    Export committed tables to Parquet and upload to MinIO.

    Dimensions export their current rows only. Object layout:
    parquet/<table>/export_date=<yyyy-mm-dd>/<table>.parquet
    Returns table -> exported row count.
    """
    client = client or get_minio_client()
    _ensure_bucket(client, WAREHOUSE_BUCKET)
    export_date = export_date or datetime.now().strftime('%Y-%m-%d')
    exported: Dict[str, int] = {}

    for name in (tables or catalog.tables()):
        table = catalog.get(name)
        where = f" WHERE {quote_ident(IS_CURRENT)}" if isinstance(table, DimensionDef) else ''
        df = conn.execute(f"SELECT * FROM {quote_ident(name)}{where}").fetchdf()
        exported[name] = len(df)
        if df.empty:
            continue

        data = to_parquet_bytes(df)
        object_name = f'{PARQUET_PREFIX}/{name}/export_date={export_date}/{name}.parquet'
        client.put_object(
            WAREHOUSE_BUCKET, object_name, io.BytesIO(data), len(data),
            content_type='application/octet-stream'
        )

    logger.info(f"Exported {sum(exported.values())} rows from {len(exported)} tables to Parquet")
    return exported


def list_exports(prefix: str = PARQUET_PREFIX, client: Minio = None) -> List[str]:
    """List Parquet exports in the warehouse bucket."""
    client = client or get_minio_client()
    objects = client.list_objects(WAREHOUSE_BUCKET, prefix=prefix, recursive=True)
    return [obj.object_name for obj in objects]


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_minio_buckets()
