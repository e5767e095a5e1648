"""Configuration exports"""
from .database_config import DB_CONFIG, PG_CONN_STRING
from .storage_config import MINIO_CONFIG
from .quality_config import INTEGRITY_WARNING_KINDS, INTEGRITY_CHECK_ROWS
from .warehouse_config import WAREHOUSE_CONFIG

__all__ = [
    'DB_CONFIG',
    'PG_CONN_STRING',
    'MINIO_CONFIG',
    'INTEGRITY_WARNING_KINDS',
    'INTEGRITY_CHECK_ROWS',
    'WAREHOUSE_CONFIG',
]
