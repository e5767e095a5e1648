"""Storage module exports"""
from .warehouse import (
    WATERMARK_TABLE, DEAD_LETTER_TABLE,
    get_duckdb_connection, setup_schema, table_exists, fetch_dicts,
    write_dead_letters, read_dead_letters
)

__all__ = [
    'WATERMARK_TABLE',
    'DEAD_LETTER_TABLE',
    'get_duckdb_connection',
    'setup_schema',
    'table_exists',
    'fetch_dicts',
    'write_dead_letters',
    'read_dead_letters',
]
