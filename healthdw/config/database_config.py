"""Database configuration (PostgreSQL monitoring database)"""
import os

DB_CONFIG = {
    "host": os.getenv("DB_HOST", "postgres"),
    "port": int(os.getenv("DB_PORT", "5432")),
    "user": os.getenv("DB_USER", "healthdw"),
    "password": os.getenv("DB_PASSWORD", "healthdw"),
    "database": os.getenv("DB_NAME", "healthdw"),
}

PG_CONN_STRING = os.getenv(
    "PG_CONN_STRING",
    "postgresql://{user}:{password}@{host}:{port}/{database}".format(**DB_CONFIG)
)
