"""Storage configuration (MinIO)"""
import os

MINIO_CONFIG = {
    "endpoint": os.getenv("MINIO_ENDPOINT", "minio:9000"),
    "access_key": os.getenv("MINIO_ACCESS_KEY", "minioadmin"),
    "secret_key": os.getenv("MINIO_SECRET_KEY", "minioadmin"),
    "bucket": os.getenv("MINIO_WAREHOUSE_BUCKET", "healthdw-warehouse"),
    "backup_bucket": os.getenv("MINIO_BACKUP_BUCKET", "healthdw-backup"),
    "secure": os.getenv("MINIO_SECURE", "false").lower() == "true",
}
