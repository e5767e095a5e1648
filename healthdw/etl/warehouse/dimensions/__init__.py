"""
Dimension loading modules for DWH ETL.
"""

from .loader import DimensionLoader
from .date import (
    DATE_DIMENSION,
    build_date_rows,
    date_key,
    date_range_from_batches,
    process_dim_date,
)

__all__ = [
    'DimensionLoader',
    'DATE_DIMENSION',
    'build_date_rows',
    'date_key',
    'date_range_from_batches',
    'process_dim_date',
]
