"""
DWH load module.

Loads source batches into the DuckDB star schema described by a SchemaCatalog.

Structure:
├── pipeline.py          - LoadEngine (wave orchestration) and run_etl (MinIO round trip)
├── base.py              - LoadResult, row coercion, batch transactions
├── cache.py             - Dimension lookups (surrogate key resolution)
├── watermark.py         - WatermarkTracker and its stores
├── dimensions/          - Dimension loading
│   ├── loader.py       - DimensionLoader (NONE / TYPE1 / TYPE2)
│   └── date.py         - DimDate generator
└── facts/              - Fact loading
    └── loader.py       - FactLoader (event / snapshot)

Storage: healthdw/storage/warehouse.py, healthdw/storage/minio.py
"""

from .pipeline import LoadEngine, run_etl
from .base import DeadLetter, LoadResult, TableLocks, coerce_value, normalize_rows
from .cache import DimensionLookup, init_dimension_caches
from .watermark import (
    DuckDBWatermarkStore,
    InMemoryWatermarkStore,
    RunStatus,
    Watermark,
    WatermarkTracker,
)
from .dimensions import DimensionLoader, build_date_rows, process_dim_date
from .facts import FactLoader

__all__ = [
    'LoadEngine',
    'run_etl',
    'DeadLetter',
    'LoadResult',
    'TableLocks',
    'coerce_value',
    'normalize_rows',
    'DimensionLookup',
    'init_dimension_caches',
    'DuckDBWatermarkStore',
    'InMemoryWatermarkStore',
    'RunStatus',
    'Watermark',
    'WatermarkTracker',
    'DimensionLoader',
    'build_date_rows',
    'process_dim_date',
    'FactLoader',
]
