"""
healthdw - dimensional schema engine for the healthcare reporting warehouse.

Star schema catalog, integrity validation, SCD dimension loading, fact
loading with surrogate key resolution, and watermark tracking on DuckDB.
"""

__version__ = '1.0.0'
