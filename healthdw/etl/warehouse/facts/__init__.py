"""
Fact loading modules for DWH ETL.
"""

from .loader import FactLoader

__all__ = [
    'FactLoader',
]
