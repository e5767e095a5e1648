"""
DimDate generator.
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from ....schema.definitions import TEMPORAL_TYPES, FactDef
from ..base import LoadResult, normalize_rows

logger = logging.getLogger(__name__)

DATE_DIMENSION = 'DimDate'
WEEKDAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']
MONTH_NAMES = [
    'January', 'February', 'March', 'April', 'May', 'June',
    'July', 'August', 'September', 'October', 'November', 'December'
]


def date_key(d: date) -> int:
    """yyyymmdd, e.g. 2025-01-31 -> 20250131"""
    return d.year * 10000 + d.month * 100 + d.day


def build_date_rows(start: date, end: date) -> List[Dict[str, Any]]:
    """Calendar rows for every day in [start, end]."""
    rows = []
    current = start
    while current <= end:
        day_of_week = current.isoweekday()
        rows.append({
            'DateKey': date_key(current),
            'Date': current,
            'Year': current.year,
            'Month': current.month,
            'MonthName': MONTH_NAMES[current.month - 1],
            'Quarter': (current.month - 1) // 3 + 1,
            'DayOfWeek': WEEKDAY_NAMES[day_of_week - 1],
            'IsWeekend': day_of_week >= 6,
        })
        current += timedelta(days=1)
    return rows


def date_range_from_batches(
    catalog,
    batches: Optional[Mapping[str, Any]] = None,
    projection_days: int = 5,
    today: Optional[date] = None
) -> Tuple[date, date]:
    """
    Range to cover:
    - min_date = MIN of every DATE/TIMESTAMP column in the fact batches
    - max_date = MAX(..., today + projection_days)
    Without fact data: last 30 days up to the projection window.
    """
    today = today or date.today()
    min_date = today - timedelta(days=30)
    max_date = today + timedelta(days=projection_days)

    all_dates = []
    for table_name, rows in (batches or {}).items():
        if table_name not in catalog:
            continue
        table = catalog.get(table_name)
        if not isinstance(table, FactDef):
            continue
        df = pd.DataFrame(normalize_rows(rows))
        if df.empty:
            continue
        for col in table.columns:
            if col.base_type in TEMPORAL_TYPES and col.name in df.columns:
                dates = pd.to_datetime(df[col.name], errors='coerce').dropna()
                all_dates.extend(dates.dt.date.tolist())

    if all_dates:
        min_date = min(all_dates)
        max_date = max(max(all_dates), today + timedelta(days=projection_days))

    logger.debug(f"DimDate range: {min_date} to {max_date}")
    return min_date, max_date


def process_dim_date(
    loader,
    batches: Optional[Mapping[str, Any]] = None,
    projection_days: int = 5,
    today: Optional[date] = None
) -> LoadResult:
    """Generate and load DimDate for the dates present in the fact batches."""
    start, end = date_range_from_batches(loader.catalog, batches, projection_days, today)
    return loader.load(DATE_DIMENSION, build_date_rows(start, end))
