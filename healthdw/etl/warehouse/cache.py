"""
Dimension lookups for surrogate key resolution.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import duckdb

from ...schema.definitions import (
    EFFECTIVE_FROM, EFFECTIVE_TO, IS_CURRENT, DimensionDef, FactDef, ScdType, quote_ident
)
from .base import as_event_time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DimensionVersion:
    surrogate_key: int
    effective_from: Optional[datetime]
    effective_to: Optional[datetime]
    is_current: bool


class DimensionLookup:
    """
    natural key -> versions of one dimension.

    TYPE2 lookups with an as_of time pick the version whose
    [EffectiveFrom, EffectiveTo) contains it. An as_of before the first
    version resolves to the first version, an as_of after retirement does not
    resolve. Everything else resolves against the current row.
    """

    def __init__(self, table: str, scd_type: ScdType, versions: Dict[Any, List[DimensionVersion]]):
        self.table = table
        self.scd_type = scd_type
        self._versions = versions

    def __len__(self) -> int:
        return len(self._versions)

    def __contains__(self, natural_key) -> bool:
        return self.resolve(natural_key) is not None

    def resolve(self, natural_key, as_of: Optional[datetime] = None) -> Optional[int]:
        versions = self._versions.get(natural_key)
        if not versions:
            return None

        if self.scd_type != ScdType.TYPE2 or as_of is None:
            for version in versions:
                if version.is_current:
                    return version.surrogate_key
            return None

        for version in versions:
            if version.effective_from <= as_of and (version.effective_to is None or as_of < version.effective_to):
                return version.surrogate_key

        first = versions[0]
        if as_of < first.effective_from:
            return first.surrogate_key
        return None


def load_dimension_lookup(conn: duckdb.DuckDBPyConnection, dimension: DimensionDef) -> DimensionLookup:
    """Read every version of a single-key dimension."""
    key = dimension.natural_key[0]
    table = quote_ident(dimension.name)
    sk = quote_ident(dimension.surrogate_key)

    if dimension.scd_type == ScdType.TYPE2:
        rows = conn.execute(f"""
            SELECT {quote_ident(key)}, {sk}, {quote_ident(EFFECTIVE_FROM)}, {quote_ident(EFFECTIVE_TO)}, {quote_ident(IS_CURRENT)}
            FROM {table}
            ORDER BY {quote_ident(key)}, {quote_ident(EFFECTIVE_FROM)}, {sk}
        """).fetchall()
    else:
        rows = conn.execute(f"""
            SELECT {quote_ident(key)}, {sk}, NULL, NULL, {quote_ident(IS_CURRENT)}
            FROM {table}
            ORDER BY {quote_ident(key)}, {sk}
        """).fetchall()

    versions: Dict[Any, List[DimensionVersion]] = {}
    for natural_key, surrogate_key, eff_from, eff_to, is_current in rows:
        versions.setdefault(natural_key, []).append(DimensionVersion(
            surrogate_key=surrogate_key,
            effective_from=as_event_time(eff_from),
            effective_to=as_event_time(eff_to),
            is_current=bool(is_current),
        ))
    return DimensionLookup(dimension.name, dimension.scd_type, versions)


def load_business_keys(conn: duckdb.DuckDBPyConnection, fact: FactDef) -> Set[Any]:
    """Committed business ids of an event fact."""
    column = quote_ident(fact.business_key)
    rows = conn.execute(f"SELECT {column} FROM {quote_ident(fact.name)}").fetchall()
    return {r[0] for r in rows}


def init_dimension_caches(
    conn: duckdb.DuckDBPyConnection,
    catalog,
    table_names: Iterable[str]
) -> Dict[str, Any]:
    """
    Build lookups for the given referenced tables.

    Returns dict with:
    - dimension name -> DimensionLookup
    - event fact name -> set of business ids
    """
    caches: Dict[str, Any] = {}
    for name in sorted(set(table_names)):
        table = catalog.get(name)
        if isinstance(table, DimensionDef):
            caches[name] = load_dimension_lookup(conn, table)
        else:
            caches[name] = load_business_keys(conn, table)

    logger.debug("Caches initialized: " + ', '.join(f"{name}={len(c)}" for name, c in caches.items()))
    return caches
