"""
Fact loader.

- Event facts (grain = business id): append only, a grain already committed or
  already seen in the batch is a DuplicateFactRowError.
- Snapshot facts (grain = date + dimensions): DELETE + INSERT on the grain,
  latest values win, an identical reload is unchanged.

Dimension references are resolved to surrogate keys, TYPE2 dimensions as of
the fact's event time. Rows that fail are dead-lettered, the rest commits.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ....errors import (
    DuplicateFactRowError,
    LoadError,
    RequiredValueMissingError,
    SchemaError,
)
from ....schema.definitions import LOADED_AT, DimensionDef, FactDef, FactKind, quote_ident
from ..base import (
    BatchLoader, LoadResult, as_event_time, coerce_value, key_order, normalize_rows, row_identifier, same_value
)
from ..cache import init_dimension_caches

logger = logging.getLogger(__name__)


class FactLoader(BatchLoader):
    """Loads fact batches. One instance per connection/cursor."""

    def load(self, fact_name: str, incoming_rows) -> LoadResult:
        fact = self._fact(fact_name)
        rows = normalize_rows(incoming_rows)
        result = LoadResult(table=fact.name, rows_in=len(rows))

        prepared = self._prepare_batch(fact, rows, result)
        return self._run_batch(result, lambda r: self._apply(fact, prepared, r))

    def _fact(self, name: str) -> FactDef:
        table = self.catalog.get(name)
        if not isinstance(table, FactDef):
            raise SchemaError(f"{name} is not a fact")
        return table

    # -------------------------------------------------------------------------
    # Preparation
    # -------------------------------------------------------------------------

    def _prepare_row(self, fact: FactDef, raw: Dict[str, Any]) -> Tuple[Tuple, Dict[str, Any], Any]:
        identifier = row_identifier(raw, fact.grain)
        # null mandatory references are reported as unresolved, not missing
        reference_columns = {rel.attribute for rel in fact.relationships}
        values: Dict[str, Any] = {}

        for col in fact.columns:
            value = coerce_value(col, raw.get(col.name), fact.name, identifier)
            if value is None and not col.nullable and (col.name in fact.grain or col.name not in reference_columns):
                what = 'grain column' if col.name in fact.grain else 'required value'
                raise RequiredValueMissingError(
                    f"{fact.name}: {what} {col.name} is missing",
                    table=fact.name, row_identifier=identifier
                )
            values[col.name] = value

        grain = tuple(values[g] for g in fact.grain)
        return grain, values, identifier

    def _prepare_batch(self, fact: FactDef, rows: List[Dict[str, Any]], result: LoadResult) -> List[Tuple]:
        prepared = []
        event_times = []

        for raw in rows:
            if fact.event_time_column:
                # every processed row counts towards the watermark, dead letters are persisted
                try:
                    event_time = as_event_time(coerce_value(
                        fact.column(fact.event_time_column), raw.get(fact.event_time_column), fact.name
                    ))
                except LoadError:
                    event_time = None
                if event_time is not None:
                    event_times.append(event_time)

            try:
                grain, values, identifier = self._prepare_row(fact, raw)
            except LoadError as e:
                result.reject(e, raw)
                continue
            prepared.append((grain, values, identifier, raw))

        result.watermark = max(event_times, default=None)
        # stable: repeated grains keep batch order, the last one wins for snapshots
        prepared.sort(key=lambda p: key_order(p[0]))
        return prepared

    # -------------------------------------------------------------------------
    # Apply (inside the batch transaction)
    # -------------------------------------------------------------------------

    def _apply(self, fact: FactDef, prepared: List[Tuple], result: LoadResult):
        caches = init_dimension_caches(self.conn, self.catalog, self.catalog.dependencies(fact.name))
        loaded_at = self.clock()
        seen = set()

        for grain, values, identifier, raw in prepared:
            try:
                stored = dict(values)
                as_of = as_event_time(values[fact.event_time_column]) if fact.event_time_column else None
                for rel in fact.relationships:
                    surrogate_key = self._resolve_reference(rel, values[rel.attribute], caches, identifier, as_of)
                    if isinstance(self.catalog.get(rel.target), DimensionDef):
                        stored[rel.surrogate_column] = surrogate_key

                if fact.kind == FactKind.EVENT:
                    self._append_event(fact, grain, stored, identifier, seen, loaded_at, result)
                else:
                    self._upsert_snapshot(fact, grain, stored, loaded_at, result)
            except LoadError as e:
                result.reject(e, raw)

    def _grain_filter(self, fact: FactDef) -> str:
        return ' AND '.join(f"{quote_ident(g)} = ?" for g in fact.grain)

    def _existing(self, fact: FactDef, grain: Tuple) -> Optional[Dict[str, Any]]:
        rows = self._fetch_rows(
            f"SELECT * FROM {quote_ident(fact.name)} WHERE {self._grain_filter(fact)}",
            list(grain)
        )
        return rows[0] if rows else None

    def _append_event(
        self,
        fact: FactDef,
        grain: Tuple,
        stored: Dict[str, Any],
        identifier: Any,
        seen: set,
        loaded_at,
        result: LoadResult
    ):
        if grain in seen or self._existing(fact, grain) is not None:
            raise DuplicateFactRowError(
                f"{fact.name}: {fact.business_key} {identifier} is already loaded",
                table=fact.name, row_identifier=identifier
            )
        stored[LOADED_AT] = loaded_at
        self._insert(fact.name, stored)
        seen.add(grain)
        result.inserted += 1

    def _upsert_snapshot(self, fact: FactDef, grain: Tuple, stored: Dict[str, Any], loaded_at, result: LoadResult):
        """UPSERT a single snapshot row using DELETE + INSERT pattern."""
        existing = self._existing(fact, grain)

        if existing is not None:
            if all(same_value(existing.get(c), v) for c, v in stored.items()):
                result.unchanged += 1
                return
            self.conn.execute(
                f"DELETE FROM {quote_ident(fact.name)} WHERE {self._grain_filter(fact)}",
                list(grain)
            )
            stored[LOADED_AT] = loaded_at
            self._insert(fact.name, stored)
            result.updated += 1
        else:
            stored[LOADED_AT] = loaded_at
            self._insert(fact.name, stored)
            result.inserted += 1
