"""
Dimension loader: upsert with NONE / TYPE1 / TYPE2 semantics.

Rows are applied in natural-key order and, within a key, by event time.
- new key            -> insert, new surrogate key
- TYPE1 change       -> overwrite in place
- TYPE2 change       -> close current version, insert new version (new surrogate key)
- NONE change        -> ImmutableDimensionViolationError
- identical row      -> unchanged
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ....errors import (
    ConflictingNaturalKeyError,
    ImmutableDimensionViolationError,
    LoadError,
    RangeViolationError,
    RequiredValueMissingError,
    SchemaError,
    UnresolvedReferenceError,
)
from ....schema.definitions import (
    EFFECTIVE_FROM, EFFECTIVE_TO, IS_CURRENT, LOADED_AT,
    Column, DimensionDef, ScdType, quote_ident
)
from ..base import (
    BatchLoader, LoadResult, as_event_time, coerce_value, key_order, normalize_rows, row_identifier, same_value
)
from ..cache import init_dimension_caches

logger = logging.getLogger(__name__)


@dataclass
class PreparedRow:
    natural_key: Tuple
    values: Dict[str, Any]
    event_time: Optional[datetime]
    identifier: Any
    raw: Dict[str, Any]


class DimensionLoader(BatchLoader):
    """Loads dimension batches. One instance per connection/cursor."""

    def load(self, dimension_name: str, incoming_rows) -> LoadResult:
        dimension = self._dimension(dimension_name)
        rows = normalize_rows(incoming_rows)
        result = LoadResult(table=dimension.name, rows_in=len(rows))

        prepared = self._prepare_batch(dimension, rows, result)
        return self._run_batch(result, lambda r: self._apply(dimension, prepared, r))

    def retire(self, dimension_name: str, natural_keys: Iterable[Any], at: Optional[datetime] = None) -> LoadResult:
        """
        Soft-delete current rows. Retired keys stop resolving for new events;
        a retired key that shows up again gets a fresh surrogate key. Keys still
        referenced by current rows of other dimensions are dead-lettered.
        """
        dimension = self._dimension(dimension_name)
        keys = list(natural_keys)
        result = LoadResult(table=dimension.name, rows_in=len(keys))

        def apply(result: LoadResult):
            current = self._current_rows(dimension)
            retire_time = at or self.clock()
            loaded_at = self.clock()

            for key in keys:
                key_values = key if isinstance(key, tuple) else (key,)
                row = dict(zip(dimension.natural_key, key_values))
                identifier = row_identifier(row, dimension.natural_key)
                try:
                    if len(key_values) != len(dimension.natural_key):
                        raise RequiredValueMissingError(
                            f"{dimension.name}: natural key {dimension.natural_key} expected, got {key!r}",
                            table=dimension.name, row_identifier=identifier
                        )
                    nk = tuple(
                        coerce_value(dimension.column(col), row[col], dimension.name, identifier)
                        for col in dimension.natural_key
                    )
                    existing = current.get(nk)
                    if existing is None:
                        logger.debug(f"{dimension.name}: {identifier} has no current row, nothing to retire")
                        result.unchanged += 1
                        continue
                    self._check_unreferenced(dimension, nk, identifier)
                    self._close(dimension, existing, retire_time, loaded_at, identifier)
                    del current[nk]
                    result.updated += 1
                except LoadError as e:
                    result.reject(e, row)

        return self._run_batch(result, apply, track_watermark=False)

    # -------------------------------------------------------------------------
    # Preparation (no storage access)
    # -------------------------------------------------------------------------

    def _dimension(self, name: str) -> DimensionDef:
        table = self.catalog.get(name)
        if not isinstance(table, DimensionDef):
            raise SchemaError(f"{name} is not a dimension")
        return table

    def _prepare_row(self, dimension: DimensionDef, raw: Dict[str, Any]) -> PreparedRow:
        identifier = row_identifier(raw, dimension.natural_key)
        values: Dict[str, Any] = {}

        for col in dimension.columns:
            value = coerce_value(col, raw.get(col.name), dimension.name, identifier)
            if value is None and not col.nullable:
                what = 'natural key' if col.name in dimension.natural_key else 'required value'
                raise RequiredValueMissingError(
                    f"{dimension.name}: {what} {col.name} is missing",
                    table=dimension.name, row_identifier=identifier
                )
            values[col.name] = value

        event_column = dimension.event_time_column
        if event_column not in values:
            values[event_column] = coerce_value(
                Column(event_column, 'TIMESTAMP'), raw.get(event_column), dimension.name, identifier
            )

        return PreparedRow(
            natural_key=tuple(values[k] for k in dimension.natural_key),
            values=values,
            event_time=as_event_time(values[event_column]),
            identifier=identifier,
            raw=raw,
        )

    def _prepare_batch(self, dimension: DimensionDef, rows: List[Dict[str, Any]], result: LoadResult) -> List[PreparedRow]:
        groups: Dict[Tuple, List[PreparedRow]] = {}
        event_times = []

        for raw in rows:
            try:
                row = self._prepare_row(dimension, raw)
            except LoadError as e:
                result.reject(e, raw)
                continue
            groups.setdefault(row.natural_key, []).append(row)
            if row.event_time is not None:
                event_times.append(row.event_time)

        result.watermark = max(event_times, default=None)

        ordered: List[PreparedRow] = []
        for nk in sorted(groups, key=key_order):
            ordered.extend(self._dedupe_key(dimension, groups[nk], result))
        return ordered

    def _dedupe_key(self, dimension: DimensionDef, rows: List[PreparedRow], result: LoadResult) -> List[PreparedRow]:
        """Collapse identical duplicates, reject conflicting rows at the same event time."""
        by_time: Dict[Optional[datetime], List[PreparedRow]] = {}
        for row in rows:
            by_time.setdefault(row.event_time, []).append(row)

        kept = []
        for event_time in sorted(by_time, key=lambda t: (t is None, t or datetime.min)):
            candidates = by_time[event_time]
            first = candidates[0]
            if all(c.values == first.values for c in candidates[1:]):
                kept.append(first)
                result.unchanged += len(candidates) - 1
                continue

            for c in candidates:
                result.reject(ConflictingNaturalKeyError(
                    f"{dimension.name}: {len(candidates)} different rows for {c.identifier} at {event_time}",
                    table=dimension.name, row_identifier=c.identifier
                ), c.raw)
        return kept

    # -------------------------------------------------------------------------
    # Apply (inside the batch transaction)
    # -------------------------------------------------------------------------

    def _current_rows(self, dimension: DimensionDef) -> Dict[Tuple, Dict[str, Any]]:
        rows = self._fetch_rows(
            f"SELECT * FROM {quote_ident(dimension.name)} WHERE {quote_ident(IS_CURRENT)}"
        )
        return {tuple(r[k] for k in dimension.natural_key): r for r in rows}

    def _check_unreferenced(self, dimension: DimensionDef, natural_key: Tuple, identifier: Any):
        """Current rows of other dimensions must not point at a key being retired."""
        holders = []
        for rel in self.catalog.referenced_by(dimension.name):
            if not self.catalog.is_dimension(rel.source):
                continue
            count = self.conn.execute(
                f"SELECT COUNT(*) FROM {quote_ident(rel.source)} "
                f"WHERE {quote_ident(IS_CURRENT)} AND {quote_ident(rel.attribute)} = ?",
                [natural_key[0]]
            ).fetchone()[0]
            if count:
                holders.append(f"{rel.source}.{rel.attribute} ({count})")
        if holders:
            raise UnresolvedReferenceError(
                f"{dimension.name}: {identifier} is still referenced by current rows of {', '.join(holders)}",
                table=dimension.name, row_identifier=identifier
            )

    def _closed_until(self, dimension: DimensionDef) -> Dict[Tuple, datetime]:
        """Latest EffectiveTo of closed TYPE2 versions per natural key."""
        keys = ', '.join(quote_ident(k) for k in dimension.natural_key)
        rows = self.conn.execute(f"""
            SELECT {keys}, MAX({quote_ident(EFFECTIVE_TO)})
            FROM {quote_ident(dimension.name)}
            WHERE NOT {quote_ident(IS_CURRENT)}
            GROUP BY {keys}
        """).fetchall()
        width = len(dimension.natural_key)
        return {tuple(r[:width]): as_event_time(r[width]) for r in rows}

    def _apply(self, dimension: DimensionDef, prepared: List[PreparedRow], result: LoadResult):
        caches = init_dimension_caches(self.conn, self.catalog, [rel.target for rel in dimension.relationships])
        current = self._current_rows(dimension)
        closed_until = self._closed_until(dimension) if dimension.scd_type == ScdType.TYPE2 else {}
        loaded_at = self.clock()

        for row in prepared:
            try:
                for rel in dimension.relationships:
                    self._resolve_reference(rel, row.values[rel.attribute], caches, row.identifier)
                self._apply_row(dimension, row, current, closed_until, loaded_at, result)
            except LoadError as e:
                result.reject(e, row.raw)

    def _apply_row(
        self,
        dimension: DimensionDef,
        row: PreparedRow,
        current: Dict[Tuple, Dict[str, Any]],
        closed_until: Dict[Tuple, datetime],
        loaded_at: datetime,
        result: LoadResult
    ):
        change_time = row.event_time or loaded_at
        existing = current.get(row.natural_key)

        if existing is None:
            last_closed = closed_until.get(row.natural_key)
            if last_closed is not None and change_time < last_closed:
                raise RangeViolationError(
                    f"{dimension.name}: {row.identifier} reappears at {change_time}, "
                    f"before its last version closed at {last_closed}",
                    table=dimension.name, row_identifier=row.identifier
                )
            current[row.natural_key] = self._insert_version(dimension, row, change_time, loaded_at)
            result.inserted += 1
            result.surrogate_keys[row.natural_key] = current[row.natural_key][dimension.surrogate_key]
            return

        attributes = [c.name for c in dimension.attributes if c.name != dimension.event_time_column]
        changed = [c for c in attributes if not same_value(existing[c], row.values[c])]
        surrogate_key = existing[dimension.surrogate_key]

        if not changed:
            result.unchanged += 1
            result.surrogate_keys[row.natural_key] = surrogate_key
            return

        if dimension.scd_type == ScdType.NONE:
            raise ImmutableDimensionViolationError(
                f"{dimension.name}: {row.identifier} is reference data, attempted change of {changed}",
                table=dimension.name, row_identifier=row.identifier
            )

        if dimension.scd_type == ScdType.TYPE2:
            version_start = as_event_time(existing[EFFECTIVE_FROM])
            if change_time < version_start:
                raise RangeViolationError(
                    f"{dimension.name}: change for {row.identifier} at {change_time} "
                    f"precedes current version start {version_start}",
                    table=dimension.name, row_identifier=row.identifier
                )
            tracked = [c for c in changed if c in dimension.compare_columns]
            # a restatement at the version's own start time corrects it in place
            if tracked and change_time > version_start:
                self._close(dimension, existing, change_time, loaded_at, row.identifier)
                closed_until[row.natural_key] = change_time
                current[row.natural_key] = self._insert_version(dimension, row, change_time, loaded_at)
                result.updated += 1
                result.surrogate_keys[row.natural_key] = current[row.natural_key][dimension.surrogate_key]
                logger.debug(f"{dimension.name}: {row.identifier} new version, changed {tracked}")
                return

        self._overwrite(dimension, existing, row, changed, loaded_at)
        result.updated += 1
        result.surrogate_keys[row.natural_key] = surrogate_key

    def _insert_version(
        self,
        dimension: DimensionDef,
        row: PreparedRow,
        change_time: datetime,
        loaded_at: datetime
    ) -> Dict[str, Any]:
        values = {dimension.surrogate_key: self._next_surrogate_key(dimension.name)}
        values.update(row.values)
        if dimension.scd_type == ScdType.TYPE2:
            values[EFFECTIVE_FROM] = change_time
            values[EFFECTIVE_TO] = None
        values[IS_CURRENT] = True
        values[LOADED_AT] = loaded_at
        self._insert(dimension.name, values)
        return values

    def _close(self, dimension: DimensionDef, existing: Dict[str, Any], at: datetime, loaded_at: datetime, identifier: Any):
        surrogate_key = existing[dimension.surrogate_key]
        if dimension.scd_type == ScdType.TYPE2:
            version_start = as_event_time(existing[EFFECTIVE_FROM])
            if at < version_start:
                raise RangeViolationError(
                    f"{dimension.name}: cannot close {identifier} at {at}, version starts {version_start}",
                    table=dimension.name, row_identifier=identifier
                )
            self.conn.execute(f"""
                UPDATE {quote_ident(dimension.name)}
                SET {quote_ident(EFFECTIVE_TO)} = ?, {quote_ident(IS_CURRENT)} = FALSE, {quote_ident(LOADED_AT)} = ?
                WHERE {quote_ident(dimension.surrogate_key)} = ?
            """, [at, loaded_at, surrogate_key])
        else:
            self.conn.execute(f"""
                UPDATE {quote_ident(dimension.name)}
                SET {quote_ident(IS_CURRENT)} = FALSE, {quote_ident(LOADED_AT)} = ?
                WHERE {quote_ident(dimension.surrogate_key)} = ?
            """, [loaded_at, surrogate_key])

    def _overwrite(
        self,
        dimension: DimensionDef,
        existing: Dict[str, Any],
        row: PreparedRow,
        changed: List[str],
        loaded_at: datetime
    ):
        updates = {c: row.values[c] for c in changed}
        if row.values[dimension.event_time_column] is not None:
            updates[dimension.event_time_column] = row.values[dimension.event_time_column]
        updates[LOADED_AT] = loaded_at

        assignments = ', '.join(f"{quote_ident(c)} = ?" for c in updates)
        self.conn.execute(f"""
            UPDATE {quote_ident(dimension.name)}
            SET {assignments}
            WHERE {quote_ident(dimension.surrogate_key)} = ?
        """, list(updates.values()) + [existing[dimension.surrogate_key]])
        existing.update(updates)
