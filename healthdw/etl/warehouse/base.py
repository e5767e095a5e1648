"""
Shared pieces for dimension and fact loaders:
- LoadResult / DeadLetter: structured outcome of one batch
- normalize_rows: DataFrame or list of mappings -> list of dicts
- coerce_value: typed conversion of incoming values (raises RangeViolationError)
- TableLocks: one write lock per table
- BatchLoader: transaction, dead-letter and watermark handling for one batch
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import duckdb
import pandas as pd

from ...config import WAREHOUSE_CONFIG
from ...errors import CommitError, LoadError, RangeViolationError, UnresolvedReferenceError
from ...schema.definitions import Column, DimensionDef, Relationship, ScdType, quote_ident
from ...storage.warehouse import fetch_dicts, write_dead_letters
from .watermark import WatermarkTracker

logger = logging.getLogger(__name__)

TRUE_STRINGS = {'true', 't', 'yes', 'y', '1'}
FALSE_STRINGS = {'false', 'f', 'no', 'n', '0'}

INTEGER_RANGES = {
    'INTEGER': (-2 ** 31, 2 ** 31 - 1),
    'BIGINT': (-2 ** 63, 2 ** 63 - 1),
}


@dataclass
class DeadLetter:
    """A rejected row with the reason it was set aside."""
    table: str
    row_identifier: Any
    error_kind: str
    reason: str
    row: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, table: str, error: LoadError, row: Dict[str, Any]) -> 'DeadLetter':
        return cls(
            table=table,
            row_identifier=error.row_identifier,
            error_kind=error.kind,
            reason=str(error),
            row=dict(row),
        )


@dataclass
class LoadResult:
    """Outcome of one batch: applied counts, dead letters, final watermark."""
    table: str
    rows_in: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    dead_letters: List[DeadLetter] = field(default_factory=list)
    watermark: Optional[datetime] = None
    status: str = 'pending'  # 'success', 'failed', 'skipped'
    error_message: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    # natural key -> surrogate key touched by this batch (dimensions only)
    surrogate_keys: Dict[Tuple, int] = field(default_factory=dict)

    @property
    def dead_lettered(self) -> int:
        return len(self.dead_letters)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def reject(self, error: LoadError, row: Dict[str, Any]):
        self.dead_letters.append(DeadLetter.from_error(self.table, error, row))
        logger.warning(f"{self.table}: dead-lettered row {error.row_identifier}: {error}")

    def errors_of(self, kind: str) -> List[DeadLetter]:
        return [d for d in self.dead_letters if d.error_kind == kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table,
            'status': self.status,
            'rows_in': self.rows_in,
            'inserted': self.inserted,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'dead_lettered': self.dead_lettered,
            'dead_letters': [
                {'row_identifier': d.row_identifier, 'error_kind': d.error_kind, 'reason': d.reason}
                for d in self.dead_letters
            ],
            'watermark': self.watermark.isoformat() if self.watermark else None,
            'run_id': self.run_id,
            'error_message': self.error_message,
        }


def normalize_rows(incoming_rows) -> List[Dict[str, Any]]:
    """Accept a DataFrame, a list of mappings or None. NaN/NaT become None."""
    if incoming_rows is None:
        return []
    if isinstance(incoming_rows, pd.DataFrame):
        if incoming_rows.empty:
            return []
        df = incoming_rows.astype(object).where(pd.notna(incoming_rows), None)
        return df.to_dict('records')
    return [dict(row) for row in incoming_rows]


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_timestamp(value: Any) -> datetime:
    """Parse to a naive datetime (aware values are converted to UTC)."""
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            raise ValueError('NaT')
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, date):
        ts = datetime.combine(value, time.min)
    else:
        parsed = pd.Timestamp(value)
        if pd.isna(parsed):
            raise ValueError(f'not a timestamp: {value!r}')
        ts = parsed.to_pydatetime()
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_timestamp(value).date()


def as_event_time(value: Any) -> Optional[datetime]:
    """Comparable point in time for a DATE or TIMESTAMP value."""
    if value is None:
        return None
    return parse_timestamp(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise ValueError(f'not a boolean: {value!r}')
    if value in (0, 1):
        return bool(value)
    raise ValueError(f'not a boolean: {value!r}')


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    number = Decimal(str(value).strip())
    if number != number.to_integral_value():
        raise ValueError(f'not an integer: {value!r}')
    return int(number)


def _to_decimal(column: Column, value: Any, table: str, row_identifier: Any) -> Decimal:
    """Round to the column scale; reject values with more integer digits than precision - scale."""
    number = Decimal(str(value).strip())
    if not number.is_finite():
        raise ValueError(f'not a finite decimal: {value!r}')
    precision, scale = column.precision_scale
    number = number.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)
    if abs(number) >= Decimal(10) ** (precision - scale):
        raise RangeViolationError(
            f'{table}.{column.name}: value {value!r} exceeds {column.data_type}',
            table=table, row_identifier=row_identifier
        )
    return number


def coerce_value(column: Column, value: Any, table: str, row_identifier: Any = None) -> Any:
    """Convert an incoming value to the column's Python type. Missing -> default or None."""
    if is_missing(value):
        return column.default

    base = column.base_type
    try:
        if base == 'VARCHAR':
            text = str(value).strip()
            if column.length and len(text) > column.length:
                raise RangeViolationError(
                    f'{table}.{column.name}: value {text!r} exceeds VARCHAR({column.length})',
                    table=table, row_identifier=row_identifier
                )
            return text
        if base in INTEGER_RANGES:
            number = _to_int(value)
            low, high = INTEGER_RANGES[base]
            if not low <= number <= high:
                raise RangeViolationError(
                    f'{table}.{column.name}: value {number} out of {base} range',
                    table=table, row_identifier=row_identifier
                )
            return number
        if base == 'DECIMAL':
            return _to_decimal(column, value, table, row_identifier)
        if base == 'DOUBLE':
            return float(value)
        if base == 'BOOLEAN':
            return _to_bool(value)
        if base == 'DATE':
            return parse_date(value)
        if base == 'TIMESTAMP':
            return parse_timestamp(value)
    except RangeViolationError:
        raise
    except (ValueError, TypeError, ArithmeticError, OverflowError) as e:
        raise RangeViolationError(
            f'{table}.{column.name}: invalid {column.data_type} value {value!r}',
            table=table, row_identifier=row_identifier
        ) from e
    return value


def key_order(values: Iterable[Any]) -> Tuple:
    """Sort token for key tuples (values of one column share a type)."""
    return tuple((v is None, type(v).__name__, v if v is not None else 0) for v in values)


class TableLocks:
    """One write lock per table. Loads of the same table never overlap."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, table: str):
        with self._guard:
            lock = self._locks.setdefault(table, threading.Lock())
        with lock:
            yield


class BatchLoader:
    """
    Common batch handling for dimension and fact loaders.

    A batch runs in one transaction: rows, dead letters and the watermark row
    commit together or not at all. Storage failures roll back and surface as
    CommitError, the watermark is then marked FAILED and keeps its value.
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        catalog,
        watermarks: Optional[WatermarkTracker] = None,
        clock: Callable[[], datetime] = None,
        locks: Optional[TableLocks] = None,
        persist_dead_letters: Optional[bool] = None
    ):
        self.conn = conn
        self.catalog = catalog
        self.watermarks = watermarks if watermarks is not None else WatermarkTracker()
        self.clock = clock or datetime.now
        self.locks = locks or TableLocks()
        if persist_dead_letters is None:
            persist_dead_letters = WAREHOUSE_CONFIG['persist_dead_letters']
        self.persist_dead_letters = persist_dead_letters

    def _run_batch(
        self,
        result: LoadResult,
        apply: Callable[[LoadResult], None],
        track_watermark: bool = True
    ) -> LoadResult:
        table = result.table
        with self.locks.hold(table):
            result.started_at = datetime.now()
            self.conn.execute("BEGIN TRANSACTION")
            try:
                apply(result)
                if self.persist_dead_letters and result.dead_letters:
                    write_dead_letters(self.conn, result.run_id, result.dead_letters, self.clock())
                if track_watermark:
                    staged = self.watermarks.stage(table, result.watermark, conn=self.conn)
                    result.watermark = staged.last_loaded_value
                self.conn.execute("COMMIT")
            except duckdb.Error as e:
                self._abort(result, str(e), track_watermark)
                raise CommitError(f"{table}: batch rolled back: {e}", table=table) from e
            except Exception as e:
                self._abort(result, str(e), track_watermark)
                raise

            if track_watermark:
                self.watermarks.publish(table)
            result.status = 'success'
            result.finished_at = datetime.now()

        logger.info(
            f"{table}: inserted={result.inserted}, updated={result.updated}, "
            f"unchanged={result.unchanged}, dead_lettered={result.dead_lettered}"
        )
        return result

    def _abort(self, result: LoadResult, message: str, track_watermark: bool):
        try:
            self.conn.execute("ROLLBACK")
        except duckdb.Error as e:
            logger.warning(f"{result.table}: rollback failed: {e}")
        if track_watermark:
            self.watermarks.record_failure(result.table)
        result.status = 'failed'
        result.error_message = message
        result.finished_at = datetime.now()
        logger.error(f"{result.table}: batch failed, rolled back: {message}")

    def _next_surrogate_key(self, table_name: str) -> int:
        seq = self.catalog.sequence_name(table_name)
        return self.conn.execute(f"SELECT NEXTVAL('{seq}')").fetchone()[0]

    def _insert(self, table_name: str, values: Dict[str, Any]):
        columns = list(values)
        column_sql = ', '.join(quote_ident(c) for c in columns)
        placeholders = ', '.join(['?'] * len(columns))
        self.conn.execute(
            f"INSERT INTO {quote_ident(table_name)} ({column_sql}) VALUES ({placeholders})",
            [values[c] for c in columns]
        )

    def _fetch_rows(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        return fetch_dicts(self.conn, sql, params)

    def _resolve_reference(
        self,
        rel: Relationship,
        value: Any,
        caches: Dict[str, Any],
        row_identifier: Any,
        as_of: Optional[datetime] = None
    ) -> Optional[int]:
        """
        Resolve one outgoing reference. Returns the surrogate key for dimension
        targets, None for fact targets and for null optional references.
        """
        if value is None:
            if rel.mandatory:
                raise UnresolvedReferenceError(
                    f"{rel}: mandatory reference is null",
                    table=rel.source, row_identifier=row_identifier
                )
            return None

        target = self.catalog.get(rel.target)
        if isinstance(target, DimensionDef):
            key_column = target.column(target.natural_key[0])
            key = coerce_value(key_column, value, rel.source, row_identifier)
            surrogate_key = caches[rel.target].resolve(key, as_of)
            if surrogate_key is None:
                when = f" as of {as_of}" if as_of is not None and target.scd_type == ScdType.TYPE2 else ''
                raise UnresolvedReferenceError(
                    f"{rel}: {value!r} not found in {rel.target}{when}",
                    table=rel.source, row_identifier=row_identifier
                )
            return surrogate_key

        if value not in caches[rel.target]:
            raise UnresolvedReferenceError(
                f"{rel}: {value!r} is not a loaded {rel.target} row",
                table=rel.source, row_identifier=row_identifier
            )
        return None


def row_identifier(row: Dict[str, Any], key_columns: Iterable[str]) -> Any:
    """Human readable id of an incoming row for dead letters and logs."""
    values = [row.get(c) for c in key_columns]
    if len(values) == 1:
        return values[0]
    return '|'.join('' if v is None else str(v) for v in values)


def same_value(old: Any, new: Any) -> bool:
    """Equality of a stored and an incoming typed value (NULL equals NULL)."""
    if old is None or new is None:
        return old is None and new is None
    return old == new
