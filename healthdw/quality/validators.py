"""
Integrity validation for the star schema.

Structural checks run on the catalog alone. With a warehouse connection the
committed rows are audited too: grain uniqueness, one current row per natural
key, unique surrogate keys, and reference resolution. Nothing is modified.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import duckdb

from ..config import INTEGRITY_CHECK_ROWS, INTEGRITY_WARNING_KINDS
from ..errors import CyclicReferenceError, UnknownReferenceError
from ..schema.definitions import IS_CURRENT, DimensionDef, FactDef, quote_ident
from ..storage.warehouse import table_exists

logger = logging.getLogger(__name__)

ERROR = 'error'
WARNING = 'warning'

# Issue kinds
UNKNOWN_REFERENCE = 'unknown_reference'
CYCLIC_REFERENCE = 'cyclic_reference'
COMPOSITE_REFERENCE_TARGET = 'composite_reference_target'
UNREFERENCED_DIMENSION = 'unreferenced_dimension'
MISSING_TABLE = 'missing_table'
DUPLICATE_GRAIN = 'duplicate_grain'
DUPLICATE_CURRENT_ROW = 'duplicate_current_row'
DUPLICATE_SURROGATE_KEY = 'duplicate_surrogate_key'
NULL_MANDATORY_REFERENCE = 'null_mandatory_reference'
DANGLING_REFERENCE = 'dangling_reference'


@dataclass
class IntegrityIssue:
    table: str
    issue_kind: str
    detail: str
    row_identifier: Any = None
    severity: str = ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table,
            'issue_kind': self.issue_kind,
            'row_identifier': self.row_identifier,
            'detail': self.detail,
            'severity': self.severity,
        }


@dataclass
class ValidationReport:
    """Validation result."""
    catalog_name: str
    timestamp: datetime
    tables_checked: int = 0
    rows_checked: bool = False
    issues: List[IntegrityIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[IntegrityIssue]:
        return [i for i in self.issues if i.severity == ERROR]

    @property
    def warnings(self) -> List[IntegrityIssue]:
        return [i for i in self.issues if i.severity == WARNING]

    @property
    def ok(self) -> bool:
        return not self.errors

    def by_kind(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for issue in self.issues:
            counts[issue.issue_kind] = counts.get(issue.issue_kind, 0) + 1
        return counts

    def for_table(self, table: str) -> List[IntegrityIssue]:
        return [i for i in self.issues if i.table == table]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'catalog': self.catalog_name,
            'timestamp': self.timestamp.isoformat(),
            'tables_checked': self.tables_checked,
            'rows_checked': self.rows_checked,
            'errors': len(self.errors),
            'warnings': len(self.warnings),
            'by_kind': self.by_kind(),
            'issues': [i.to_dict() for i in self.issues],
        }


def _identifier(values) -> Any:
    values = list(values)
    if len(values) == 1:
        return values[0]
    return '|'.join('' if v is None else str(v) for v in values)


class IntegrityValidator:
    """Checks a catalog, and optionally the committed warehouse rows."""

    def __init__(
        self,
        conn: Optional[duckdb.DuckDBPyConnection] = None,
        warning_kinds: Optional[List[str]] = None,
        check_rows: Optional[bool] = None
    ):
        self.conn = conn
        self.warning_kinds = set(INTEGRITY_WARNING_KINDS if warning_kinds is None else warning_kinds)
        self.check_rows = INTEGRITY_CHECK_ROWS if check_rows is None else check_rows

    def validate(self, catalog) -> ValidationReport:
        """Run all checks. Never raises for data problems, they end up in the report."""
        report = ValidationReport(
            catalog_name=catalog.name,
            timestamp=datetime.now(),
            tables_checked=len(catalog.tables()),
        )

        self._check_structure(catalog, report)

        structural_errors = any(
            i.issue_kind in (UNKNOWN_REFERENCE, CYCLIC_REFERENCE) for i in report.issues
        )
        if self.conn is not None and self.check_rows and not structural_errors:
            for name in catalog.tables():
                table = catalog.get(name)
                if not table_exists(self.conn, name):
                    self._add(report, name, MISSING_TABLE, f"table {name} does not exist in the warehouse")
                    continue
                if isinstance(table, DimensionDef):
                    self._check_dimension_rows(catalog, table, report)
                else:
                    self._check_fact_rows(catalog, table, report)
            report.rows_checked = True

        logger.info(
            f"Integrity validation: {report.tables_checked} tables, "
            f"errors={len(report.errors)}, warnings={len(report.warnings)}"
        )
        return report

    def _add(self, report: ValidationReport, table: str, kind: str, detail: str, row_identifier: Any = None):
        severity = WARNING if kind in self.warning_kinds else ERROR
        report.issues.append(IntegrityIssue(table, kind, detail, row_identifier, severity))

    # -------------------------------------------------------------------------
    # Structural checks
    # -------------------------------------------------------------------------

    def _check_structure(self, catalog, report: ValidationReport):
        unknown = False
        for name in catalog.tables():
            for rel in catalog.relationships_of(name):
                if rel.target not in catalog:
                    self._add(report, name, UNKNOWN_REFERENCE, f"{rel}: target is not registered")
                    unknown = True
                    continue
                target = catalog.get(rel.target)
                if isinstance(target, DimensionDef) and len(target.natural_key) != 1:
                    self._add(report, name, COMPOSITE_REFERENCE_TARGET, f"{rel}: target has a composite natural key")

        if not unknown:
            try:
                catalog.load_waves()
            except CyclicReferenceError as e:
                self._add(report, catalog.name, CYCLIC_REFERENCE, str(e))
            except UnknownReferenceError as e:
                self._add(report, catalog.name, UNKNOWN_REFERENCE, str(e))

        for dim in catalog.dimensions():
            if unknown or catalog.referenced_by(dim.name):
                continue
            self._add(report, dim.name, UNREFERENCED_DIMENSION, f"{dim.name} is not referenced by any table")

    # -------------------------------------------------------------------------
    # Row checks
    # -------------------------------------------------------------------------

    def _rows(self, sql: str) -> List[tuple]:
        return self.conn.execute(sql).fetchall()

    def _check_dimension_rows(self, catalog, dim: DimensionDef, report: ValidationReport):
        table = quote_ident(dim.name)
        keys = ', '.join(quote_ident(k) for k in dim.natural_key)
        sk = quote_ident(dim.surrogate_key)
        current = quote_ident(IS_CURRENT)
        width = len(dim.natural_key)

        for row in self._rows(f"""
            SELECT {keys}, COUNT(*) FROM {table}
            WHERE {current}
            GROUP BY {keys} HAVING COUNT(*) > 1
        """):
            self._add(report, dim.name, DUPLICATE_CURRENT_ROW,
                      f"{row[width]} current rows for one natural key", _identifier(row[:width]))

        for row in self._rows(f"""
            SELECT {sk}, COUNT(*) FROM {table}
            GROUP BY {sk} HAVING COUNT(*) > 1
        """):
            self._add(report, dim.name, DUPLICATE_SURROGATE_KEY,
                      f"surrogate key {row[0]} used by {row[1]} rows", row[0])

        for rel in dim.relationships:
            attr = quote_ident(rel.attribute)
            if rel.mandatory:
                for row in self._rows(f"SELECT {keys} FROM {table} WHERE {current} AND {attr} IS NULL"):
                    self._add(report, dim.name, NULL_MANDATORY_REFERENCE,
                              f"{rel}: null on a current row", _identifier(row))

            target = catalog.get(rel.target)
            target_key = quote_ident(target.natural_key[0])
            for row in self._rows(f"""
                SELECT {keys}, d.{attr} FROM {table} d
                WHERE d.{current} AND d.{attr} IS NOT NULL
                AND NOT EXISTS (
                    SELECT 1 FROM {quote_ident(target.name)} t
                    WHERE t.{target_key} = d.{attr} AND t.{current}
                )
            """):
                self._add(report, dim.name, DANGLING_REFERENCE,
                          f"{rel}: {row[width]!r} has no current row in {rel.target}", _identifier(row[:width]))

    def _check_fact_rows(self, catalog, fact: FactDef, report: ValidationReport):
        table = quote_ident(fact.name)
        grain = ', '.join(f"f.{quote_ident(g)}" for g in fact.grain)
        width = len(fact.grain)

        for row in self._rows(f"""
            SELECT {grain}, COUNT(*) FROM {table} f
            GROUP BY {grain} HAVING COUNT(*) > 1
        """):
            self._add(report, fact.name, DUPLICATE_GRAIN,
                      f"{row[width]} rows share one grain", _identifier(row[:width]))

        for rel in fact.relationships:
            attr = quote_ident(rel.attribute)
            if rel.mandatory:
                for row in self._rows(f"SELECT {grain} FROM {table} f WHERE f.{attr} IS NULL"):
                    self._add(report, fact.name, NULL_MANDATORY_REFERENCE,
                              f"{rel}: null reference", _identifier(row))

            target = catalog.get(rel.target)
            if isinstance(target, DimensionDef):
                fact_sk = quote_ident(rel.surrogate_column)
                target_sk = quote_ident(target.surrogate_key)
                target_key = quote_ident(target.natural_key[0])
                sql = f"""
                    SELECT {grain}, f.{attr} FROM {table} f
                    LEFT JOIN {quote_ident(target.name)} t ON f.{fact_sk} = t.{target_sk}
                    WHERE f.{attr} IS NOT NULL
                    AND (t.{target_sk} IS NULL OR t.{target_key} <> f.{attr})
                """
            else:
                target_key = quote_ident(target.business_key)
                sql = f"""
                    SELECT {grain}, f.{attr} FROM {table} f
                    LEFT JOIN {quote_ident(target.name)} t ON f.{attr} = t.{target_key}
                    WHERE f.{attr} IS NOT NULL AND t.{target_key} IS NULL
                """
            for row in self._rows(sql):
                self._add(report, fact.name, DANGLING_REFERENCE,
                          f"{rel}: {row[width]!r} does not resolve in {rel.target}", _identifier(row[:width]))
