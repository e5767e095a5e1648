"""
Exception hierarchy for the warehouse engine.

- SchemaError:    catalog registration / definition problems (fatal at startup)
- IntegrityError: blocking issues found by the integrity gate
- LoadError:      row-level rejections, dead-lettered while the batch continues
- CommitError:    storage failure mid-batch, the batch is rolled back
"""

from typing import Any, Optional


class WarehouseError(Exception):
    """Base class for all engine errors."""
    pass


# =============================================================================
# SCHEMA ERRORS
# =============================================================================

class SchemaError(WarehouseError):
    """Invalid catalog or table definition."""
    pass


class DuplicateDefinitionError(SchemaError):
    """Raised when a table name is registered twice."""
    pass


class UnknownReferenceError(SchemaError):
    """Raised when a relationship targets a table that is not registered yet."""
    pass


class CatalogFrozenError(SchemaError):
    """Raised on registration after freeze()."""
    pass


class CyclicReferenceError(SchemaError):
    """Raised when the relationship graph is not a DAG."""
    pass


class UnknownTableError(SchemaError, KeyError):
    """Raised when looking up a table the catalog does not know."""
    pass


# =============================================================================
# INTEGRITY ERRORS
# =============================================================================

class IntegrityError(WarehouseError):
    """Raised when a validation report contains blocking issues."""

    def __init__(self, message: str, report: Any = None):
        super().__init__(message)
        self.report = report


# =============================================================================
# ROW-LEVEL LOAD ERRORS
# =============================================================================

class LoadError(WarehouseError):
    """Row-level rejection. Carries the table and the row identifier."""

    kind = 'load_error'

    def __init__(self, message: str, table: Optional[str] = None, row_identifier: Any = None):
        super().__init__(message)
        self.table = table
        self.row_identifier = row_identifier


class UnresolvedReferenceError(LoadError):
    kind = 'unresolved_reference'


class DuplicateFactRowError(LoadError):
    kind = 'duplicate_fact_row'


class ConflictingNaturalKeyError(LoadError):
    kind = 'conflicting_natural_key'


class RangeViolationError(LoadError):
    kind = 'range_violation'


class ImmutableDimensionViolationError(LoadError):
    kind = 'immutable_dimension_violation'


class RequiredValueMissingError(LoadError):
    kind = 'required_value_missing'


# =============================================================================
# COMMIT ERRORS
# =============================================================================

class CommitError(WarehouseError):
    """Storage failure while applying a batch. Nothing from the batch is kept."""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table
