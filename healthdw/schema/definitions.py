"""
Typed table definitions for the star schema.

A DimensionDef / FactDef describes one warehouse table: its declared columns
(source column names and nullability), its keys, and its outgoing relationships.
System columns (surrogate keys, SCD columns, load timestamps) are derived.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..errors import SchemaError

logger = logging.getLogger(__name__)

# System column names
IS_CURRENT = 'IsCurrent'
EFFECTIVE_FROM = 'EffectiveFrom'
EFFECTIVE_TO = 'EffectiveTo'
LOADED_AT = 'LoadedAt'
DEFAULT_DIMENSION_EVENT_TIME = 'SourceUpdatedDT'

SUPPORTED_TYPES = {'VARCHAR', 'INTEGER', 'BIGINT', 'DECIMAL', 'DOUBLE', 'BOOLEAN', 'DATE', 'TIMESTAMP'}
NUMERIC_TYPES = {'INTEGER', 'BIGINT', 'DECIMAL', 'DOUBLE'}
TEMPORAL_TYPES = {'DATE', 'TIMESTAMP'}


class ScdType(str, Enum):
    """Slowly changing dimension policy."""
    NONE = 'NONE'    # reference data, attributes immutable
    TYPE1 = 'TYPE1'  # overwrite in place
    TYPE2 = 'TYPE2'  # version with history


class FactKind(str, Enum):
    """Event facts are keyed by a business id, snapshot facts by date + dimensions."""
    EVENT = 'event'
    SNAPSHOT = 'snapshot'


def quote_ident(name: str) -> str:
    """Quote a SQL identifier (column names include keywords like Date, Year, Status)."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class Column:
    """Declared column. data_type uses DuckDB spelling, e.g. 'DECIMAL(18,2)'."""
    name: str
    data_type: str = 'VARCHAR'
    nullable: bool = True
    length: Optional[int] = None  # VARCHAR(n) bound from the source DDL
    default: Any = None  # applied when the incoming value is missing

    @property
    def base_type(self) -> str:
        return self.data_type.split('(')[0].strip().upper()

    @property
    def precision_scale(self) -> Tuple[int, int]:
        """(precision, scale) of a DECIMAL column. Bare DECIMAL is DuckDB's DECIMAL(18,3)."""
        if '(' not in self.data_type:
            return 18, 3
        args = self.data_type.split('(', 1)[1].rstrip(') ').split(',')
        precision = int(args[0])
        scale = int(args[1]) if len(args) > 1 else 0
        return precision, scale

    def to_sql(self) -> str:
        parts = [quote_ident(self.name), self.data_type]
        if not self.nullable:
            parts.append('NOT NULL')
        return ' '.join(parts)


@dataclass(frozen=True)
class Relationship:
    """
    Many-to-one edge from `source.attribute` to the natural key of `target`.

    Optional relationships allow NULL (e.g. DimProvider.ServiceLineID).
    """
    attribute: str
    target: str
    mandatory: bool = True
    source: str = ''

    @property
    def surrogate_column(self) -> str:
        """Fact column holding the resolved surrogate key: FacilityID -> FacilitySK."""
        base = self.attribute[:-2] if self.attribute.endswith('ID') else self.attribute
        return f'{base}SK'

    def __str__(self) -> str:
        kind = 'mandatory' if self.mandatory else 'optional'
        return f'{self.source}.{self.attribute} -> {self.target} ({kind})'


def _check_columns(table: str, columns: Tuple[Column, ...]) -> Dict[str, Column]:
    by_name: Dict[str, Column] = {}
    for col in columns:
        if col.name in by_name:
            raise SchemaError(f'{table}: column {col.name} declared twice')
        if col.base_type not in SUPPORTED_TYPES:
            raise SchemaError(f'{table}: unsupported type {col.data_type} for {col.name}')
        by_name[col.name] = col
    return by_name


def _bind_relationships(table: str, relationships, by_name: Dict[str, Column]) -> Tuple[Relationship, ...]:
    bound = []
    for rel in relationships:
        if rel.attribute not in by_name:
            raise SchemaError(f'{table}: relationship attribute {rel.attribute} is not a declared column')
        if rel.mandatory and by_name[rel.attribute].nullable:
            raise SchemaError(f'{table}: mandatory relationship on nullable column {rel.attribute}')
        bound.append(replace(rel, source=table))
    return tuple(bound)


@dataclass
class DimensionDef:
    """
    Dimension table definition.

    natural_key: business identifier columns (e.g. FacilityID)
    columns: all declared columns in source order, natural key included
    tracked_attributes: TYPE2 columns that open a new version (default: all attributes)
    surrogate_key: generated key column (default: DimFacility -> FacilitySK)
    """
    name: str
    natural_key: Tuple[str, ...]
    columns: Tuple[Column, ...]
    scd_type: ScdType = ScdType.TYPE1
    relationships: Tuple[Relationship, ...] = ()
    tracked_attributes: Optional[Tuple[str, ...]] = None
    surrogate_key: Optional[str] = None
    event_time_column: str = DEFAULT_DIMENSION_EVENT_TIME

    def __post_init__(self):
        self.natural_key = tuple(self.natural_key)
        self.columns = tuple(self.columns)
        self.scd_type = ScdType(self.scd_type)
        by_name = _check_columns(self.name, self.columns)

        if not self.natural_key:
            raise SchemaError(f'{self.name}: natural key is empty')
        for key in self.natural_key:
            if key not in by_name:
                raise SchemaError(f'{self.name}: natural key column {key} is not declared')

        if self.surrogate_key is None:
            base = self.name[3:] if self.name.startswith('Dim') else self.name
            self.surrogate_key = f'{base}SK'
        if self.surrogate_key in by_name:
            raise SchemaError(f'{self.name}: surrogate key {self.surrogate_key} collides with a declared column')

        if self.tracked_attributes is not None:
            self.tracked_attributes = tuple(self.tracked_attributes)
            attribute_names = {c.name for c in self.attributes}
            unknown = [a for a in self.tracked_attributes if a not in attribute_names]
            if unknown:
                raise SchemaError(f'{self.name}: tracked attributes not declared: {unknown}')
            if self.scd_type != ScdType.TYPE2:
                raise SchemaError(f'{self.name}: tracked attributes only apply to TYPE2 dimensions')

        if self.event_time_column in by_name and by_name[self.event_time_column].base_type not in TEMPORAL_TYPES:
            raise SchemaError(f'{self.name}: event time column {self.event_time_column} is not temporal')

        self.relationships = _bind_relationships(self.name, self.relationships, by_name)

    @property
    def attributes(self) -> List[Column]:
        return [c for c in self.columns if c.name not in self.natural_key]

    @property
    def compare_columns(self) -> List[str]:
        """Columns whose change opens a new TYPE2 version."""
        if self.tracked_attributes is not None:
            return list(self.tracked_attributes)
        return [c.name for c in self.attributes]

    def column(self, name: str) -> Column:
        for col in self.columns:
            if col.name == name:
                return col
        raise SchemaError(f'{self.name}: unknown column {name}')

    def storage_columns(self) -> List[Column]:
        """Declared columns plus surrogate key, SCD and load columns."""
        cols = [Column(self.surrogate_key, 'BIGINT', nullable=False)]
        cols.extend(self.columns)
        if self.event_time_column not in {c.name for c in self.columns}:
            cols.append(Column(self.event_time_column, 'TIMESTAMP'))
        if self.scd_type == ScdType.TYPE2:
            cols.append(Column(EFFECTIVE_FROM, 'TIMESTAMP', nullable=False))
            cols.append(Column(EFFECTIVE_TO, 'TIMESTAMP'))
        cols.append(Column(IS_CURRENT, 'BOOLEAN', nullable=False))
        cols.append(Column(LOADED_AT, 'TIMESTAMP'))
        return cols


@dataclass
class FactDef:
    """
    Fact table definition.

    grain: columns that identify one row (the source PRIMARY KEY). For event
    facts this is the business id, e.g. ('EncounterID',).
    measures: numeric columns
    event_time_column: declared temporal column used for watermarks and
    as-of resolution against TYPE2 dimensions
    """
    name: str
    kind: FactKind
    grain: Tuple[str, ...]
    columns: Tuple[Column, ...]
    measures: Tuple[str, ...] = ()
    relationships: Tuple[Relationship, ...] = ()
    event_time_column: Optional[str] = None

    def __post_init__(self):
        self.kind = FactKind(self.kind)
        self.grain = tuple(self.grain)
        self.columns = tuple(self.columns)
        self.measures = tuple(self.measures)
        by_name = _check_columns(self.name, self.columns)

        if not self.grain:
            raise SchemaError(f'{self.name}: grain is empty')
        for col in self.grain:
            if col not in by_name:
                raise SchemaError(f'{self.name}: grain column {col} is not declared')
            if by_name[col].nullable:
                raise SchemaError(f'{self.name}: grain column {col} must be NOT NULL')
        if self.kind == FactKind.EVENT and len(self.grain) != 1:
            raise SchemaError(f'{self.name}: event facts are keyed by a single business id')

        for measure in self.measures:
            if measure not in by_name:
                raise SchemaError(f'{self.name}: measure {measure} is not declared')
            if by_name[measure].base_type not in NUMERIC_TYPES:
                raise SchemaError(f'{self.name}: measure {measure} is not numeric')

        if self.event_time_column is not None:
            if self.event_time_column not in by_name:
                raise SchemaError(f'{self.name}: event time column {self.event_time_column} is not declared')
            if by_name[self.event_time_column].base_type not in TEMPORAL_TYPES:
                raise SchemaError(f'{self.name}: event time column {self.event_time_column} is not temporal')

        self.relationships = _bind_relationships(self.name, self.relationships, by_name)

    @property
    def business_key(self) -> Optional[str]:
        return self.grain[0] if self.kind == FactKind.EVENT else None

    def column(self, name: str) -> Column:
        for col in self.columns:
            if col.name == name:
                return col
        raise SchemaError(f'{self.name}: unknown column {name}')
