"""
SchemaCatalog - registry of dimension and fact definitions.

Registration is dependency ordered: dimensions before facts, and every
relationship target before its referencer (the order tables must be created
in when foreign keys exist). After freeze() the catalog is read-only.
"""

import logging
from typing import Dict, List, Optional, Union

from ..errors import (
    CatalogFrozenError,
    CyclicReferenceError,
    DuplicateDefinitionError,
    SchemaError,
    UnknownReferenceError,
    UnknownTableError,
)
from .definitions import LOADED_AT, Column, DimensionDef, FactDef, FactKind, Relationship, quote_ident

logger = logging.getLogger(__name__)

TableDef = Union[DimensionDef, FactDef]


class SchemaCatalog:
    """Typed definitions of dimensions and facts and their relationship graph."""

    def __init__(self, name: str = 'warehouse'):
        self.name = name
        self._tables: Dict[str, TableDef] = {}
        self._frozen = False
        self._waves: Optional[List[List[str]]] = None

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register_dimension(self, definition: DimensionDef) -> DimensionDef:
        if not isinstance(definition, DimensionDef):
            raise SchemaError(f'register_dimension expects a DimensionDef, got {type(definition).__name__}')
        self._check_registrable(definition)

        if self.facts():
            raise SchemaError(f'{definition.name}: dimensions must be registered before facts')

        for rel in definition.relationships:
            target = self._resolve_target(rel)
            if isinstance(target, FactDef):
                raise SchemaError(f'{rel}: a dimension cannot reference a fact')

        self._tables[definition.name] = definition
        logger.debug(f'Registered dimension {definition.name} ({definition.scd_type.value})')
        return definition

    def register_fact(self, definition: FactDef) -> FactDef:
        if not isinstance(definition, FactDef):
            raise SchemaError(f'register_fact expects a FactDef, got {type(definition).__name__}')
        self._check_registrable(definition)

        for rel in definition.relationships:
            self._resolve_target(rel)

        self._tables[definition.name] = definition
        logger.debug(f'Registered fact {definition.name} ({definition.kind.value})')
        return definition

    def _check_registrable(self, definition: TableDef):
        if self._frozen:
            raise CatalogFrozenError(f'Catalog {self.name} is frozen, cannot register {definition.name}')
        if definition.name in self._tables:
            raise DuplicateDefinitionError(f'Table {definition.name} is already registered')

    def _resolve_target(self, rel: Relationship) -> TableDef:
        target = self._tables.get(rel.target)
        if target is None:
            raise UnknownReferenceError(f'{rel}: target {rel.target} is not registered')

        if isinstance(target, DimensionDef) and len(target.natural_key) != 1:
            raise SchemaError(f'{rel}: target {rel.target} has a composite natural key')
        if isinstance(target, FactDef) and target.kind != FactKind.EVENT:
            raise SchemaError(f'{rel}: only event facts can be referenced')
        return target

    def freeze(self) -> 'SchemaCatalog':
        """Validate the relationship graph and make the catalog immutable."""
        if self._frozen:
            return self
        self._check_acyclic()
        self._waves = self._compute_waves()
        self._frozen = True
        logger.info(
            f'Catalog {self.name} frozen: dimensions={len(self.dimensions())}, '
            f'facts={len(self.facts())}, waves={len(self._waves)}'
        )
        return self

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get(self, name: str) -> TableDef:
        try:
            return self._tables[name]
        except KeyError:
            raise UnknownTableError(f'Unknown table: {name}') from None

    def __contains__(self, name: str) -> bool:
        return name in self._tables

    def tables(self) -> List[str]:
        return list(self._tables)

    def dimensions(self) -> List[DimensionDef]:
        return [t for t in self._tables.values() if isinstance(t, DimensionDef)]

    def facts(self) -> List[FactDef]:
        return [t for t in self._tables.values() if isinstance(t, FactDef)]

    def is_dimension(self, name: str) -> bool:
        return isinstance(self.get(name), DimensionDef)

    def relationships_of(self, table_name: str) -> List[Relationship]:
        """Outgoing relationships declared by a table."""
        return list(self.get(table_name).relationships)

    def referenced_by(self, table_name: str) -> List[Relationship]:
        """Incoming relationships pointing at a table."""
        self.get(table_name)
        return [
            rel for t in self._tables.values() for rel in t.relationships
            if rel.target == table_name
        ]

    def dimension_refs(self, table_name: str) -> List[Relationship]:
        """Outgoing relationships whose target is a dimension."""
        return [rel for rel in self.relationships_of(table_name) if self.is_dimension(rel.target)]

    def dependencies(self, table_name: str) -> List[str]:
        return sorted({rel.target for rel in self.relationships_of(table_name)})

    # -------------------------------------------------------------------------
    # Graph
    # -------------------------------------------------------------------------

    def _check_acyclic(self):
        WHITE, GREY, BLACK = 0, 1, 2
        state = {name: WHITE for name in self._tables}

        def visit(name: str, path: List[str]):
            state[name] = GREY
            for rel in self._tables[name].relationships:
                if rel.target not in state:
                    raise UnknownReferenceError(f'{rel}: target {rel.target} is not registered')
                if state[rel.target] == GREY:
                    cycle = path[path.index(rel.target):] + [rel.target]
                    raise CyclicReferenceError(f'Relationship cycle: {" -> ".join(cycle)}')
                if state[rel.target] == WHITE:
                    visit(rel.target, path + [rel.target])
            state[name] = BLACK

        for name in self._tables:
            if state[name] == WHITE:
                visit(name, [name])

    def _compute_waves(self) -> List[List[str]]:
        depth: Dict[str, int] = {}

        def depth_of(name: str) -> int:
            if name not in depth:
                table = self._tables[name]
                # Facts only wait on other facts here, every dimension wave runs first
                targets = [
                    rel.target for rel in table.relationships
                    if isinstance(table, DimensionDef) or isinstance(self._tables[rel.target], FactDef)
                ]
                depth[name] = 1 + max((depth_of(t) for t in targets), default=-1)
            return depth[name]

        waves: List[List[str]] = []
        for group in (self.dimensions(), self.facts()):
            levels: Dict[int, List[str]] = {}
            for table in group:
                levels.setdefault(depth_of(table.name), []).append(table.name)
            waves.extend(levels[level] for level in sorted(levels))
        return waves

    def load_waves(self) -> List[List[str]]:
        """Groups of tables that can load concurrently, in dependency order."""
        if self._waves is None:
            self._check_acyclic()
            return self._compute_waves()
        return [list(w) for w in self._waves]

    # -------------------------------------------------------------------------
    # Storage layout
    # -------------------------------------------------------------------------

    @staticmethod
    def sequence_name(table_name: str) -> str:
        return f'seq_{table_name.lower()}_sk'

    def storage_columns(self, table_name: str) -> List[Column]:
        table = self.get(table_name)
        if isinstance(table, DimensionDef):
            return table.storage_columns()

        cols = list(table.columns)
        for rel in self.dimension_refs(table_name):
            cols.append(Column(rel.surrogate_column, 'BIGINT', nullable=not rel.mandatory))
        cols.append(Column(LOADED_AT, 'TIMESTAMP'))
        return cols

    def ddl(self) -> List[str]:
        """CREATE statements for every table. Keys and references are enforced by the loaders."""
        statements = []
        for name, table in self._tables.items():
            if isinstance(table, DimensionDef):
                statements.append(f'CREATE SEQUENCE IF NOT EXISTS {self.sequence_name(name)} START 1')
            columns = ',\n    '.join(col.to_sql() for col in self.storage_columns(name))
            statements.append(f'CREATE TABLE IF NOT EXISTS {quote_ident(name)} (\n    {columns}\n)')
        return statements
