"""Schema module - table definitions and the catalog."""

from .definitions import (
    Column, Relationship, DimensionDef, FactDef, ScdType, FactKind, quote_ident
)
from .catalog import SchemaCatalog
from .healthcare import build_healthcare_catalog, healthcare_dimensions, healthcare_facts

__all__ = [
    'Column', 'Relationship', 'DimensionDef', 'FactDef', 'ScdType', 'FactKind', 'quote_ident',
    'SchemaCatalog',
    'build_healthcare_catalog', 'healthcare_dimensions', 'healthcare_facts',
]
