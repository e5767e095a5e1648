"""Shared fixtures: an in-memory warehouse loaded from sample_data."""
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from healthdw.etl.warehouse import LoadEngine
from healthdw.schema import build_healthcare_catalog
from healthdw.storage import get_duckdb_connection
from sample_data import dimension_batches, fixed_clock


@pytest.fixture
def catalog():
    return build_healthcare_catalog()


@pytest.fixture
def conn():
    connection = get_duckdb_connection(':memory:')
    yield connection
    connection.close()


@pytest.fixture
def engine(conn, catalog):
    return LoadEngine(conn, catalog=catalog, clock=fixed_clock, persist_dead_letters=True).initialize()


@pytest.fixture
def loaded_engine(engine):
    """Engine with every dimension loaded."""
    batches = dimension_batches()
    for wave in engine.catalog.load_waves():
        for name in wave:
            if name in batches:
                engine.load_table(name, batches[name])
    return engine
