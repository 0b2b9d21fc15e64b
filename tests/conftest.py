"""
Shared fixtures for Deltaflow tests.
"""

import ibis
import pytest

from deltaflow.core.state import DuckDBStateStore, MemoryStateStore


@pytest.fixture(params=["memory", "duckdb"])
def store(request):
    """Each store implementation, fresh per test."""
    if request.param == "memory":
        backend = MemoryStateStore()
    else:
        backend = DuckDBStateStore(connection=ibis.duckdb.connect())
    yield backend
    backend.close()
