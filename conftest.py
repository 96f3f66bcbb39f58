import os
from datetime import datetime, timezone

import pytest

from lending.library import Library

# Fixed clock for tests that reason about due dates
T0 = datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_file(tmp_path, request):
    # A separate database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file, monkeypatch):
    # CLI commands resolve the database through LIBRARY_DB_FILE
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    lib = Library(db_file=db_file)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def t0():
    return T0
