import os
from datetime import datetime, timezone

import pytest

from lending_library.accounts import AccountStore
from lending_library.database import Database
from lending_library.lending import LendingService
from lending_library.library import Library
from lending_library.ui_helpers import OUTPUT_MODE_ENV

FIXED_NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _plain_output(monkeypatch):
    # CLI output mode is process-wide; keep each test on plain text
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def db(db_file):
    database = Database(db_file)
    database.initialize()
    yield database
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_file + suffix):
            os.remove(db_file + suffix)


@pytest.fixture
def library(db):
    return Library(db)


@pytest.fixture
def accounts(db):
    return AccountStore(db)


@pytest.fixture
def lending(db, library, accounts):
    return LendingService(db, library, accounts, clock=lambda: FIXED_NOW)


@pytest.fixture
def member(accounts):
    return accounts.register("Mary Member", "mary@example.com", "secret1")


@pytest.fixture
def admin(accounts):
    return accounts.register("Adam Admin", "adam@example.com", "secret1", role="Admin")


@pytest.fixture
def make_book(library):
    counter = {"n": 0}

    def _make(total_copies=1, **overrides):
        counter["n"] += 1
        data = {
            "title": f"Book {counter['n']}",
            "author": "Some Author",
            "isbn": f"978{counter['n']:010d}",
            "total_copies": total_copies,
        }
        data.update(overrides)
        return library.add_book(data)

    return _make
