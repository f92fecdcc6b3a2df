"""Shared fixtures for database and business tests.

Provides a fresh temp-file SQLite DatabaseManager per test plus a
ready-made profile to hang customers, segments and rules off.
"""
import os
import shutil
import tempfile

import pytest

from database import DatabaseManager
from tests.factories import NOW, RecordingSender


@pytest.fixture
def temp_db():
    """Yield a fresh DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="db-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.create_tables()

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def profile(temp_db):
    """A profile with a display name and review URL."""
    return temp_db.profiles.get_or_create(
        "salon-a", display_name="Salon A",
        google_review_url="https://g.page/r/salon-a/review"
    )


@pytest.fixture
def now():
    """Stable 'current time' for deterministic tests."""
    return NOW


@pytest.fixture
def sender():
    """A sender that records every call and succeeds by default."""
    return RecordingSender()
