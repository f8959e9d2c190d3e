# dareboard/conftest.py
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Tests configure their own engine; skip startup env checks
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("ENV", "test")

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="session")
def db_url():
    """
    Database used by the suite.

    In-memory SQLite unless TEST_DATABASE_URL points at a real server.
    """
    return os.getenv("TEST_DATABASE_URL") or "sqlite://"


@pytest.fixture(scope="function", autouse=True)
def reset_db(db_url):
    """
    Fresh schema for every test.

    Drops and recreates all tables so no rows leak between tests.
    """
    from dareboard.core.database import dispose_engine, init_engine, reset_database

    init_engine(db_url)
    reset_database()
    yield
    dispose_engine()


@pytest.fixture
def fixed_now():
    """A fixed UTC clock reading for deterministic expiry maths."""
    return datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def alice():
    from dareboard.models.dare import ActingUser

    return ActingUser(user_id="alice", display_name="Alice")


@pytest.fixture
def bob():
    from dareboard.models.dare import ActingUser

    return ActingUser(user_id="bob", display_name="Bob")
