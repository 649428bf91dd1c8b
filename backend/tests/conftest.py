"""
Shared pytest configuration.

Points the backend at a throwaway data directory BEFORE any backend module
(config, db.database) is imported, then creates the schema once.
"""
import os
import tempfile

_TEST_DATA_DIR = tempfile.mkdtemp(prefix="narration-tests-")
os.environ["DATA_DIR"] = _TEST_DATA_DIR
os.environ["DATABASE_PATH"] = os.path.join(_TEST_DATA_DIR, "test.db")

import pytest  # noqa: E402

from db.database import init_database  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def test_database():
    """Create the schema in the temporary database."""
    init_database()
    yield os.environ["DATABASE_PATH"]
