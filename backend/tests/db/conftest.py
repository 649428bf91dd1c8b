"""Fixtures for repository tests: a fresh schema per test."""
import sqlite3
import pytest

from db.database import SCHEMA_SQL


@pytest.fixture
def db(tmp_path):
    conn = sqlite3.connect(tmp_path / "repo.db")
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA_SQL)
    yield conn
    conn.close()
