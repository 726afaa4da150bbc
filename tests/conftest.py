"""
Shared fixtures: a fresh SQLite file per test, a connection to it, a seeding
helper with explicit timestamps, and an API client bound to the same file.
"""

import pytest
from fastapi.testclient import TestClient

from config import get_settings
from db_setup import get_db_connection, init_db


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "contacts.db")
    monkeypatch.setenv("DATABASE_PATH", path)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    get_settings.cache_clear()
    init_db(path)
    yield path
    get_settings.cache_clear()


@pytest.fixture
def conn(db_path):
    connection = get_db_connection(db_path)
    yield connection
    connection.close()


@pytest.fixture
def seed(conn):
    """Insert a contact row as-is and return its id."""

    def _seed(email=None, phone=None, linked_id=None, precedence="primary",
              created_at="2023-04-01 00:00:00.000000"):
        cursor = conn.execute(
            """
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (phone, email, linked_id, precedence, created_at, created_at),
        )
        return cursor.lastrowid

    return _seed


@pytest.fixture
def rows(conn):
    """All stored contacts keyed by id."""

    def _rows():
        cursor = conn.execute("SELECT * FROM Contact ORDER BY id")
        return {row["id"]: dict(row) for row in cursor.fetchall()}

    return _rows


@pytest.fixture
def client(db_path):
    from main import app

    with TestClient(app) as test_client:
        yield test_client
