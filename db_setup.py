import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

import structlog

from config import get_settings

logger = structlog.get_logger()

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def init_db(path: str = None):
    conn = get_db_connection(path)
    cursor = conn.cursor()

    cursor.executescript('''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (linkedId) REFERENCES Contact (id),
            CHECK (
                (linkPrecedence = 'primary' AND linkedId IS NULL)
                OR (linkPrecedence = 'secondary' AND linkedId IS NOT NULL)
            )
        );
        CREATE INDEX IF NOT EXISTS ix_contact_email ON Contact (email);
        CREATE INDEX IF NOT EXISTS ix_contact_phone ON Contact (phoneNumber);
        CREATE INDEX IF NOT EXISTS ix_contact_linked ON Contact (linkedId);
    ''')

    conn.close()
    logger.info("Contact schema ready", database=path or get_settings().database_path)


def get_db_connection(path: str = None):
    """Open a connection with explicit transaction control.

    Autocommit mode is used so that ``transaction`` alone decides where a
    unit of work begins and ends.
    """
    settings = get_settings()
    conn = sqlite3.connect(
        path or settings.database_path,
        timeout=settings.busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn):
    """Run the enclosed statements as one atomic unit.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so overlapping units of work run one after another.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


def query(conn, sql, params=()):
    cursor = conn.execute(sql, params)
    return [dict(row) for row in cursor.fetchall()]


def execute(conn, sql, params=()):
    cursor = conn.execute(sql, params)
    return cursor.lastrowid


def now():
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)
