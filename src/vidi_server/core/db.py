# Vidi Server: SQLite Connections
#
# The dashboard store opens every connection through `connect()`: WAL
# journal, a 5 s busy timeout, foreign keys on, autocommit unless a block
# runs inside `immediate_transaction()`.
#
# Under WAL a reader sees the last committed snapshot, so a dashboard
# being replaced is observed either fully old or fully new.

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open ``db_path`` in autocommit mode with the PRAGMAs above.

    ``row_factory=True`` returns rows as sqlite3.Row.
    """
    conn = sqlite3.connect(
        str(db_path), check_same_thread=check_same_thread, isolation_level=None
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE ... COMMIT.

    The write lock is taken up front, so a read-modify-write sequence
    cannot interleave with another writer. Rolls back on any exception.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")
