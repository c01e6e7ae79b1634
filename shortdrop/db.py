import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator


@contextmanager
def connect(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Open a WAL-mode SQLite connection that commits on success."""

    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()
