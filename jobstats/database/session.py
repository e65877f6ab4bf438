"""Database engine creation and schema initialisation.

The store is a derived index of the scheduler's own accounting database,
which can always be queried again, so durability is traded for write speed.
"""

from pathlib import Path

from sqlalchemy import create_engine, event

from .models import metadata


# ---------------------------------------------------------------------------
# SQLite helpers
# ---------------------------------------------------------------------------

def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Configure SQLite for fast bulk inserts.

    - synchronous=OFF: do not fsync after each transaction
    - journal_mode=MEMORY: keep the rollback journal in memory
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA synchronous = OFF")
    cursor.execute("PRAGMA journal_mode = MEMORY")
    cursor.close()


def get_engine(db_path: str | Path, echo: bool = False):
    """Create and return a SQLAlchemy engine for the SQLite file at *db_path*.

    The parent directory is created when missing; SQLite creates the file
    itself on first connect.  The driver busy timeout is zero so that a
    database locked by another writer fails immediately instead of blocking.

    Args:
        db_path: Path to the SQLite database file
        echo: If True, log all SQL statements

    Returns:
        SQLAlchemy Engine instance
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=echo,
        connect_args={"timeout": 0},
    )
    event.listen(engine, "connect", _set_sqlite_pragma)
    return engine


def init_db(engine) -> None:
    """Create the jobs table and its indexes if they do not exist yet."""
    metadata.create_all(engine, checkfirst=True)
