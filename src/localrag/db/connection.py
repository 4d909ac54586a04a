"""Opening SQLite connections for the vector store.

Every connection has the sqlite-vec functions (``vec_distance_cosine``,
``vec_version``) registered, returns ``sqlite3.Row`` rows, and runs in WAL
mode. The store owns a single connection for its lifetime.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import sqlite_vec

from localrag.errors import DatabaseError

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def load_vec_extension(conn: sqlite3.Connection) -> str:
    """Register sqlite-vec on *conn* and return its version string.

    Extension loading is switched back off once sqlite-vec is in.

    Raises:
        DatabaseError: If this interpreter's sqlite3 cannot load extensions,
            or sqlite-vec itself fails to load.
    """
    try:
        conn.enable_load_extension(True)
        try:
            sqlite_vec.load(conn)
        finally:
            conn.enable_load_extension(False)
        return conn.execute("SELECT vec_version()").fetchone()[0]
    except (AttributeError, sqlite3.Error) as exc:
        # AttributeError: Python built without SQLite extension support.
        raise DatabaseError(
            "Could not load the sqlite-vec extension. Vector search needs a Python "
            "whose sqlite3 module allows loading extensions."
        ) from exc


def open_connection(db_path: Path | str) -> sqlite3.Connection:
    """Open (creating if needed) the database at *db_path* with sqlite-vec loaded.

    Parent directories are created as well.

    Raises:
        DatabaseError: If the file cannot be opened or prepared.
    """
    path = Path(db_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path)
    except (OSError, sqlite3.Error) as exc:
        raise DatabaseError(f"Failed to open database at {path}.") from exc

    try:
        conn.row_factory = sqlite3.Row
        version = load_vec_extension(conn)
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    except DatabaseError:
        conn.close()
        raise
    except sqlite3.Error as exc:
        conn.close()
        raise DatabaseError(f"Failed to configure database at {path}.") from exc

    logger.debug("Opened %s (sqlite-vec %s).", path, version)
    return conn
