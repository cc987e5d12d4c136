"""
Local Database Connection.

The session layer's durable state (persisted session record, token pair,
per-phone biometric status) lives in a small local SQLite file.  This
module only manages the raw *connection*; the encrypted key-value access
is in ``authcore.services.secure_storage``.

Usage (dependency injection at startup)::

    from authcore.database import DatabaseManager
    from authcore.logger import StructuredLogger

    db = DatabaseManager(
        sqlite_path=Path("authcore_local.db"),
        logger=StructuredLogger(name="database"),
    )
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

from authcore.logger import StructuredLogger


class DatabaseManager:
    """Owns the SQLite connection used for durable session storage.

    Parameters
    ----------
    sqlite_path:
        Filesystem path for the database file, or ``":memory:"``.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(
        self,
        sqlite_path: Union[Path, str],
        logger: StructuredLogger,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._sqlite_conn: Optional[sqlite3.Connection] = self._connect_sqlite(sqlite_path)

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the open SQLite connection.

        Raises
        ------
        RuntimeError
            If ``close()`` has already been called.
        """
        if self._sqlite_conn is None:
            raise RuntimeError("The local database connection is closed.")
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Lock to hold around every write followed by ``commit()``."""
        return self._write_lock

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the SQLite connection.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        with self._write_lock:
            if self._sqlite_conn is not None:
                try:
                    self._sqlite_conn.close()
                    self._logger.info("SQLite connection closed.")
                except sqlite3.ProgrammingError:
                    pass
                self._sqlite_conn = None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _connect_sqlite(self, path: Union[Path, str]) -> sqlite3.Connection:
        """Open (or create) the database with ``sqlite3.Row`` rows and WAL.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory.
        """
        try:
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            self._logger.info("SQLite database opened at %s", path)
            return conn
        except PermissionError as exc:
            msg = (
                f"Cannot open the local database at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc
