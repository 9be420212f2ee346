"""SQLite connection pool shared by the store helpers."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Full, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are handed out one caller at a time, so they are opened with
    ``check_same_thread=False`` to survive FastAPI's worker threads. Every
    connection is rolled back when it is returned; callers commit explicitly.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout: float = 5.0):
        if max_connections <= 0:
            raise ValueError("max_connections must be positive")
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout = busy_timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database,
            timeout=self.busy_timeout,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._pool.get(block=False)
        except Empty:
            pass
        with self._lock:
            if self._created_connections < self.max_connections:
                self._created_connections += 1
                logger.debug("Opening pooled connection %s/%s", self._created_connections, self.max_connections)
                try:
                    return self._create_connection()
                except sqlite3.Error:
                    self._created_connections -= 1
                    raise
        return self._pool.get(block=True)

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error:
            logger.debug("Ignoring error while closing a broken connection", exc_info=True)
        with self._lock:
            self._created_connections -= 1

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = self._acquire()
        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection, block=False)
            except (sqlite3.Error, Full) as exc:
                logger.error("Error returning connection to pool: %s", exc)
                self._discard(connection)

    def close_all(self) -> None:
        """Close every idle connection (used on shutdown and in tests)."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            self._discard(connection)
