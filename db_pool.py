"""SQLite connection pool shared by the store functions in ``db``."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Full, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe pool of SQLite connections.

    FastAPI runs sync endpoints on a worker thread pool, so connections are
    opened with ``check_same_thread=False`` and handed out one caller at a time.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 10.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._opened: List[sqlite3.Connection] = []

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._pool.get(block=False)
        except Empty:
            pass
        with self._lock:
            if len(self._opened) < self.max_connections:
                conn = self._create_connection()
                self._opened.append(conn)
                logger.debug("Opened SQLite connection %d/%d for %s", len(self._opened), self.max_connections, self.database)
                return conn
        return self._pool.get(block=True, timeout=self.timeout)

    def _release(self, connection: sqlite3.Connection) -> None:
        try:
            connection.rollback()
            self._pool.put(connection, block=False)
        except (sqlite3.Error, Full) as exc:
            logger.error("Discarding SQLite connection after release failure: %s", exc)
            with self._lock:
                if connection in self._opened:
                    self._opened.remove(connection)
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Closing a discarded connection failed", exc_info=True)

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = self._acquire()
        try:
            yield connection
        finally:
            self._release(connection)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection and commit only if the block finishes cleanly."""
        with self.get_connection() as connection:
            yield connection
            connection.commit()

    def close_all(self) -> None:
        with self._lock:
            opened, self._opened = self._opened, []
        while True:
            try:
                self._pool.get(block=False)
            except Empty:
                break
        for connection in opened:
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Closing pooled connection failed", exc_info=True)
