import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Iterator

logger = logging.getLogger(__name__)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS id_sequences (
        name TEXT PRIMARY KEY,
        last_value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS services (
        id INTEGER PRIMARY KEY,
        provider_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        category_id INTEGER NOT NULL,
        price_min INTEGER NOT NULL,
        price_max INTEGER NOT NULL,
        duration_minutes INTEGER NOT NULL,
        status TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS availability_slots (
        service_id INTEGER NOT NULL,
        start_time INTEGER NOT NULL,
        available INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (service_id, start_time)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bookings (
        id INTEGER PRIMARY KEY,
        service_id INTEGER NOT NULL,
        client_id TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        start_time INTEGER NOT NULL,
        end_time INTEGER NOT NULL,
        price_min INTEGER NOT NULL,
        price_max INTEGER NOT NULL,
        payment_reference TEXT,
        status TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS index_entries (
        index_name TEXT NOT NULL,
        index_key TEXT NOT NULL,
        position INTEGER NOT NULL,
        item_id INTEGER NOT NULL,
        superseded INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (index_name, index_key, position)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_bookings_status ON bookings (status, created_at)",
)


def utc_timestamp() -> int:
    return int(time.time())


class Database:
    """sqlite3 storage shared by every engine component.

    Writers go through one process lock and take the sqlite write lock up
    front (``BEGIN IMMEDIATE``) so that two processes sharing the file are
    serialized as well. Readers take neither: the file runs in WAL mode and
    each ``read()`` block sees one consistent snapshot.
    """

    def __init__(self, db_path: str, write_retries: int = 3, busy_timeout: float = 5.0) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._write_lock = Lock()
        self._write_retries = max(1, int(write_retries))
        self._busy_timeout = busy_timeout
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]
            if str(mode).lower() != "wal":
                logger.warning("WAL journal unavailable for %s, readers may wait on writers", self.db_path)
        finally:
            conn.close()
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def _begin(self, conn: sqlite3.Connection) -> None:
        for attempt in range(1, self._write_retries + 1):
            try:
                conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as exc:
                if "locked" not in str(exc).lower() or attempt == self._write_retries:
                    raise
                logger.warning("Database write lock busy, retrying (%s/%s)", attempt, self._write_retries)
                time.sleep(0.05 * attempt)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            conn = self._connect()
            try:
                self._begin(conn)
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
        finally:
            conn.close()
