import sqlite3
from typing import List, Tuple, Union

from slotbook.services.database import Database
from slotbook.services.errors import InvalidInputError

CATEGORY_SERVICES = "category_services"
PROVIDER_SERVICES = "provider_services"
CLIENT_BOOKINGS = "client_bookings"
PROVIDER_BOOKINGS = "provider_bookings"
SERVICE_BOOKINGS = "service_bookings"

INDEX_NAMES = {
    CATEGORY_SERVICES,
    PROVIDER_SERVICES,
    CLIENT_BOOKINGS,
    PROVIDER_BOOKINGS,
    SERVICE_BOOKINGS,
}

IndexKey = Union[int, str]


class IndexStore:
    """Append-only ordered id lists keyed by (index name, key).

    Entries are never deleted. An entry can only be flagged superseded,
    which hides it from reads while keeping it as history.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    def _check_name(self, index_name: str) -> None:
        if index_name not in INDEX_NAMES:
            raise ValueError(f"Unknown index: {index_name}")

    def append(self, conn: sqlite3.Connection, index_name: str, key: IndexKey, item_id: int) -> int:
        self._check_name(index_name)
        row = conn.execute(
            "SELECT COALESCE(MAX(position), -1) AS last FROM index_entries WHERE index_name = ? AND index_key = ?",
            (index_name, str(key)),
        ).fetchone()
        position = int(row["last"]) + 1
        conn.execute(
            "INSERT INTO index_entries (index_name, index_key, position, item_id) VALUES (?, ?, ?, ?)",
            (index_name, str(key), position, item_id),
        )
        return position

    def supersede(self, conn: sqlite3.Connection, index_name: str, key: IndexKey, item_id: int) -> int:
        self._check_name(index_name)
        cursor = conn.execute(
            """
            UPDATE index_entries SET superseded = 1
            WHERE index_name = ? AND index_key = ? AND item_id = ? AND superseded = 0
            """,
            (index_name, str(key), item_id),
        )
        return cursor.rowcount

    def page_with(
        self,
        conn: sqlite3.Connection,
        index_name: str,
        key: IndexKey,
        offset: int,
        limit: int,
    ) -> Tuple[int, List[int]]:
        self._check_name(index_name)
        if offset < 0 or limit < 0:
            raise InvalidInputError("offset and limit must be non-negative")
        total = conn.execute(
            "SELECT COUNT(*) AS total FROM index_entries WHERE index_name = ? AND index_key = ? AND superseded = 0",
            (index_name, str(key)),
        ).fetchone()["total"]
        if offset >= total or limit == 0:
            return int(total), []
        rows = conn.execute(
            """
            SELECT item_id FROM index_entries
            WHERE index_name = ? AND index_key = ? AND superseded = 0
            ORDER BY position
            LIMIT ? OFFSET ?
            """,
            (index_name, str(key), min(limit, total - offset), offset),
        ).fetchall()
        return int(total), [int(row["item_id"]) for row in rows]

    def page(self, index_name: str, key: IndexKey, offset: int, limit: int) -> Tuple[int, List[int]]:
        with self._db.read() as conn:
            return self.page_with(conn, index_name, key, offset, limit)
