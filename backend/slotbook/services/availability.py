import logging
import sqlite3
from typing import Callable, List, Optional, Tuple

from slotbook.services.access import AccessPolicy
from slotbook.services.catalog import ServiceCatalog
from slotbook.services.database import Database, utc_timestamp
from slotbook.services.errors import SlotUnavailableError

logger = logging.getLogger(__name__)

# A booking in any of these states owns its slot for good or until cancelled.
SLOT_HOLDING_STATUSES = ("pending", "confirmed", "completed", "disputed")


class AvailabilityLedger:
    """Per (service, start_time) availability flags.

    A missing row reads as unavailable: providers must open a slot before it
    can be booked.
    """

    def __init__(
        self,
        database: Database,
        catalog: ServiceCatalog,
        access: AccessPolicy,
        clock: Callable[[], int] = utc_timestamp,
    ) -> None:
        self._db = database
        self._catalog = catalog
        self._access = access
        self._clock = clock

    def _is_held(self, conn: sqlite3.Connection, service_id: int, start_time: int) -> bool:
        placeholders = ", ".join("?" for _ in SLOT_HOLDING_STATUSES)
        row = conn.execute(
            f"""
            SELECT 1 FROM bookings
            WHERE service_id = ? AND start_time = ? AND status IN ({placeholders})
            LIMIT 1
            """,
            (service_id, start_time, *SLOT_HOLDING_STATUSES),
        ).fetchone()
        return row is not None

    def _write(self, conn: sqlite3.Connection, service_id: int, start_time: int, available: bool) -> None:
        conn.execute(
            """
            INSERT INTO availability_slots (service_id, start_time, available, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(service_id, start_time) DO UPDATE
            SET available = excluded.available, updated_at = excluded.updated_at
            """,
            (service_id, start_time, 1 if available else 0, self._clock()),
        )

    def set_availability(self, caller_id: Optional[str], service_id: int, start_time: int, available: bool) -> None:
        with self._db.transaction() as conn:
            service = self._catalog.load(conn, service_id)
            self._access.require_provider(caller_id, service.provider_id, "manage availability for this service")
            if self._is_held(conn, service_id, int(start_time)):
                if available:
                    raise SlotUnavailableError("Slot is held by a booking and cannot be reopened")
                return
            self._write(conn, service_id, int(start_time), bool(available))

        logger.info(
            "Slot availability set",
            extra={"service_id": service_id, "start_time": start_time, "status": "open" if available else "closed"},
        )

    def check_with(self, conn: sqlite3.Connection, service_id: int, start_time: int) -> bool:
        row = conn.execute(
            "SELECT available FROM availability_slots WHERE service_id = ? AND start_time = ?",
            (service_id, int(start_time)),
        ).fetchone()
        return bool(row and row["available"])

    def check_availability(self, service_id: int, start_time: int) -> bool:
        with self._db.read() as conn:
            return self.check_with(conn, service_id, start_time)

    def claim(self, conn: sqlite3.Connection, service_id: int, start_time: int) -> bool:
        """Flip an open slot to unavailable; False when it was not open."""
        cursor = conn.execute(
            """
            UPDATE availability_slots SET available = 0, updated_at = ?
            WHERE service_id = ? AND start_time = ? AND available = 1
            """,
            (self._clock(), service_id, int(start_time)),
        )
        return cursor.rowcount == 1

    def release(self, conn: sqlite3.Connection, service_id: int, start_time: int) -> None:
        self._write(conn, service_id, int(start_time), True)

    def list_slots(self, service_id: int) -> List[Tuple[int, bool]]:
        with self._db.read() as conn:
            self._catalog.load(conn, service_id)
            rows = conn.execute(
                "SELECT start_time, available FROM availability_slots WHERE service_id = ? ORDER BY start_time",
                (service_id,),
            ).fetchall()
        return [(int(row["start_time"]), bool(row["available"])) for row in rows]
