import logging
import sqlite3
from typing import Callable, Dict, List, Optional, Set, Tuple

from slotbook.models import Booking, Service
from slotbook.services.access import AccessPolicy
from slotbook.services.analytics import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_CREATED,
    AnalyticsDispatcher,
    AnalyticsSink,
    LoggingAnalyticsSink,
)
from slotbook.services.availability import AvailabilityLedger
from slotbook.services.catalog import ServiceCatalog
from slotbook.services.database import Database, utc_timestamp
from slotbook.services.errors import (
    CollaboratorError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentCollaboratorError,
    ServiceNotActiveError,
    SlotUnavailableError,
)
from slotbook.services.id_allocator import BOOKING_SEQUENCE, IdAllocator
from slotbook.services.index_store import CLIENT_BOOKINGS, PROVIDER_BOOKINGS, SERVICE_BOOKINGS, IndexStore
from slotbook.services.payment_gateway import NullPaymentGateway, PaymentGateway

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
}

BOOKING_LIVE_STATUSES = {"pending", "confirmed"}
BOOKING_TERMINAL_STATUSES = {"completed", "cancelled", "disputed"}


def row_to_booking(row: sqlite3.Row) -> Booking:
    return Booking(
        id=row["id"],
        service_id=row["service_id"],
        client_id=row["client_id"],
        provider_id=row["provider_id"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        price_min=row["price_min"],
        price_max=row["price_max"],
        payment_reference=row["payment_reference"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class BookingEngine:
    """Booking lifecycle plus the read facade over every index.

    Each mutation is one database transaction. Payment collaborator calls run
    inside that transaction after validation, so a failed call rolls the
    booking back to its previous state. Analytics is dispatched only after
    commit.
    """

    def __init__(
        self,
        database: Database,
        ids: IdAllocator,
        indices: IndexStore,
        catalog: ServiceCatalog,
        ledger: AvailabilityLedger,
        access: AccessPolicy,
        payments: Optional[PaymentGateway] = None,
        analytics: Optional[AnalyticsDispatcher] = None,
        *,
        pending_ttl_seconds: int = 0,
        clock: Callable[[], int] = utc_timestamp,
    ) -> None:
        self._db = database
        self._ids = ids
        self._indices = indices
        self._catalog = catalog
        self._ledger = ledger
        self._access = access
        self._payments = payments or NullPaymentGateway()
        self._analytics = analytics or AnalyticsDispatcher(LoggingAnalyticsSink())
        self._pending_ttl_seconds = max(0, int(pending_ttl_seconds))
        self._clock = clock

    @property
    def database(self) -> Database:
        return self._db

    @property
    def catalog(self) -> ServiceCatalog:
        return self._catalog

    @property
    def ledger(self) -> AvailabilityLedger:
        return self._ledger

    def _load(self, conn: sqlite3.Connection, booking_id: int) -> Booking:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFoundError("Booking not found")
        return row_to_booking(row)

    def _load_many(self, conn: sqlite3.Connection, booking_ids: List[int]) -> List[Booking]:
        return [self._load(conn, booking_id) for booking_id in booking_ids]

    def _call_payments(self, operation: str, func: Callable, *args):
        try:
            return func(*args)
        except CollaboratorError:
            raise
        except Exception as exc:
            logger.exception("Payment collaborator failed", extra={"operation": operation})
            raise PaymentCollaboratorError(f"Payment collaborator failed during {operation}") from exc

    def _record(self, metric_type: str, account_id: str, booking: Booking, **extra) -> None:
        metadata = {
            "booking_id": booking.id,
            "service_id": booking.service_id,
            "start_time": booking.start_time,
            "status": booking.status,
            "price_min": booking.price_min,
        }
        metadata.update(extra)
        self._analytics.record(metric_type, account_id, booking.price_max, metadata)

    def get_booking(self, booking_id: int) -> Booking:
        with self._db.read() as conn:
            return self._load(conn, booking_id)

    def book_service(self, caller_id: Optional[str], service_id: int, start_time: int) -> int:
        client_id = self._access.require_caller(caller_id)
        start_time = int(start_time)
        payment_reference: Optional[str] = None
        escrowed = False
        booking_id = 0
        try:
            with self._db.transaction() as conn:
                service = self._catalog.load(conn, service_id)
                if service.status != "active":
                    raise ServiceNotActiveError("Service is not accepting bookings")
                if not self._ledger.claim(conn, service_id, start_time):
                    logger.info(
                        "Slot claim rejected",
                        extra={"service_id": service_id, "start_time": start_time},
                    )
                    raise SlotUnavailableError("Time slot unavailable")

                booking_id = self._ids.allocate(conn, BOOKING_SEQUENCE)
                payment_reference = self._call_payments(
                    "establish_escrow",
                    self._payments.establish_escrow,
                    booking_id,
                    service.price_min,
                    service.price_max,
                )
                escrowed = True
                booking = self._insert_booking(conn, booking_id, service, client_id, start_time, payment_reference)
        except sqlite3.OperationalError as exc:
            self._compensate_escrow(escrowed, payment_reference, booking_id)
            if "locked" in str(exc).lower():
                raise SlotUnavailableError("Time slot could not be claimed, try again") from exc
            raise
        except BaseException:
            self._compensate_escrow(escrowed, payment_reference, booking_id)
            raise

        logger.info(
            "Booking created",
            extra={"booking_id": booking_id, "service_id": service_id, "start_time": start_time, "status": "pending"},
        )
        self._record(BOOKING_CREATED, client_id, booking)
        return booking_id

    def _insert_booking(
        self,
        conn: sqlite3.Connection,
        booking_id: int,
        service: Service,
        client_id: str,
        start_time: int,
        payment_reference: Optional[str],
    ) -> Booking:
        now = self._clock()
        booking = Booking(
            id=booking_id,
            service_id=service.id,
            client_id=client_id,
            provider_id=service.provider_id,
            start_time=start_time,
            end_time=start_time + service.duration_minutes * 60,
            price_min=service.price_min,
            price_max=service.price_max,
            payment_reference=payment_reference,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        conn.execute(
            """
            INSERT INTO bookings (
                id, service_id, client_id, provider_id, start_time, end_time,
                price_min, price_max, payment_reference, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                booking.id,
                booking.service_id,
                booking.client_id,
                booking.provider_id,
                booking.start_time,
                booking.end_time,
                booking.price_min,
                booking.price_max,
                booking.payment_reference,
                booking.status,
                booking.created_at,
                booking.updated_at,
            ),
        )
        self._indices.append(conn, CLIENT_BOOKINGS, booking.client_id, booking.id)
        self._indices.append(conn, PROVIDER_BOOKINGS, booking.provider_id, booking.id)
        self._indices.append(conn, SERVICE_BOOKINGS, booking.service_id, booking.id)
        return booking

    def _compensate_escrow(self, escrowed: bool, payment_reference: Optional[str], booking_id: int) -> None:
        if not escrowed:
            return
        try:
            self._payments.refund(payment_reference)
            logger.warning("Escrow refunded after failed booking write", extra={"booking_id": booking_id})
        except Exception:
            logger.exception(
                "Escrow compensation failed, reference %s needs reconciliation",
                payment_reference,
                extra={"booking_id": booking_id, "operation": "refund"},
            )

    def _transition(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        next_status: str,
        settled: List[str],
    ) -> Booking:
        if booking.status in BOOKING_TERMINAL_STATUSES:
            raise InvalidStateTransitionError(f"Booking is already {booking.status}")
        if next_status not in ALLOWED_TRANSITIONS.get(booking.status, set()):
            raise InvalidStateTransitionError(f"Invalid status transition: {booking.status} -> {next_status}")

        if next_status == "completed":
            self._call_payments("release_funds", self._payments.release_funds, booking.payment_reference)
            settled.append("release_funds")
        if next_status == "cancelled":
            self._call_payments("refund", self._payments.refund, booking.payment_reference)
            settled.append("refund")
            self._ledger.release(conn, booking.service_id, booking.start_time)

        conn.execute(
            "UPDATE bookings SET status = ?, updated_at = ? WHERE id = ?",
            (next_status, self._clock(), booking.id),
        )
        updated = self._load(conn, booking.id)
        logger.info(
            "Booking status changed",
            extra={"booking_id": booking.id, "service_id": booking.service_id, "status": next_status},
        )
        return updated

    def _apply_transition(
        self,
        booking_id: int,
        next_status: str,
        authorize: Callable[[Booking], Optional[str]],
    ) -> Tuple[Optional[str], Optional[Booking]]:
        """Run one status change in its own transaction.

        ``authorize`` returns the acting account, raises, or returns None to
        leave the booking untouched. When the payment collaborator has already
        settled and the write then fails, the reference is logged for
        reconciliation before the error propagates.
        """
        settled: List[str] = []
        reference: Optional[str] = None
        try:
            with self._db.transaction() as conn:
                booking = self._load(conn, booking_id)
                reference = booking.payment_reference
                actor = authorize(booking)
                if actor is None:
                    return None, None
                updated = self._transition(conn, booking, next_status, settled)
        except Exception:
            if settled:
                logger.exception(
                    "Booking write failed after %s, reference %s needs reconciliation",
                    settled[-1],
                    reference,
                    extra={"booking_id": booking_id, "status": next_status, "operation": settled[-1]},
                )
            raise
        return actor, updated

    def confirm_booking(self, caller_id: Optional[str], booking_id: int) -> Booking:
        caller, updated = self._apply_transition(
            booking_id,
            "confirmed",
            lambda booking: self._access.require_provider(caller_id, booking.provider_id, "confirm this booking"),
        )
        self._record(BOOKING_CONFIRMED, caller, updated)
        return updated

    def complete_booking(self, caller_id: Optional[str], booking_id: int) -> Booking:
        caller, updated = self._apply_transition(
            booking_id,
            "completed",
            lambda booking: self._access.require_provider(caller_id, booking.provider_id, "complete this booking"),
        )
        self._record(BOOKING_COMPLETED, caller, updated)
        return updated

    def cancel_booking(self, caller_id: Optional[str], booking_id: int) -> Booking:
        caller, updated = self._apply_transition(
            booking_id,
            "cancelled",
            lambda booking: self._access.require_party(caller_id, booking, "cancel this booking"),
        )
        self._record(BOOKING_CANCELLED, caller, updated)
        return updated

    def expire_stale_pending(self, now: Optional[int] = None) -> List[int]:
        """Cancel pending bookings older than the configured TTL; no-op when the TTL is 0."""
        if not self._pending_ttl_seconds:
            return []
        cutoff = (self._clock() if now is None else int(now)) - self._pending_ttl_seconds
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT id FROM bookings WHERE status = 'pending' AND created_at <= ? ORDER BY id",
                (cutoff,),
            ).fetchall()

        def still_stale(booking: Booking) -> Optional[str]:
            if booking.status != "pending" or booking.created_at > cutoff:
                return None
            return booking.client_id

        expired: List[int] = []
        for row in rows:
            try:
                actor, updated = self._apply_transition(int(row["id"]), "cancelled", still_stale)
            except CollaboratorError:
                logger.exception("Could not expire pending booking", extra={"booking_id": row["id"]})
                continue
            if updated is None:
                continue
            expired.append(updated.id)
            self._record(BOOKING_CANCELLED, actor, updated, reason="expired")
        if expired:
            logger.info("Expired stale pending bookings: %s", expired)
        return expired

    def get_services_by_category(self, category_id: int, offset: int, limit: int) -> Tuple[int, List[Service]]:
        return self._catalog.get_services_by_category(category_id, offset, limit)

    def get_services_by_provider(self, provider_id: str, offset: int, limit: int) -> Tuple[int, List[Service]]:
        return self._catalog.get_services_by_provider(provider_id, offset, limit)

    def _booking_page(self, index_name: str, key, offset: int, limit: int) -> Tuple[int, List[Booking]]:
        with self._db.read() as conn:
            total, ids = self._indices.page_with(conn, index_name, key, offset, limit)
            return total, self._load_many(conn, ids)

    def get_client_bookings(self, client_id: str, offset: int, limit: int) -> Tuple[int, List[Booking]]:
        return self._booking_page(CLIENT_BOOKINGS, client_id, offset, limit)

    def get_provider_bookings(self, provider_id: str, offset: int, limit: int) -> Tuple[int, List[Booking]]:
        return self._booking_page(PROVIDER_BOOKINGS, provider_id, offset, limit)

    def get_service_bookings(self, service_id: int, offset: int, limit: int) -> Tuple[int, List[Booking]]:
        return self._booking_page(SERVICE_BOOKINGS, int(service_id), offset, limit)
