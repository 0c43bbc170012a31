import logging
import sqlite3
from typing import Callable, List, Optional, Tuple

from slotbook.models import Service
from slotbook.services.access import AccessPolicy
from slotbook.services.category_registry import AllowAllCategories, CategoryRegistry
from slotbook.services.database import Database, utc_timestamp
from slotbook.services.errors import InvalidInputError, NotFoundError
from slotbook.services.id_allocator import SERVICE_SEQUENCE, IdAllocator
from slotbook.services.index_store import CATEGORY_SERVICES, PROVIDER_SERVICES, IndexStore

logger = logging.getLogger(__name__)

SERVICE_STATUSES = {"active", "paused", "inactive"}


def row_to_service(row: sqlite3.Row) -> Service:
    return Service(
        id=row["id"],
        provider_id=row["provider_id"],
        title=row["title"],
        description=row["description"],
        category_id=row["category_id"],
        price_min=row["price_min"],
        price_max=row["price_max"],
        duration_minutes=row["duration_minutes"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ServiceCatalog:
    """Provider-owned service records plus the category/provider indices.

    Permissive by default: category ids are not checked, ``price_min`` may
    exceed ``price_max`` and a category change leaves the category index
    untouched. Each of these can be tightened with its own flag.
    """

    def __init__(
        self,
        database: Database,
        ids: IdAllocator,
        indices: IndexStore,
        access: AccessPolicy,
        categories: Optional[CategoryRegistry] = None,
        *,
        strict_prices: bool = False,
        strict_categories: bool = False,
        reindex_categories: bool = False,
        clock: Callable[[], int] = utc_timestamp,
    ) -> None:
        self._db = database
        self._ids = ids
        self._indices = indices
        self._access = access
        self._categories = categories or AllowAllCategories()
        self._strict_prices = strict_prices
        self._strict_categories = strict_categories
        self._reindex_categories = reindex_categories
        self._clock = clock

    def _validate(self, category_id: int, price_min: int, price_max: int, duration_minutes: int) -> None:
        if int(duration_minutes) <= 0:
            raise InvalidInputError("duration_minutes must be greater than 0")
        if int(price_min) < 0 or int(price_max) < 0:
            raise InvalidInputError("Prices must be non-negative")
        if self._strict_prices and int(price_min) > int(price_max):
            raise InvalidInputError("price_min must not exceed price_max")
        if self._strict_categories and not self._categories.is_category_active(int(category_id)):
            raise InvalidInputError(f"Category {category_id} is not active")

    def load(self, conn: sqlite3.Connection, service_id: int) -> Service:
        row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
        if not row:
            raise NotFoundError("Service not found")
        return row_to_service(row)

    def load_many(self, conn: sqlite3.Connection, service_ids: List[int]) -> List[Service]:
        return [self.load(conn, service_id) for service_id in service_ids]

    def get_service(self, service_id: int) -> Service:
        with self._db.read() as conn:
            return self.load(conn, service_id)

    def create_service(
        self,
        caller_id: Optional[str],
        title: str,
        description: str,
        category_id: int,
        price_min: int,
        price_max: int,
        duration_minutes: int,
    ) -> int:
        provider_id = self._access.require_caller(caller_id)
        self._validate(category_id, price_min, price_max, duration_minutes)
        now = self._clock()

        with self._db.transaction() as conn:
            service_id = self._ids.allocate(conn, SERVICE_SEQUENCE)
            conn.execute(
                """
                INSERT INTO services (
                    id, provider_id, title, description, category_id,
                    price_min, price_max, duration_minutes, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
                """,
                (
                    service_id,
                    provider_id,
                    title,
                    description,
                    int(category_id),
                    int(price_min),
                    int(price_max),
                    int(duration_minutes),
                    now,
                    now,
                ),
            )
            self._indices.append(conn, CATEGORY_SERVICES, int(category_id), service_id)
            self._indices.append(conn, PROVIDER_SERVICES, provider_id, service_id)

        logger.info("Service created", extra={"service_id": service_id, "status": "active"})
        return service_id

    def update_service(
        self,
        caller_id: Optional[str],
        service_id: int,
        title: str,
        description: str,
        category_id: int,
        price_min: int,
        price_max: int,
        duration_minutes: int,
    ) -> Service:
        with self._db.transaction() as conn:
            current = self.load(conn, service_id)
            self._access.require_provider(caller_id, current.provider_id, "edit this service")
            self._validate(category_id, price_min, price_max, duration_minutes)

            conn.execute(
                """
                UPDATE services
                SET title = ?, description = ?, category_id = ?, price_min = ?,
                    price_max = ?, duration_minutes = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    title,
                    description,
                    int(category_id),
                    int(price_min),
                    int(price_max),
                    int(duration_minutes),
                    self._clock(),
                    service_id,
                ),
            )
            if self._reindex_categories and int(category_id) != current.category_id:
                self._indices.supersede(conn, CATEGORY_SERVICES, current.category_id, service_id)
                self._indices.append(conn, CATEGORY_SERVICES, int(category_id), service_id)
            updated = self.load(conn, service_id)

        logger.info("Service updated", extra={"service_id": service_id})
        return updated

    def set_service_status(self, caller_id: Optional[str], service_id: int, status: str) -> Service:
        if status not in SERVICE_STATUSES:
            raise InvalidInputError(f"Invalid service status: {status}")
        with self._db.transaction() as conn:
            current = self.load(conn, service_id)
            self._access.require_provider(caller_id, current.provider_id, "change this service's status")
            conn.execute(
                "UPDATE services SET status = ?, updated_at = ? WHERE id = ?",
                (status, self._clock(), service_id),
            )
            updated = self.load(conn, service_id)

        logger.info("Service status changed", extra={"service_id": service_id, "status": status})
        return updated

    def get_services_by_category(self, category_id: int, offset: int, limit: int) -> Tuple[int, List[Service]]:
        with self._db.read() as conn:
            total, ids = self._indices.page_with(conn, CATEGORY_SERVICES, int(category_id), offset, limit)
            return total, self.load_many(conn, ids)

    def get_services_by_provider(self, provider_id: str, offset: int, limit: int) -> Tuple[int, List[Service]]:
        with self._db.read() as conn:
            total, ids = self._indices.page_with(conn, PROVIDER_SERVICES, provider_id, offset, limit)
            return total, self.load_many(conn, ids)
