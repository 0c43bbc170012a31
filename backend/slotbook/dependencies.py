import logging
import os
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from pathlib import Path
from typing import Optional

from slotbook.services.access import AccessPolicy
from slotbook.services.analytics import AnalyticsDispatcher, LoggingAnalyticsSink
from slotbook.services.availability import AvailabilityLedger
from slotbook.services.booking_engine import BookingEngine
from slotbook.services.catalog import ServiceCatalog
from slotbook.services.category_registry import AllowAllCategories, CategoryRegistry, StaticCategoryRegistry
from slotbook.services.database import Database
from slotbook.services.id_allocator import IdAllocator
from slotbook.services.index_store import IndexStore
from slotbook.services.payment_gateway import HttpPaymentGateway, NullPaymentGateway, PaymentGateway

logger = logging.getLogger(__name__)

default_db = str(Path(__file__).resolve().parents[1] / "data" / "slotbook.sqlite3")


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default
    return value if value >= minimum else default


def build_payment_gateway() -> PaymentGateway:
    base_url = os.getenv("SLOTBOOK_PAYMENT_URL", "").strip()
    if not base_url:
        logger.info("Payment gateway disabled: SLOTBOOK_PAYMENT_URL not set")
        return NullPaymentGateway()
    return HttpPaymentGateway(base_url=base_url, api_key=os.getenv("SLOTBOOK_PAYMENT_API_KEY") or None)


def build_category_registry() -> CategoryRegistry:
    if os.getenv("SLOTBOOK_ACTIVE_CATEGORIES", "").strip():
        return StaticCategoryRegistry.from_env()
    return AllowAllCategories()


def build_engine(
    db_path: Optional[str] = None,
    payments: Optional[PaymentGateway] = None,
    analytics: Optional[AnalyticsDispatcher] = None,
) -> BookingEngine:
    database = Database(
        db_path or os.getenv("SLOTBOOK_DB_PATH", default_db),
        write_retries=_env_int("SLOTBOOK_WRITE_RETRIES", 3, minimum=1),
    )
    ids = IdAllocator()
    indices = IndexStore(database)
    access = AccessPolicy()
    catalog = ServiceCatalog(
        database,
        ids,
        indices,
        access,
        build_category_registry(),
        strict_prices=_env_flag("SLOTBOOK_STRICT_PRICES"),
        strict_categories=_env_flag("SLOTBOOK_STRICT_CATEGORIES"),
        reindex_categories=_env_flag("SLOTBOOK_REINDEX_CATEGORIES"),
    )
    ledger = AvailabilityLedger(database, catalog, access)
    if analytics is None:
        workers = _env_int("SLOTBOOK_ANALYTICS_WORKERS", 1)
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="analytics") if workers else None
        analytics = AnalyticsDispatcher(LoggingAnalyticsSink(), executor=executor)
    return BookingEngine(
        database,
        ids,
        indices,
        catalog,
        ledger,
        access,
        payments=payments or build_payment_gateway(),
        analytics=analytics,
        pending_ttl_seconds=_env_int("SLOTBOOK_PENDING_TTL_SECONDS", 0),
    )


@lru_cache
def get_engine() -> BookingEngine:
    return build_engine()
