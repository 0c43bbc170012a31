import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from slotbook.services.access import AccessPolicy
from slotbook.services.analytics import AnalyticsDispatcher, AnalyticsSink
from slotbook.services.availability import AvailabilityLedger
from slotbook.services.booking_engine import BookingEngine
from slotbook.services.catalog import ServiceCatalog
from slotbook.services.database import Database
from slotbook.services.errors import PaymentCollaboratorError
from slotbook.services.id_allocator import IdAllocator
from slotbook.services.index_store import IndexStore
from slotbook.services.payment_gateway import PaymentGateway


class RecordingPayments(PaymentGateway):
    def __init__(self):
        self.calls = []
        self.fail_on = set()

    def _call(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise PaymentCollaboratorError(f"{name} unavailable")

    def establish_escrow(self, booking_id, price_min, price_max):
        self._call("establish_escrow", booking_id, price_min, price_max)
        return f"esc_{booking_id}"

    def release_funds(self, payment_reference):
        self._call("release_funds", payment_reference)

    def refund(self, payment_reference):
        self._call("refund", payment_reference)

    def names(self):
        return [call[0] for call in self.calls]


class RecordingSink(AnalyticsSink):
    def __init__(self):
        self.records = []

    def record_transaction(self, metric_type, account_id, amount, metadata):
        self.records.append((metric_type, account_id, amount, metadata))


class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now
        self.error = None

    def __call__(self):
        if self.error is not None:
            raise self.error
        return self.now


@pytest.fixture
def payments():
    return RecordingPayments()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_engine(tmp_path, payments, sink, clock):
    def factory(
        *,
        name="slotbook.sqlite3",
        payment_gateway=payments,
        analytics_sink=sink,
        categories=None,
        strict_prices=False,
        strict_categories=False,
        reindex_categories=False,
        pending_ttl_seconds=0,
    ):
        database = Database(str(tmp_path / name))
        ids = IdAllocator()
        indices = IndexStore(database)
        access = AccessPolicy()
        catalog = ServiceCatalog(
            database,
            ids,
            indices,
            access,
            categories,
            strict_prices=strict_prices,
            strict_categories=strict_categories,
            reindex_categories=reindex_categories,
            clock=clock,
        )
        ledger = AvailabilityLedger(database, catalog, access, clock=clock)
        return BookingEngine(
            database,
            ids,
            indices,
            catalog,
            ledger,
            access,
            payments=payment_gateway,
            analytics=AnalyticsDispatcher(analytics_sink),
            pending_ttl_seconds=pending_ttl_seconds,
            clock=clock,
        )

    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()


def open_service(engine, provider_id="provider_1", start_times=(1000,), duration_minutes=60, **fields):
    service_id = engine.catalog.create_service(
        provider_id,
        fields.get("title", "Deep tissue massage"),
        fields.get("description", "Sixty minutes, oils included"),
        fields.get("category_id", 7),
        fields.get("price_min", 40),
        fields.get("price_max", 60),
        duration_minutes,
    )
    for start_time in start_times:
        engine.ledger.set_availability(provider_id, service_id, start_time, True)
    return service_id
