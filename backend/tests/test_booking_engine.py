import logging
import sqlite3

import pytest

from conftest import RecordingPayments, open_service
from slotbook.services.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PaymentCollaboratorError,
    ServiceNotActiveError,
    SlotUnavailableError,
    UnauthorizedError,
)
from slotbook.services.payment_gateway import NullPaymentGateway


def test_end_to_end_scenario(engine):
    service_id = open_service(engine, duration_minutes=60)

    booking_id = engine.book_service("client_1", service_id, 1000)
    booking = engine.get_booking(booking_id)
    assert booking.status == "pending"
    assert booking.end_time == 1000 + 60 * 60
    assert booking.provider_id == "provider_1"
    assert engine.ledger.check_availability(service_id, 1000) is False

    assert engine.confirm_booking("provider_1", booking_id).status == "confirmed"
    assert engine.complete_booking("provider_1", booking_id).status == "completed"

    with pytest.raises(InvalidStateTransitionError):
        engine.cancel_booking("client_1", booking_id)
    assert engine.ledger.check_availability(service_id, 1000) is False


def test_unset_slot_is_never_bookable(engine):
    service_id = open_service(engine, start_times=())
    assert engine.ledger.check_availability(service_id, 5000) is False
    with pytest.raises(SlotUnavailableError):
        engine.book_service("client_1", service_id, 5000)


def test_closed_slot_is_not_bookable(engine):
    service_id = open_service(engine)
    engine.ledger.set_availability("provider_1", service_id, 1000, False)
    with pytest.raises(SlotUnavailableError):
        engine.book_service("client_1", service_id, 1000)


def test_second_booking_for_same_slot_fails(engine):
    service_id = open_service(engine)
    engine.book_service("client_1", service_id, 1000)
    with pytest.raises(SlotUnavailableError):
        engine.book_service("client_2", service_id, 1000)


def test_cancel_releases_slot_for_rebooking(engine):
    service_id = open_service(engine)
    first = engine.book_service("client_1", service_id, 1000)

    cancelled = engine.cancel_booking("client_1", first)
    assert cancelled.status == "cancelled"
    assert engine.ledger.check_availability(service_id, 1000) is True

    second = engine.book_service("client_2", service_id, 1000)
    assert second > first
    assert engine.ledger.check_availability(service_id, 1000) is False


def test_provider_can_cancel_confirmed_booking(engine):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    engine.confirm_booking("provider_1", booking_id)

    assert engine.cancel_booking("provider_1", booking_id).status == "cancelled"
    assert engine.ledger.check_availability(service_id, 1000) is True


def test_legal_transitions_only(engine):
    service_id = open_service(engine, start_times=(1000, 2000, 3000))

    pending = engine.book_service("client_1", service_id, 1000)
    with pytest.raises(InvalidStateTransitionError):
        engine.complete_booking("provider_1", pending)

    confirmed = engine.book_service("client_1", service_id, 2000)
    engine.confirm_booking("provider_1", confirmed)
    with pytest.raises(InvalidStateTransitionError):
        engine.confirm_booking("provider_1", confirmed)

    cancelled = engine.book_service("client_1", service_id, 3000)
    engine.cancel_booking("client_1", cancelled)
    for operation in (engine.confirm_booking, engine.complete_booking, engine.cancel_booking):
        with pytest.raises(InvalidStateTransitionError):
            operation("provider_1", cancelled)


def test_disputed_booking_is_terminal(engine):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    with engine.database.transaction() as conn:
        conn.execute("UPDATE bookings SET status = 'disputed' WHERE id = ?", (booking_id,))

    for operation in (engine.confirm_booking, engine.complete_booking, engine.cancel_booking):
        with pytest.raises(InvalidStateTransitionError):
            operation("provider_1", booking_id)
    with pytest.raises(SlotUnavailableError):
        engine.ledger.set_availability("provider_1", service_id, 1000, True)


def test_ownership_checks(engine):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)

    with pytest.raises(UnauthorizedError):
        engine.confirm_booking("client_1", booking_id)
    engine.confirm_booking("provider_1", booking_id)
    with pytest.raises(UnauthorizedError):
        engine.complete_booking("client_1", booking_id)
    with pytest.raises(UnauthorizedError):
        engine.cancel_booking("stranger", booking_id)
    with pytest.raises(UnauthorizedError):
        engine.book_service(None, service_id, 1000)
    assert engine.get_booking(booking_id).status == "confirmed"


def test_not_found_is_reported_before_ownership(engine):
    with pytest.raises(NotFoundError):
        engine.confirm_booking("anyone", 404)
    with pytest.raises(NotFoundError):
        engine.book_service("client_1", 404, 1000)


def test_booking_requires_active_service(engine):
    service_id = open_service(engine)
    engine.catalog.set_service_status("provider_1", service_id, "paused")

    with pytest.raises(ServiceNotActiveError):
        engine.book_service("client_1", service_id, 1000)
    assert engine.ledger.check_availability(service_id, 1000) is True

    engine.catalog.set_service_status("provider_1", service_id, "active")
    assert engine.book_service("client_1", service_id, 1000) == 1


def test_inactive_service_does_not_cascade_to_bookings(engine):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    engine.confirm_booking("provider_1", booking_id)

    engine.catalog.set_service_status("provider_1", service_id, "inactive")

    assert engine.get_booking(booking_id).status == "confirmed"
    assert engine.complete_booking("provider_1", booking_id).status == "completed"


def test_booking_snapshot_survives_service_edits(engine):
    service_id = open_service(engine, price_min=40, price_max=60, duration_minutes=60)
    booking_id = engine.book_service("client_1", service_id, 1000)

    engine.catalog.update_service("provider_1", service_id, "Renamed", "", 9, 80, 120, 90)

    booking = engine.get_booking(booking_id)
    assert (booking.price_min, booking.price_max) == (40, 60)
    assert booking.end_time == 1000 + 3600
    assert booking.provider_id == "provider_1"


def test_ids_are_monotonic_and_not_consumed_by_failures(engine):
    service_id = open_service(engine, start_times=(1000, 2000))
    first = engine.book_service("client_1", service_id, 1000)
    with pytest.raises(SlotUnavailableError):
        engine.book_service("client_2", service_id, 1000)
    second = engine.book_service("client_2", service_id, 2000)
    assert (first, second) == (1, 2)

    other_service = open_service(engine)
    assert other_service == service_id + 1


def test_escrow_reference_is_stored_and_released_once(engine, payments):
    service_id = open_service(engine, price_min=40, price_max=60)
    booking_id = engine.book_service("client_1", service_id, 1000)

    assert engine.get_booking(booking_id).payment_reference == f"esc_{booking_id}"
    assert payments.calls == [("establish_escrow", booking_id, 40, 60)]

    engine.confirm_booking("provider_1", booking_id)
    engine.complete_booking("provider_1", booking_id)
    with pytest.raises(InvalidStateTransitionError):
        engine.complete_booking("provider_1", booking_id)

    assert payments.names().count("release_funds") == 1
    assert "refund" not in payments.names()


def test_cancel_requests_refund(engine, payments):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    engine.cancel_booking("client_1", booking_id)
    assert payments.calls[-1] == ("refund", f"esc_{booking_id}")


def test_escrow_failure_rolls_back_booking(engine, payments):
    service_id = open_service(engine)
    payments.fail_on.add("establish_escrow")

    with pytest.raises(PaymentCollaboratorError):
        engine.book_service("client_1", service_id, 1000)

    assert engine.ledger.check_availability(service_id, 1000) is True
    assert engine.get_client_bookings("client_1", 0, 10) == (0, [])

    payments.fail_on.clear()
    assert engine.book_service("client_1", service_id, 1000) == 1


def test_release_failure_keeps_booking_confirmed(engine, payments):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    engine.confirm_booking("provider_1", booking_id)
    payments.fail_on.add("release_funds")

    with pytest.raises(PaymentCollaboratorError):
        engine.complete_booking("provider_1", booking_id)
    assert engine.get_booking(booking_id).status == "confirmed"

    payments.fail_on.clear()
    assert engine.complete_booking("provider_1", booking_id).status == "completed"


def test_refund_failure_keeps_slot_held(engine, payments):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    payments.fail_on.add("refund")

    with pytest.raises(PaymentCollaboratorError):
        engine.cancel_booking("client_1", booking_id)
    assert engine.get_booking(booking_id).status == "pending"
    assert engine.ledger.check_availability(service_id, 1000) is False


def test_null_payment_gateway_leaves_reference_empty(make_engine):
    engine = make_engine(payment_gateway=NullPaymentGateway())
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    assert engine.get_booking(booking_id).payment_reference is None
    engine.confirm_booking("provider_1", booking_id)
    assert engine.complete_booking("provider_1", booking_id).status == "completed"


def test_analytics_records_each_transition(engine, sink):
    service_id = open_service(engine, price_max=60)
    booking_id = engine.book_service("client_1", service_id, 1000)
    engine.confirm_booking("provider_1", booking_id)
    engine.complete_booking("provider_1", booking_id)

    assert [record[0] for record in sink.records] == [
        "booking_created",
        "booking_confirmed",
        "booking_completed",
    ]
    assert sink.records[0][1] == "client_1"
    assert sink.records[0][2] == 60
    assert sink.records[0][3]["booking_id"] == booking_id


def test_analytics_failure_never_blocks_booking(make_engine):
    class ExplodingSink:
        def record_transaction(self, metric_type, account_id, amount, metadata):
            raise RuntimeError("metrics backend down")

    engine = make_engine(analytics_sink=ExplodingSink())
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    assert engine.cancel_booking("client_1", booking_id).status == "cancelled"


def test_stale_pending_sweep_is_disabled_by_default(engine, clock):
    service_id = open_service(engine)
    engine.book_service("client_1", service_id, 1000)
    clock.now += 10 ** 9
    assert engine.expire_stale_pending() == []


def test_stale_pending_sweep_cancels_and_releases(make_engine, clock, payments):
    engine = make_engine(pending_ttl_seconds=600)
    service_id = open_service(engine, start_times=(1000, 2000))
    stale = engine.book_service("client_1", service_id, 1000)
    clock.now += 300
    fresh = engine.book_service("client_2", service_id, 2000)
    engine.confirm_booking("provider_1", fresh)

    clock.now += 400
    assert engine.expire_stale_pending() == [stale]
    assert engine.get_booking(stale).status == "cancelled"
    assert engine.get_booking(fresh).status == "confirmed"
    assert engine.ledger.check_availability(service_id, 1000) is True
    assert ("refund", f"esc_{stale}") in payments.calls


def test_gateway_without_reference_is_still_notified(make_engine):
    class ReferencelessPayments(RecordingPayments):
        def establish_escrow(self, booking_id, price_min, price_max):
            super().establish_escrow(booking_id, price_min, price_max)
            return None

    payments = ReferencelessPayments()
    engine = make_engine(payment_gateway=payments)
    service_id = open_service(engine, start_times=(1000, 2000))
    completed = engine.book_service("client_1", service_id, 1000)
    cancelled = engine.book_service("client_2", service_id, 2000)

    engine.confirm_booking("provider_1", completed)
    engine.complete_booking("provider_1", completed)
    engine.cancel_booking("client_2", cancelled)

    assert engine.get_booking(completed).payment_reference is None
    assert payments.calls.count(("release_funds", None)) == 1
    assert payments.calls.count(("refund", None)) == 1
    assert payments.names().count("release_funds") == 1
    assert payments.names().count("refund") == 1


def test_write_failure_after_release_is_logged_for_reconciliation(engine, payments, clock, caplog):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)
    engine.confirm_booking("provider_1", booking_id)

    release = payments.release_funds

    def release_then_fail_write(payment_reference):
        release(payment_reference)
        clock.error = sqlite3.OperationalError("disk I/O error")

    payments.release_funds = release_then_fail_write

    with caplog.at_level(logging.ERROR, logger="slotbook.services.booking_engine"):
        with pytest.raises(sqlite3.OperationalError):
            engine.complete_booking("provider_1", booking_id)

    clock.error = None
    assert engine.get_booking(booking_id).status == "confirmed"
    assert payments.names().count("release_funds") == 1
    messages = [record.getMessage() for record in caplog.records]
    assert any("needs reconciliation" in message and f"esc_{booking_id}" in message for message in messages)


def test_write_failure_after_refund_keeps_slot_held(engine, payments, clock, caplog):
    service_id = open_service(engine)
    booking_id = engine.book_service("client_1", service_id, 1000)

    refund = payments.refund

    def refund_then_fail_write(payment_reference):
        refund(payment_reference)
        clock.error = sqlite3.OperationalError("disk I/O error")

    payments.refund = refund_then_fail_write

    with caplog.at_level(logging.ERROR, logger="slotbook.services.booking_engine"):
        with pytest.raises(sqlite3.OperationalError):
            engine.cancel_booking("client_1", booking_id)

    clock.error = None
    assert engine.get_booking(booking_id).status == "pending"
    assert engine.ledger.check_availability(service_id, 1000) is False
    assert any("after refund" in record.getMessage() for record in caplog.records)
