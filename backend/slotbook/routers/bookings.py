import logging

from fastapi import APIRouter, Depends, Query

from slotbook.auth import require_authenticated_user
from slotbook.dependencies import get_engine
from slotbook.models import Booking, BookingPage, BookingRequest
from slotbook.routers.services import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, raise_engine_http_error
from slotbook.services.booking_engine import BookingEngine
from slotbook.services.errors import BookingEngineError, CollaboratorError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])


def _expire_stale_pending(engine: BookingEngine) -> None:
    expired = engine.expire_stale_pending()
    if expired:
        logger.info("Released %s stale pending bookings", len(expired))


@router.post("", response_model=Booking)
def book_service(
    request: BookingRequest,
    user_id: str = Depends(require_authenticated_user),
    engine: BookingEngine = Depends(get_engine),
):
    try:
        booking_id = engine.book_service(user_id, request.service_id, request.start_time)
        return engine.get_booking(booking_id)
    except (BookingEngineError, CollaboratorError) as exc:
        raise_engine_http_error(exc)


@router.get("/by-client/{client_id}", response_model=BookingPage)
def client_bookings(
    client_id: str,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=0, le=MAX_PAGE_SIZE),
    engine: BookingEngine = Depends(get_engine),
):
    _expire_stale_pending(engine)
    total, items = engine.get_client_bookings(client_id, offset, limit)
    return BookingPage(total=total, items=items)


@router.get("/by-provider/{provider_id}", response_model=BookingPage)
def provider_bookings(
    provider_id: str,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=0, le=MAX_PAGE_SIZE),
    engine: BookingEngine = Depends(get_engine),
):
    _expire_stale_pending(engine)
    total, items = engine.get_provider_bookings(provider_id, offset, limit)
    return BookingPage(total=total, items=items)


@router.get("/by-service/{service_id}", response_model=BookingPage)
def service_bookings(
    service_id: int,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=0, le=MAX_PAGE_SIZE),
    engine: BookingEngine = Depends(get_engine),
):
    _expire_stale_pending(engine)
    total, items = engine.get_service_bookings(service_id, offset, limit)
    return BookingPage(total=total, items=items)


@router.get("/{booking_id}", response_model=Booking)
def booking_details(booking_id: int, engine: BookingEngine = Depends(get_engine)):
    _expire_stale_pending(engine)
    try:
        return engine.get_booking(booking_id)
    except BookingEngineError as exc:
        raise_engine_http_error(exc)


@router.post("/{booking_id}/confirm", response_model=Booking)
def confirm_booking(
    booking_id: int,
    user_id: str = Depends(require_authenticated_user),
    engine: BookingEngine = Depends(get_engine),
):
    try:
        return engine.confirm_booking(user_id, booking_id)
    except (BookingEngineError, CollaboratorError) as exc:
        raise_engine_http_error(exc)


@router.post("/{booking_id}/complete", response_model=Booking)
def complete_booking(
    booking_id: int,
    user_id: str = Depends(require_authenticated_user),
    engine: BookingEngine = Depends(get_engine),
):
    try:
        return engine.complete_booking(user_id, booking_id)
    except (BookingEngineError, CollaboratorError) as exc:
        raise_engine_http_error(exc)


@router.post("/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: int,
    user_id: str = Depends(require_authenticated_user),
    engine: BookingEngine = Depends(get_engine),
):
    try:
        return engine.cancel_booking(user_id, booking_id)
    except (BookingEngineError, CollaboratorError) as exc:
        raise_engine_http_error(exc)
