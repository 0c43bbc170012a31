from fastapi import APIRouter, Depends, HTTPException, Query

from slotbook.auth import require_authenticated_user
from slotbook.dependencies import get_engine
from slotbook.models import (
    AvailabilitySlot,
    AvailabilityUpdateRequest,
    Service,
    ServiceCreateRequest,
    ServicePage,
    ServiceStatusUpdateRequest,
    ServiceUpdateRequest,
)
from slotbook.services.booking_engine import BookingEngine
from slotbook.services.errors import (
    BookingEngineError,
    CollaboratorError,
    InvalidInputError,
    NotFoundError,
    UnauthorizedError,
)

router = APIRouter(tags=["services"])

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def raise_engine_http_error(exc: Exception) -> None:
    code = getattr(exc, "code", "error")
    headers = {"X-Error-Code": code}
    if isinstance(exc, CollaboratorError):
        raise HTTPException(status_code=502, detail=str(exc), headers=headers)
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc), headers=headers)
    if isinstance(exc, UnauthorizedError):
        raise HTTPException(status_code=403, detail=str(exc), headers=headers)
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=400, detail=str(exc), headers=headers)
    raise HTTPException(status_code=409, detail=str(exc), headers=headers)


@router.get("/by-category/{category_id}", response_model=ServicePage)
def services_by_category(
    category_id: int,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=0, le=MAX_PAGE_SIZE),
    engine: BookingEngine = Depends(get_engine),
):
    total, items = engine.get_services_by_category(category_id, offset, limit)
    return ServicePage(total=total, items=items)


@router.get("/by-provider/{provider_id}", response_model=ServicePage)
def services_by_provider(
    provider_id: str,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=0, le=MAX_PAGE_SIZE),
    engine: BookingEngine = Depends(get_engine),
):
    total, items = engine.get_services_by_provider(provider_id, offset, limit)
    return ServicePage(total=total, items=items)


@router.post("", response_model=Service)
def create_service(
    request: ServiceCreateRequest,
    user_id: str = Depends(require_authenticated_user),
    engine: BookingEngine = Depends(get_engine),
):
    try:
        service_id = engine.catalog.create_service(
            user_id,
            title=request.title,
            description=request.description,
            category_id=request.category_id,
            price_min=request.price_min,
            price_max=request.price_max,
            duration_minutes=request.duration_minutes,
        )
        return engine.catalog.get_service(service_id)
    except (BookingEngineError, CollaboratorError) as exc:
        raise_engine_http_error(exc)


@router.get("/{service_id}", response_model=Service)
def service_details(service_id: int, engine: BookingEngine = Depends(get_engine)):
    try:
        return engine.catalog.get_service(service_id)
    except BookingEngineError as exc:
        raise_engine_http_error(exc)


@router.post("/{service_id}/update", response_model=Service)
def update_service(
    service_id: int,
    request: ServiceUpdateRequest,
    user_id: str = Depends(require_authenticated_user),
    engine: BookingEngine = Depends(get_engine),
):
    try:
        return engine.catalog.update_service(
            user_id,
            service_id,
            title=request.title,
            description=request.description,
            category_id=request.category_id,
            price_min=request.price_min,
            price_max=request.price_max,
            duration_minutes=request.duration_minutes,
        )
    except (BookingEngineError, CollaboratorError) as exc:
        raise_engine_http_error(exc)


@router.post("/{service_id}/status", response_model=Service)
def set_service_status(
    service_id: int,
    request: ServiceStatusUpdateRequest,
    user_id: str = Depends(require_authenticated_user),
    engine: BookingEngine = Depends(get_engine),
):
    try:
        return engine.catalog.set_service_status(user_id, service_id, request.status)
    except BookingEngineError as exc:
        raise_engine_http_error(exc)


@router.get("/{service_id}/availability", response_model=list[AvailabilitySlot])
def list_availability(service_id: int, engine: BookingEngine = Depends(get_engine)):
    try:
        slots = engine.ledger.list_slots(service_id)
    except BookingEngineError as exc:
        raise_engine_http_error(exc)
    return [AvailabilitySlot(service_id=service_id, start_time=start, available=available) for start, available in slots]


@router.get("/{service_id}/availability/{start_time}", response_model=AvailabilitySlot)
def check_availability(service_id: int, start_time: int, engine: BookingEngine = Depends(get_engine)):
    available = engine.ledger.check_availability(service_id, start_time)
    return AvailabilitySlot(service_id=service_id, start_time=start_time, available=available)


@router.put("/{service_id}/availability/{start_time}", response_model=AvailabilitySlot)
def set_availability(
    service_id: int,
    start_time: int,
    request: AvailabilityUpdateRequest,
    user_id: str = Depends(require_authenticated_user),
    engine: BookingEngine = Depends(get_engine),
):
    try:
        engine.ledger.set_availability(user_id, service_id, start_time, request.available)
    except BookingEngineError as exc:
        raise_engine_http_error(exc)
    return AvailabilitySlot(
        service_id=service_id,
        start_time=start_time,
        available=engine.ledger.check_availability(service_id, start_time),
    )
