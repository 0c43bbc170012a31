from typing import Literal, Optional

from pydantic import BaseModel, Field

ServiceStatus = Literal["active", "paused", "inactive"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled", "disputed"]


class Service(BaseModel):
    id: int
    provider_id: str
    title: str
    description: str
    category_id: int
    price_min: int
    price_max: int
    duration_minutes: int
    status: ServiceStatus
    created_at: int
    updated_at: int


class Booking(BaseModel):
    id: int
    service_id: int
    client_id: str
    provider_id: str
    start_time: int
    end_time: int
    price_min: int
    price_max: int
    payment_reference: Optional[str] = None
    status: BookingStatus
    created_at: int
    updated_at: int


class AvailabilitySlot(BaseModel):
    service_id: int
    start_time: int
    available: bool


class ServicePage(BaseModel):
    total: int
    items: list[Service]


class BookingPage(BaseModel):
    total: int
    items: list[Booking]


class ServiceCreateRequest(BaseModel):
    title: str
    description: str = ""
    category_id: int
    price_min: int = Field(ge=0)
    price_max: int = Field(ge=0)
    duration_minutes: int


class ServiceUpdateRequest(ServiceCreateRequest):
    pass


class ServiceStatusUpdateRequest(BaseModel):
    status: ServiceStatus


class AvailabilityUpdateRequest(BaseModel):
    available: bool


class BookingRequest(BaseModel):
    service_id: int
    start_time: int


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
