from typing import Optional

from slotbook.models import Booking
from slotbook.services.errors import UnauthorizedError


class AccessPolicy:
    """Ownership checks shared by the catalog, the ledger and the booking engine."""

    def require_caller(self, caller_id: Optional[str]) -> str:
        if caller_id is None or not str(caller_id).strip():
            raise UnauthorizedError("Caller identity could not be resolved")
        return str(caller_id)

    def require_provider(self, caller_id: Optional[str], provider_id: str, action: str) -> str:
        caller = self.require_caller(caller_id)
        if caller != provider_id:
            raise UnauthorizedError(f"Only the provider can {action}")
        return caller

    def require_party(self, caller_id: Optional[str], booking: Booking, action: str) -> str:
        caller = self.require_caller(caller_id)
        if caller not in {booking.client_id, booking.provider_id}:
            raise UnauthorizedError(f"Only the client or the provider can {action}")
        return caller
