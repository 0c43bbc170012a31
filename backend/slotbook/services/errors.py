class BookingEngineError(ValueError):
    """Base class for user-visible booking engine errors."""

    code = "invalid_request"


class UnauthorizedError(BookingEngineError):
    code = "unauthorized"


class NotFoundError(BookingEngineError):
    code = "not_found"


class ServiceNotActiveError(BookingEngineError):
    code = "service_not_active"


class SlotUnavailableError(BookingEngineError):
    code = "slot_unavailable"


class InvalidStateTransitionError(BookingEngineError):
    code = "invalid_state_transition"


class InvalidInputError(BookingEngineError):
    code = "invalid_input"


class CollaboratorError(RuntimeError):
    """Raised when a downstream system fails, as opposed to a rejected request."""

    code = "collaborator_failed"


class PaymentCollaboratorError(CollaboratorError):
    code = "payment_failed"
