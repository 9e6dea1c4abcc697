"""Error taxonomy shared by the HTTP and bot surfaces.

Every error carries the HTTP status it maps to and the short message that is
safe to show a client. Internal details go to the log, never into `message`.
"""

from typing import Optional


class ServiceError(Exception):
    status = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError):
    status = 400
    default_message = "Invalid request"


class AuthError(ServiceError):
    status = 403
    default_message = "Invalid initData"


class Unauthorized(AuthError):
    status = 401
    default_message = "Unauthorized"


class NotFoundError(ServiceError):
    status = 404
    default_message = "Not found"


class ConflictError(ServiceError):
    """A valid request that the current state does not allow."""

    status = 400
    default_message = "Conflict"


class NotEnoughStars(ConflictError):
    default_message = "NOT_ENOUGH_STARS"


class InvalidTransition(ConflictError):
    def __init__(self, order_id: str, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order cannot move from {current} to {target}")


class UpstreamUnavailable(ServiceError):
    status = 503
    default_message = "Service temporarily unavailable"


class MenuUnavailable(UpstreamUnavailable):
    default_message = "Menu is currently unavailable"


class RateLimited(ServiceError):
    status = 429
    default_message = "Order already placed recently"


class InternalError(ServiceError):
    pass
