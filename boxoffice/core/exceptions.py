"""
Custom application exceptions
"""

from typing import Optional, Dict, Any


class BoxOfficeException(Exception):
    """Base exception for the reservation engine"""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BoxOfficeException):
    """Validation errors"""

    def __init__(self, message: str, field: Optional[str] = None, code: str = "VALIDATION_ERROR"):
        details = {"field": field} if field else {}
        super().__init__(
            message=message,
            code=code,
            status_code=400,
            details=details
        )


class InvalidQuantityError(ValidationError):
    """Requested ticket quantity is out of range"""

    def __init__(self, quantity: int, maximum: Optional[int] = None):
        message = f"Invalid ticket quantity: {quantity}"
        if maximum is not None:
            message = f"Ticket quantity must be between 1 and {maximum}, got {quantity}"
        super().__init__(message, field="quantity", code="INVALID_QUANTITY")


class InvalidSectionError(ValidationError):
    """Section is inactive or does not belong to the requested showtime"""

    def __init__(self, message: str = "Section does not belong to specified showtime"):
        super().__init__(message, field="section_id", code="INVALID_SECTION")


class TaskPayloadError(ValidationError):
    """Queued task payload failed schema validation"""

    def __init__(self, task_name: str, message: str):
        super().__init__(
            f"Invalid payload for task {task_name}: {message}",
            field="payload",
            code="INVALID_TASK_PAYLOAD"
        )


class AuthenticationError(BoxOfficeException):
    """Authentication related errors"""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="AUTH_ERROR",
            status_code=401,
            details=details
        )


class AuthorizationError(BoxOfficeException):
    """Authorization related errors"""

    def __init__(self, message: str = "Not authorized", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="AUTH_FORBIDDEN",
            status_code=403,
            details=details
        )


class NotFoundError(BoxOfficeException):
    """Resource not found errors"""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id {identifier} not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource}
        )


class ConflictError(BoxOfficeException):
    """Wrong state transition or concurrent modification"""

    retryable = True

    def __init__(self, message: str, details: Optional[Dict] = None, code: str = "CONFLICT"):
        super().__init__(
            message=message,
            code=code,
            status_code=409,
            details=details
        )


class InvalidStateError(ConflictError):
    """Operation is not allowed from the booking's current status"""

    retryable = False

    def __init__(self, message: str, current_status: Any = None):
        details = {"status": getattr(current_status, "value", current_status)} if current_status else {}
        super().__init__(message=message, details=details, code="INVALID_STATE")


class LockUnavailableError(ConflictError):
    """Failed to acquire a distributed lock within the retry budget"""

    def __init__(self, resource: str):
        super().__init__(
            message=f"Resource is busy, try again shortly: {resource}",
            code="LOCK_BUSY",
            details={"resource": resource}
        )


class InsufficientInventoryError(BoxOfficeException):
    """Not enough seats or tickets left in a section"""

    def __init__(self, section_id: Any, requested: int, available: int):
        super().__init__(
            message=f"Not enough seats available. Requested: {requested}, Available: {available}",
            code="INSUFFICIENT_INVENTORY",
            status_code=400,
            details={
                "section_id": str(section_id),
                "requested": requested,
                "available": available
            }
        )


class PaymentRejectedError(BoxOfficeException):
    """Payment proof failed gateway verification"""

    def __init__(self, message: str = "Payment verification failed", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="PAYMENT_REJECTED",
            status_code=402,
            details=details
        )


class ExternalServiceError(BoxOfficeException):
    """External service error"""

    retryable = True

    def __init__(self, service: str, message: str = None):
        super().__init__(
            message=message or f"External service {service} is unavailable",
            code="EXTERNAL_SERVICE_ERROR",
            status_code=503,
            details={"service": service}
        )


class GatewayRejectedError(ExternalServiceError):
    """External service refused the request; repeating it will not help"""

    retryable = False

    def __init__(self, service: str, message: str, details: Optional[Dict] = None):
        super().__init__(service, message)
        self.code = "EXTERNAL_SERVICE_REJECTED"
        self.status_code = 502
        self.details.update(details or {})


class InternalError(BoxOfficeException):
    """Unexpected failure, surfaced without internals"""

    retryable = True

    def __init__(self, message: str = "An internal server error occurred"):
        super().__init__(
            message=message,
            code="INTERNAL_ERROR",
            status_code=500
        )
