from typing import Iterable, Optional


# Error codes
class ErrorCode:
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    DOWNSTREAM_UNAVAILABLE = "DOWNSTREAM_UNAVAILABLE"


class RequisitionError(Exception):
    """Base class for failures surfaced to the caller"""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {"error_code": self.error_code, "message": self.message}


class ValidationFailed(RequisitionError):
    error_code = ErrorCode.VALIDATION_FAILED
    status_code = 400


class InvalidArgument(ValidationFailed):
    """A required identifier was empty or missing"""


class NotFound(RequisitionError):
    error_code = ErrorCode.NOT_FOUND
    status_code = 404


class PermissionDenied(RequisitionError):
    error_code = ErrorCode.PERMISSION_DENIED
    status_code = 403


class InvalidState(RequisitionError):
    """
    A transition was attempted from the wrong status.

    Carries the status the requisition is actually in and the status(es)
    the transition requires.
    """

    error_code = ErrorCode.INVALID_STATE
    status_code = 409

    def __init__(self, current, expected: Iterable, message: Optional[str] = None):
        self.current = current
        self.expected = tuple(expected)
        expected_text = " or ".join(str(getattr(s, "value", s)) for s in self.expected) or "none"
        current_text = getattr(current, "value", current)
        super().__init__(
            message or f"Requisition is {current_text}, expected {expected_text}"
        )

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["current_status"] = getattr(self.current, "value", self.current)
        detail["expected_status"] = [getattr(s, "value", s) for s in self.expected]
        return detail


class DownstreamUnavailable(RequisitionError):
    """Notification delivery or storage backing a collaborator failed"""

    error_code = ErrorCode.DOWNSTREAM_UNAVAILABLE
    status_code = 503


class InsufficientStock:
    """
    Advisory shortage for one product.

    Never raised: issuance records it in the notes and returns it to the
    caller as a warning.
    """

    error_code = ErrorCode.INSUFFICIENT_STOCK

    def __init__(self, product_id: str, name: str, unit: str, requested: int, available: int):
        self.product_id = product_id
        self.name = name
        self.unit = unit
        self.requested = requested
        self.available = available

    @property
    def shortage(self) -> int:
        return max(0, self.requested - self.available)

    def describe(self) -> str:
        return (
            f"{self.name}: Requested {self.requested} {self.unit}, "
            f"Available {self.available} {self.unit} (Shortage: {self.shortage} {self.unit})"
        )

    def to_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "name": self.name,
            "unit": self.unit,
            "requested": self.requested,
            "available": self.available,
            "shortage": self.shortage,
        }
