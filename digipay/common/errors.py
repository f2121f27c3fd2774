"""Domain exceptions surfaced by the engine."""

from typing import Any


ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
NOT_ELIGIBLE = "NOT_ELIGIBLE"
PRICE_NOT_FOUND = "PRICE_NOT_FOUND"
PAYMENT_CREATE_FAILED = "PAYMENT_CREATE_FAILED"
SESSION_IN_PROGRESS = "SESSION_IN_PROGRESS"
ALREADY_DELIVERED = "ALREADY_DELIVERED"
DELIVERY_IN_PROGRESS = "DELIVERY_IN_PROGRESS"
INVALID_REQUEST = "INVALID_REQUEST"

STATUS_BY_CODE = {
    ORDER_NOT_FOUND: 404,
    PRODUCT_NOT_FOUND: 404,
    NOT_ELIGIBLE: 400,
    PRICE_NOT_FOUND: 400,
    PAYMENT_CREATE_FAILED: 502,
    SESSION_IN_PROGRESS: 409,
    ALREADY_DELIVERED: 409,
    DELIVERY_IN_PROGRESS: 409,
    INVALID_REQUEST: 400,
}


class EngineError(Exception):
    """Checkout/admin facing failure with a machine-readable code."""

    def __init__(self, code: str, message: str, **details: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE.get(self.code, 400)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class WebhookError(Exception):
    """Provider-facing rejection; only 400, 401 and 404 are ever used."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ConcurrentUpdateError(RuntimeError):
    """A conditional write lost against a concurrent writer."""


class StockContentionError(RuntimeError):
    """Unused stock exists but every claim attempt lost to a concurrent claimer."""
