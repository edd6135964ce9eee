"""Typed errors raised by the orders service.

Each error carries a stable ``code`` the storefront maps to localized copy,
the HTTP status it renders with, and whether retrying the same request is
safe (idempotency keys make gateway/courier failures retryable).
"""

from typing import Optional, Sequence


class OrderServiceError(Exception):
    code = "ORDER_SERVICE_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, extra: Optional[dict] = None):
        self.message = message
        self.extra = extra or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code, "retryable": self.retryable}
        body.update(self.extra)
        return body


class InvalidCustomerError(OrderServiceError):
    code = "INVALID_CUSTOMER"
    status_code = 422


class ItemsUnavailableError(OrderServiceError):
    code = "ITEMS_UNAVAILABLE"
    status_code = 409

    def __init__(self, product_ids: Sequence[str]):
        self.product_ids = [str(pid) for pid in product_ids]
        super().__init__(
            "Some items are no longer available.",
            extra={"unavailable_items": self.product_ids},
        )


class OrganizationNotFoundError(OrderServiceError):
    code = "ORG_NOT_FOUND"
    status_code = 404


class OrderNotFoundError(OrderServiceError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class InvalidCheckoutError(OrderServiceError):
    code = "INVALID_CHECKOUT"
    status_code = 400


class StoreClosedError(OrderServiceError):
    code = "STORE_CLOSED"
    status_code = 409


class RateLimitedError(OrderServiceError):
    code = "RATE_LIMITED"
    status_code = 429
    retryable = True


class GatewayError(OrderServiceError):
    code = "GATEWAY_ERROR"
    status_code = 502
    retryable = True


class ForbiddenTransition(OrderServiceError):
    """Rejected status change.

    ``reason`` is ``role`` (privilege), ``illegal`` (not an edge of the
    lifecycle) or ``stale`` (another actor moved the order first).
    """

    code = "FORBIDDEN_TRANSITION"
    status_code = 409

    def __init__(self, current: str, target: str, role: str, reason: str):
        self.current = current
        self.target = target
        self.role = role
        self.reason = reason
        if reason == "role":
            message = f"Role '{role}' may not move an order from {current} to {target}."
        elif reason == "stale":
            message = f"Order is already {current}; it was updated by someone else."
        else:
            message = f"Cannot move an order from {current} to {target}."
        super().__init__(
            message,
            extra={"current_status": current, "requested_status": target},
        )


class NotDeliverableError(OrderServiceError):
    code = "NOT_DELIVERABLE"
    status_code = 400


class DispatchError(OrderServiceError):
    code = "DISPATCH_FAILED"
    status_code = 502
    retryable = True
