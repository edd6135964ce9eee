"""Orders Service models package."""

from services.orders_service.models.catalog import BusinessHours, Organization, Product
from services.orders_service.models.commerce import (
    Order,
    OrderEvent,
    OrderItem,
    PaymentAuthorization,
)
from services.orders_service.models.dispatch import DeliveryJob
from services.orders_service.models.enums import (
    ActorRole,
    AuthorizationState,
    DispatchState,
    FulfillmentType,
    OrderStatus,
)

__all__ = [
    "ActorRole",
    "AuthorizationState",
    "BusinessHours",
    "DeliveryJob",
    "DispatchState",
    "FulfillmentType",
    "Order",
    "OrderEvent",
    "OrderItem",
    "OrderStatus",
    "Organization",
    "PaymentAuthorization",
    "Product",
]
