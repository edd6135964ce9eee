"""Enum definitions for orders service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    COMPLETED = "completed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class FulfillmentType(str, enum.Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class ActorRole(str, enum.Enum):
    SYSTEM = "system"
    OWNER = "owner"
    MANAGER = "manager"
    ADMIN = "admin"
    STAFF = "staff"


class AuthorizationState(str, enum.Enum):
    PENDING = "pending"  # row reserved, gateway not answered yet
    AUTHORIZED = "authorized"  # client secret handed out
    SUCCEEDED = "succeeded"  # gateway confirmed the charge
    FAILED = "failed"


class DispatchState(str, enum.Enum):
    RESERVED = "reserved"  # row inserted, courier call in flight
    DISPATCHED = "dispatched"
    FAILED = "failed"
    CANCELED = "canceled"
    DELIVERED = "delivered"
