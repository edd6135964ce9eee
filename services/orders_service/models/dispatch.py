"""Courier dispatch model: one delivery job per order."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.orders_service.models.commerce import JSONType
from services.orders_service.models.enums import DispatchState, enum_values
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class DeliveryJob(Base):
    """Courier-network delivery for an order.

    The row doubles as the dispatch reservation: it is inserted (state
    ``reserved``) before the courier is called, and the unique
    ``idempotency_key`` (the order id) guarantees a single job per order.
    """

    __tablename__ = "delivery_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False
    )

    state: Mapped[DispatchState] = mapped_column(
        SAEnum(DispatchState, values_callable=enum_values, name="dispatch_state_enum"),
        default=DispatchState.RESERVED,
        nullable=False,
    )
    # Courier vocabulary, stored verbatim
    courier_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    external_delivery_id: Mapped[Optional[str]] = mapped_column(
        String(100), index=True, nullable=True
    )
    tracking_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    pickup_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    dropoff_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    fee_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pickup_eta: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    dropoff_eta: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<DeliveryJob order={self.order_id} state={self.state}>"
