"""Orders service routers package."""

from services.orders_service.routers.owner import router as owner_router
from services.orders_service.routers.storefront import router as storefront_router
from services.orders_service.routers.tracking import router as tracking_router
from services.orders_service.routers.webhooks import router as webhooks_router

__all__ = [
    "owner_router",
    "storefront_router",
    "tracking_router",
    "webhooks_router",
]
