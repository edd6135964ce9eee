"""Read access to the tenant catalog: organizations, hours, products."""

from decimal import Decimal
from typing import Dict, Iterable, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from libs.common.config import get_settings
from libs.common.datetime_utils import resolve_timezone
from libs.common.logging import get_logger
from services.orders_service.exceptions import OrganizationNotFoundError
from services.orders_service.models import BusinessHours, Organization, Product
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def get_organization_by_slug(db: AsyncSession, slug: str) -> Organization:
    result = await db.execute(
        select(Organization).where(
            Organization.slug == (slug or "").strip().lower(),
            Organization.is_active.is_(True),
        )
    )
    org = result.scalar_one_or_none()
    if org is None:
        raise OrganizationNotFoundError("Restaurant not found.")
    return org


async def get_business_hours(db: AsyncSession, organization_id) -> List[BusinessHours]:
    result = await db.execute(
        select(BusinessHours)
        .where(BusinessHours.organization_id == organization_id)
        .order_by(BusinessHours.day_of_week)
    )
    return list(result.scalars().all())


async def get_products(
    db: AsyncSession, organization_id, product_ids: Iterable
) -> Dict:
    """Products of this organization among ``product_ids``, keyed by id."""
    ids = set(product_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(Product).where(
            Product.organization_id == organization_id, Product.id.in_(ids)
        )
    )
    return {product.id: product for product in result.scalars().all()}


def tax_rate_for(org: Organization) -> Decimal:
    if org.tax_rate_percent is not None:
        return Decimal(org.tax_rate_percent)
    return get_settings().DEFAULT_TAX_RATE_PERCENT


def prep_buffer_for(org: Organization) -> int:
    if org.prep_buffer_minutes is not None:
        return org.prep_buffer_minutes
    return get_settings().DEFAULT_PREP_BUFFER_MINUTES


def timezone_for(org: Organization) -> ZoneInfo:
    try:
        return resolve_timezone(org.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(
            "Unknown timezone %r for organization %s; using default",
            org.timezone,
            org.slug,
        )
        return resolve_timezone()
