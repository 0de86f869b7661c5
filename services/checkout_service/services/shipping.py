"""Shipping zone resolution and cost calculation."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence

from libs.common.currency import ZERO, quantize
from libs.common.errors import NotFoundError, ShippingUnavailableError
from libs.common.logging import get_logger
from services.checkout_service.clients.carrier import (
    Address,
    CarrierAdapter,
    CarrierRate,
    Package,
    get_carrier_adapter,
)
from services.checkout_service.models import (
    BASE_CURRENCY,
    Product,
    ProductVariant,
    ShippingZone,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

GRAMS_PER_KG = Decimal("1000")


@dataclass
class ShippingCost:
    base_cost: Decimal
    weight_cost: Decimal
    original_cost: Decimal
    total_cost: Decimal
    free_shipping_applied: bool


@dataclass
class ShippingQuote:
    zone_id: str
    zone_name: str
    base_cost: Decimal
    weight_cost: Decimal
    total_cost: Decimal
    original_cost: Decimal
    free_shipping_applied: bool
    free_shipping_threshold: Optional[Decimal]
    estimated_days_min: int
    estimated_days_max: int
    total_weight: Decimal
    total_value: Decimal
    currency: str = BASE_CURRENCY
    carrier_rates: List[CarrierRate] = field(default_factory=list)


def calculate_shipping_cost(
    base_rate,
    per_kg_rate,
    total_weight_kg,
    total_value,
    free_shipping_threshold=None,
) -> ShippingCost:
    """base + weight x per_kg, zeroed when value reaches the threshold."""
    base_cost = quantize(base_rate)
    weight_cost = quantize(Decimal(total_weight_kg) * Decimal(per_kg_rate))
    original = quantize(base_cost + weight_cost)

    free = (
        free_shipping_threshold is not None
        and Decimal(total_value) >= Decimal(free_shipping_threshold)
    )
    return ShippingCost(
        base_cost=base_cost,
        weight_cost=weight_cost,
        original_cost=original,
        total_cost=ZERO if free else original,
        free_shipping_applied=free,
    )


class ShippingPlanner:
    def __init__(self, carrier: Optional[CarrierAdapter] = None):
        self.carrier = carrier or get_carrier_adapter()

    @staticmethod
    async def list_zones(db: AsyncSession) -> List[ShippingZone]:
        result = await db.execute(
            select(ShippingZone)
            .where(ShippingZone.is_active.is_(True))
            .order_by(ShippingZone.name)
        )
        return list(result.scalars().all())

    @staticmethod
    async def resolve_zone(db: AsyncSession, country_code: str) -> ShippingZone:
        """First active zone covering the country; cheapest base rate wins."""
        result = await db.execute(
            select(ShippingZone)
            .where(ShippingZone.is_active.is_(True))
            .order_by(ShippingZone.base_rate.asc(), ShippingZone.name.asc())
        )
        for zone in result.scalars().all():
            if zone.covers(country_code):
                return zone
        raise ShippingUnavailableError(country_code.upper())

    @staticmethod
    async def measure(db: AsyncSession, items: Sequence) -> tuple[Decimal, Decimal]:
        """Return (total weight in kg, total value) for the cart lines."""
        product_ids = {item.product_id for item in items}
        variant_ids = {item.variant_id for item in items if item.variant_id}

        products = {}
        if product_ids:
            result = await db.execute(select(Product).where(Product.id.in_(product_ids)))
            products = {p.id: p for p in result.scalars().all()}

        variants = {}
        if variant_ids:
            result = await db.execute(
                select(ProductVariant).where(ProductVariant.id.in_(variant_ids))
            )
            variants = {v.id: v for v in result.scalars().all()}

        total_grams = Decimal("0")
        total_value = Decimal("0")
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                raise NotFoundError(f"Product {item.product_id} not found")

            variant = None
            if item.variant_id:
                variant = variants.get(item.variant_id)
                if variant is None or variant.product_id != product.id:
                    raise NotFoundError(f"Variant {item.variant_id} not found")

            grams = product.weight_grams or 0
            if variant is not None and variant.weight_grams is not None:
                grams = variant.weight_grams
            unit_value = Decimal(product.base_price)
            if variant is not None:
                unit_value += Decimal(variant.price_adjustment or 0)

            total_grams += Decimal(grams) * item.quantity
            total_value += unit_value * item.quantity

        return total_grams / GRAMS_PER_KG, quantize(total_value)

    async def _carrier_rates(
        self,
        sender: Address,
        destination: Address,
        total_weight: Decimal,
        total_value: Decimal,
    ) -> List[CarrierRate]:
        package = Package(weight_kg=total_weight, declared_value=total_value)
        try:
            result = await self.carrier.get_rates(sender, destination, [package])
        except Exception:
            logger.warning("Carrier rate lookup raised", exc_info=True)
            return []
        if not result.ok:
            logger.warning(
                "Carrier rates unavailable, using zone pricing: %s",
                result.error.message,
            )
            return []
        return result.value

    async def quote(
        self,
        db: AsyncSession,
        destination_country: str,
        items: Sequence,
        sender: Optional[Address] = None,
        destination: Optional[Address] = None,
    ) -> ShippingQuote:
        """
        Price shipping for a cart.

        Args:
            destination_country: ISO country code of the recipient
            items: objects with ``product_id``, ``variant_id`` and ``quantity``
            sender: origin address; live carrier quotes are only requested
                when this is given and the carrier is configured
            destination: optional full recipient address for carrier quotes
        """
        country = destination_country.upper()
        total_weight, total_value = await self.measure(db, items)
        zone = await self.resolve_zone(db, country)

        cost = calculate_shipping_cost(
            zone.base_rate,
            zone.per_kg_rate,
            total_weight,
            total_value,
            zone.free_shipping_threshold,
        )

        carrier_rates: List[CarrierRate] = []
        if sender is not None and self.carrier.enabled:
            carrier_rates = await self._carrier_rates(
                sender,
                destination or Address(country_code=country),
                total_weight,
                total_value,
            )

        return ShippingQuote(
            zone_id=str(zone.id),
            zone_name=zone.name,
            base_cost=cost.base_cost,
            weight_cost=cost.weight_cost,
            total_cost=cost.total_cost,
            original_cost=cost.original_cost,
            free_shipping_applied=cost.free_shipping_applied,
            free_shipping_threshold=zone.free_shipping_threshold,
            estimated_days_min=zone.estimated_days_min,
            estimated_days_max=zone.estimated_days_max,
            total_weight=quantize(total_weight, 3),
            total_value=total_value,
            carrier_rates=carrier_rates,
        )


def get_shipping_planner() -> ShippingPlanner:
    return ShippingPlanner()
