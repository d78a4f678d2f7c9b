"""
Pricing Service - pure order pricing

No I/O here: the same line items and delivery fee always produce the same
breakdown, and total is built from the already-rounded parts so
``total == subtotal + delivery_fee + service_fee + tax - discount`` holds
to the cent.
"""
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from app.core.config import settings
from app.domain.money import ZERO, round_money, percent_of, to_decimal

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class PricingLine:
    """A priced line item: unit price and quantity"""
    price: Decimal
    quantity: int


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: Decimal
    delivery_fee: Decimal
    service_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "subtotal": self.subtotal,
            "delivery_fee": self.delivery_fee,
            "service_fee": self.service_fee,
            "tax": self.tax,
            "discount": self.discount,
            "total": self.total,
        }


@dataclass(frozen=True)
class EarningsSplit:
    platform_commission: Decimal
    vendor_earning: Decimal
    rider_earning: Decimal


def haversine_km(
    origin: tuple[float, float],
    destination: tuple[float, float],
) -> float:
    """
    Great-circle distance in kilometers.

    Both points are (longitude, latitude) pairs.
    """
    lng1, lat1 = origin
    lng2, lat2 = destination

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # min() מגן מ-a > 1 בגלל שגיאת floating point בנקודות אנטיפודיות
    c = 2 * math.asin(math.sqrt(min(1.0, a)))
    return EARTH_RADIUS_KM * c


def compute_delivery_fee(
    distance_km: float,
    base_fee: Decimal | None = None,
    per_km_fee: Decimal | None = None,
) -> Decimal:
    """
    Distance-tiered delivery fee: base + ceil(km) × per_km, never below base.

    >>> compute_delivery_fee(10, Decimal("5"), Decimal("2"))
    Decimal('25.00')
    """
    base = to_decimal(base_fee if base_fee is not None else settings.DEFAULT_DELIVERY_BASE_FEE)
    per_km = to_decimal(per_km_fee if per_km_fee is not None else settings.DEFAULT_DELIVERY_PER_KM_FEE)

    if distance_km < 0 or math.isnan(distance_km):
        raise ValueError(f"distance_km must be a non-negative number, got {distance_km}")

    fee = base + Decimal(math.ceil(distance_km)) * per_km
    return round_money(max(base, fee))


def compute_pricing(
    items: Iterable[PricingLine],
    delivery_fee: Decimal,
    tax_percent: Decimal | int | float = 0,
    discount_percent: Decimal | int | float = 0,
    service_fee_rate: Decimal | None = None,
) -> PricingBreakdown:
    """
    Price an order.

    Args:
        items: Line items (unit price, quantity)
        delivery_fee: Fee from compute_delivery_fee()
        tax_percent: Percent applied to subtotal + service fee + delivery fee
        discount_percent: Percent applied to subtotal
        service_fee_rate: Fraction of subtotal; defaults to SERVICE_FEE_RATE

    Returns:
        PricingBreakdown with every field rounded to cents
    """
    rate = to_decimal(service_fee_rate if service_fee_rate is not None else settings.SERVICE_FEE_RATE)

    subtotal = ZERO
    for line in items:
        if line.quantity < 1:
            raise ValueError(f"quantity must be at least 1, got {line.quantity}")
        subtotal += round_money(to_decimal(line.price) * line.quantity)
    subtotal = round_money(subtotal)

    delivery = round_money(delivery_fee)
    service_fee = percent_of(subtotal, rate)

    tax_rate = to_decimal(tax_percent) / Decimal(100)
    tax = percent_of(subtotal + service_fee + delivery, tax_rate)

    discount_rate = to_decimal(discount_percent) / Decimal(100)
    discount = percent_of(subtotal, discount_rate)

    total = subtotal + delivery + service_fee + tax - discount

    return PricingBreakdown(
        subtotal=subtotal,
        delivery_fee=delivery,
        service_fee=service_fee,
        tax=tax,
        discount=discount,
        total=round_money(total),
    )


def compute_earnings_split(
    pricing: PricingBreakdown,
    commission_rate: Decimal | None = None,
) -> EarningsSplit:
    """
    Split an order's money between platform, vendor and rider.

    commission = total × rate; the vendor gets subtotal minus commission and
    the rider gets the delivery fee.
    """
    rate = to_decimal(
        commission_rate if commission_rate is not None else settings.PLATFORM_COMMISSION_RATE
    )
    commission = percent_of(pricing.total, rate)
    return EarningsSplit(
        platform_commission=commission,
        vendor_earning=round_money(pricing.subtotal - commission),
        rider_earning=pricing.delivery_fee,
    )
