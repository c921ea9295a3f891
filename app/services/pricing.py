"""
Region, currency and billing-period arithmetic shared by the billing core.

Everything here is pure: no database access, no clock reads.
"""
import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from app.models.enums import BillingCycle, Currency, ResetFrequency, TargetRegion
from app.models.plan import Plan, PlanPricing

ZERO = Decimal("0.00")

_REGION_CURRENCY = {
    TargetRegion.INDIA: Currency.INR,
    TargetRegion.GLOBAL: Currency.USD,
}


@dataclass(frozen=True)
class PlanPrice:
    amount: Decimal
    currency: Currency
    region: TargetRegion


def resolve_region(country: Optional[str]) -> TargetRegion:
    """Billing country "IN" prices in INDIA; anything else, or unknown, is GLOBAL."""
    if country and country.strip().upper() == "IN":
        return TargetRegion.INDIA
    return TargetRegion.GLOBAL


def currency_for_region(region: TargetRegion) -> Currency:
    return _REGION_CURRENCY.get(TargetRegion(region), Currency.USD)


def select_pricing(pricings: Iterable[PlanPricing], region: TargetRegion) -> Optional[PlanPricing]:
    """Region-specific row, else the GLOBAL row, else None."""
    by_region = {TargetRegion(p.target_region): p for p in pricings}
    return by_region.get(TargetRegion(region)) or by_region.get(TargetRegion.GLOBAL)


def plan_price(plan: Plan, region: TargetRegion) -> PlanPrice:
    pricing = select_pricing(plan.pricings or [], region)
    if pricing is not None:
        return PlanPrice(
            amount=to_money(pricing.price),
            currency=Currency(pricing.currency),
            region=TargetRegion(pricing.target_region),
        )
    return PlanPrice(
        amount=to_money(plan.price),
        currency=currency_for_region(region),
        region=TargetRegion(region),
    )


def is_free_plan(plan: Plan) -> bool:
    """Freemium flag, or every known price (base and regional rows) at zero."""
    if plan.is_freemium:
        return True
    prices = [plan.price] + [p.price for p in (plan.pricings or [])]
    return all(to_money(price) == ZERO for price in prices)


def to_money(value) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(Decimal("0.01"))


def add_months(value: datetime, months: int) -> datetime:
    month = value.month - 1 + months
    year = value.year + month // 12
    month = month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # Feb 29 -> Feb 28
        return value.replace(year=value.year + years, day=28)


def add_billing_cycle(start: datetime, cycle: BillingCycle) -> datetime:
    if BillingCycle(cycle) == BillingCycle.YEARLY:
        return add_years(start, 1)
    return add_months(start, 1)


def next_reset_date(start: datetime, frequency: ResetFrequency) -> Optional[datetime]:
    frequency = ResetFrequency(frequency)
    if frequency == ResetFrequency.DAILY:
        return start + timedelta(days=1)
    if frequency == ResetFrequency.WEEKLY:
        return start + timedelta(days=7)
    if frequency == ResetFrequency.MONTHLY:
        return add_months(start, 1)
    if frequency == ResetFrequency.YEARLY:
        return add_years(start, 1)
    return None
