"""
Purchase variants and grant windows.

Payment metadata carries purchaseType + subscriptionPlan as loose strings.
They are parsed once into an explicit variant so downstream code never
branches on a missing plan:

    SingleBook                 -> permanent grant (sentinel end date)
    SubscriptionPurchase(plan) -> MONTHLY +1 month, QUARTERLY +6 months,
                                  ANNUAL +1 year, LIFETIME sentinel
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from bookgate.errors import ValidationError
from bookgate.models.base import SENTINEL_END_DATE, ensure_utc
from bookgate.models.purchase import PurchaseType, TransactionType
from bookgate.models.subscription import PlanType


# QUARTERLY intentionally grants six months; confirmed product behavior pending.
PLAN_DURATIONS = {
    PlanType.MONTHLY: relativedelta(months=1),
    PlanType.QUARTERLY: relativedelta(months=6),
    PlanType.ANNUAL: relativedelta(years=1),
}

_MISSING_PLAN_VALUES = {"", "undefined", "null", "none"}


@dataclass(frozen=True)
class SingleBook:
    purchase_type = PurchaseType.SINGLE_BOOK
    transaction_type = TransactionType.PURCHASE
    plan = None

    @property
    def is_recurring(self) -> bool:
        return False

    def grant_end_date(self, start: datetime) -> datetime:
        return SENTINEL_END_DATE


@dataclass(frozen=True)
class SubscriptionPurchase:
    plan: PlanType

    purchase_type = PurchaseType.SUBSCRIPTION
    transaction_type = TransactionType.SUBSCRIPTION

    @property
    def is_recurring(self) -> bool:
        return self.plan != PlanType.LIFETIME

    def grant_end_date(self, start: datetime) -> datetime:
        if self.plan == PlanType.LIFETIME:
            return SENTINEL_END_DATE
        return ensure_utc(start) + PLAN_DURATIONS[self.plan]


PurchaseVariant = Union[SingleBook, SubscriptionPurchase]


def parse_plan(plan: Optional[str]) -> Optional[PlanType]:
    if plan is None or plan.strip().lower() in _MISSING_PLAN_VALUES:
        return None
    try:
        return PlanType(plan.strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown subscription plan: {plan}", plan=plan)


def parse_purchase(purchase_type: Optional[str], plan: Optional[str]) -> PurchaseVariant:
    """
    Build the purchase variant from raw metadata values.

    A missing purchase type means a single-book purchase. The plan of a
    single-book purchase is ignored: it always grants permanently.
    """
    kind = (purchase_type or PurchaseType.SINGLE_BOOK.value).strip().upper()

    if kind == PurchaseType.SINGLE_BOOK.value:
        return SingleBook()

    if kind == PurchaseType.SUBSCRIPTION.value:
        parsed = parse_plan(plan)
        if parsed is None:
            raise ValidationError("Subscription purchases require a plan")
        return SubscriptionPurchase(plan=parsed)

    raise ValidationError(f"Unknown purchase type: {purchase_type}", purchase_type=purchase_type)
