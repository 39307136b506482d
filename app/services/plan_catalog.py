"""
Plan catalog and limit engine.

Static mapping from plan ids to prices, feature flags and usage quotas. Price
ids come from settings; everything else is fixed. Pure functions, no I/O.

Usage:
    catalog = get_plan_catalog()
    plan_id = catalog.plan_id_for_price("pro_monthly_try")   # PlanId.PRO
    check_limit("maxCustomers", 49, catalog.get_plan("starter").limits)  # True
"""
import math
from enum import Enum
from functools import lru_cache
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from app.core.config import Settings, get_settings

UNLIMITED = -1


class PlanId(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class Currency(str, Enum):
    USD = "usd"
    TRY = "try"


PLAN_ORDER = {
    PlanId.FREE: 0,
    PlanId.STARTER: 1,
    PlanId.PRO: 2,
    PlanId.ENTERPRISE: 3,
}


class PlanFeatures(BaseModel):
    smtp: bool = False
    remove_branding: bool = Field(False, alias="removeBranding")
    api_access: bool = Field(False, alias="apiAccess")
    priority_support: bool = Field(False, alias="prioritySupport")
    custom_domain: bool = Field(False, alias="customDomain")
    white_label: bool = Field(False, alias="whiteLabel")
    advanced_analytics: bool = Field(False, alias="advancedAnalytics")

    class Config:
        populate_by_name = True
        frozen = True


class PlanLimits(BaseModel):
    """Usage quotas; -1 means unlimited."""
    max_organizations: int = Field(1, alias="maxOrganizations")
    max_users: int = Field(1, alias="maxUsers")
    max_projects: int = Field(3, alias="maxProjects")
    max_customers: int = Field(5, alias="maxCustomers")
    max_proposals: int = Field(3, alias="maxProposals")

    class Config:
        populate_by_name = True
        frozen = True

    def get(self, limit_key: str) -> int:
        return getattr(self, normalize_limit_key(limit_key))

    def check(self, limit_key: str, current_count: int) -> bool:
        return check_limit(limit_key, current_count, self)


class PlanPrice(BaseModel):
    id: str
    currency: Currency
    interval: BillingInterval
    unit_amount: int  # minor units

    class Config:
        frozen = True


class PlanDefinition(BaseModel):
    id: PlanId
    name: str
    description: str
    features: PlanFeatures
    limits: PlanLimits
    prices: List[PlanPrice] = []
    trial_days: int = 0
    highlight: bool = False

    class Config:
        frozen = True

    def price_for(self, currency: str, interval: str) -> Optional[PlanPrice]:
        for price in self.prices:
            if price.currency.value == currency and price.interval.value == interval:
                return price
        return None


def _limit_aliases() -> Dict[str, str]:
    aliases = {}
    for name, field in PlanLimits.model_fields.items():
        aliases[name] = name
        aliases[field.alias] = name
    return aliases


_LIMIT_KEYS = _limit_aliases()


def normalize_limit_key(limit_key: str) -> str:
    """Accept ``maxCustomers`` or ``max_customers``; unknown keys raise KeyError."""
    try:
        return _LIMIT_KEYS[limit_key]
    except KeyError:
        raise KeyError(f"Unknown limit: {limit_key}")


def check_limit(limit_key: str, current_count: int, limits: PlanLimits) -> bool:
    """True when one more item fits under the limit (always for unlimited)."""
    limit = limits.get(limit_key)
    if limit == UNLIMITED:
        return True
    return current_count < limit


def remaining_quota(limit_key: str, current_count: int, limits: PlanLimits) -> Union[int, float]:
    limit = limits.get(limit_key)
    if limit == UNLIMITED:
        return math.inf
    return max(0, limit - current_count)


def usage_percentage(limit_key: str, current_count: int, limits: PlanLimits) -> int:
    """Usage as 0-100; unlimited plans always report 0."""
    limit = limits.get(limit_key)
    if limit == UNLIMITED or limit <= 0:
        return 0
    return min(100, round(current_count / limit * 100))


# (id, name, description, features, limits, list prices per currency, trial days)
_PLAN_TABLE = [
    (
        PlanId.FREE, "Free", "Ideal to get started",
        PlanFeatures(),
        PlanLimits(max_organizations=1, max_users=1, max_projects=3, max_customers=5, max_proposals=3),
        {},
        0,
    ),
    (
        PlanId.STARTER, "Starter", "For small teams",
        PlanFeatures(remove_branding=True),
        PlanLimits(max_organizations=1, max_users=3, max_projects=10, max_customers=50, max_proposals=1000),
        {"usd": (900, 9000), "try": (29900, 299000)},
        14,
    ),
    (
        PlanId.PRO, "Pro", "For growing businesses",
        PlanFeatures(
            smtp=True, remove_branding=True, api_access=True,
            priority_support=True, advanced_analytics=True,
        ),
        PlanLimits(max_organizations=3, max_users=10, max_projects=50, max_customers=10000, max_proposals=10000),
        {"usd": (2900, 29000), "try": (99900, 999000)},
        14,
    ),
    (
        PlanId.ENTERPRISE, "Enterprise", "For large organizations",
        PlanFeatures(
            smtp=True, remove_branding=True, api_access=True, priority_support=True,
            custom_domain=True, white_label=True, advanced_analytics=True,
        ),
        PlanLimits(
            max_organizations=UNLIMITED, max_users=UNLIMITED, max_projects=UNLIMITED,
            max_customers=UNLIMITED, max_proposals=UNLIMITED,
        ),
        {"usd": (9900, 99000), "try": (349900, 3499000)},
        14,
    ),
]


class PlanCatalog:
    """Immutable lookup over the configured plans."""

    def __init__(self, plans: List[PlanDefinition]):
        self._plans: Dict[PlanId, PlanDefinition] = {p.id: p for p in plans}
        self._prices: Dict[str, tuple] = {}
        for plan in plans:
            for price in plan.prices:
                self._prices[price.id] = (plan.id, price)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanCatalog":
        plans = []
        for plan_id, name, description, features, limits, amounts, trial_days in _PLAN_TABLE:
            prices = []
            for currency, (monthly, yearly) in amounts.items():
                for interval, amount in (("month", monthly), ("year", yearly)):
                    price_id = settings.stripe_price_id(plan_id.value, interval, currency)
                    if price_id:
                        prices.append(PlanPrice(
                            id=price_id,
                            currency=currency,
                            interval=interval,
                            unit_amount=amount,
                        ))
            plans.append(PlanDefinition(
                id=plan_id,
                name=name,
                description=description,
                features=features,
                limits=limits,
                prices=prices,
                trial_days=trial_days,
                highlight=plan_id == PlanId.PRO,
            ))
        return cls(plans)

    def get_plan(self, plan_id: Optional[str]) -> PlanDefinition:
        """Plan by id; unknown or empty ids resolve to the free plan."""
        try:
            return self._plans[PlanId(plan_id)]
        except (ValueError, KeyError):
            return self._plans[PlanId.FREE]

    def plans(self) -> List[PlanDefinition]:
        return sorted(self._plans.values(), key=lambda p: PLAN_ORDER[p.id])

    def available_plans(self, currency: Optional[str] = None) -> List[PlanDefinition]:
        """Paid plans, optionally only those priced in ``currency``."""
        result = []
        for plan in self.plans():
            if plan.id == PlanId.FREE:
                continue
            if currency and not any(p.currency.value == currency for p in plan.prices):
                continue
            result.append(plan)
        return result

    def price(self, price_id: Optional[str]) -> Optional[PlanPrice]:
        entry = self._prices.get(price_id) if price_id else None
        return entry[1] if entry else None

    def plan_id_for_price(self, price_id: Optional[str]) -> Optional[PlanId]:
        entry = self._prices.get(price_id) if price_id else None
        return entry[0] if entry else None

    def interval_for_price(self, price_id: Optional[str]) -> Optional[BillingInterval]:
        price = self.price(price_id)
        return price.interval if price else None

    def currency_for_price(self, price_id: Optional[str]) -> Optional[Currency]:
        price = self.price(price_id)
        return price.currency if price else None

    def price_for(self, plan_id: str, currency: str, interval: str) -> Optional[PlanPrice]:
        return self.get_plan(plan_id).price_for(currency, interval)

    def trial_days_for(self, plan_id: Optional[str]) -> int:
        if not plan_id:
            return 0
        try:
            plan = self._plans[PlanId(plan_id)]
        except (ValueError, KeyError):
            return 0
        return plan.trial_days

    def plan_has_feature(self, plan_id: Optional[str], feature: str) -> bool:
        return bool(getattr(self.get_plan(plan_id).features, feature))

    def effective_features(self, plan_id: Optional[str], cached: Optional[dict] = None) -> PlanFeatures:
        """Plan defaults overlaid with an organization's cached feature snapshot."""
        merged = self.get_plan(plan_id).features.model_dump()
        for key, value in (cached or {}).items():
            name = _FEATURE_KEYS.get(key)
            if name and value is not None:
                merged[name] = bool(value)
        return PlanFeatures(**merged)

    def effective_limits(self, plan_id: Optional[str], cached: Optional[dict] = None) -> PlanLimits:
        """Plan defaults overlaid with an organization's cached usage limit snapshot."""
        merged = self.get_plan(plan_id).limits.model_dump()
        for key, value in (cached or {}).items():
            name = _LIMIT_KEYS.get(key)
            if name and value is not None:
                merged[name] = int(value)
        return PlanLimits(**merged)


def _feature_aliases() -> Dict[str, str]:
    aliases = {}
    for name, field in PlanFeatures.model_fields.items():
        aliases[name] = name
        if field.alias:
            aliases[field.alias] = name
    return aliases


_FEATURE_KEYS = _feature_aliases()


def compare_plans(plan_a: str, plan_b: str) -> int:
    """-1, 0 or 1 depending on tier order."""
    a = PLAN_ORDER[PlanId(plan_a)]
    b = PLAN_ORDER[PlanId(plan_b)]
    return (a > b) - (a < b)


def needs_upgrade(current_plan: Optional[str], required_plan: str) -> bool:
    return compare_plans(current_plan or PlanId.FREE.value, required_plan) < 0


@lru_cache()
def get_plan_catalog() -> PlanCatalog:
    return PlanCatalog.from_settings(get_settings())
