"""
SubscriptionInfoService: read path that reconciles cached billing state with Stripe.

Precedence, first success wins:
    1. no subscription id cached and plan free -> free defaults, no Stripe call
    2. subscription id cached                  -> live subscription, healed into the row
    3. only a customer id cached               -> adopt the customer's single active subscription
    4. whatever the organization row holds

Stripe statuses are mapped onto the cached status set (see STATUS_MAP). A cached
subscription that ended at Stripe (canceled, incomplete_expired) resets the row
to the free plan and clears the subscription id.

Live Stripe state always wins over the cache. The resolver is total: Stripe or
database failures degrade to the persisted values and are logged, never raised,
so billing display cannot block the rest of the UI.

The write-through has no version guard and can race with the webhook consumer
writing the same row.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import BillingError
from app.models import Organization
from app.services.billing_provider import StripeBillingClient, Subscription
from app.services.organization_store import OrganizationStore
from app.services.plan_catalog import PlanCatalog, PlanId

logger = logging.getLogger(__name__)


class SubscriptionInfo(BaseModel):
    plan: str
    status: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    interval: Optional[str] = None
    price_id: Optional[str] = None


FREE_DEFAULTS = SubscriptionInfo(plan=PlanId.FREE.value, status="none")

# Stripe subscription status -> cached status (none|trialing|active|past_due|canceled).
STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "paused": "past_due",
    "incomplete": "none",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}

_DATETIME_FIELDS = ("current_period_end", "trial_ends_at")


def cached_status(provider_status: Optional[str]) -> str:
    try:
        return STATUS_MAP[provider_status]
    except KeyError:
        logger.warning("Unknown Stripe subscription status %r", provider_status)
        return "none"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they were written as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionInfoService:

    @staticmethod
    def resolve(
        db: Session,
        provider: Optional[StripeBillingClient],
        catalog: PlanCatalog,
        org: Organization,
    ) -> SubscriptionInfo:
        if not org.provider_subscription_id and org.subscription_plan == PlanId.FREE.value:
            return FREE_DEFAULTS.model_copy()

        if provider is None:
            logger.warning("Stripe not configured; serving cached billing state for organization %s", org.id)
            return SubscriptionInfoService._persisted(org)

        if org.provider_subscription_id:
            try:
                subscription = provider.retrieve_subscription(org.provider_subscription_id)
            except BillingError as e:
                logger.warning(
                    "Could not fetch Stripe subscription %s for organization %s: %s",
                    org.provider_subscription_id, org.id, e,
                )
            else:
                return SubscriptionInfoService._adopt(db, catalog, org, subscription)

        elif org.provider_customer_id:
            try:
                subscriptions = provider.list_active_subscriptions(org.provider_customer_id)
            except BillingError as e:
                logger.warning(
                    "Could not list Stripe subscriptions for customer %s: %s",
                    org.provider_customer_id, e,
                )
            else:
                if len(subscriptions) == 1:
                    logger.info(
                        "Adopting subscription %s for organization %s (missing from cache)",
                        subscriptions[0].id, org.id,
                    )
                    return SubscriptionInfoService._adopt(db, catalog, org, subscriptions[0])
                if subscriptions:
                    logger.warning(
                        "Organization %s has %d active subscriptions; not adopting any",
                        org.id, len(subscriptions),
                    )

        return SubscriptionInfoService._persisted(org)

    @staticmethod
    def _persisted(org: Organization) -> SubscriptionInfo:
        return SubscriptionInfo(
            plan=org.subscription_plan or PlanId.FREE.value,
            status=org.subscription_status or "none",
            current_period_end=_as_utc(org.current_period_end),
            cancel_at_period_end=bool(org.cancel_at_period_end),
            interval=org.billing_interval,
            price_id=org.provider_price_id,
        )

    @staticmethod
    def _adopt(
        db: Session,
        catalog: PlanCatalog,
        org: Organization,
        subscription: Subscription,
    ) -> SubscriptionInfo:
        status = cached_status(subscription.status)
        if status == "canceled":
            return SubscriptionInfoService._downgrade(db, catalog, org, subscription)

        if subscription.status == "incomplete":
            # First payment still pending; the new plan is not granted yet.
            plan_id = None
        else:
            plan_id = catalog.plan_id_for_price(subscription.price_id)
        plan = plan_id.value if plan_id else (org.subscription_plan or PlanId.FREE.value)

        info = SubscriptionInfo(
            plan=plan,
            status=status,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            interval=subscription.interval,
            price_id=subscription.price_id,
        )
        live: Dict[str, Any] = {
            "provider_subscription_id": subscription.id,
            "provider_price_id": info.price_id,
            "subscription_plan": info.plan,
            "subscription_status": info.status,
            "cancel_at_period_end": info.cancel_at_period_end,
            "billing_interval": info.interval,
            "billing_currency": subscription.currency or None,
            "current_period_end": info.current_period_end,
            "trial_ends_at": subscription.trial_end,
            "is_trial_used": True,
        }
        if subscription.customer_id:
            live["provider_customer_id"] = subscription.customer_id

        SubscriptionInfoService._write_through(db, catalog, org, live)
        return info

    @staticmethod
    def _downgrade(
        db: Session,
        catalog: PlanCatalog,
        org: Organization,
        subscription: Subscription,
    ) -> SubscriptionInfo:
        """The cached subscription ended at Stripe: back to the free plan, subscription id cleared."""
        logger.info(
            "Subscription %s of organization %s is %s at Stripe; resetting to free",
            subscription.id, org.id, subscription.status,
        )
        info = SubscriptionInfo(
            plan=PlanId.FREE.value,
            status="canceled",
            current_period_end=subscription.current_period_end,
        )
        live: Dict[str, Any] = {
            "provider_subscription_id": None,
            "provider_price_id": None,
            "subscription_plan": info.plan,
            "subscription_status": info.status,
            "cancel_at_period_end": False,
            "billing_interval": None,
            "current_period_end": info.current_period_end,
            "is_trial_used": True,
        }
        SubscriptionInfoService._write_through(db, catalog, org, live)
        return info

    @staticmethod
    def _write_through(db: Session, catalog: PlanCatalog, org: Organization, live: Dict[str, Any]) -> None:
        changes = SubscriptionInfoService._diff(org, catalog, live)
        if not changes:
            return
        try:
            OrganizationStore.update_billing(db, org, changes)
            logger.info(
                "Healed organization %s billing cache from Stripe: %s",
                org.id, ", ".join(sorted(changes)),
            )
        except SQLAlchemyError as e:
            logger.warning("Could not persist Stripe state for organization %s: %s", org.id, e)

    @staticmethod
    def _diff(org: Organization, catalog: PlanCatalog, live: Dict[str, Any]) -> Dict[str, Any]:
        changes = {}
        for key, value in live.items():
            current = getattr(org, key)
            if key in _DATETIME_FIELDS:
                current = _as_utc(current)
            if current != value:
                changes[key] = value

        if "subscription_plan" in changes or org.features is None or org.usage_limits is None:
            plan = catalog.get_plan(live["subscription_plan"])
            changes["features"] = plan.features.model_dump(by_alias=True)
            changes["usage_limits"] = plan.limits.model_dump(by_alias=True)
        return changes
