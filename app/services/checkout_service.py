"""
CheckoutService: write path for plan changes.

Decides between a new subscription (hosted checkout session) and an in-place
price change of the tenant's existing subscription:

    NoCustomer -> HasCustomerNoSubscription -> HasActiveSubscription

Stripe, not the organization row, answers "is there an active subscription",
so a tenant that already pays is never sent through checkout a second time.

Usage:
    result = CheckoutService.start(db, provider, catalog, organization_id, price_id, user)
"""
import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import CurrencyMismatch, InvalidPrice, NotFound
from app.middleware.auth import CurrentUser
from app.services.authorization import require_billing_manager
from app.services.billing_provider import StripeBillingClient, Subscription
from app.services.organization_store import OrganizationStore
from app.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

CHECKOUT_SESSION = "checkout_session"
SUBSCRIPTION_UPDATED = "subscription_updated"


class CheckoutResult(BaseModel):
    type: str
    session_id: Optional[str] = None
    url: Optional[str] = None
    subscription_id: Optional[str] = None
    message: Optional[str] = None
    redirect_url: Optional[str] = None


class CheckoutService:

    @staticmethod
    def start(
        db: Session,
        provider: StripeBillingClient,
        catalog: PlanCatalog,
        organization_id: str,
        price_id: str,
        user: CurrentUser,
    ) -> CheckoutResult:
        # 1. Organization + caller authorization
        org = OrganizationStore.get(db, organization_id)
        require_billing_manager(db, organization_id, user.id)

        # 2. Price must belong to the catalog before anything is created
        plan_id = catalog.plan_id_for_price(price_id)
        if plan_id is None:
            raise InvalidPrice(price_id)

        # 3. Provider customer, created once and cached
        customer_id = CheckoutService._ensure_customer(db, provider, org, user)

        # 4. Live subscriptions, never the cached id
        subscriptions = provider.list_active_subscriptions(customer_id)
        if not subscriptions:
            return CheckoutService._create_checkout(provider, catalog, org, plan_id.value, price_id, customer_id, user)

        if len(subscriptions) > 1:
            logger.warning(
                "Organization %s has %d active subscriptions (%s); updating the newest",
                org.id, len(subscriptions), ", ".join(s.id for s in subscriptions),
            )
        return CheckoutService._update_subscription(db, provider, org, subscriptions[0], price_id)

    @staticmethod
    def _ensure_customer(db: Session, provider: StripeBillingClient, org, user: CurrentUser) -> str:
        OrganizationStore.reload(db, org)
        if org.provider_customer_id:
            return org.provider_customer_id

        customer = provider.create_customer(org.id, org.name, user.email)
        OrganizationStore.save_customer_id(db, org, customer.id)
        logger.info("Created Stripe customer %s for organization %s", customer.id, org.id)
        return customer.id

    @staticmethod
    def _create_checkout(
        provider: StripeBillingClient,
        catalog: PlanCatalog,
        org,
        plan_id: str,
        price_id: str,
        customer_id: str,
        user: CurrentUser,
    ) -> CheckoutResult:
        settings = get_settings()
        trial_days = catalog.trial_days_for(plan_id)
        eligible_for_trial = trial_days > 0 and not org.is_trial_used

        if eligible_for_trial:
            logger.info("Adding %d-day trial for organization %s", trial_days, org.id)

        session = provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=f"{settings.SITE_URL}/dashboard?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.SITE_URL}/settings/organization?payment=cancelled",
            trial_days=trial_days if eligible_for_trial else None,
            metadata={"organization_id": org.id, "user_id": user.id},
        )
        logger.info("Checkout session %s created for organization %s (%s)", session.id, org.id, price_id)

        return CheckoutResult(type=CHECKOUT_SESSION, session_id=session.id, url=session.url)

    @staticmethod
    def _update_subscription(
        db: Session,
        provider: StripeBillingClient,
        org,
        subscription: Subscription,
        price_id: str,
    ) -> CheckoutResult:
        item = subscription.primary_item
        if item is None:
            raise NotFound(f"Subscription {subscription.id} has no line item")

        new_price = provider.retrieve_price(price_id)
        if subscription.currency != new_price.currency:
            logger.info(
                "Currency mismatch for organization %s: current=%s new=%s",
                org.id, subscription.currency, new_price.currency,
            )
            raise CurrencyMismatch(subscription.currency, new_price.currency)

        updated = provider.update_subscription_item(
            subscription.id,
            item.id,
            price_id,
            proration="create_prorations",
            metadata={"organization_id": org.id},
        )
        logger.info("Subscription %s moved to price %s", updated.id, price_id)

        if org.provider_subscription_id != updated.id:
            OrganizationStore.save_subscription_id(db, org, updated.id)

        return CheckoutResult(
            type=SUBSCRIPTION_UPDATED,
            subscription_id=updated.id,
            message="Your plan has been updated successfully!",
            redirect_url=f"{get_settings().SITE_URL}/dashboard?payment=success&upgraded=true",
        )
