"""
Stripe billing client: explicit, typed operations over the Stripe SDK.

Stripe objects never leave this module; callers get the pydantic models below.
Every request is bounded by STRIPE_TIMEOUT_SECONDS and failures are translated:

    stripe.APIConnectionError          -> ProviderTimeout (retryable)
    InvalidRequestError resource_missing -> NotFound
    any other stripe.StripeError       -> ProviderError

Required environment variables:
    STRIPE_SECRET_KEY       Stripe secret key (sk_live_... or sk_test_...)
    STRIPE_PUBLISHABLE_KEY  Stripe publishable key (pk_live_... or pk_test_...)
"""
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional

import stripe
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.errors import BillingNotConfigured, NotFound, ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)

# Statuses that still hold the tenant's single billing relationship.
ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due", "unpaid")


class Customer(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


class Price(BaseModel):
    id: str
    currency: str
    unit_amount: Optional[int] = None
    interval: Optional[str] = None


class SubscriptionItem(BaseModel):
    id: str
    price: Price


class Subscription(BaseModel):
    id: str
    customer_id: str
    status: str
    currency: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    created: Optional[datetime] = None
    items: List[SubscriptionItem] = []

    @property
    def primary_item(self) -> Optional[SubscriptionItem]:
        return self.items[0] if self.items else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.primary_item
        return item.price.id if item else None

    @property
    def interval(self) -> Optional[str]:
        item = self.primary_item
        return item.price.interval if item else None


class CheckoutSession(BaseModel):
    id: str
    url: Optional[str] = None


class PortalSession(BaseModel):
    url: str


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _field(obj: Mapping[str, Any], key: str, default: Any = None) -> Any:
    # StripeObject is a dict subclass; item access avoids clashes such as ``items``.
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _parse_price(obj: Mapping[str, Any]) -> Price:
    recurring = _field(obj, "recurring") or {}
    return Price(
        id=obj["id"],
        currency=str(_field(obj, "currency", "")).lower(),
        unit_amount=_field(obj, "unit_amount"),
        interval=_field(recurring, "interval"),
    )


def _parse_subscription(obj: Mapping[str, Any]) -> Subscription:
    items_data = _field(_field(obj, "items", {}), "data", [])
    items = [
        SubscriptionItem(id=item["id"], price=_parse_price(item["price"]))
        for item in items_data
    ]
    # Newer API versions moved the billing period onto the subscription items.
    period_end = _field(obj, "current_period_end")
    if period_end is None and items_data:
        period_end = _field(items_data[0], "current_period_end")

    customer = _field(obj, "customer", "")
    if isinstance(customer, Mapping):
        customer = customer["id"]

    currency = _field(obj, "currency")
    if not currency and items:
        currency = items[0].price.currency

    return Subscription(
        id=obj["id"],
        customer_id=customer,
        status=_field(obj, "status", "incomplete"),
        currency=str(currency or "").lower(),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(_field(obj, "cancel_at_period_end", False)),
        trial_end=_timestamp(_field(obj, "trial_end")),
        created=_timestamp(_field(obj, "created")),
        items=items,
    )


class StripeBillingClient:
    """Thin wrapper over the Stripe API for customers, subscriptions, checkout and prices."""

    def __init__(self, api_key: str, timeout: float = 10.0, max_network_retries: int = 0):
        if not api_key:
            raise BillingNotConfigured()
        self._api_key = api_key
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = max_network_retries

    def _call(self, operation: str, func, *args, **params):
        try:
            return func(*args, api_key=self._api_key, **params)
        except stripe.APIConnectionError as e:
            logger.warning("Stripe %s timed out: %s", operation, e)
            raise ProviderTimeout() from e
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise NotFound(f"Stripe {operation}: {e.user_message or e}") from e
            logger.error("Stripe %s rejected: %s", operation, e)
            raise ProviderError(f"Stripe {operation} failed: {e.user_message or e}") from e
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", operation, e)
            raise ProviderError(f"Stripe {operation} failed: {e.user_message or e}") from e

    def create_customer(self, organization_id: str, display_name: str, email: Optional[str]) -> Customer:
        customer = self._call(
            "customer create",
            stripe.Customer.create,
            email=email,
            name=display_name,
            metadata={"organization_id": organization_id},
        )
        return Customer(id=customer["id"], email=_field(customer, "email"), name=_field(customer, "name"))

    def list_active_subscriptions(self, customer_id: str) -> List[Subscription]:
        """Non-canceled subscriptions of a customer, newest first (0 or 1 expected).

        Stripe omits canceled subscriptions when no status filter is given.
        """
        result = self._call(
            "subscription list",
            stripe.Subscription.list,
            customer=customer_id,
            limit=100,
        )
        subscriptions = [
            _parse_subscription(obj)
            for obj in _field(result, "data", [])
            if _field(obj, "status") in ACTIVE_SUBSCRIPTION_STATUSES
        ]
        subscriptions.sort(key=lambda s: s.created or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return subscriptions

    def retrieve_subscription(self, subscription_id: str) -> Subscription:
        obj = self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id)
        return _parse_subscription(obj)

    def update_subscription_item(
        self,
        subscription_id: str,
        item_id: str,
        new_price_id: str,
        proration: str = "create_prorations",
        metadata: Optional[Dict[str, str]] = None,
    ) -> Subscription:
        obj = self._call(
            "subscription update",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior=proration,
            metadata=metadata or {},
        )
        return _parse_subscription(obj)

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        subscription_data: Dict[str, Any] = {"metadata": metadata or {}}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        session = self._call(
            "checkout session create",
            stripe.checkout.Session.create,
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            subscription_data=subscription_data,
            metadata=metadata or {},
            billing_address_collection="required",
            customer_update={"address": "auto", "name": "auto"},
            allow_promotion_codes=True,
        )
        return CheckoutSession(id=session["id"], url=_field(session, "url"))

    def retrieve_price(self, price_id: str) -> Price:
        return _parse_price(self._call("price retrieve", stripe.Price.retrieve, price_id))

    def create_portal_session(self, customer_id: str, return_url: str) -> PortalSession:
        session = self._call(
            "portal session create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return PortalSession(url=session["url"])


@lru_cache()
def _client_for(api_key: str, timeout: float, max_network_retries: int) -> StripeBillingClient:
    return StripeBillingClient(api_key, timeout=timeout, max_network_retries=max_network_retries)


def get_billing_client() -> StripeBillingClient:
    """FastAPI dependency; raises BillingNotConfigured when no secret key is set."""
    settings = get_settings()
    if not settings.STRIPE_SECRET_KEY:
        raise BillingNotConfigured()
    return _client_for(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_TIMEOUT_SECONDS,
        settings.STRIPE_MAX_NETWORK_RETRIES,
    )


def get_optional_billing_client() -> Optional[StripeBillingClient]:
    """FastAPI dependency for read paths that fall back to cached state without Stripe."""
    settings = get_settings()
    if not settings.STRIPE_SECRET_KEY:
        return None
    return _client_for(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_TIMEOUT_SECONDS,
        settings.STRIPE_MAX_NETWORK_RETRIES,
    )
