"""
Billing endpoints: plan changes, subscription status, entitlements and limits.

Every organization-scoped endpoint re-checks the caller's membership server-side;
mutations additionally require an owner/admin role.

Required environment variables:
    STRIPE_SECRET_KEY       Stripe secret key (sk_live_... or sk_test_...)
    STRIPE_PUBLISHABLE_KEY  Stripe publishable key (pk_live_... or pk_test_...)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import BillingError, InvalidRequest, NoBillingAccount
from app.core.limiter import limiter
from app.middleware.auth import CurrentUser, get_current_user
from app.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    ConfigResponse,
    EntitlementsResponse,
    LimitCheckRequest,
    LimitCheckResponse,
    OrganizationRequest,
    PlanPriceResponse,
    PlanResponse,
    PlansResponse,
    PortalResponse,
    SubscriptionInfoResponse,
)
from app.services.authorization import require_billing_manager, require_billing_viewer
from app.services.billing_provider import (
    StripeBillingClient,
    get_billing_client,
    get_optional_billing_client,
)
from app.services.checkout_service import CheckoutService
from app.services.organization_store import OrganizationStore
from app.services.plan_catalog import (
    PlanCatalog,
    UNLIMITED,
    Currency,
    check_limit,
    get_plan_catalog,
    normalize_limit_key,
    remaining_quota,
    usage_percentage,
)
from app.services.subscription_info_service import SubscriptionInfoService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


# ---------------------------------------------------------------------------
# GET /billing/config  (public, no auth)
# ---------------------------------------------------------------------------

@router.get(
    "/config",
    response_model=ConfigResponse,
    summary="Stripe configuration status",
    description="Returns the Stripe publishable key and whether Stripe is configured. No auth required.",
)
@limiter.limit("30/minute")
def get_billing_config(request: Request):
    settings = get_settings()
    return ConfigResponse(
        publishable_key=settings.STRIPE_PUBLISHABLE_KEY or None,
        stripe_configured=bool(settings.STRIPE_SECRET_KEY),
    )


# ---------------------------------------------------------------------------
# GET /billing/plans  (public, no auth)
# ---------------------------------------------------------------------------

@router.get(
    "/plans",
    response_model=PlansResponse,
    summary="Available billing plans",
    description="Paid plans with their features, limits and prices, optionally for one currency.",
)
@limiter.limit("30/minute")
def get_billing_plans(
    request: Request,
    currency: Optional[Currency] = None,
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    settings = get_settings()
    wanted = currency.value if currency else None

    plans = []
    for plan in catalog.available_plans(wanted):
        prices = [
            PlanPriceResponse(
                id=price.id,
                currency=price.currency.value,
                interval=price.interval.value,
                unit_amount=price.unit_amount,
            )
            for price in plan.prices
            if wanted is None or price.currency.value == wanted
        ]
        plans.append(PlanResponse(
            id=plan.id.value,
            name=plan.name,
            description=plan.description,
            features=plan.features.model_dump(by_alias=True),
            limits=plan.limits.model_dump(by_alias=True),
            prices=prices,
            trial_days=plan.trial_days,
            highlight=plan.highlight,
        ))

    return PlansResponse(plans=plans, stripe_configured=bool(settings.STRIPE_SECRET_KEY))


# ---------------------------------------------------------------------------
# POST /billing/checkout
# ---------------------------------------------------------------------------

@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    response_model_exclude_none=True,
    summary="Start or change a subscription",
    description=(
        "Returns a Stripe Checkout session when the organization has no active "
        "subscription, otherwise moves the existing subscription to the new price "
        "with proration."
    ),
)
@limiter.limit("5/minute")
def create_checkout(
    body: CheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    provider: StripeBillingClient = Depends(get_billing_client),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    try:
        result = CheckoutService.start(
            db, provider, catalog, body.organization_id, body.price_id, user,
        )
    except BillingError:
        raise
    except Exception as e:
        logger.exception("Checkout error for organization %s: %s", body.organization_id, e)
        raise BillingError("Failed to start checkout")

    return CheckoutResponse(**result.model_dump())


# ---------------------------------------------------------------------------
# POST /billing/subscription-info
# ---------------------------------------------------------------------------

@router.post(
    "/subscription-info",
    response_model=SubscriptionInfoResponse,
    summary="Current subscription status",
    description="Live Stripe subscription state, healed into the organization cache when it drifted.",
)
@limiter.limit("30/minute")
def get_subscription_info(
    body: OrganizationRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    provider: Optional[StripeBillingClient] = Depends(get_optional_billing_client),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    org = OrganizationStore.get(db, body.organization_id)
    require_billing_viewer(db, org.id, user.id)

    info = SubscriptionInfoService.resolve(db, provider, catalog, org)
    return SubscriptionInfoResponse(**info.model_dump())


# ---------------------------------------------------------------------------
# POST /billing/portal
# ---------------------------------------------------------------------------

@router.post(
    "/portal",
    response_model=PortalResponse,
    summary="Create a Stripe Customer Portal session",
    description="Opens the Stripe Customer Portal so an owner or admin can manage payment details.",
)
@limiter.limit("5/minute")
def create_portal(
    body: OrganizationRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    provider: StripeBillingClient = Depends(get_billing_client),
):
    org = OrganizationStore.get(db, body.organization_id)
    require_billing_manager(db, org.id, user.id)

    if not org.provider_customer_id:
        raise NoBillingAccount()

    session = provider.create_portal_session(
        org.provider_customer_id,
        return_url=f"{get_settings().SITE_URL}/settings/organization",
    )
    logger.info("Portal session opened for organization %s", org.id)
    return PortalResponse(url=session.url)


# ---------------------------------------------------------------------------
# POST /billing/entitlements
# ---------------------------------------------------------------------------

@router.post(
    "/entitlements",
    response_model=EntitlementsResponse,
    summary="Effective plan, features and limits",
)
@limiter.limit("60/minute")
def get_entitlements(
    body: OrganizationRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    provider: Optional[StripeBillingClient] = Depends(get_optional_billing_client),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    org = OrganizationStore.get(db, body.organization_id)
    require_billing_viewer(db, org.id, user.id)

    info = SubscriptionInfoService.resolve(db, provider, catalog, org)

    # Snapshots only apply while they belong to the resolved plan.
    same_plan = org.subscription_plan == info.plan
    features = catalog.effective_features(info.plan, org.features if same_plan else None)
    limits = catalog.effective_limits(info.plan, org.usage_limits if same_plan else None)

    return EntitlementsResponse(
        plan=info.plan,
        status=info.status,
        is_trialing=info.status == "trialing",
        trial_ends_at=org.trial_ends_at if info.status == "trialing" else None,
        features=features.model_dump(by_alias=True),
        limits=limits.model_dump(by_alias=True),
    )


# ---------------------------------------------------------------------------
# POST /billing/limits/check
# ---------------------------------------------------------------------------

@router.post(
    "/limits/check",
    response_model=LimitCheckResponse,
    summary="Check whether one more item fits under a plan limit",
)
@limiter.limit("60/minute")
def check_usage_limit(
    body: LimitCheckRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    org = OrganizationStore.get(db, body.organization_id)
    require_billing_viewer(db, org.id, user.id)

    try:
        normalize_limit_key(body.limit_key)
    except KeyError:
        raise InvalidRequest(f"Unknown limit: {body.limit_key}")

    limits = catalog.effective_limits(org.subscription_plan, org.usage_limits)
    limit = limits.get(body.limit_key)
    is_unlimited = limit == UNLIMITED

    return LimitCheckResponse(
        allowed=check_limit(body.limit_key, body.current_count, limits),
        current_count=body.current_count,
        limit=limit,
        remaining=None if is_unlimited else remaining_quota(body.limit_key, body.current_count, limits),
        is_unlimited=is_unlimited,
        usage_percentage=usage_percentage(body.limit_key, body.current_count, limits),
    )
