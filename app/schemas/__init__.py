from .billing import (
    OrganizationRequest, CheckoutRequest, LimitCheckRequest,
    CheckoutResponse, SubscriptionInfoResponse, PortalResponse, ConfigResponse,
    PlanPriceResponse, PlanResponse, PlansResponse, EntitlementsResponse, LimitCheckResponse,
)
