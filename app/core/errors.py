"""
Billing error taxonomy.

Every error carries the HTTP status the API boundary answers with and a
machine-checkable ``type`` that clients branch on (e.g. ``currency_mismatch``).
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for billing errors."""
    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str = "Billing operation failed", **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "type": self.error_type}
        body.update(self.extra)
        return body


class Unauthorized(BillingError):
    """No authenticated caller."""
    status_code = 401
    error_type = "unauthorized"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class PermissionDenied(BillingError):
    """Caller's role or membership status is insufficient."""
    status_code = 403
    error_type = "permission_denied"

    def __init__(self, message: str = "You are not allowed to manage billing for this organization"):
        super().__init__(message)


class OrgNotFound(BillingError):
    status_code = 404
    error_type = "organization_not_found"

    def __init__(self, organization_id: str):
        super().__init__(f"Organization {organization_id} not found")
        self.organization_id = organization_id


class NotFound(BillingError):
    """Subscription, customer or price missing at the provider."""
    status_code = 404
    error_type = "not_found"


class InvalidPrice(BillingError):
    status_code = 400
    error_type = "invalid_price"

    def __init__(self, price_id: Optional[str]):
        super().__init__(f"Unknown price: {price_id}")
        self.price_id = price_id


class CurrencyMismatch(BillingError):
    """Requested price is billed in another currency than the active subscription.

    Never resolved automatically: switching currency requires cancelling the
    current subscription and starting a new one.
    """
    status_code = 400
    error_type = "currency_mismatch"

    def __init__(self, current_currency: str, new_currency: str):
        super().__init__(
            f"Currency mismatch: your current subscription is billed in "
            f"{current_currency.upper()}. Choose a plan in the same currency or "
            f"cancel your subscription and start again.",
            currentCurrency=current_currency,
            newCurrency=new_currency,
        )
        self.current_currency = current_currency
        self.new_currency = new_currency


class NoBillingAccount(BillingError):
    status_code = 400
    error_type = "no_billing_account"

    def __init__(self, message: str = "This organization has no billing account yet"):
        super().__init__(message)


class ProviderError(BillingError):
    """Non-retryable failure reported by the billing provider."""
    status_code = 500
    error_type = "provider_error"


class ProviderTimeout(ProviderError):
    """Provider did not answer in time; safe to retry."""
    status_code = 503
    error_type = "provider_timeout"

    def __init__(self, message: str = "Billing provider timed out, please retry"):
        super().__init__(message, retryable=True)


class BillingNotConfigured(ProviderError):
    status_code = 503
    error_type = "billing_not_configured"

    def __init__(self, message: str = "Stripe is not configured. Set STRIPE_SECRET_KEY."):
        super().__init__(message)


class InvalidRequest(BillingError):
    """Malformed or unknown input that passed schema validation."""
    status_code = 400
    error_type = "invalid_request"
