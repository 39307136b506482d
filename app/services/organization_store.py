"""
OrganizationStore: reads and single-row writes of an organization's cached billing fields.

All writes are updates keyed by organization id followed by a commit, so there is
no cross-tenant contention. ``is_trial_used`` is monotonic: a write trying to set
it back to False is dropped.
"""
import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from app.core.errors import OrgNotFound
from app.models import Organization

logger = logging.getLogger(__name__)

BILLING_FIELDS = frozenset({
    "subscription_plan",
    "subscription_status",
    "current_period_end",
    "cancel_at_period_end",
    "provider_customer_id",
    "provider_subscription_id",
    "provider_price_id",
    "billing_interval",
    "billing_currency",
    "trial_ends_at",
    "is_trial_used",
    "features",
    "usage_limits",
})


class OrganizationStore:

    @staticmethod
    def get(db: Session, organization_id: str) -> Organization:
        org = db.query(Organization).filter(Organization.id == organization_id).first()
        if not org:
            raise OrgNotFound(organization_id)
        return org

    @staticmethod
    def reload(db: Session, org: Organization) -> Organization:
        """Re-read the row so values persisted by a concurrent request are seen."""
        db.refresh(org)
        return org

    @staticmethod
    def update_billing(db: Session, org: Organization, values: Dict[str, Any]) -> Organization:
        """Write ``values`` to the organization row and commit."""
        unknown = set(values) - BILLING_FIELDS
        if unknown:
            raise ValueError(f"Not a billing field: {', '.join(sorted(unknown))}")

        values = dict(values)
        if values.get("is_trial_used") is False and org.is_trial_used:
            values.pop("is_trial_used")
        if not values:
            return org

        try:
            db.query(Organization).filter(Organization.id == org.id).update(
                values, synchronize_session=False
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(org)
        logger.debug("Organization %s billing fields updated: %s", org.id, ", ".join(sorted(values)))
        return org

    @staticmethod
    def save_customer_id(db: Session, org: Organization, customer_id: str) -> Organization:
        return OrganizationStore.update_billing(db, org, {"provider_customer_id": customer_id})

    @staticmethod
    def save_subscription_id(db: Session, org: Organization, subscription_id: str) -> Organization:
        return OrganizationStore.update_billing(db, org, {"provider_subscription_id": subscription_id})
