"""
SQLAlchemy models base and Organization model.

The organization row caches the billing state mirrored from Stripe. Stripe stays
the source of truth; these columns are healed on read by the subscription info
resolver and by the (external) webhook consumer.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, Boolean, JSON
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Organization(Base):
    """
    Organizations table - one row per tenant, one billing relationship each.

    Attributes:
        subscription_plan: free|starter|pro|enterprise
        subscription_status: none|trialing|active|past_due|canceled
        provider_customer_id: Stripe customer, created once on first checkout
        provider_subscription_id: the single non-canceled Stripe subscription
        is_trial_used: flips to True once, never back
        features / usage_limits: snapshots of the plan entitlements
    """
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name = Column(String(255), nullable=False)

    subscription_plan = Column(String(20), nullable=False, default="free")
    subscription_status = Column(String(20), nullable=False, default="none")
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Stripe IDs
    provider_customer_id = Column(String(100), nullable=True, unique=True, index=True)
    provider_subscription_id = Column(String(100), nullable=True, unique=True, index=True)
    provider_price_id = Column(String(100), nullable=True)

    billing_interval = Column(String(10), nullable=True)     # month|year
    billing_currency = Column(String(3), nullable=True)      # usd|try
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    is_trial_used = Column(Boolean, nullable=False, default=False)

    features = Column(JSON, nullable=True)
    usage_limits = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship("Membership", back_populates="organization", cascade="all, delete-orphan")
