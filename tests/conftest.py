import itertools
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.database import get_db
from app.core.errors import NotFound
from app.core.limiter import limiter
from app.middleware.auth import CurrentUser, get_current_user
from app.models import Base, Membership, Organization
from app.services.billing_provider import (
    CheckoutSession,
    Customer,
    PortalSession,
    Price,
    Subscription,
    SubscriptionItem,
    ACTIVE_SUBSCRIPTION_STATUSES,
    get_billing_client,
    get_optional_billing_client,
)
from app.services.plan_catalog import get_plan_catalog

# Setup in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

limiter.enabled = False

OWNER_ID = "user-owner"


class FakeBillingProvider:
    """In-memory stand-in for StripeBillingClient that records every call."""

    def __init__(self):
        self.customers = {}
        self.subscriptions = {}
        self.prices = {}
        self.calls = []
        self.failures = {}
        self._ids = itertools.count(1)

        for plan in get_plan_catalog().plans():
            for price in plan.prices:
                self.prices[price.id] = Price(
                    id=price.id,
                    currency=price.currency.value,
                    unit_amount=price.unit_amount,
                    interval=price.interval.value,
                )

    def fail(self, operation, exc):
        """Make every later call to ``operation`` raise ``exc``."""
        self.failures[operation] = exc

    def count(self, operation):
        return sum(1 for op, _ in self.calls if op == operation)

    def last_call(self, operation):
        for op, params in reversed(self.calls):
            if op == operation:
                return params
        return None

    def _record(self, operation, **params):
        self.calls.append((operation, params))
        if operation in self.failures:
            raise self.failures[operation]

    def _next_id(self, prefix):
        return f"{prefix}_{next(self._ids)}"

    # Test helpers, not part of the client surface

    def add_subscription(self, customer_id, price_id, status="active", trial_days=0):
        now = datetime.now(timezone.utc).replace(microsecond=0)
        price = self.prices[price_id]
        subscription = Subscription(
            id=self._next_id("sub"),
            customer_id=customer_id,
            status=status,
            currency=price.currency,
            current_period_end=now + timedelta(days=30),
            trial_end=now + timedelta(days=trial_days) if trial_days else None,
            created=now + timedelta(seconds=len(self.subscriptions)),
            items=[SubscriptionItem(id=self._next_id("si"), price=price)],
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def cancel(self, subscription_id):
        self.subscriptions[subscription_id].status = "canceled"

    def active_for(self, customer_id):
        return [
            s for s in self.subscriptions.values()
            if s.customer_id == customer_id and s.status in ACTIVE_SUBSCRIPTION_STATUSES
        ]

    # StripeBillingClient surface

    def create_customer(self, organization_id, display_name, email):
        self._record("create_customer", organization_id=organization_id, display_name=display_name, email=email)
        customer = Customer(id=self._next_id("cus"), email=email, name=display_name)
        self.customers[customer.id] = customer
        return customer

    def list_active_subscriptions(self, customer_id):
        self._record("list_active_subscriptions", customer_id=customer_id)
        return sorted(self.active_for(customer_id), key=lambda s: s.created, reverse=True)

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id=subscription_id)
        if subscription_id not in self.subscriptions:
            raise NotFound(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    def update_subscription_item(self, subscription_id, item_id, new_price_id,
                                 proration="create_prorations", metadata=None):
        self._record(
            "update_subscription_item",
            subscription_id=subscription_id, item_id=item_id,
            new_price_id=new_price_id, proration=proration, metadata=metadata,
        )
        subscription = self.subscriptions[subscription_id]
        subscription.items = [SubscriptionItem(id=item_id, price=self.prices[new_price_id])]
        return subscription

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url,
                                trial_days=None, metadata=None):
        self._record(
            "create_checkout_session",
            customer_id=customer_id, price_id=price_id, success_url=success_url,
            cancel_url=cancel_url, trial_days=trial_days, metadata=metadata,
        )
        session_id = self._next_id("cs")
        return CheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def retrieve_price(self, price_id):
        self._record("retrieve_price", price_id=price_id)
        if price_id not in self.prices:
            raise NotFound(f"No such price: {price_id}")
        return self.prices[price_id]

    def create_portal_session(self, customer_id, return_url):
        self._record("create_portal_session", customer_id=customer_id, return_url=return_url)
        return PortalSession(url=f"https://billing.stripe.test/{customer_id}")


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def catalog():
    return get_plan_catalog()


@pytest.fixture
def make_org(db_session):
    def _make(name="Acme", owner_id=OWNER_ID, role="owner", status="active", **fields):
        org = Organization(name=name, **fields)
        db_session.add(org)
        db_session.commit()
        if owner_id:
            add_member(db_session, org, owner_id, role=role, status=status)
        db_session.refresh(org)
        return org
    return _make


def add_member(db_session, org, user_id, role="member", status="active"):
    membership = Membership(organization_id=org.id, user_id=user_id, role=role, status=status)
    db_session.add(membership)
    db_session.commit()
    return membership


@pytest.fixture
def owner():
    return CurrentUser(id=OWNER_ID, email="owner@acme.test")


@pytest.fixture(scope="function")
def client(db_session, provider, owner):
    """Create a test client with overridden dependencies."""

    # Override get_db
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: owner
    app.dependency_overrides[get_billing_client] = lambda: provider
    app.dependency_overrides[get_optional_billing_client] = lambda: provider

    with TestClient(app) as c:
        yield c

    app.dependency_overrides = {}


@pytest.fixture
def login():
    """Switch the authenticated caller for the rest of the test."""
    def _login(user_id, email=None):
        user = CurrentUser(id=user_id, email=email)
        app.dependency_overrides[get_current_user] = lambda: user
        return user
    return _login


@pytest.fixture
def add_membership(db_session):
    def _add(org, user_id, role="member", status="active"):
        return add_member(db_session, org, user_id, role=role, status=status)
    return _add
