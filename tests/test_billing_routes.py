from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.core.errors import ProviderTimeout
from app.main import app
from app.middleware.auth import create_access_token, get_current_user
from app.models import Organization
from app.services.organization_store import OrganizationStore


def test_read_root(client: TestClient):
    response = client.get("/")
    assert response.status_code == 200
    assert "is running" in response.json()["message"]


def test_health(client: TestClient):
    assert client.get("/health").json() == {"status": "ok"}


def test_checkout_scenario_free_tenant(client: TestClient, db_session: Session, make_org):
    org = make_org(name="org_A")

    response = client.post("/billing/checkout", json={"priceId": "pro_monthly_try", "organizationId": org.id})

    assert response.status_code == 200
    data = response.json()
    assert data["type"] == "checkout_session"
    assert data["url"]
    assert data["sessionId"]
    assert "subscriptionId" not in data

    db_session.expire_all()
    assert org.provider_customer_id is not None
    assert org.is_trial_used is False


def test_checkout_updates_subscription_in_place(client: TestClient, db_session: Session, make_org, provider):
    org = make_org(provider_customer_id="cus_try")
    subscription = provider.add_subscription("cus_try", "pro_monthly_try")

    response = client.post("/billing/checkout", json={"priceId": "pro_yearly_try", "organizationId": org.id})

    assert response.status_code == 200
    data = response.json()
    assert data["type"] == "subscription_updated"
    assert data["subscriptionId"] == subscription.id
    assert data["message"]
    assert data["redirectUrl"].endswith("upgraded=true")
    assert provider.count("create_checkout_session") == 0
    assert provider.subscriptions[subscription.id].price_id == "pro_yearly_try"
    assert len(provider.active_for("cus_try")) == 1


def test_checkout_currency_mismatch(client: TestClient, db_session: Session, make_org, provider):
    org = make_org(provider_customer_id="cus_usd", subscription_plan="pro", subscription_status="active")
    subscription = provider.add_subscription("cus_usd", "pro_monthly_usd")

    response = client.post("/billing/checkout", json={"priceId": "pro_monthly_try", "organizationId": org.id})

    assert response.status_code == 400
    data = response.json()
    assert data["type"] == "currency_mismatch"
    assert data["currentCurrency"] == "usd"
    assert data["newCurrency"] == "try"
    assert provider.subscriptions[subscription.id].price_id == "pro_monthly_usd"

    db_session.expire_all()
    assert org.subscription_plan == "pro"
    assert org.provider_subscription_id is None


def test_checkout_invalid_price(client: TestClient, make_org, provider):
    org = make_org()

    response = client.post("/billing/checkout", json={"priceId": "price_bogus", "organizationId": org.id})

    assert response.status_code == 400
    assert response.json()["type"] == "invalid_price"
    assert provider.calls == []


def test_checkout_forbidden_for_members(client: TestClient, make_org, add_membership, login):
    org = make_org()
    add_membership(org, "user-member", role="member")
    login("user-member")

    response = client.post("/billing/checkout", json={"priceId": "pro_monthly_usd", "organizationId": org.id})

    assert response.status_code == 403
    assert response.json()["type"] == "permission_denied"


def test_checkout_unknown_organization(client: TestClient):
    response = client.post("/billing/checkout", json={"priceId": "pro_monthly_usd", "organizationId": "nope"})

    assert response.status_code == 404
    assert response.json()["type"] == "organization_not_found"


def test_checkout_missing_fields(client: TestClient):
    response = client.post("/billing/checkout", json={"organizationId": "org"})

    assert response.status_code == 400
    assert response.json()["type"] == "invalid_request"
    assert "priceId" in response.json()["error"]


def test_checkout_provider_timeout_is_retryable(client: TestClient, make_org, provider):
    org = make_org(provider_customer_id="cus_slow")
    provider.fail("list_active_subscriptions", ProviderTimeout())

    response = client.post("/billing/checkout", json={"priceId": "pro_monthly_usd", "organizationId": org.id})

    assert response.status_code == 503
    assert response.json()["retryable"] is True


def test_checkout_unexpected_error_is_internal(client: TestClient, make_org, provider):
    org = make_org()
    provider.fail("create_customer", RuntimeError("socket closed"))

    response = client.post("/billing/checkout", json={"priceId": "pro_monthly_usd", "organizationId": org.id})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to start checkout", "type": "internal_error"}


def test_subscription_info_free_defaults(client: TestClient, make_org, provider):
    org = make_org()

    response = client.post("/billing/subscription-info", json={"organizationId": org.id})

    assert response.status_code == 200
    assert response.json() == {
        "currentPeriodEnd": None,
        "cancelAtPeriodEnd": False,
        "status": "none",
        "plan": "free",
        "interval": None,
        "priceId": None,
    }
    assert provider.calls == []


def test_subscription_info_degrades_on_timeout(client: TestClient, make_org, provider):
    org = make_org(
        provider_subscription_id="sub_cached",
        subscription_plan="starter",
        subscription_status="active",
        billing_interval="month",
    )
    provider.fail("retrieve_subscription", ProviderTimeout())

    response = client.post("/billing/subscription-info", json={"organizationId": org.id})

    assert response.status_code == 200
    assert response.json()["plan"] == "starter"
    assert response.json()["status"] == "active"


def test_subscription_info_allows_viewers(client: TestClient, make_org, add_membership, login):
    org = make_org()
    add_membership(org, "user-viewer", role="viewer")
    login("user-viewer")

    response = client.post("/billing/subscription-info", json={"organizationId": org.id})

    assert response.status_code == 200


def test_subscription_info_rejects_outsiders(client: TestClient, make_org, login):
    org = make_org()
    login("stranger")

    response = client.post("/billing/subscription-info", json={"organizationId": org.id})

    assert response.status_code == 403


def test_portal_requires_billing_account(client: TestClient, make_org):
    org = make_org()

    response = client.post("/billing/portal", json={"organizationId": org.id})

    assert response.status_code == 400
    assert response.json()["type"] == "no_billing_account"


def test_portal_session(client: TestClient, make_org, provider):
    org = make_org(provider_customer_id="cus_portal")

    response = client.post("/billing/portal", json={"organizationId": org.id})

    assert response.status_code == 200
    assert response.json()["url"] == "https://billing.stripe.test/cus_portal"
    assert provider.last_call("create_portal_session")["return_url"].endswith("/settings/organization")


def test_plans_listing(client: TestClient):
    response = client.get("/billing/plans", params={"currency": "try"})

    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [p["id"] for p in plans] == ["starter", "pro", "enterprise"]
    assert all(price["currency"] == "try" for p in plans for price in p["prices"])
    pro = plans[1]
    assert pro["highlight"] is True
    assert pro["trialDays"] == 14
    assert pro["limits"]["maxCustomers"] == 10000
    assert pro["features"]["smtp"] is True


def test_plans_rejects_unknown_currency(client: TestClient):
    response = client.get("/billing/plans", params={"currency": "eur"})

    assert response.status_code == 400
    assert response.json()["type"] == "invalid_request"


def test_config_is_public(client: TestClient):
    app.dependency_overrides.pop(get_current_user, None)

    response = client.get("/billing/config")

    assert response.status_code == 200
    assert set(response.json()) == {"publishableKey", "stripeConfigured"}


def test_entitlements_follow_live_plan(client: TestClient, db_session: Session, make_org, provider):
    org = make_org(provider_customer_id="cus_1")
    subscription = provider.add_subscription("cus_1", "pro_monthly_usd", status="trialing", trial_days=14)
    OrganizationStore.save_subscription_id(db_session, org, subscription.id)

    response = client.post("/billing/entitlements", json={"organizationId": org.id})

    assert response.status_code == 200
    data = response.json()
    assert data["plan"] == "pro"
    assert data["isTrialing"] is True
    assert data["trialEndsAt"] is not None
    assert data["features"]["apiAccess"] is True
    assert data["limits"]["maxUsers"] == 10


def test_limit_check(client: TestClient, make_org):
    org = make_org(subscription_plan="starter", subscription_status="active")

    allowed = client.post("/billing/limits/check", json={
        "organizationId": org.id, "limitKey": "maxCustomers", "currentCount": 49,
    }).json()
    blocked = client.post("/billing/limits/check", json={
        "organizationId": org.id, "limitKey": "maxCustomers", "currentCount": 50,
    }).json()

    assert allowed["allowed"] is True
    assert allowed["remaining"] == 1
    assert allowed["usagePercentage"] == 98
    assert blocked["allowed"] is False
    assert blocked["remaining"] == 0
    assert blocked["limit"] == 50


def test_limit_check_unlimited(client: TestClient, make_org):
    org = make_org(subscription_plan="enterprise", subscription_status="active")

    data = client.post("/billing/limits/check", json={
        "organizationId": org.id, "limitKey": "maxCustomers", "currentCount": 9999,
    }).json()

    assert data["allowed"] is True
    assert data["isUnlimited"] is True
    assert data["limit"] == -1
    assert data["remaining"] is None
    assert data["usagePercentage"] == 0


def test_limit_check_unknown_key(client: TestClient, make_org):
    org = make_org()

    response = client.post("/billing/limits/check", json={
        "organizationId": org.id, "limitKey": "maxWidgets", "currentCount": 1,
    })

    assert response.status_code == 400
    assert response.json()["type"] == "invalid_request"


def test_bearer_token_authenticates_caller(client: TestClient, make_org):
    org = make_org()
    app.dependency_overrides.pop(get_current_user, None)
    token = create_access_token("user-owner", email="owner@acme.test")

    response = client.post(
        "/billing/subscription-info",
        json={"organizationId": org.id},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200


def test_missing_or_invalid_token_is_unauthorized(client: TestClient, make_org):
    org = make_org()
    app.dependency_overrides.pop(get_current_user, None)

    missing = client.post("/billing/subscription-info", json={"organizationId": org.id})
    invalid = client.post(
        "/billing/subscription-info",
        json={"organizationId": org.id},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert missing.status_code == 401
    assert invalid.status_code == 401
    assert invalid.json()["type"] == "unauthorized"


def test_organization_row_is_per_tenant(client: TestClient, db_session: Session, make_org):
    first = make_org(name="First")
    second = make_org(name="Second", owner_id="user-other")

    client.post("/billing/checkout", json={"priceId": "pro_monthly_usd", "organizationId": first.id})

    rows = {o.name: o for o in db_session.query(Organization).all()}
    assert rows["First"].provider_customer_id is not None
    assert rows["Second"].provider_customer_id is None
    assert second.id != first.id


def test_entitlements_after_cancellation_are_free(client: TestClient, db_session: Session, make_org, provider):
    org = make_org(provider_customer_id="cus_1")
    subscription = provider.add_subscription("cus_1", "enterprise_monthly_usd")
    OrganizationStore.save_subscription_id(db_session, org, subscription.id)
    client.post("/billing/subscription-info", json={"organizationId": org.id})
    provider.cancel(subscription.id)

    data = client.post("/billing/entitlements", json={"organizationId": org.id}).json()
    check = client.post("/billing/limits/check", json={
        "organizationId": org.id, "limitKey": "maxUsers", "currentCount": 1,
    }).json()

    assert data["plan"] == "free"
    assert data["status"] == "canceled"
    assert data["limits"]["maxUsers"] == 1
    assert data["features"]["whiteLabel"] is False
    assert check["allowed"] is False
    assert check["isUnlimited"] is False
