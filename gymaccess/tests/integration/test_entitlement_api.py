"""
Integration tests for the entitlement API.

Tests cover:
- Authentication on every route
- Status with lazy expiry
- Cancellation for cash and managed memberships
- Checkout and reconcile error mapping
- Rate limiting
"""

import pytest

pytestmark = pytest.mark.integration


class TestAuthentication:

    def test_health_is_public(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_missing_token(self, client):
        response = client.get("/entitlement/status")

        assert response.status_code == 401
        assert response.json()["error"] == "authentication_error"

    def test_invalid_token(self, client):
        response = client.get("/entitlement/status", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 401


class TestStatus:

    def test_without_membership(self, client, auth_headers):
        response = client.get("/entitlement/status", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["has_access"] is False
        assert body["membership_id"] is None

    def test_cash_membership(self, client, auth_headers, make_membership):
        membership = make_membership(payment_method="cash")

        body = client.get("/entitlement/status", headers=auth_headers).json()

        assert body["has_access"] is True
        assert body["membership_id"] == membership.id
        assert body["payment_method"] == "cash"
        assert body["is_managed"] is False
        assert body["cancellation_requested"] is False

    def test_lapsed_membership_reported_expired(self, client, auth_headers, make_membership, clock):
        make_membership()
        clock.advance(days=21)

        body = client.get("/entitlement/status", headers=auth_headers).json()

        assert body["has_access"] is False
        assert body["status"] == "expired"

    def test_reconcile_failure_does_not_fail_status(
        self, client, auth_headers, billing_client, make_membership
    ):
        from gymaccess.integrations.stripe.billing_client import StripeAPIError

        make_membership(payment_method="managed_subscription", external_subscription_ref="sub_123")
        billing_client.get_subscription.side_effect = StripeAPIError("down", status_code=503)

        response = client.get("/entitlement/status?reconcile=true", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["reconciliation"] == "retryable"
        assert response.json()["has_access"] is True


class TestCancel:

    def test_cash_cancellation(self, client, auth_headers, billing_client, make_membership):
        membership = make_membership(payment_method="cash")

        response = client.post("/entitlement/cancel", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["effect"] == "grace_period"
        assert body["managed"] is False
        assert body["already_requested"] is False
        billing_client.cancel_at_period_end.assert_not_awaited()
        billing_client.get_subscription.assert_not_awaited()

        status = client.get("/entitlement/status", headers=auth_headers).json()
        assert status["has_access"] is True
        assert status["cancellation_requested"] is True

    def test_repeat_cancellation(self, client, auth_headers, make_membership):
        make_membership(payment_method="cash")
        client.post("/entitlement/cancel", headers=auth_headers)

        body = client.post("/entitlement/cancel", headers=auth_headers).json()

        assert body["already_requested"] is True

    def test_nothing_to_cancel(self, client, auth_headers):
        response = client.post("/entitlement/cancel", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "no_active_membership"

    def test_managed_cancellation(
        self, client, auth_headers, billing_client, make_membership, make_subscription
    ):
        make_membership(payment_method="managed_subscription", external_subscription_ref="sub_123")
        billing_client.get_subscription.return_value = make_subscription()
        billing_client.cancel_at_period_end.return_value = make_subscription(cancel_at_period_end=True)

        response = client.post("/entitlement/cancel", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["managed"] is True
        billing_client.cancel_at_period_end.assert_awaited_once_with("sub_123")

    def test_managed_cancellation_without_processor(self, client, auth_headers, processor, make_membership):
        make_membership(payment_method="managed_subscription", external_subscription_ref="sub_123")
        processor["client"] = None

        response = client.post("/entitlement/cancel", headers=auth_headers)

        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "processor_unavailable"
        assert body["retryable"] is False


class TestCheckout:

    def test_unknown_plan(self, client, auth_headers):
        response = client.post("/entitlement/checkout", headers=auth_headers, json={
            "plan_id": "no-such-plan",
            "success_url": "https://app.example.com/ok",
            "cancel_url": "https://app.example.com/cancel",
        })

        assert response.status_code == 404
        assert response.json()["error"] == "plan_not_found"

    def test_checkout_url_returned(self, client, auth_headers, billing_client, plan):
        from gymaccess.integrations.stripe.billing_client import CheckoutSession, StripeCustomer

        billing_client.create_customer.return_value = StripeCustomer(id="cus_new")
        billing_client.create_checkout_session.return_value = CheckoutSession(
            id="cs_1", url="https://checkout.stripe.com/c/pay/cs_1"
        )

        response = client.post("/entitlement/checkout", headers=auth_headers, json={
            "plan_id": plan.id,
            "success_url": "https://app.example.com/ok",
            "cancel_url": "https://app.example.com/cancel",
        })

        assert response.status_code == 200
        assert response.json()["checkout_url"] == "https://checkout.stripe.com/c/pay/cs_1"

    def test_validation_error_shape(self, client, auth_headers):
        response = client.post("/entitlement/checkout", headers=auth_headers, json={})

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert "plan_id" in body["message"]

    def test_checkout_rate_limited(self, client, auth_headers):
        payload = {
            "plan_id": "no-such-plan",
            "success_url": "https://app.example.com/ok",
            "cancel_url": "https://app.example.com/cancel",
        }
        for _ in range(5):
            assert client.post("/entitlement/checkout", headers=auth_headers, json=payload).status_code == 404

        response = client.post("/entitlement/checkout", headers=auth_headers, json=payload)

        assert response.status_code == 429
        assert response.json()["error"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1


class TestReconcile:

    def test_reconcile_without_processor(self, client, auth_headers, processor):
        processor["client"] = None

        body = client.post("/entitlement/reconcile", headers=auth_headers).json()

        assert body["outcome"] == "retryable"
        assert body["retryable"] is True

    def test_reconcile_creates_membership(
        self, client, auth_headers, billing_client, make_subscription
    ):
        from gymaccess.integrations.stripe.billing_client import StripeCustomer

        billing_client.list_customers.return_value = [StripeCustomer(id="cus_123", email="member@example.com")]
        billing_client.list_subscriptions.return_value = [make_subscription()]

        body = client.post("/entitlement/reconcile", headers=auth_headers).json()

        assert body["outcome"] == "created"
        assert body["processor_status"] == "active"
        status = client.get("/entitlement/status", headers=auth_headers).json()
        assert status["has_access"] is True
        assert status["is_managed"] is True
