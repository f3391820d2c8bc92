"""Integration tests for billing API endpoints."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import stripe

from editais.auth import AuthenticatedUser, get_current_user
from editais.config import BillingConfig, StripeConfig
from editais.services.admin_authorizer import StaticAdminAuthorizer
from editais.services.entitlement_store import EntitlementStore, InMemoryEntitlementRepository
from editais.services.lifecycle_service import LifecycleService
from editais.services.stripe_service import StripeService
from editais.services.webhook_reconciler import WebhookReconciler


async def _fake_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="user@example.com")


class FakeStripeClient:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sessions: list[dict] = []
        self.customers = SimpleNamespace(create=self._customer_create)
        self.checkout = SimpleNamespace(sessions=SimpleNamespace(create=self._session_create))

    def _customer_create(self, params):
        if self.fail:
            raise stripe.StripeError("stripe is down")
        return SimpleNamespace(id="cus_new")

    def _session_create(self, params):
        if self.fail:
            raise stripe.StripeError("stripe is down")
        self.sessions.append(params)
        return SimpleNamespace(id="cs_test", url="https://checkout.test/session")

    def construct_event(self, _payload, sig_header, _secret):
        if sig_header == "bad":
            raise stripe.SignatureVerificationError("No signatures found", sig_header)
        return SimpleNamespace(id="evt")


def _stripe_service(fake: FakeStripeClient | None = None, **config) -> StripeService:
    values = {
        "secret_key": "sk_test",
        "webhook_secret": "whsec_test",
        "price_role": "price_role",
        "price_document": "price_doc",
        "price_unlimited": "price_year",
    }
    values.update(config)
    return StripeService(StripeConfig(**values), client=fake or FakeStripeClient())


def _install(client, *, stripe_service=None, repository=None) -> InMemoryEntitlementRepository:
    repository = repository if repository is not None else InMemoryEntitlementRepository()
    config = BillingConfig()
    store = EntitlementStore(repository)
    client.app.state.entitlement_store = store
    client.app.state.stripe_service = stripe_service
    client.app.state.webhook_reconciler = WebhookReconciler(store, config)
    client.app.state.lifecycle_service = LifecycleService(
        store, config, StaticAdminAuthorizer(config.admin_user_ids)
    )
    return repository


def _checkout_payload(payment_intent: str = "pi_1", **metadata) -> bytes:
    meta = {"user_id": "user-1", "plan_id": "plano_edital", "document_id": "42", **metadata}
    return json.dumps(
        {
            "id": f"evt_{payment_intent}",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "payment_intent": payment_intent,
                    "customer": "cus_1",
                    "payment_status": "paid",
                    "metadata": meta,
                }
            },
        }
    ).encode()


def _post_webhook(client, payload: bytes, signature: str | None = "sig_ok"):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post("/api/v1/billing/webhook", content=payload, headers=headers)


class TestWebhookEndpoint:
    def test_requires_stripe_config(self, client):
        _install(client, stripe_service=None)

        response = _post_webhook(client, _checkout_payload())

        assert response.status_code == 503

    def test_admits_paid_checkout(self, client):
        repository = _install(client, stripe_service=_stripe_service())

        response = _post_webhook(client, _checkout_payload())

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "admitted"}
        record = repository.records["user-1"]
        assert record.effective_tier.value == "plano_edital"
        assert record.active_grants[0].scope.document_id == "42"

    def test_redelivery_is_acknowledged_once(self, client):
        repository = _install(client, stripe_service=_stripe_service())
        _post_webhook(client, _checkout_payload())

        response = _post_webhook(client, _checkout_payload())

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"
        assert len(repository.records["user-1"].active_grants) == 1

    def test_bad_signature_is_rejected(self, client):
        repository = _install(client, stripe_service=_stripe_service())

        response = _post_webhook(client, _checkout_payload(), signature="bad")

        assert response.status_code == 400
        assert repository.records == {}

    def test_missing_signature_is_rejected(self, client):
        repository = _install(client, stripe_service=_stripe_service())

        response = _post_webhook(client, _checkout_payload(), signature=None)

        assert response.status_code == 400
        assert repository.records == {}

    def test_missing_webhook_secret(self, client):
        _install(client, stripe_service=_stripe_service(webhook_secret=""))

        response = _post_webhook(client, _checkout_payload())

        assert response.status_code == 500

    def test_malformed_metadata_is_rejected(self, client):
        repository = _install(client, stripe_service=_stripe_service())

        response = _post_webhook(client, _checkout_payload(plan_id="plano_vip"))

        assert response.status_code == 400
        assert repository.records == {}

    def test_unhandled_event_is_acknowledged(self, client):
        _install(client, stripe_service=_stripe_service())
        payload = json.dumps({"id": "evt_x", "type": "customer.created", "data": {"object": {}}}).encode()

        response = _post_webhook(client, payload)

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_subscription_deletion_revokes_unlimited(self, client):
        repository = _install(client, stripe_service=_stripe_service())
        checkout = json.loads(_checkout_payload(plan_id="plano_anual"))
        checkout["data"]["object"]["subscription"] = "sub_1"
        _post_webhook(client, json.dumps(checkout).encode())
        deleted = json.dumps(
            {"id": "evt_del", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_1"}}}
        ).encode()

        response = _post_webhook(client, deleted)

        assert response.json()["outcome"] == "canceled"
        record = repository.records["user-1"]
        assert record.effective_tier is None
        assert record.history[0].status.value == "canceled"

    def test_storage_failure_asks_for_redelivery(self, client):
        repository = MagicMock()
        repository.get_record = AsyncMock(side_effect=ConnectionError("database unreachable"))
        _install(client, stripe_service=_stripe_service(), repository=repository)

        response = _post_webhook(client, _checkout_payload())

        assert response.status_code == 500


class TestBillingCheckoutEndpoint:
    def test_checkout_requires_stripe_config(self, client):
        _install(client, stripe_service=None)
        client.app.dependency_overrides[get_current_user] = _fake_user

        response = client.post("/api/v1/billing/checkout", json={"plan_id": "plano_anual"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 503

    def test_role_checkout_returns_url(self, client):
        fake = FakeStripeClient()
        repository = _install(client, stripe_service=_stripe_service(fake))
        client.app.dependency_overrides[get_current_user] = _fake_user

        response = client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": "plano_cargo", "document_id": "42", "role_id": "7"},
        )

        client.app.dependency_overrides.clear()
        assert response.status_code == 200
        assert response.json() == {"checkout_url": "https://checkout.test/session", "session_id": "cs_test"}
        assert fake.sessions[0]["mode"] == "payment"
        assert fake.sessions[0]["metadata"]["role_id"] == "7"
        assert repository.records["user-1"].customer_reference == "cus_new"

    def test_unlimited_checkout_is_a_subscription(self, client):
        fake = FakeStripeClient()
        _install(client, stripe_service=_stripe_service(fake))
        client.app.dependency_overrides[get_current_user] = _fake_user

        response = client.post("/api/v1/billing/checkout", json={"plan_id": "plano_anual"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 200
        assert fake.sessions[0]["mode"] == "subscription"

    def test_checkout_rejects_trial_plan(self, client):
        _install(client, stripe_service=_stripe_service())
        client.app.dependency_overrides[get_current_user] = _fake_user

        response = client.post("/api/v1/billing/checkout", json={"plan_id": "plano_trial"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 400

    def test_checkout_requires_scope(self, client):
        _install(client, stripe_service=_stripe_service())
        client.app.dependency_overrides[get_current_user] = _fake_user

        response = client.post(
            "/api/v1/billing/checkout", json={"plan_id": "plano_cargo", "document_id": "42"}
        )

        client.app.dependency_overrides.clear()
        assert response.status_code == 400

    def test_checkout_without_price(self, client):
        _install(client, stripe_service=_stripe_service(price_document=""))
        client.app.dependency_overrides[get_current_user] = _fake_user

        response = client.post(
            "/api/v1/billing/checkout", json={"plan_id": "plano_edital", "document_id": "42"}
        )

        client.app.dependency_overrides.clear()
        assert response.status_code == 400

    def test_checkout_provider_failure(self, client):
        _install(client, stripe_service=_stripe_service(FakeStripeClient(fail=True)))
        client.app.dependency_overrides[get_current_user] = _fake_user

        response = client.post("/api/v1/billing/checkout", json={"plan_id": "plano_anual"})

        client.app.dependency_overrides.clear()
        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "provider_unavailable"
