"""
Shared test fixtures for the entitlements backend test suite.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from editais.config import BillingConfig
from editais.errors import ProviderError
from editais.models.entitlements import GrantScope, Tier
from editais.models.events import CheckoutCompleted
from editais.services.admin_authorizer import StaticAdminAuthorizer
from editais.services.entitlement_store import EntitlementStore, InMemoryEntitlementRepository
from editais.services.lifecycle_service import LifecycleService
from editais.services.webhook_reconciler import WebhookReconciler

ADMIN_ID = "admin-1"


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


class YieldingRepository(InMemoryEntitlementRepository):
    """In-memory repository that yields to the event loop on every call."""

    async def get_record(self, user_id):
        await asyncio.sleep(0)
        return await super().get_record(user_id)

    async def save_record(self, record, *, expected_version):
        await asyncio.sleep(0)
        return await super().save_record(record, expected_version=expected_version)

    async def get_user_id_for_subscription(self, subscription_id):
        await asyncio.sleep(0)
        return await super().get_user_id_for_subscription(subscription_id)


class FakePaymentProvider:
    """Records Stripe calls; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.canceled: list[str] = []
        self.refunded: list[str] = []

    async def schedule_cancellation(self, subscription_id: str) -> None:
        if self.fail:
            raise ProviderError("stripe unavailable")
        self.canceled.append(subscription_id)

    async def refund_payment(self, payment_intent_id: str) -> str:
        if self.fail:
            raise ProviderError("stripe unavailable")
        self.refunded.append(payment_intent_id)
        return f"re_{payment_intent_id}"


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, Tier]] = []

    async def send_plan_confirmation(self, *, user_id: str, email: str | None, tier: Tier) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((user_id, tier))


def checkout_event(
    payment_reference: str,
    tier: Tier = Tier.ROLE,
    *,
    user_id: str = "user-1",
    scope: GrantScope | None = None,
    subscription_reference: str | None = None,
) -> CheckoutCompleted:
    if scope is None and tier == Tier.ROLE:
        scope = GrantScope(document_id="42", role_id="7")
    if scope is None and tier == Tier.DOCUMENT:
        scope = GrantScope(document_id="42")
    return CheckoutCompleted(
        event_id=f"evt_{payment_reference}",
        user_id=user_id,
        tier=tier,
        scope=scope,
        payment_reference=payment_reference,
        subscription_reference=subscription_reference,
        customer_reference="cus_1",
        customer_email="user@example.com",
    )


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep Settings independent from any local .env / Supabase project."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from editais.config import get_settings

    get_settings.cache_clear()

    from editais.main import app

    return TestClient(app)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(admin_user_ids=[ADMIN_ID])


@pytest.fixture
def repository() -> InMemoryEntitlementRepository:
    return InMemoryEntitlementRepository()


@pytest.fixture
def store(repository: InMemoryEntitlementRepository, clock: MutableClock) -> EntitlementStore:
    return EntitlementStore(repository, now_provider=clock.now)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def reconciler(
    store: EntitlementStore,
    billing_config: BillingConfig,
    notifier: RecordingNotifier,
    clock: MutableClock,
) -> WebhookReconciler:
    return WebhookReconciler(store, billing_config, notifier=notifier, now_provider=clock.now)


@pytest.fixture
def lifecycle(
    store: EntitlementStore,
    billing_config: BillingConfig,
    provider: FakePaymentProvider,
    clock: MutableClock,
) -> LifecycleService:
    return LifecycleService(
        store,
        billing_config,
        StaticAdminAuthorizer(billing_config.admin_user_ids),
        payment_provider=provider,
        now_provider=clock.now,
    )


@pytest.fixture
def admin_id() -> str:
    return ADMIN_ID


@pytest.fixture
def make_checkout():
    """Factory for verified checkout events (role grant for user-1 by default)."""
    return checkout_event


@pytest.fixture
def failing_provider() -> FakePaymentProvider:
    return FakePaymentProvider(fail=True)


@pytest.fixture
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)


@pytest.fixture
def yielding_store(clock: MutableClock) -> EntitlementStore:
    """Store whose repository yields on every call, so concurrent writers interleave."""
    return EntitlementStore(YieldingRepository(), now_provider=clock.now)


@pytest.fixture
def make_lifecycle(clock: MutableClock):
    """Factory for a LifecycleService with custom billing settings."""

    def _make(store: EntitlementStore, provider=None, **config) -> LifecycleService:
        billing = BillingConfig(admin_user_ids=[ADMIN_ID], **config)
        return LifecycleService(
            store,
            billing,
            StaticAdminAuthorizer(billing.admin_user_ids),
            payment_provider=provider,
            now_provider=clock.now,
        )

    return _make
