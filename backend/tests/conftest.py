"""
Shared test fixtures for the seller billing test suite.
"""

import copy
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import structlog
from fastapi.testclient import TestClient

from seller_billing.config import StripeConfig
from seller_billing.constants import DEFAULT_CATALOG_IDS
from seller_billing.errors import GatewayError
from seller_billing.models.billing import (
    BillingCycle,
    HostedSession,
    SellerProfile,
    StripeCustomer,
    StripePrice,
    StripeSubscription,
    SubscriptionSchedule,
    Tier,
)
from seller_billing.services.catalog import TierCatalog
from seller_billing.services.profile_store import InMemoryProfileStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
PERIOD_START = int(datetime(2026, 3, 1, tzinfo=UTC).timestamp())
PERIOD_END = int(datetime(2026, 4, 1, tzinfo=UTC).timestamp())


def price_id(tier: Tier, cycle: BillingCycle = BillingCycle.MONTHLY) -> str:
    return DEFAULT_CATALOG_IDS[tier][cycle]


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("STRIPE__SECRET_KEY", "sk_test_fake_key_for_testing")
    monkeypatch.setenv("STRIPE__WEBHOOK_SECRET", "whsec_test_secret")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "")


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
    from seller_billing.config import get_settings

    get_settings.cache_clear()

    from seller_billing.main import app

    app.state.supabase = None
    app.state.subscription_service = None
    app.state.webhook_dispatcher = None
    yield TestClient(app)
    app.dependency_overrides.clear()


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


def make_subscription_payload(
    subscription_id: str = "sub_1",
    *,
    tier: Tier = Tier.PRO,
    cycle: BillingCycle = BillingCycle.MONTHLY,
    status: str = "active",
    customer: str = "cus_1",
    cancel_at_period_end: bool = False,
    schedule: str | None = None,
    period_start: int = PERIOD_START,
    period_end: int = PERIOD_END,
    metadata: dict[str, str] | None = None,
    price: str | None = None,
) -> dict[str, Any]:
    """Stripe subscription JSON as returned with items.data.price.product expanded."""
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "schedule": schedule,
        "metadata": metadata if metadata is not None else {"user_id": "seller-1", "tier": tier.value},
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{subscription_id}",
                    "quantity": 1,
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                    "price": {
                        "id": price or price_id(tier, cycle),
                        "unit_amount": 9900,
                        "currency": "myr",
                        "recurring": {"interval": cycle.interval.value},
                        "product": {"id": f"prod_{tier.value.lower()}", "name": f"Solerz {tier.value}"},
                    },
                }
            ],
        },
    }


class FakeStripeGateway:
    """In-memory stand-in for StripeGateway that records every call."""

    def __init__(self):
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.customers: dict[str, str] = {}
        self.prices: dict[str, dict[str, Any]] = {}
        self.schedules: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.failures: dict[str, Exception] = {}
        self.checkout_url: str | None = "https://checkout.stripe.test/c/cs_test_1"
        self._price_counter = 0

    def add_subscription(self, payload: dict[str, Any]) -> None:
        self.subscriptions[payload["id"]] = copy.deepcopy(payload)

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures[name]

    def called(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    def _subscription(self, subscription_id: str) -> dict[str, Any]:
        payload = self.subscriptions.get(subscription_id)
        if payload is None:
            raise GatewayError(404, '{"error": {"message": "No such subscription"}}')
        return payload

    async def search_customer_by_email(self, email):
        self._record("search_customer_by_email", email)
        customer_id = self.customers.get(email)
        return StripeCustomer(id=customer_id, email=email) if customer_id else None

    async def list_subscriptions(self, customer_id, *, status="all", limit=10):
        self._record("list_subscriptions", customer_id, status)
        return [
            StripeSubscription.model_validate(payload)
            for payload in reversed(list(self.subscriptions.values()))
            if payload["customer"] == customer_id
        ][:limit]

    async def get_subscription(self, subscription_id, *, expand=("items.data.price.product",)):
        self._record("get_subscription", subscription_id)
        return StripeSubscription.model_validate(self._subscription(subscription_id))

    async def update_subscription(self, subscription_id, params):
        self._record("update_subscription", subscription_id, copy.deepcopy(dict(params)))
        payload = self._subscription(subscription_id)
        if "cancel_at_period_end" in params:
            payload["cancel_at_period_end"] = params["cancel_at_period_end"]
        for item_params in params.get("items", []):
            if "price" in item_params:
                item = payload["items"]["data"][0]
                item["price"] = {"id": item_params["price"], **self.prices.get(item_params["price"], {})}
        if "metadata" in params:
            payload["metadata"] = dict(params["metadata"])
        return StripeSubscription.model_validate(payload)

    async def delete_subscription(self, subscription_id):
        self._record("delete_subscription", subscription_id)
        payload = self._subscription(subscription_id)
        payload["status"] = "canceled"
        return StripeSubscription.model_validate(payload)

    async def create_schedule_from_subscription(self, subscription_id):
        self._record("create_schedule_from_subscription", subscription_id)
        schedule_id = f"sub_sched_{subscription_id}"
        self.schedules[schedule_id] = {"id": schedule_id, "subscription": subscription_id}
        self._subscription(subscription_id)["schedule"] = schedule_id
        return SubscriptionSchedule(id=schedule_id, subscription=subscription_id, status="active")

    async def update_schedule(self, schedule_id, params):
        self._record("update_schedule", schedule_id, copy.deepcopy(dict(params)))
        self.schedules.setdefault(schedule_id, {"id": schedule_id}).update(params)
        return SubscriptionSchedule(id=schedule_id, status="active", end_behavior=params.get("end_behavior"))

    async def release_schedule(self, schedule_id):
        self._record("release_schedule", schedule_id)
        for payload in self.subscriptions.values():
            if payload.get("schedule") == schedule_id:
                payload["schedule"] = None
        return SubscriptionSchedule(id=schedule_id, status="released")

    async def get_price(self, price_id):
        self._record("get_price", price_id)
        payload = self.prices.get(price_id)
        if payload is None:
            raise GatewayError(404, '{"error": {"message": "No such price"}}')
        return StripePrice.model_validate({"id": price_id, **payload})

    async def create_price(self, params):
        self._record("create_price", copy.deepcopy(dict(params)))
        self._price_counter += 1
        new_id = f"price_inline_{self._price_counter}"
        self.prices[new_id] = {"product": "prod_inline"}
        return StripePrice(id=new_id, product="prod_inline")

    async def create_checkout_session(self, params):
        self._record("create_checkout_session", copy.deepcopy(dict(params)))
        return HostedSession(id="cs_test_1", url=self.checkout_url)

    async def create_portal_session(self, *, customer_id, return_url):
        self._record("create_portal_session", customer_id, return_url)
        return HostedSession(id="bps_test_1", url="https://billing.stripe.test/p/session")

    async def close(self):
        return None


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(NOW)


@pytest.fixture
def gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def store(clock) -> InMemoryProfileStore:
    return InMemoryProfileStore(now_provider=clock.now)


@pytest.fixture
def catalog() -> TierCatalog:
    return TierCatalog(StripeConfig(secret_key="sk_test_123"))


@pytest.fixture
def seller(store) -> SellerProfile:
    """A PRO seller with a linked monthly subscription."""
    profile = SellerProfile(
        id="seller-1",
        role="SELLER",
        email="seller@example.com",
        tier=Tier.PRO,
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        stripe_subscription_status="active",
        stripe_current_period_start=PERIOD_START,
        stripe_current_period_end=PERIOD_END,
        stripe_cancel_at_period_end=False,
        stripe_billing_interval="month",
    )
    store.add_profile(profile)
    return profile
