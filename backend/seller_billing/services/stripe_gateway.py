"""
Stripe API gateway.

Wraps the Stripe SDK client (`stripe.StripeClient`, async methods) and
validates every response into the models in `seller_billing.models.billing`.

No retries: failures surface as GatewayError and the caller (dashboard
request or Stripe webhook redelivery) tries again.

Usage:
    gateway = StripeGateway(settings.stripe)
    subscription = await gateway.get_subscription("sub_123")
"""

from collections.abc import Awaitable, Iterable, Mapping
from typing import Any, TypeVar

import stripe
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from seller_billing.config import StripeConfig
from seller_billing.constants import SUBSCRIPTION_LIST_LIMIT
from seller_billing.errors import GatewayError
from seller_billing.models.billing import (
    HostedSession,
    StripeCustomer,
    StripeList,
    StripePrice,
    StripeSubscription,
    SubscriptionSchedule,
)

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

SUBSCRIPTION_EXPAND = ("items.data.price.product",)


def gateway_error_from(exc: stripe.StripeError) -> GatewayError:
    """Map an SDK error onto GatewayError, keeping Stripe's status and raw body."""
    if isinstance(exc, stripe.APIConnectionError):
        return GatewayError(None, f"Stripe unreachable: {exc.user_message or exc}", retryable=True)
    return GatewayError(exc.http_status, exc.http_body or exc.user_message or str(exc))


class StripeGateway:
    """Authenticated Stripe API client. One instance per process."""

    def __init__(self, config: StripeConfig, client: stripe.StripeClient | None = None) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        self._http_client: stripe.HTTPXClient | None = None
        if client is None:
            self._http_client = stripe.HTTPXClient(timeout=config.request_timeout_seconds)
            client = stripe.StripeClient(
                config.secret_key,
                base_addresses={"api": config.api_base},
                http_client=self._http_client,
                max_network_retries=0,
            )
        self._client = client

    async def close(self) -> None:
        """Close the HTTP client owned by this gateway."""
        if self._http_client is not None:
            await self._http_client.close_async()

    async def _call(self, operation: str, pending: Awaitable[Any]) -> dict:
        """
        Await one SDK call and return the response as plain data.

        Raises:
            GatewayError: Stripe rejected the call (status + raw Stripe error
                body), or the network failed (status None, retryable).
        """
        try:
            result = await pending
        except stripe.StripeError as e:
            error = gateway_error_from(e)
            if error.retryable:
                logger.warning("stripe_request_transport_error", operation=operation, error=str(e))
            else:
                logger.info("stripe_request_failed", operation=operation, status=error.status)
            raise error from e
        return result.to_dict()

    @staticmethod
    def _parse(model: type[M], payload: dict) -> M:
        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            raise GatewayError(
                502, f"Unexpected Stripe {model.__name__} payload: {e.error_count()} invalid field(s)"
            ) from e

    # ------------------------------------------------------------------
    # customers
    # ------------------------------------------------------------------

    async def search_customer_by_email(self, email: str) -> StripeCustomer | None:
        """Exact-match customer search. Returns the first hit or None."""
        escaped = email.replace("'", "\\'")
        payload = await self._call(
            "customers.search",
            self._client.v1.customers.search_async(params={"query": f"email:'{escaped}'", "limit": 1}),
        )
        customers = self._parse(StripeList[StripeCustomer], payload).data
        return customers[0] if customers else None

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------

    async def list_subscriptions(
        self, customer_id: str, *, status: str = "all", limit: int = SUBSCRIPTION_LIST_LIMIT
    ) -> list[StripeSubscription]:
        """List a customer's subscriptions in Stripe's order (most recent first)."""
        payload = await self._call(
            "subscriptions.list",
            self._client.v1.subscriptions.list_async(
                params={"customer": customer_id, "status": status, "limit": limit}
            ),
        )
        return self._parse(StripeList[StripeSubscription], payload).data

    async def get_subscription(
        self, subscription_id: str, *, expand: Iterable[str] = SUBSCRIPTION_EXPAND
    ) -> StripeSubscription:
        payload = await self._call(
            "subscriptions.retrieve",
            self._client.v1.subscriptions.retrieve_async(subscription_id, params={"expand": list(expand)}),
        )
        return self._parse(StripeSubscription, payload)

    async def update_subscription(
        self, subscription_id: str, params: Mapping[str, Any]
    ) -> StripeSubscription:
        payload = await self._call(
            "subscriptions.update",
            self._client.v1.subscriptions.update_async(subscription_id, params=dict(params)),
        )
        return self._parse(StripeSubscription, payload)

    async def delete_subscription(self, subscription_id: str) -> StripeSubscription:
        """Cancel immediately."""
        payload = await self._call(
            "subscriptions.cancel", self._client.v1.subscriptions.cancel_async(subscription_id)
        )
        return self._parse(StripeSubscription, payload)

    # ------------------------------------------------------------------
    # subscription schedules
    # ------------------------------------------------------------------

    async def create_schedule_from_subscription(self, subscription_id: str) -> SubscriptionSchedule:
        payload = await self._call(
            "subscription_schedules.create",
            self._client.v1.subscription_schedules.create_async(
                params={"from_subscription": subscription_id}
            ),
        )
        return self._parse(SubscriptionSchedule, payload)

    async def update_schedule(
        self, schedule_id: str, params: Mapping[str, Any]
    ) -> SubscriptionSchedule:
        payload = await self._call(
            "subscription_schedules.update",
            self._client.v1.subscription_schedules.update_async(schedule_id, params=dict(params)),
        )
        return self._parse(SubscriptionSchedule, payload)

    async def release_schedule(self, schedule_id: str) -> SubscriptionSchedule:
        """Detach a schedule, leaving the subscription as-is."""
        payload = await self._call(
            "subscription_schedules.release",
            self._client.v1.subscription_schedules.release_async(schedule_id),
        )
        return self._parse(SubscriptionSchedule, payload)

    # ------------------------------------------------------------------
    # prices and hosted sessions
    # ------------------------------------------------------------------

    async def get_price(self, price_id: str) -> StripePrice:
        payload = await self._call(
            "prices.retrieve",
            self._client.v1.prices.retrieve_async(price_id, params={"expand": ["product"]}),
        )
        return self._parse(StripePrice, payload)

    async def create_price(self, params: Mapping[str, Any]) -> StripePrice:
        """Create an ad-hoc price (used when the catalog has no price or product id)."""
        payload = await self._call("prices.create", self._client.v1.prices.create_async(params=dict(params)))
        return self._parse(StripePrice, payload)

    async def create_checkout_session(self, params: Mapping[str, Any]) -> HostedSession:
        payload = await self._call(
            "checkout.sessions.create",
            self._client.v1.checkout.sessions.create_async(params=dict(params)),
        )
        return self._parse(HostedSession, payload)

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> HostedSession:
        payload = await self._call(
            "billing_portal.sessions.create",
            self._client.v1.billing_portal.sessions.create_async(
                params={"customer": customer_id, "return_url": return_url}
            ),
        )
        return self._parse(HostedSession, payload)
