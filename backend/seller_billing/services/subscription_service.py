"""Checkout, portal, plan-change and cancellation orchestration.

Each operation acts only on the authenticated seller, mutates Stripe through
the gateway and then persists the resulting state to the profile store.
"""

from typing import Any

import structlog

from seller_billing.config import BillingConfig
from seller_billing.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    UpstreamError,
    ValidationError,
    translate_upstream_errors,
)
from seller_billing.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    BillingCycle,
    CancellationResult,
    CheckoutResult,
    PlanChangeResult,
    PortalResult,
    ReconcileResult,
    SellerProfile,
    StripeSubscription,
    SubscriptionItem,
    Tier,
)
from seller_billing.services.catalog import TierCatalog, normalize_cycle, normalize_tier, tier_rank
from seller_billing.services.listing_quota import ListingQuotaService
from seller_billing.services.profile_store import ProfileRepository
from seller_billing.services.reconciler import SubscriptionReconciler
from seller_billing.services.stripe_gateway import StripeGateway

logger = structlog.get_logger(__name__)

# Plan changes only need the price, not the product
PRICE_EXPAND = ("items.data.price",)


class SubscriptionService:
    """User-initiated billing operations for a single authenticated seller."""

    def __init__(
        self,
        gateway: StripeGateway,
        store: ProfileRepository,
        catalog: TierCatalog,
        reconciler: SubscriptionReconciler,
        config: BillingConfig,
        quota: ListingQuotaService | None = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.catalog = catalog
        self.reconciler = reconciler
        self.config = config
        self.quota = quota

    def _origin(self, request_origin: str) -> str:
        return (self.config.public_origin or request_origin).rstrip("/")

    @staticmethod
    def _parse_plan(plan_id: str | None, billing_cycle: str | None) -> tuple[Tier, BillingCycle]:
        tier = normalize_tier(plan_id)
        if tier is None:
            raise ValidationError("Invalid plan")
        return tier, normalize_cycle(billing_cycle)

    # ------------------------------------------------------------------
    # checkout / portal
    # ------------------------------------------------------------------

    async def start_checkout(
        self,
        *,
        user_id: str,
        email: str | None,
        plan_id: str | None,
        billing_cycle: str | None,
        origin: str,
    ) -> CheckoutResult:
        """
        Create a Stripe Checkout session in subscription mode.

        The profile is not touched here; the tier is granted only when Stripe
        confirms payment through the webhook.
        """
        tier, cycle = self._parse_plan(plan_id, billing_cycle)
        base = self._origin(origin)
        metadata = {"user_id": user_id, "tier": tier.value, "billing_cycle": cycle.value}

        params: dict[str, Any] = {
            "mode": "subscription",
            "success_url": f"{base}{self.config.success_path}",
            "cancel_url": f"{base}{self.config.cancel_path}",
            "client_reference_id": user_id,
            "metadata": metadata,
            "line_items": [{"quantity": 1, **self.catalog.price_params(tier, cycle)}],
            "subscription_data": {"metadata": metadata},
        }

        with translate_upstream_errors():
            profile = await self.store.get_profile(user_id)
            if profile and profile.stripe_customer_id:
                params["customer"] = profile.stripe_customer_id
            elif email:
                params["customer_email"] = email

            session = await self.gateway.create_checkout_session(params)

        if not session.url:
            raise UpstreamError("Missing Stripe checkout url", status_code=502)

        logger.info("checkout_session_created", seller_id=user_id, tier=tier.value, cycle=cycle.value)
        return CheckoutResult(url=session.url, session_id=session.id)

    async def open_portal(
        self,
        *,
        user_id: str,
        email: str | None,
        return_path: str | None,
        origin: str,
    ) -> PortalResult:
        """Create a Stripe billing portal session for the seller's customer."""
        path = return_path or self.config.default_portal_return_path
        if not path.startswith("/") or path.startswith("//"):
            raise ValidationError("returnPath must be a relative path")

        with translate_upstream_errors():
            profile = await self.store.get_profile(user_id)
            customer_id = profile.stripe_customer_id if profile else None
            if not customer_id:
                if not email:
                    raise ValidationError("Missing user email")
                customer = await self.gateway.search_customer_by_email(email)
                customer_id = customer.id if customer else None
            if not customer_id:
                raise NotFoundError("No Stripe customer found for this email")

            session = await self.gateway.create_portal_session(
                customer_id=customer_id,
                return_url=f"{self._origin(origin)}{path}",
            )

        if not session.url:
            raise UpstreamError("Missing portal url", status_code=502)
        return PortalResult(url=session.url)

    # ------------------------------------------------------------------
    # plan change
    # ------------------------------------------------------------------

    async def _load_current_subscription(
        self, user_id: str, email: str | None
    ) -> tuple[SellerProfile | None, str | None, StripeSubscription]:
        profile = await self.store.get_profile(user_id)
        resolved = await self.reconciler.resolve(profile, email)
        if not resolved.subscription_id:
            raise NotFoundError("No active subscription found.")
        subscription = await self.gateway.get_subscription(
            resolved.subscription_id, expand=PRICE_EXPAND
        )
        if subscription.status in LIVE_SUBSCRIPTION_STATUSES:
            return profile, resolved.customer_id, subscription

        customer_id = resolved.customer_id or subscription.customer
        replacement_id = None
        if customer_id:
            replacement_id = await self.reconciler.first_live_subscription_id(customer_id)
        if not replacement_id:
            raise NotFoundError("No active subscription found.")
        logger.info(
            "stripe_subscription_replaced",
            seller_id=user_id,
            old_subscription_id=subscription.id,
            subscription_id=replacement_id,
        )
        subscription = await self.gateway.get_subscription(replacement_id, expand=PRICE_EXPAND)
        return profile, customer_id, subscription

    async def _release_schedule(self, schedule_id: str | None) -> None:
        """Best effort: a schedule left attached is released on the next call."""
        if not schedule_id:
            return
        try:
            await self.gateway.release_schedule(schedule_id)
        except GatewayError as e:
            logger.warning("schedule_release_failed", schedule_id=schedule_id, error=e.message)

    async def _item_price(self, tier: Tier, cycle: BillingCycle) -> dict[str, Any]:
        """Price reference usable on subscription items and schedule phases.

        Those endpoints only accept `price_data` bound to an existing product,
        so a catalog entry with neither price nor product gets a price created.
        """
        params = self.catalog.price_params(tier, cycle)
        price_data = params.get("price_data")
        if price_data and "product_data" in price_data:
            price = await self.gateway.create_price(price_data)
            return {"price": price.id}
        return params

    async def change_plan(
        self,
        *,
        user_id: str,
        email: str | None,
        plan_id: str | None,
        billing_cycle: str | None,
    ) -> PlanChangeResult:
        """
        Move the seller to another paid tier.

        Upgrades (rank >= current) apply immediately with proration. Downgrades
        are scheduled for the end of the current period via a subscription
        schedule; the profile records them as pending.
        """
        tier, cycle = self._parse_plan(plan_id, billing_cycle)

        with translate_upstream_errors():
            profile, customer_id, subscription = await self._load_current_subscription(user_id, email)

            item = subscription.first_item
            period_end = subscription.period_end
            if item is None or item.price is None or period_end is None:
                raise ConflictError("Invalid subscription state.")

            current_tier = profile.tier if profile else Tier.UNSUBSCRIBED
            if tier_rank(tier) >= tier_rank(current_tier):
                return await self._upgrade(
                    user_id, customer_id, subscription, item, current_tier, tier, cycle
                )
            return await self._schedule_downgrade(
                user_id, customer_id, subscription, item, period_end, tier, cycle
            )

    async def _upgrade(
        self,
        user_id: str,
        customer_id: str | None,
        subscription: StripeSubscription,
        item: SubscriptionItem,
        current_tier: Tier,
        tier: Tier,
        cycle: BillingCycle,
    ) -> PlanChangeResult:
        await self._release_schedule(subscription.schedule)

        params: dict[str, Any] = {
            "cancel_at_period_end": False,
            "proration_behavior": "create_prorations",
            "items": [{"id": item.id, **await self._item_price(tier, cycle)}],
            "metadata": {"user_id": user_id, "tier": tier.value, "billing_cycle": cycle.value},
        }
        # Switching monthly <-> yearly always re-anchors the billing cycle
        if item.price and item.price.interval == cycle.interval.value:
            params["billing_cycle_anchor"] = "unchanged"

        await self.gateway.update_subscription(subscription.id, params)
        updated = await self.gateway.get_subscription(subscription.id, expand=PRICE_EXPAND)

        patch: dict[str, Any] = {
            "tier": tier,
            "pending_tier": None,
            "tier_effective_at": None,
            "stripe_cancel_at_period_end": False,
            "stripe_subscription_id": subscription.id,
            "stripe_subscription_status": updated.status,
            "stripe_billing_interval": cycle.interval,
        }
        if customer_id:
            patch["stripe_customer_id"] = customer_id
        if updated.period_end is not None:
            patch["stripe_current_period_end"] = updated.period_end
        if updated.period_start is not None:
            patch["stripe_current_period_start"] = updated.period_start

        await self.store.patch_profile(user_id, patch)
        if self.quota is not None:
            await self.quota.apply_tier_change(user_id, current_tier, tier)

        logger.info(
            "subscription_upgraded",
            seller_id=user_id,
            from_tier=current_tier.value,
            to_tier=tier.value,
            subscription_id=subscription.id,
        )
        return PlanChangeResult(mode="upgrade", subscription_id=subscription.id)

    async def _schedule_downgrade(
        self,
        user_id: str,
        customer_id: str | None,
        subscription: StripeSubscription,
        item: SubscriptionItem,
        period_end: int,
        tier: Tier,
        cycle: BillingCycle,
    ) -> PlanChangeResult:
        if subscription.cancel_at_period_end:
            # Schedules cannot be attached to a subscription that is set to cancel
            await self.gateway.update_subscription(subscription.id, {"cancel_at_period_end": False})

        schedule_id = subscription.schedule
        if not schedule_id:
            schedule = await self.gateway.create_schedule_from_subscription(subscription.id)
            schedule_id = schedule.id

        next_price = await self._item_price(tier, cycle)
        await self.gateway.update_schedule(
            schedule_id,
            {
                "end_behavior": "release",
                "phases": [
                    {
                        "start_date": subscription.period_start or "now",
                        "end_date": period_end,
                        "items": [{"price": item.price.id, "quantity": 1}],
                    },
                    {
                        "items": [{"quantity": 1, **next_price}],
                        "metadata": {
                            "user_id": user_id,
                            "tier": tier.value,
                            "billing_cycle": cycle.value,
                        },
                    },
                ],
            },
        )

        patch: dict[str, Any] = {
            "pending_tier": tier,
            "tier_effective_at": period_end,
            "stripe_cancel_at_period_end": False,
            "stripe_subscription_id": subscription.id,
            "stripe_current_period_end": period_end,
        }
        if customer_id:
            patch["stripe_customer_id"] = customer_id
        if subscription.period_start is not None:
            patch["stripe_current_period_start"] = subscription.period_start

        await self.store.patch_profile(user_id, patch)

        logger.info(
            "subscription_downgrade_scheduled",
            seller_id=user_id,
            pending_tier=tier.value,
            effective_at=period_end,
            schedule_id=schedule_id,
        )
        return PlanChangeResult(
            mode="downgrade_scheduled",
            subscription_id=subscription.id,
            effective_at=period_end,
            pending_tier=tier,
        )

    # ------------------------------------------------------------------
    # cancellation / sync
    # ------------------------------------------------------------------

    async def cancel(
        self, *, user_id: str, email: str | None, at_period_end: bool = True
    ) -> CancellationResult:
        """Cancel at period end (staged as pending UNSUBSCRIBED) or immediately."""
        with translate_upstream_errors():
            profile, customer_id, subscription = await self._load_current_subscription(user_id, email)
            period_end = subscription.period_end
            if at_period_end and period_end is None:
                raise ConflictError("Invalid subscription state.")

            await self._release_schedule(subscription.schedule)

            patch: dict[str, Any] = {"stripe_subscription_id": subscription.id}
            if customer_id:
                patch["stripe_customer_id"] = customer_id
            if subscription.billing_interval is not None:
                patch["stripe_billing_interval"] = subscription.billing_interval

            if at_period_end:
                await self.gateway.update_subscription(
                    subscription.id,
                    {"cancel_at_period_end": True, "proration_behavior": "none"},
                )
                patch.update(
                    {
                        "pending_tier": Tier.UNSUBSCRIBED,
                        "tier_effective_at": period_end,
                        "stripe_cancel_at_period_end": True,
                    }
                )
                await self.store.patch_profile(user_id, patch)
                logger.info(
                    "subscription_cancel_scheduled",
                    seller_id=user_id,
                    subscription_id=subscription.id,
                    effective_at=period_end,
                )
                return CancellationResult(
                    mode="cancel_scheduled",
                    subscription_id=subscription.id,
                    effective_at=period_end,
                )

            deleted = await self.gateway.delete_subscription(subscription.id)
            patch.update(
                {
                    "tier": Tier.UNSUBSCRIBED,
                    "pending_tier": None,
                    "tier_effective_at": None,
                    "stripe_cancel_at_period_end": False,
                    "stripe_subscription_status": deleted.status,
                }
            )
            await self.store.patch_profile(user_id, patch)
            if self.quota is not None and profile is not None:
                await self.quota.apply_tier_change(user_id, profile.tier, Tier.UNSUBSCRIBED)

        logger.info("subscription_canceled_immediately", seller_id=user_id, subscription_id=subscription.id)
        return CancellationResult(mode="canceled_immediately", subscription_id=subscription.id)

    async def sync(self, *, user_id: str, email: str | None) -> ReconcileResult:
        """Re-run reconciliation for the dashboard."""
        with translate_upstream_errors():
            return await self.reconciler.reconcile(user_id, email)
