"""
Subscription reconciler.

Recomputes a seller's billing fields from the authoritative Stripe
subscription and patches only the fields that differ. Invoked from the
dashboard sync endpoint, after plan changes, and is safe to run concurrently
with webhook handlers: every write is a full recomputation from Stripe's
current state, never an increment or toggle, so concurrent runs converge.

Processor objects are never cached in-process; each run reads fresh state.
"""

from datetime import UTC, datetime
from typing import Any

import structlog

from seller_billing.models.billing import (
    ENTITLED_SUBSCRIPTION_STATUSES,
    LIVE_SUBSCRIPTION_STATUSES,
    ReconcileResult,
    ResolvedSubscription,
    SellerProfile,
    StripeSubscription,
    SubscriptionView,
    Tier,
)
from seller_billing.services.catalog import TierCatalog
from seller_billing.services.listing_quota import ListingQuotaService
from seller_billing.services.profile_store import ProfileRepository
from seller_billing.services.stripe_gateway import StripeGateway

logger = structlog.get_logger(__name__)

# Mirror fields are never cleared by reconciliation, only overwritten
MIRROR_FIELDS = (
    "stripe_customer_id",
    "stripe_subscription_id",
    "stripe_subscription_status",
    "stripe_current_period_start",
    "stripe_current_period_end",
    "stripe_cancel_at_period_end",
    "stripe_billing_interval",
)

TIER_FIELDS = ("tier", "pending_tier", "tier_effective_at")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def diff_profile(profile: SellerProfile, desired: dict[str, Any]) -> dict[str, Any]:
    """Fields of `desired` that differ from the stored profile.

    None is only written for the tier fields, where it means "no pending change".
    """
    patch: dict[str, Any] = {}
    for field, value in desired.items():
        if value is None and field not in TIER_FIELDS:
            continue
        if getattr(profile, field, None) != value:
            patch[field] = value
    return patch


class SubscriptionReconciler:
    """Brings a seller profile in line with Stripe."""

    def __init__(
        self,
        gateway: StripeGateway,
        store: ProfileRepository,
        catalog: TierCatalog,
        quota: ListingQuotaService | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.catalog = catalog
        self.quota = quota
        self.now_provider = now_provider

    def _now_ts(self) -> int:
        return int(self.now_provider().timestamp())

    async def resolve(
        self, profile: SellerProfile | None, email: str | None
    ) -> ResolvedSubscription:
        """
        Locate the seller's Stripe customer and authoritative subscription.

        Stored ids win. A missing customer is looked up by exact email; a
        missing subscription is the first live one in Stripe's listing order.
        Finding nothing is not an error.
        """
        customer_id = (profile.stripe_customer_id if profile else None) or None
        subscription_id = (profile.stripe_subscription_id if profile else None) or None

        if not customer_id and email:
            customer = await self.gateway.search_customer_by_email(email)
            customer_id = customer.id if customer else None
            if customer_id:
                logger.info("stripe_customer_discovered", customer_id=customer_id)

        if not subscription_id and customer_id:
            subscription_id = await self.first_live_subscription_id(customer_id)

        return ResolvedSubscription(customer_id=customer_id, subscription_id=subscription_id)

    async def first_live_subscription_id(self, customer_id: str) -> str | None:
        subscriptions = await self.gateway.list_subscriptions(customer_id, status="all")
        for subscription in subscriptions:
            if subscription.status in LIVE_SUBSCRIPTION_STATUSES:
                return subscription.id
        return None

    def line_item_tier(self, subscription: StripeSubscription) -> Tier | None:
        item = subscription.first_item
        if item is None or item.price is None:
            return None
        price = item.price
        return self.catalog.tier_for_price(price.id, price.product_id, price.product_name)

    def derive_state(
        self,
        profile: SellerProfile,
        subscription: StripeSubscription,
        customer_id: str | None,
    ) -> dict[str, Any]:
        """Desired billing fields for `profile` given the Stripe subscription."""
        now = self._now_ts()
        status = subscription.status
        period_end = subscription.period_end
        cancel_at_period_end = subscription.cancel_at_period_end
        line_tier = self.line_item_tier(subscription)

        tier = profile.tier
        pending_tier = profile.pending_tier
        effective_at = profile.tier_effective_at
        if pending_tier is None:
            effective_at = None

        if status not in LIVE_SUBSCRIPTION_STATUSES:
            # Ended subscription: nothing left to wait for
            tier = Tier.UNSUBSCRIBED
            pending_tier = None
            effective_at = None
        else:
            if status in ENTITLED_SUBSCRIPTION_STATUSES and line_tier and line_tier != tier:
                tier = line_tier
                pending_tier = None
                effective_at = None

            # A pending UNSUBSCRIBED resolves through subscription.deleted, not the clock
            due = effective_at is not None and effective_at <= now
            if due and pending_tier not in (None, Tier.UNSUBSCRIBED):
                if line_tier is None or line_tier == pending_tier:
                    tier = pending_tier
                    pending_tier = None
                    effective_at = None
                elif line_tier != tier and not subscription.schedule:
                    # Billing neither tier and no schedule left to switch it
                    logger.info(
                        "pending_tier_not_applied_by_stripe",
                        seller_id=profile.id,
                        pending_tier=pending_tier.value,
                        line_tier=line_tier.value,
                    )
                    pending_tier = None
                    effective_at = None

            if cancel_at_period_end and pending_tier is None and period_end is not None:
                pending_tier = Tier.UNSUBSCRIBED
                effective_at = period_end
            elif not cancel_at_period_end and pending_tier is Tier.UNSUBSCRIBED:
                # Cancellation was withdrawn (e.g. renewed from the portal)
                pending_tier = None
                effective_at = None

        return {
            "tier": tier,
            "pending_tier": pending_tier,
            "tier_effective_at": effective_at,
            "stripe_customer_id": customer_id or subscription.customer,
            "stripe_subscription_id": subscription.id,
            "stripe_subscription_status": status,
            "stripe_current_period_start": subscription.period_start,
            "stripe_current_period_end": period_end,
            "stripe_cancel_at_period_end": cancel_at_period_end,
            "stripe_billing_interval": subscription.billing_interval,
        }

    async def _load_subscription(
        self, resolved: ResolvedSubscription
    ) -> StripeSubscription | None:
        if not resolved.subscription_id:
            return None
        subscription = await self.gateway.get_subscription(resolved.subscription_id)
        if subscription.status in LIVE_SUBSCRIPTION_STATUSES or not resolved.customer_id:
            return subscription

        # The stored subscription ended; the seller may have subscribed again since
        replacement_id = await self.first_live_subscription_id(resolved.customer_id)
        if replacement_id and replacement_id != subscription.id:
            logger.info(
                "stripe_subscription_replaced",
                old_subscription_id=subscription.id,
                subscription_id=replacement_id,
            )
            return await self.gateway.get_subscription(replacement_id)
        return subscription

    async def reconcile(self, seller_id: str, email: str | None = None) -> ReconcileResult:
        """
        Recompute and persist the seller's billing state.

        Returns the subscription view (None when the seller has no
        subscription) and the profile after any patch.
        """
        profile = await self.store.get_profile(seller_id)
        if profile is None:
            logger.warning("reconcile_profile_missing", seller_id=seller_id)
            return ReconcileResult()

        resolved = await self.resolve(profile, email)
        subscription = await self._load_subscription(resolved)

        if subscription is None:
            patch: dict[str, Any] = {}
            if resolved.customer_id and resolved.customer_id != profile.stripe_customer_id:
                patch["stripe_customer_id"] = resolved.customer_id
            updated = await self._apply(profile, patch)
            return ReconcileResult(
                subscription=None,
                profile=updated,
                pending_tier=updated.pending_tier,
                tier_effective_at=updated.tier_effective_at,
            )

        desired = self.derive_state(profile, subscription, resolved.customer_id)
        patch = diff_profile(profile, desired)
        updated = await self._apply(profile, patch)

        return ReconcileResult(
            subscription=SubscriptionView.from_subscription(subscription),
            profile=updated,
            pending_tier=desired["pending_tier"],
            tier_effective_at=desired["tier_effective_at"],
        )

    async def _apply(self, profile: SellerProfile, patch: dict[str, Any]) -> SellerProfile:
        if not patch:
            return profile

        updated = await self.store.patch_profile(profile.id, patch) or profile.model_copy(update=patch)
        logger.info(
            "subscription_reconciled",
            seller_id=profile.id,
            fields=sorted(patch),
        )
        if "tier" in patch and self.quota is not None:
            await self.quota.apply_tier_change(profile.id, profile.tier, patch["tier"])
        return updated
