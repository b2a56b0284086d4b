"""
Stripe webhook verification and dispatch.

Stripe delivers events at-least-once and retries any non-2xx response, so:
- failures to write local state raise (the route answers 500 and Stripe
  redelivers);
- events that cannot be interpreted (missing metadata, unknown tier,
  unknown seller) are logged and acknowledged, since redelivery would not
  change them.
Handlers recompute fields from the event, so redelivered events are harmless.
"""

import time
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from seller_billing.errors import GatewayError, ServiceUnavailableError, SignatureError
from seller_billing.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    CheckoutSessionObject,
    InvoiceLine,
    InvoiceObject,
    Role,
    SellerProfile,
    StripeEvent,
    StripeSubscription,
    Tier,
)
from seller_billing.services.catalog import TierCatalog, normalize_tier
from seller_billing.services.listing_quota import ListingQuotaService
from seller_billing.services.profile_store import ProfileRepository
from seller_billing.services.reconciler import diff_profile
from seller_billing.services.stripe_gateway import StripeGateway

logger = structlog.get_logger(__name__)

INVOICE_PAID_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _signature_timestamp(header: str) -> int:
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                break
    raise SignatureError("Invalid signature header")


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance: int = 300,
    now: int | None = None,
) -> None:
    """
    Verify a `Stripe-Signature` header against the raw request body.

    Header format: t=<unix>,v1=<hex>[,v1=<hex>...]. Several v1 entries are
    present while a webhook secret is being rotated; any match is accepted.

    Raises:
        ServiceUnavailableError: no webhook secret configured.
        SignatureError: missing/malformed header, timestamp more than
            `tolerance` seconds away from now (either direction), or no v1
            signature matching HMAC-SHA256("{t}.{payload}").
    """
    if not secret:
        raise ServiceUnavailableError("Missing STRIPE webhook secret")
    if not header:
        raise SignatureError("Missing Stripe signature")

    timestamp = _signature_timestamp(header)
    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance:
        raise SignatureError("Signature timestamp outside tolerance")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureError("Invalid signature") from e

    try:
        # Timestamp window already enforced above, in both directions
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance=None)
    except stripe.SignatureVerificationError as e:
        raise SignatureError("Invalid signature") from e


class WebhookOutcome(BaseModel):
    """What the dispatcher did with an event."""

    event_type: str
    action: str
    seller_id: str | None = None


class WebhookDispatcher:
    """Routes verified Stripe events to profile updates."""

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

    async def dispatch(self, event: StripeEvent) -> WebhookOutcome:
        """
        Apply one event. Raises StoreError when the profile cannot be written
        and GatewayError when Stripe was unreachable; everything else is
        acknowledged.
        """
        handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_payment_failed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "customer.subscription.updated": self._on_subscription_updated,
        }
        handler = handlers.get(event.type)
        if handler is None:
            return WebhookOutcome(event_type=event.type, action="ignored")

        try:
            outcome = await handler(event)
        except PydanticValidationError as e:
            logger.warning(
                "webhook_payload_invalid",
                event_id=event.id,
                event_type=event.type,
                errors=e.error_count(),
            )
            return WebhookOutcome(event_type=event.type, action="invalid_payload")
        except GatewayError as e:
            if e.retryable or (e.status or 0) >= 500:
                raise
            logger.warning(
                "webhook_stripe_lookup_failed",
                event_id=event.id,
                event_type=event.type,
                status=e.status,
                error=e.message,
            )
            return WebhookOutcome(event_type=event.type, action="lookup_failed")

        logger.info(
            "stripe_webhook_processed",
            event_id=event.id,
            event_type=event.type,
            action=outcome.action,
            seller_id=outcome.seller_id,
        )
        return outcome

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _profile_for(
        self, user_id: str | None, customer_id: str | None
    ) -> SellerProfile | None:
        if user_id:
            profile = await self.store.get_profile(user_id)
            if profile is not None:
                return profile
        if customer_id:
            return await self.store.get_profile_by_customer_id(customer_id)
        return None

    @staticmethod
    def _mirror_fields(subscription: StripeSubscription) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "stripe_subscription_id": subscription.id,
            "stripe_subscription_status": subscription.status,
            "stripe_cancel_at_period_end": subscription.cancel_at_period_end,
            "stripe_current_period_end": subscription.period_end,
            "stripe_current_period_start": subscription.period_start,
            "stripe_billing_interval": subscription.billing_interval,
            "stripe_customer_id": subscription.customer,
        }
        return {key: value for key, value in fields.items() if value is not None}

    @staticmethod
    def _tracks_other_subscription(
        profile: SellerProfile, subscription_id: str | None, *, event_live: bool = False
    ) -> bool:
        """True when the profile is bound to a different subscription than the event's."""
        stored = profile.stripe_subscription_id
        if not stored or not subscription_id or stored == subscription_id:
            return False
        # A live subscription takes over from a stored one that has ended
        return not (event_live and profile.stripe_subscription_status not in LIVE_SUBSCRIPTION_STATUSES)

    @staticmethod
    def _stale_outcome(
        event: StripeEvent, profile: SellerProfile, subscription_id: str | None
    ) -> WebhookOutcome:
        logger.info(
            "webhook_stale_subscription_event",
            event_id=event.id,
            event_type=event.type,
            seller_id=profile.id,
            subscription_id=subscription_id,
            current_subscription_id=profile.stripe_subscription_id,
        )
        return WebhookOutcome(event_type=event.type, action="stale_subscription", seller_id=profile.id)

    async def _fetch_subscription(self, subscription_id: str | None) -> StripeSubscription | None:
        """Subscription for mirror refresh; failures only cost the refresh."""
        if not subscription_id:
            return None
        try:
            return await self.gateway.get_subscription(subscription_id)
        except GatewayError as e:
            logger.warning(
                "webhook_subscription_refresh_failed",
                subscription_id=subscription_id,
                error=e.message,
            )
            return None

    def _line_tier(self, subscription: StripeSubscription) -> Tier | None:
        item = subscription.first_item
        if item is None or item.price is None:
            return None
        price = item.price
        return self.catalog.tier_for_price(price.id, price.product_id, price.product_name)

    async def _invoice_line_tier(self, invoice: InvoiceObject) -> Tier | None:
        """Tier of the invoice's billed plan; proration credit lines are skipped."""
        lines = [line for line in invoice.lines.data if not line.is_proration]
        if not lines:
            lines = [line for line in invoice.lines.data if (line.amount or 0) > 0]

        for line in lines:
            tier = await self._tier_for_line(line)
            if tier is not None:
                return tier
        return None

    async def _tier_for_line(self, line: InvoiceLine) -> Tier | None:
        price_name = line.price.product_name if line.price else None
        tier = self.catalog.tier_for_price(line.price_id, line.product_id, price_name)
        if tier is not None or not line.price_id:
            return tier
        # Inline prices only carry a product id; the name is on the product
        price = await self.gateway.get_price(line.price_id)
        return self.catalog.tier_for_price(price.id, price.product_id, price.product_name)

    async def _promote(
        self,
        profile: SellerProfile,
        tier: Tier,
        subscription: StripeSubscription | None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Make `tier` effective now and refresh the Stripe mirror fields."""
        patch: dict[str, Any] = {"tier": tier, "pending_tier": None, "tier_effective_at": None}
        patch.update(extra or {})
        if subscription is not None:
            patch.update(self._mirror_fields(subscription))
            if subscription.cancel_at_period_end and subscription.period_end is not None:
                # Paid through the period, but the cancellation still stands
                patch["pending_tier"] = Tier.UNSUBSCRIBED
                patch["tier_effective_at"] = subscription.period_end

        # First payment grants seller capability
        if (profile.role or "").upper() == Role.BUYER.value:
            patch["role"] = Role.SELLER.value

        await self.store.patch_profile(profile.id, patch)
        if self.quota is not None:
            await self.quota.apply_tier_change(profile.id, profile.tier, tier)

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, event: StripeEvent) -> WebhookOutcome:
        session = CheckoutSessionObject.model_validate(event.data.object)
        user_id = (session.metadata.get("user_id") or session.client_reference_id or "").strip()
        tier = normalize_tier(session.metadata.get("tier"))
        if not user_id or tier is None:
            logger.warning("webhook_missing_metadata", event_id=event.id, event_type=event.type)
            return WebhookOutcome(event_type=event.type, action="missing_metadata")

        profile = await self.store.get_profile(user_id)
        if profile is None:
            logger.warning("webhook_profile_missing", event_id=event.id, seller_id=user_id)
            return WebhookOutcome(event_type=event.type, action="unknown_seller", seller_id=user_id)

        extra = {
            key: value
            for key, value in {
                "stripe_customer_id": session.customer,
                "stripe_subscription_id": session.subscription,
            }.items()
            if value
        }
        subscription = await self._fetch_subscription(session.subscription)
        await self._promote(profile, tier, subscription, extra)
        return WebhookOutcome(event_type=event.type, action="tier_promoted", seller_id=user_id)

    async def _on_invoice_paid(self, event: StripeEvent) -> WebhookOutcome:
        invoice = InvoiceObject.model_validate(event.data.object)
        metadata = {**invoice.metadata, **invoice.subscription_metadata}
        user_id = (metadata.get("user_id") or "").strip() or None
        metadata_tier = normalize_tier(metadata.get("tier"))

        subscription = await self._fetch_subscription(invoice.subscription_id)
        if subscription is not None:
            user_id = user_id or (subscription.metadata.get("user_id") or "").strip() or None
            metadata_tier = metadata_tier or normalize_tier(subscription.metadata.get("tier"))

        # Metadata goes stale across a scheduled downgrade; the billed price does not
        inferred_tier = await self._invoice_line_tier(invoice)
        if inferred_tier and metadata_tier and inferred_tier != metadata_tier:
            logger.info(
                "invoice_metadata_tier_stale",
                event_id=event.id,
                metadata_tier=metadata_tier.value,
                inferred_tier=inferred_tier.value,
            )
        tier = inferred_tier or metadata_tier

        profile = await self._profile_for(user_id, invoice.customer)
        if profile is None or tier is None:
            logger.warning(
                "webhook_missing_metadata",
                event_id=event.id,
                event_type=event.type,
                has_seller=profile is not None,
                has_tier=tier is not None,
            )
            return WebhookOutcome(event_type=event.type, action="missing_metadata", seller_id=user_id)

        await self._promote(profile, tier, subscription)
        return WebhookOutcome(event_type=event.type, action="tier_promoted", seller_id=profile.id)

    async def _on_payment_failed(self, event: StripeEvent) -> WebhookOutcome:
        invoice = InvoiceObject.model_validate(event.data.object)
        metadata = {**invoice.metadata, **invoice.subscription_metadata}
        profile = await self._profile_for(metadata.get("user_id"), invoice.customer)
        if profile is None:
            logger.warning("webhook_profile_missing", event_id=event.id, event_type=event.type)
            return WebhookOutcome(event_type=event.type, action="unknown_seller")

        if self._tracks_other_subscription(profile, invoice.subscription_id):
            return self._stale_outcome(event, profile, invoice.subscription_id)

        # Access stays until Stripe gives up and deletes the subscription
        await self.store.patch_profile(profile.id, {"stripe_subscription_status": "past_due"})
        return WebhookOutcome(event_type=event.type, action="marked_past_due", seller_id=profile.id)

    async def _on_subscription_deleted(self, event: StripeEvent) -> WebhookOutcome:
        subscription = StripeSubscription.model_validate(event.data.object)
        profile = await self._profile_for(subscription.metadata.get("user_id"), subscription.customer)
        if profile is None:
            logger.warning("webhook_profile_missing", event_id=event.id, event_type=event.type)
            return WebhookOutcome(event_type=event.type, action="unknown_seller")

        if self._tracks_other_subscription(profile, subscription.id):
            return self._stale_outcome(event, profile, subscription.id)

        patch: dict[str, Any] = {
            "tier": Tier.UNSUBSCRIBED,
            "pending_tier": None,
            "tier_effective_at": None,
            **self._mirror_fields(subscription),
        }
        await self.store.patch_profile(profile.id, patch)
        if self.quota is not None:
            await self.quota.apply_tier_change(profile.id, profile.tier, Tier.UNSUBSCRIBED)
        return WebhookOutcome(event_type=event.type, action="unsubscribed", seller_id=profile.id)

    async def _on_subscription_updated(self, event: StripeEvent) -> WebhookOutcome:
        subscription = StripeSubscription.model_validate(event.data.object)
        profile = await self._profile_for(subscription.metadata.get("user_id"), subscription.customer)
        if profile is None:
            logger.warning("webhook_profile_missing", event_id=event.id, event_type=event.type)
            return WebhookOutcome(event_type=event.type, action="unknown_seller")

        event_live = subscription.status in LIVE_SUBSCRIPTION_STATUSES
        if self._tracks_other_subscription(profile, subscription.id, event_live=event_live):
            return self._stale_outcome(event, profile, subscription.id)

        desired = self.subscription_bookkeeping(profile, subscription)
        patch = diff_profile(profile, desired)
        if not patch:
            return WebhookOutcome(event_type=event.type, action="unchanged", seller_id=profile.id)

        await self.store.patch_profile(profile.id, patch)
        if "tier" in patch and self.quota is not None:
            await self.quota.apply_tier_change(profile.id, profile.tier, patch["tier"])
        return WebhookOutcome(event_type=event.type, action="bookkeeping_updated", seller_id=profile.id)

    def subscription_bookkeeping(
        self, profile: SellerProfile, subscription: StripeSubscription
    ) -> dict[str, Any]:
        """
        Pending-state fields implied by a subscription object.

        No promotion happens here except completing a scheduled change whose
        effective time has passed and whose price Stripe now bills.
        """
        now = int(self.now_provider().timestamp())
        tier = profile.tier
        pending_tier = profile.pending_tier
        effective_at = profile.tier_effective_at if pending_tier is not None else None
        period_end = subscription.period_end

        if subscription.cancel_at_period_end:
            if pending_tier is None and period_end is not None:
                pending_tier = Tier.UNSUBSCRIBED
                effective_at = period_end
        elif pending_tier is Tier.UNSUBSCRIBED:
            pending_tier = None
            effective_at = None

        due = effective_at is not None and effective_at <= now
        if due and pending_tier not in (None, Tier.UNSUBSCRIBED):
            if self._line_tier(subscription) == pending_tier:
                tier = pending_tier
                pending_tier = None
                effective_at = None

        return {
            "tier": tier,
            "pending_tier": pending_tier,
            "tier_effective_at": effective_at,
            **self._mirror_fields(subscription),
        }
