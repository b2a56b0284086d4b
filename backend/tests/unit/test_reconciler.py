"""Unit tests for subscription reconciliation."""

from datetime import timedelta

from conftest import PERIOD_END, PERIOD_START, make_subscription_payload

from seller_billing.models.billing import Listing, SellerProfile, Tier
from seller_billing.services.listing_quota import ListingQuotaService
from seller_billing.services.reconciler import SubscriptionReconciler, diff_profile


def make_reconciler(gateway, store, catalog, clock, quota=None) -> SubscriptionReconciler:
    return SubscriptionReconciler(gateway, store, catalog, quota=quota, now_provider=clock.now)


class TestDiffProfile:
    def test_only_changed_fields(self):
        profile = SellerProfile(id="s", tier=Tier.PRO, stripe_customer_id="cus_1")

        patch = diff_profile(profile, {"tier": Tier.PRO, "stripe_customer_id": "cus_2"})

        assert patch == {"stripe_customer_id": "cus_2"}

    def test_none_clears_tier_fields_but_not_mirrors(self):
        profile = SellerProfile(
            id="s", pending_tier=Tier.STARTER, tier_effective_at=1, stripe_customer_id="cus_1"
        )

        patch = diff_profile(
            profile, {"pending_tier": None, "tier_effective_at": None, "stripe_customer_id": None}
        )

        assert patch == {"pending_tier": None, "tier_effective_at": None}


class TestReconcileIdempotence:
    async def test_matching_profile_is_not_written(self, gateway, store, catalog, clock, seller):
        gateway.add_subscription(make_subscription_payload())
        reconciler = make_reconciler(gateway, store, catalog, clock)

        result = await reconciler.reconcile(seller.id, seller.email)

        assert store.patches == []
        assert result.subscription.id == "sub_1"
        assert result.profile.tier is Tier.PRO

    async def test_second_run_writes_nothing(self, gateway, store, catalog, clock):
        store.add_profile(SellerProfile(id="seller-1", tier=Tier.UNSUBSCRIBED, email="seller@example.com"))
        gateway.customers["seller@example.com"] = "cus_1"
        gateway.add_subscription(make_subscription_payload(tier=Tier.MERCHANT))
        reconciler = make_reconciler(gateway, store, catalog, clock)

        await reconciler.reconcile("seller-1", "seller@example.com")
        first_run = len(store.patches)
        await reconciler.reconcile("seller-1", "seller@example.com")

        assert first_run == 1
        assert len(store.patches) == 1
        profile = await store.get_profile("seller-1")
        assert profile.tier is Tier.MERCHANT
        assert profile.stripe_customer_id == "cus_1"
        assert profile.stripe_subscription_id == "sub_1"


class TestReconcileTierState:
    async def test_cancel_at_period_end_stages_unsubscribe(self, gateway, store, catalog, clock, seller):
        gateway.add_subscription(make_subscription_payload(cancel_at_period_end=True))
        reconciler = make_reconciler(gateway, store, catalog, clock)

        result = await reconciler.reconcile(seller.id)

        assert result.pending_tier is Tier.UNSUBSCRIBED
        assert result.tier_effective_at == PERIOD_END
        assert result.profile.tier is Tier.PRO
        assert result.profile.stripe_cancel_at_period_end is True

    async def test_withdrawn_cancellation_clears_pending(self, gateway, store, catalog, clock, seller):
        await store.patch_profile(
            seller.id, {"pending_tier": Tier.UNSUBSCRIBED, "tier_effective_at": PERIOD_END}
        )
        gateway.add_subscription(make_subscription_payload(cancel_at_period_end=False))

        result = await make_reconciler(gateway, store, catalog, clock).reconcile(seller.id)

        assert result.pending_tier is None
        assert result.profile.tier_effective_at is None

    async def test_future_pending_downgrade_keeps_current_tier(self, gateway, store, catalog, clock, seller):
        await store.patch_profile(seller.id, {"pending_tier": Tier.STARTER, "tier_effective_at": PERIOD_END})
        gateway.add_subscription(make_subscription_payload(tier=Tier.PRO))

        result = await make_reconciler(gateway, store, catalog, clock).reconcile(seller.id)

        assert result.profile.tier is Tier.PRO
        assert result.pending_tier is Tier.STARTER
        assert result.tier_effective_at == PERIOD_END

    async def test_due_downgrade_waits_while_stripe_bills_current_tier(
        self, gateway, store, catalog, clock, seller
    ):
        await store.patch_profile(seller.id, {"pending_tier": Tier.STARTER, "tier_effective_at": PERIOD_END})
        gateway.add_subscription(make_subscription_payload(tier=Tier.PRO))
        clock.advance(timedelta(days=22, minutes=1))

        result = await make_reconciler(gateway, store, catalog, clock).reconcile(seller.id)

        assert result.profile.tier is Tier.PRO
        assert result.pending_tier is Tier.STARTER
        assert result.tier_effective_at == PERIOD_END
        assert result.profile.pending_tier is Tier.STARTER

    async def test_due_downgrade_is_completed_once_stripe_bills_it(
        self, gateway, store, catalog, clock, seller
    ):
        await store.patch_profile(seller.id, {"pending_tier": Tier.STARTER, "tier_effective_at": PERIOD_START})
        for i in range(5):
            store.add_listing(seller.id, Listing(id=f"l{i}", created_at=f"2026-02-0{i + 1}T00:00:00Z"))
        gateway.add_subscription(make_subscription_payload(tier=Tier.STARTER))
        quota = ListingQuotaService(store)

        result = await make_reconciler(gateway, store, catalog, clock, quota=quota).reconcile(seller.id)

        assert result.profile.tier is Tier.STARTER
        assert result.pending_tier is None
        assert len(await store.list_active_listings(seller.id)) == 3

    async def test_ended_subscription_unsubscribes(self, gateway, store, catalog, clock, seller):
        gateway.add_subscription(make_subscription_payload(status="incomplete_expired"))

        result = await make_reconciler(gateway, store, catalog, clock).reconcile(seller.id)

        assert result.profile.tier is Tier.UNSUBSCRIBED
        assert result.profile.stripe_subscription_status == "incomplete_expired"

    async def test_past_due_keeps_tier(self, gateway, store, catalog, clock, seller):
        gateway.add_subscription(make_subscription_payload(status="past_due"))

        result = await make_reconciler(gateway, store, catalog, clock).reconcile(seller.id)

        assert result.profile.tier is Tier.PRO
        assert result.profile.stripe_subscription_status == "past_due"


class TestReconcileDiscovery:
    async def test_missing_profile_returns_empty_result(self, gateway, store, catalog, clock):
        result = await make_reconciler(gateway, store, catalog, clock).reconcile("ghost")

        assert result.profile is None
        assert result.subscription is None
        assert gateway.calls == []

    async def test_customer_without_subscription(self, gateway, store, catalog, clock):
        store.add_profile(SellerProfile(id="seller-1", email="seller@example.com"))
        gateway.customers["seller@example.com"] = "cus_1"

        result = await make_reconciler(gateway, store, catalog, clock).reconcile(
            "seller-1", "seller@example.com"
        )

        assert result.subscription is None
        assert store.patches == [("seller-1", {"stripe_customer_id": "cus_1"})]

    async def test_ended_stored_subscription_is_replaced_by_live_one(
        self, gateway, store, catalog, clock, seller
    ):
        gateway.add_subscription(make_subscription_payload("sub_1", status="canceled"))
        gateway.add_subscription(make_subscription_payload("sub_2", tier=Tier.ENTERPRISE))

        result = await make_reconciler(gateway, store, catalog, clock).reconcile(seller.id)

        assert result.subscription.id == "sub_2"
        assert result.profile.stripe_subscription_id == "sub_2"
        assert result.profile.tier is Tier.ENTERPRISE
