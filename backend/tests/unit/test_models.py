"""
Tests for the billing models and error taxonomy.

Validates tier normalization, Stripe payload parsing across API versions,
and upstream error translation.
"""

import pytest

from seller_billing.errors import (
    GatewayError,
    NotFoundError,
    StoreError,
    UpstreamError,
    translate_upstream_errors,
    upstream_error_from,
)
from seller_billing.models.billing import (
    BillingCycle,
    BillingInterval,
    InvoiceObject,
    PlanChangeResult,
    SellerProfile,
    StripeSubscription,
    SubscriptionView,
    Tier,
)


class TestSellerProfile:
    """Tests for the SellerProfile row model."""

    def test_defaults(self):
        profile = SellerProfile(id="s1")
        assert profile.tier is Tier.UNSUBSCRIBED
        assert profile.pending_tier is None

    def test_lowercase_and_legacy_tiers(self):
        profile = SellerProfile(id="s1", tier="pro", pending_tier="Elite")
        assert profile.tier is Tier.PRO
        assert profile.pending_tier is Tier.MERCHANT

    def test_null_tier_means_unsubscribed(self):
        assert SellerProfile(id="s1", tier=None).tier is Tier.UNSUBSCRIBED

    def test_unknown_columns_are_kept(self):
        profile = SellerProfile.model_validate({"id": "s1", "display_name": "Sun Power Sdn Bhd"})
        assert profile.model_dump()["display_name"] == "Sun Power Sdn Bhd"


class TestBillingCycle:
    def test_interval(self):
        assert BillingCycle.MONTHLY.interval is BillingInterval.MONTH
        assert BillingCycle.YEARLY.interval is BillingInterval.YEAR


class TestStripeSubscription:
    """Parsing of subscription payloads from different Stripe API versions."""

    def test_period_from_item_when_top_level_missing(self):
        subscription = StripeSubscription.model_validate(
            {
                "id": "sub_1",
                "status": "active",
                "items": {
                    "data": [
                        {
                            "id": "si_1",
                            "current_period_start": 100,
                            "current_period_end": 200,
                            "price": {"id": "price_1", "recurring": {"interval": "year"}},
                        }
                    ]
                },
            }
        )

        assert subscription.period_start == 100
        assert subscription.period_end == 200
        assert subscription.billing_interval is BillingInterval.YEAR

    def test_expanded_customer_and_schedule_collapse_to_ids(self):
        subscription = StripeSubscription.model_validate(
            {
                "id": "sub_1",
                "status": "trialing",
                "customer": {"id": "cus_1", "object": "customer"},
                "schedule": {"id": "sub_sched_1"},
                "current_period_end": 300,
            }
        )

        assert subscription.customer == "cus_1"
        assert subscription.schedule == "sub_sched_1"
        assert subscription.period_end == 300
        assert subscription.first_item is None

    def test_unknown_status_is_rejected(self):
        with pytest.raises(ValueError):
            StripeSubscription.model_validate({"id": "sub_1", "status": "frozen"})

    def test_view(self):
        subscription = StripeSubscription.model_validate(
            {
                "id": "sub_1",
                "status": "active",
                "items": {
                    "data": [
                        {
                            "id": "si_1",
                            "price": {
                                "id": "price_1",
                                "unit_amount": 9900,
                                "currency": "myr",
                                "product": {"id": "prod_1", "name": "Solerz PRO"},
                            },
                        }
                    ]
                },
            }
        )

        view = SubscriptionView.from_subscription(subscription)

        assert view.items[0].product_name == "Solerz PRO"
        assert view.items[0].unit_amount == 9900


class TestInvoiceObject:
    def test_legacy_subscription_fields(self):
        invoice = InvoiceObject.model_validate(
            {
                "id": "in_1",
                "subscription": "sub_1",
                "subscription_details": {"metadata": {"user_id": "s1"}},
            }
        )

        assert invoice.subscription_id == "sub_1"
        assert invoice.subscription_metadata == {"user_id": "s1"}

    def test_parent_subscription_fields(self):
        invoice = InvoiceObject.model_validate(
            {
                "id": "in_1",
                "parent": {"subscription_details": {"subscription": "sub_2", "metadata": {"tier": "PRO"}}},
                "lines": {
                    "data": [
                        {"amount": -100, "proration": True, "price": {"id": "price_old"}},
                        {"amount": 900, "pricing": {"price_details": {"price": "price_new", "product": "prod_new"}}},
                    ]
                },
            }
        )

        assert invoice.subscription_id == "sub_2"
        assert invoice.subscription_metadata == {"tier": "PRO"}
        assert [line.is_proration for line in invoice.lines.data] == [True, False]
        assert invoice.lines.data[1].price_id == "price_new"
        assert invoice.lines.data[1].product_id == "prod_new"


class TestResultSerialization:
    def test_camel_case_aliases(self):
        result = PlanChangeResult(mode="downgrade_scheduled", subscription_id="sub_1", effective_at=5)

        assert result.model_dump(by_alias=True)["subscriptionId"] == "sub_1"
        assert result.model_dump()["subscription_id"] == "sub_1"


class TestUpstreamErrors:
    def test_upstream_status_is_preserved(self):
        error = upstream_error_from(GatewayError(402, "card_declined"))
        assert error.status_code == 402
        assert error.message == "card_declined"

    def test_transport_failure_is_500(self):
        assert upstream_error_from(GatewayError(None, "timeout", retryable=True)).status_code == 500

    def test_out_of_range_status_is_500(self):
        assert upstream_error_from(StoreError("bad", status=42501)).status_code == 500

    def test_context_manager_translates(self):
        with pytest.raises(UpstreamError) as exc_info:
            with translate_upstream_errors():
                raise StoreError("connection reset")

        assert isinstance(exc_info.value.__cause__, StoreError)

    def test_billing_errors_pass_through(self):
        with pytest.raises(NotFoundError):
            with translate_upstream_errors():
                raise NotFoundError("No active subscription found.")
