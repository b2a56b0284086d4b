"""Billing models: seller profile, Stripe objects and orchestration results.

Stripe payloads are validated into these models at the gateway boundary so the
reconciler and orchestrators never traverse raw JSON.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Tier(str, Enum):
    """Seller access tiers."""

    UNSUBSCRIBED = "UNSUBSCRIBED"
    STARTER = "STARTER"
    PRO = "PRO"
    MERCHANT = "MERCHANT"
    ENTERPRISE = "ENTERPRISE"


PAID_TIERS = frozenset({Tier.STARTER, Tier.PRO, Tier.MERCHANT, Tier.ENTERPRISE})

# Rows written before MERCHANT was renamed still carry the old label
LEGACY_TIER_ALIASES = {"ELITE": Tier.MERCHANT.value}


class BillingCycle(str, Enum):
    """Checkout billing cycle."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def interval(self) -> "BillingInterval":
        return BillingInterval.YEAR if self is BillingCycle.YEARLY else BillingInterval.MONTH


class BillingInterval(str, Enum):
    """Stripe recurring interval mirrored on the profile."""

    MONTH = "month"
    YEAR = "year"


class Role(str, Enum):
    """Profile roles relevant to billing."""

    BUYER = "BUYER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"


SubscriptionStatus = Literal[
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "paused",
]

# Statuses that make a subscription the seller's authoritative one
LIVE_SUBSCRIPTION_STATUSES: frozenset[str] = frozenset({"active", "trialing", "past_due", "unpaid"})

# Statuses under which the line-item tier is trusted as the effective tier
ENTITLED_SUBSCRIPTION_STATUSES: frozenset[str] = frozenset({"active", "trialing"})


def _coerce_tier(value: Any) -> Any:
    if value is None or isinstance(value, Tier):
        return value
    text = str(value).strip().upper()
    if not text:
        return None
    return LEGACY_TIER_ALIASES.get(text, text)


# ---------------------------------------------------------------------------
# Local profile
# ---------------------------------------------------------------------------


class SellerProfile(BaseModel):
    """Billing subset of a `profiles` row.

    Other columns of the row are kept as extras so a patched row can be
    returned to the dashboard unchanged.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    role: str | None = None
    email: str | None = None
    tier: Tier = Tier.UNSUBSCRIBED
    pending_tier: Tier | None = None
    tier_effective_at: int | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_subscription_status: str | None = None
    stripe_current_period_start: int | None = None
    stripe_current_period_end: int | None = None
    stripe_cancel_at_period_end: bool | None = None
    stripe_billing_interval: BillingInterval | None = None
    updated_at: datetime | None = None

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: Any) -> Any:
        coerced = _coerce_tier(value)
        return Tier.UNSUBSCRIBED if coerced is None else coerced

    @field_validator("pending_tier", mode="before")
    @classmethod
    def _normalize_pending_tier(cls, value: Any) -> Any:
        return _coerce_tier(value)

    @field_validator("tier_effective_at", "stripe_current_period_start", "stripe_current_period_end", mode="before")
    @classmethod
    def _epoch_seconds(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, float):
            return int(value)
        return value


# ---------------------------------------------------------------------------
# Stripe objects
# ---------------------------------------------------------------------------

T = TypeVar("T")


class StripeObject(BaseModel):
    """Base for Stripe payloads; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")


class StripeList(StripeObject, Generic[T]):
    """Stripe list envelope (`{"object": "list", "data": [...]}`)."""

    data: list[T] = Field(default_factory=list)
    has_more: bool = False


class StripeProduct(StripeObject):
    id: str
    name: str = ""


class StripeRecurring(StripeObject):
    interval: str | None = None


class StripePrice(StripeObject):
    id: str
    unit_amount: int | None = None
    currency: str | None = None
    recurring: StripeRecurring | None = None
    # Either the product id or, when expanded, the product object
    product: StripeProduct | str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def product_id(self) -> str | None:
        if isinstance(self.product, StripeProduct):
            return self.product.id
        return self.product

    @property
    def product_name(self) -> str | None:
        if isinstance(self.product, StripeProduct):
            return self.product.name
        return None

    @property
    def interval(self) -> str | None:
        return self.recurring.interval if self.recurring else None


class SubscriptionItem(StripeObject):
    id: str
    price: StripePrice | None = None
    quantity: int | None = None
    # Newer API versions report the billing period per item
    current_period_start: int | None = None
    current_period_end: int | None = None


class StripeSubscription(StripeObject):
    id: str
    customer: str | None = None
    status: SubscriptionStatus
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    schedule: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    items: StripeList[SubscriptionItem] = Field(default_factory=StripeList[SubscriptionItem])

    @field_validator("customer", "schedule", mode="before")
    @classmethod
    def _collapse_expanded(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("id")
        return value

    @property
    def first_item(self) -> SubscriptionItem | None:
        return self.items.data[0] if self.items.data else None

    @property
    def period_end(self) -> int | None:
        if self.current_period_end is not None:
            return self.current_period_end
        item = self.first_item
        return item.current_period_end if item else None

    @property
    def period_start(self) -> int | None:
        if self.current_period_start is not None:
            return self.current_period_start
        item = self.first_item
        return item.current_period_start if item else None

    @property
    def billing_interval(self) -> BillingInterval | None:
        item = self.first_item
        interval = item.price.interval if item and item.price else None
        if interval in {BillingInterval.MONTH.value, BillingInterval.YEAR.value}:
            return BillingInterval(interval)
        return None


class StripeCustomer(StripeObject):
    id: str
    email: str | None = None


class SubscriptionSchedule(StripeObject):
    id: str
    subscription: str | None = None
    status: str | None = None
    end_behavior: str | None = None


class HostedSession(StripeObject):
    """Checkout or billing-portal session; only the redirect matters."""

    id: str
    url: str | None = None


class CheckoutSessionObject(StripeObject):
    id: str
    client_reference_id: str | None = None
    customer: str | None = None
    subscription: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _collapse_expanded(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("id")
        return value


class SubscriptionDetails(StripeObject):
    subscription: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class InvoiceParent(StripeObject):
    subscription_details: SubscriptionDetails | None = None


class InvoicePriceDetails(StripeObject):
    price: str | None = None
    product: str | None = None


class InvoiceLinePricing(StripeObject):
    price_details: InvoicePriceDetails | None = None


class InvoiceLineItemDetails(StripeObject):
    proration: bool = False


class InvoiceLineParent(StripeObject):
    subscription_item_details: InvoiceLineItemDetails | None = None


class InvoiceLine(StripeObject):
    amount: int | None = None
    proration: bool = False
    price: StripePrice | None = None
    pricing: InvoiceLinePricing | None = None
    parent: InvoiceLineParent | None = None

    @property
    def is_proration(self) -> bool:
        if self.proration:
            return True
        details = self.parent.subscription_item_details if self.parent else None
        return bool(details and details.proration)

    @property
    def price_id(self) -> str | None:
        if self.price is not None:
            return self.price.id
        if self.pricing and self.pricing.price_details:
            return self.pricing.price_details.price
        return None

    @property
    def product_id(self) -> str | None:
        if self.price is not None:
            return self.price.product_id
        if self.pricing and self.pricing.price_details:
            return self.pricing.price_details.product
        return None


class InvoiceObject(StripeObject):
    id: str
    customer: str | None = None
    subscription: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    subscription_details: SubscriptionDetails | None = None
    parent: InvoiceParent | None = None
    lines: StripeList[InvoiceLine] = Field(default_factory=StripeList[InvoiceLine])

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _collapse_expanded(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("id")
        return value

    @property
    def subscription_id(self) -> str | None:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None

    @property
    def subscription_metadata(self) -> dict[str, str]:
        """Metadata copied from the subscription, wherever this API version puts it."""
        if self.subscription_details and self.subscription_details.metadata:
            return self.subscription_details.metadata
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.metadata
        return {}


class EventData(StripeObject):
    object: dict[str, Any] = Field(default_factory=dict)


class StripeEvent(StripeObject):
    id: str
    type: str
    data: EventData = Field(default_factory=EventData)


# ---------------------------------------------------------------------------
# Results returned to the dashboard
# ---------------------------------------------------------------------------


class CamelModel(BaseModel):
    """Response model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionItemView(BaseModel):
    id: str
    price_id: str | None = None
    product_id: str | None = None
    product_name: str | None = None
    unit_amount: int | None = None
    currency: str | None = None
    interval: str | None = None


class SubscriptionView(BaseModel):
    """Dashboard-facing summary of the authoritative subscription."""

    id: str
    status: str
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    billing_interval: BillingInterval | None = None
    items: list[SubscriptionItemView] = Field(default_factory=list)

    @classmethod
    def from_subscription(cls, subscription: StripeSubscription) -> "SubscriptionView":
        items = []
        for item in subscription.items.data:
            price = item.price
            items.append(
                SubscriptionItemView(
                    id=item.id,
                    price_id=price.id if price else None,
                    product_id=price.product_id if price else None,
                    product_name=price.product_name if price else None,
                    unit_amount=price.unit_amount if price else None,
                    currency=price.currency if price else None,
                    interval=price.interval if price else None,
                )
            )
        return cls(
            id=subscription.id,
            status=subscription.status,
            current_period_end=subscription.period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            billing_interval=subscription.billing_interval,
            items=items,
        )


class ReconcileResult(BaseModel):
    """Outcome of a reconciliation run."""

    subscription: SubscriptionView | None = None
    profile: SellerProfile | None = None
    pending_tier: Tier | None = None
    tier_effective_at: int | None = None


class ResolvedSubscription(BaseModel):
    """Identifiers located by subscription discovery."""

    customer_id: str | None = None
    subscription_id: str | None = None


class CheckoutResult(CamelModel):
    url: str
    session_id: str


class PortalResult(CamelModel):
    url: str


class PlanChangeResult(CamelModel):
    mode: Literal["upgrade", "downgrade_scheduled"]
    subscription_id: str
    effective_at: int | None = None
    pending_tier: Tier | None = None


class CancellationResult(CamelModel):
    mode: Literal["cancel_scheduled", "canceled_immediately"]
    subscription_id: str
    effective_at: int | None = None


class Listing(BaseModel):
    """Listing fields needed for quota enforcement."""

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str | None = None
    is_paused: bool = False
    created_at: datetime | None = None
