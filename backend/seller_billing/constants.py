"""
Business constants for the seller billing service.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(secrets, timeouts, catalog overrides), see config.py.
"""

from seller_billing.models.billing import BillingCycle, Tier

API_TITLE = "Solerz Billing API"
API_VERSION = "0.1.0"

# --- Plan prices (MYR, whole ringgit) ---
# (monthly, yearly); yearly carries roughly one month free
PLAN_PRICES_MYR: dict[Tier, tuple[int, int]] = {
    Tier.STARTER: (39, 428),
    Tier.PRO: (99, 1088),
    Tier.MERCHANT: (199, 2188),
    Tier.ENTERPRISE: (499, 5488),
}

# --- Default Stripe catalog ids, used when no env override is configured ---
DEFAULT_CATALOG_IDS: dict[Tier, dict[BillingCycle, str]] = {
    Tier.STARTER: {
        BillingCycle.MONTHLY: "price_1T0elRAEbTWGL4T05z2wcOXW",
        BillingCycle.YEARLY: "price_1T0em9AEbTWGL4T0ZyhhLU1P",
    },
    Tier.PRO: {
        BillingCycle.MONTHLY: "price_1T0enHAEbTWGL4T0Mbvhwiho",
        BillingCycle.YEARLY: "price_1T0ennAEbTWGL4T0Dfs6JlmN",
    },
    Tier.MERCHANT: {
        BillingCycle.MONTHLY: "price_1T0eoRAEbTWGL4T0qsynUwGm",
        BillingCycle.YEARLY: "price_1T0er5AEbTWGL4T0hKoOVsjN",
    },
    Tier.ENTERPRISE: {
        BillingCycle.MONTHLY: "price_1T0etMAEbTWGL4T0C14VVNLk",
        BillingCycle.YEARLY: "price_1T0etmAEbTWGL4T0j1Chp7ri",
    },
}

# --- Tier ordering for upgrade/downgrade decisions ---
TIER_RANK: dict[Tier, int] = {
    Tier.UNSUBSCRIBED: 0,
    Tier.STARTER: 1,
    Tier.PRO: 2,
    Tier.MERCHANT: 3,
    Tier.ENTERPRISE: 4,
}

# --- Active listing quota per tier ---
LISTING_LIMITS: dict[Tier, int] = {
    Tier.UNSUBSCRIBED: 0,
    Tier.STARTER: 3,
    Tier.PRO: 10,
    Tier.MERCHANT: 25,
    Tier.ENTERPRISE: 80,
}

# Product-name keywords for reverse lookup, checked in order; first match wins
PRODUCT_NAME_KEYWORDS: tuple[tuple[str, Tier], ...] = (
    ("enterprise", Tier.ENTERPRISE),
    ("merchant", Tier.MERCHANT),
    ("elite", Tier.MERCHANT),
    ("pro", Tier.PRO),
    ("starter", Tier.STARTER),
)

# --- Stripe ---
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"
SUBSCRIPTION_LIST_LIMIT = 10
