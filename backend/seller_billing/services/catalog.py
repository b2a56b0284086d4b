"""Tier catalog: prices, Stripe catalog ids and reverse lookup."""

import json
from typing import Any

import structlog

from seller_billing.config import StripeConfig
from seller_billing.constants import (
    DEFAULT_CATALOG_IDS,
    LISTING_LIMITS,
    PLAN_PRICES_MYR,
    PRODUCT_NAME_KEYWORDS,
    TIER_RANK,
)
from seller_billing.models.billing import PAID_TIERS, BillingCycle, Tier

logger = structlog.get_logger(__name__)


def normalize_tier(value: str | None) -> Tier | None:
    """Parse a paid tier name case-insensitively. Returns None for anything else."""
    text = str(value or "").strip().upper()
    try:
        tier = Tier(text)
    except ValueError:
        return None
    return tier if tier in PAID_TIERS else None


def normalize_cycle(value: str | None) -> BillingCycle:
    """Anything other than "yearly" bills monthly."""
    if str(value or "").strip().lower() == BillingCycle.YEARLY.value:
        return BillingCycle.YEARLY
    return BillingCycle.MONTHLY


def tier_rank(tier: Tier | None) -> int:
    return TIER_RANK.get(tier, 0) if tier else 0


def listing_limit(tier: Tier | None) -> int:
    return LISTING_LIMITS.get(tier, 0) if tier else 0


def price_for(tier: Tier, cycle: BillingCycle) -> int:
    """Unit amount in minor currency units (sen)."""
    monthly, yearly = PLAN_PRICES_MYR[tier]
    amount = yearly if cycle is BillingCycle.YEARLY else monthly
    return round(amount * 100)


class TierCatalog:
    """Maps tier × cycle to Stripe catalog ids, with an env override table."""

    def __init__(self, config: StripeConfig) -> None:
        self.config = config
        self._overrides = self._parse_overrides(config.catalog_ids_json)

    @staticmethod
    def _parse_overrides(raw: str) -> dict[str, dict[str, str]]:
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("catalog_override_invalid_json", error=str(e))
            return {}
        if not isinstance(parsed, dict):
            logger.warning("catalog_override_not_an_object")
            return {}
        overrides: dict[str, dict[str, str]] = {}
        for tier_name, cycles in parsed.items():
            if isinstance(cycles, dict):
                overrides[str(tier_name).upper()] = {
                    str(cycle).lower(): str(value).strip()
                    for cycle, value in cycles.items()
                    if value
                }
        return overrides

    def catalog_id_for(self, tier: Tier, cycle: BillingCycle) -> str | None:
        override = self._overrides.get(tier.value, {}).get(cycle.value)
        if override:
            return override
        return DEFAULT_CATALOG_IDS.get(tier, {}).get(cycle) or None

    def price_params(self, tier: Tier, cycle: BillingCycle) -> dict[str, Any]:
        """Line-item price fragment for checkout, subscription items and schedule phases.

        A `price_` id is referenced directly. Anything else becomes inline
        `price_data`, attached to the `prod_` product when there is one.
        """
        catalog_id = self.catalog_id_for(tier, cycle)
        if catalog_id and catalog_id.startswith("price_"):
            return {"price": catalog_id}

        price_data: dict[str, Any] = {
            "currency": self.config.currency,
            "unit_amount": price_for(tier, cycle),
            "recurring": {"interval": cycle.interval.value},
        }
        if catalog_id and catalog_id.startswith("prod_"):
            price_data["product"] = catalog_id
        else:
            price_data["product_data"] = {
                "name": f"{self.config.product_name_prefix} {tier.value} ({cycle.value})"
            }
        return {"price_data": price_data}

    def _known_ids(self) -> dict[str, Tier]:
        known: dict[str, Tier] = {}
        for tier, cycles in DEFAULT_CATALOG_IDS.items():
            for catalog_id in cycles.values():
                known[catalog_id] = tier
        for tier_name, cycles in self._overrides.items():
            try:
                tier = Tier(tier_name)
            except ValueError:
                continue
            for catalog_id in cycles.values():
                known[catalog_id] = tier
        return known

    def tier_for_price(
        self,
        price_id: str | None = None,
        product_id: str | None = None,
        product_name: str | None = None,
    ) -> Tier | None:
        """Reverse lookup: catalog ids first, then product-name keywords."""
        known = self._known_ids()
        for candidate in (price_id, product_id):
            if candidate and candidate in known:
                return known[candidate]

        name = (product_name or "").lower()
        if name:
            for keyword, tier in PRODUCT_NAME_KEYWORDS:
                if keyword in name:
                    return tier
        return None
