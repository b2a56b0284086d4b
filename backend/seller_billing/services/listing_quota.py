"""Keep a seller's live listings within their tier's quota.

Runs after the effective tier changes. A downgrade pauses the oldest excess
listings; an upgrade resumes paused listings, newest first, up to the free
slots. Failures are logged and never abort the billing operation.
"""

import structlog

from seller_billing.errors import StoreError
from seller_billing.models.billing import Tier
from seller_billing.services.catalog import listing_limit
from seller_billing.services.profile_store import ProfileRepository

logger = structlog.get_logger(__name__)


class ListingQuotaService:
    """Pauses or resumes listings when a seller's tier changes."""

    def __init__(self, store: ProfileRepository, *, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled

    async def apply_tier_change(self, seller_id: str, old_tier: Tier | None, new_tier: Tier) -> None:
        if not self.enabled or old_tier == new_tier:
            return
        old_limit = listing_limit(old_tier)
        new_limit = listing_limit(new_tier)
        try:
            if new_limit < old_limit:
                await self.pause_excess(seller_id, new_tier)
            elif new_limit > old_limit:
                await self.resume_paused(seller_id, new_tier)
        except StoreError as e:
            logger.warning(
                "listing_quota_enforcement_failed",
                seller_id=seller_id,
                new_tier=new_tier.value,
                error=e.message,
            )

    async def pause_excess(self, seller_id: str, tier: Tier) -> int:
        """Pause everything beyond the quota, keeping the newest listings live."""
        limit = listing_limit(tier)
        active = await self.store.list_active_listings(seller_id)
        excess = active[limit:]
        for listing in excess:
            await self.store.set_listing_paused(listing.id, True)
        if excess:
            logger.info(
                "listings_paused_for_tier",
                seller_id=seller_id,
                tier=tier.value,
                paused=len(excess),
            )
        return len(excess)

    async def resume_paused(self, seller_id: str, tier: Tier) -> int:
        limit = listing_limit(tier)
        active = await self.store.list_active_listings(seller_id)
        available = limit - len(active)
        if available <= 0:
            return 0
        paused = await self.store.list_paused_listings(seller_id)
        to_resume = paused[:available]
        for listing in to_resume:
            await self.store.set_listing_paused(listing.id, False)
        if to_resume:
            logger.info(
                "listings_resumed_for_tier",
                seller_id=seller_id,
                tier=tier.value,
                resumed=len(to_resume),
            )
        return len(to_resume)
