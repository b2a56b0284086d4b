"""Seller profile store: Supabase-backed and in-memory repositories.

The Supabase client used here is created with the service-role key and so
bypasses row-level security. Only call it with a seller id that came from a
verified bearer token or from signature-verified webhook metadata.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

import httpx
import structlog
from postgrest.exceptions import APIError
from pydantic import ValidationError as PydanticValidationError
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from seller_billing.errors import StoreError
from seller_billing.models.billing import Listing, SellerProfile

logger = structlog.get_logger(__name__)

PROFILES_TABLE = "profiles"
LISTINGS_TABLE = "listings"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_row(fields: dict[str, Any]) -> dict[str, Any]:
    """Serialize enum values so the patch is JSON-ready."""
    return {key: value.value if isinstance(value, Enum) else value for key, value in fields.items()}


def _profile_from_row(row: dict | None) -> SellerProfile | None:
    if not row:
        return None
    try:
        return SellerProfile.model_validate(row)
    except PydanticValidationError as e:
        raise StoreError(f"Profile row failed validation: {e.error_count()} invalid field(s)") from e


class ProfileRepository(Protocol):
    """Storage contract for seller profiles and their listings."""

    async def get_profile(self, seller_id: str) -> SellerProfile | None:
        """Fetch a seller profile."""

    async def get_profile_by_customer_id(self, customer_id: str) -> SellerProfile | None:
        """Fetch the profile linked to a Stripe customer."""

    async def patch_profile(self, seller_id: str, fields: dict[str, Any]) -> SellerProfile | None:
        """Apply a partial update; always stamps updated_at."""

    async def list_active_listings(self, seller_id: str) -> list[Listing]:
        """Live, unpaused listings, newest first."""

    async def list_paused_listings(self, seller_id: str) -> list[Listing]:
        """Paused listings, newest first."""

    async def set_listing_paused(self, listing_id: str, paused: bool) -> None:
        """Pause or resume one listing."""


class InMemoryProfileStore:
    """In-memory repository used for tests and local runs without Supabase."""

    def __init__(self, now_provider=_utcnow) -> None:
        self.profiles: dict[str, dict[str, Any]] = {}
        self.listings: dict[str, dict[str, Any]] = {}
        self.patches: list[tuple[str, dict[str, Any]]] = []
        self.now_provider = now_provider

    def add_profile(self, profile: SellerProfile) -> None:
        self.profiles[profile.id] = profile.model_dump(mode="json")

    def add_listing(self, seller_id: str, listing: Listing, *, active: bool = True) -> None:
        row = listing.model_dump(mode="json")
        row.update({"seller_id": seller_id, "active": active})
        self.listings[listing.id] = row

    async def get_profile(self, seller_id: str) -> SellerProfile | None:
        return _profile_from_row(self.profiles.get(seller_id))

    async def get_profile_by_customer_id(self, customer_id: str) -> SellerProfile | None:
        for row in self.profiles.values():
            if row.get("stripe_customer_id") == customer_id:
                return _profile_from_row(row)
        return None

    async def patch_profile(self, seller_id: str, fields: dict[str, Any]) -> SellerProfile | None:
        row = self.profiles.get(seller_id)
        if row is None:
            return None
        update = _to_row(fields)
        self.patches.append((seller_id, dict(update)))
        update["updated_at"] = self.now_provider().isoformat()
        row.update(update)
        return _profile_from_row(row)

    def _seller_listings(self, seller_id: str, *, paused: bool) -> list[Listing]:
        rows = [
            row
            for row in self.listings.values()
            if row["seller_id"] == seller_id and row["active"] and row["is_paused"] is paused
        ]
        rows.sort(key=lambda row: row.get("created_at") or "", reverse=True)
        return [Listing.model_validate(row) for row in rows]

    async def list_active_listings(self, seller_id: str) -> list[Listing]:
        return self._seller_listings(seller_id, paused=False)

    async def list_paused_listings(self, seller_id: str) -> list[Listing]:
        return self._seller_listings(seller_id, paused=True)

    async def set_listing_paused(self, listing_id: str, paused: bool) -> None:
        if listing_id in self.listings:
            self.listings[listing_id]["is_paused"] = paused


class SupabaseProfileStore:
    """Supabase-backed profile store using the service-role client."""

    def __init__(self, client: AsyncSupabaseClient | None, now_provider=_utcnow) -> None:
        self.client = client
        self.now_provider = now_provider

    def _require_client(self) -> AsyncSupabaseClient:
        if self.client is None:
            raise StoreError("Supabase service client is not configured")
        return self.client

    async def _execute(self, query, operation: str):
        try:
            return await query.execute()
        except APIError as e:
            logger.warning("profile_store_rejected", operation=operation, error=e.message, code=e.code)
            status = int(e.code) if str(e.code or "").isdigit() else None
            raise StoreError(e.message or "Profile store rejected the request", status=status) from e
        except httpx.HTTPError as e:
            logger.warning("profile_store_unreachable", operation=operation, error=str(e))
            raise StoreError(f"Profile store unreachable: {e}") from e

    async def get_profile(self, seller_id: str) -> SellerProfile | None:
        client = self._require_client()
        response = await self._execute(
            client.table(PROFILES_TABLE).select("*").eq("id", seller_id).limit(1),
            "get_profile",
        )
        rows = response.data or []
        return _profile_from_row(rows[0] if rows else None)

    async def get_profile_by_customer_id(self, customer_id: str) -> SellerProfile | None:
        client = self._require_client()
        response = await self._execute(
            client.table(PROFILES_TABLE).select("*").eq("stripe_customer_id", customer_id).limit(1),
            "get_profile_by_customer_id",
        )
        rows = response.data or []
        return _profile_from_row(rows[0] if rows else None)

    async def patch_profile(self, seller_id: str, fields: dict[str, Any]) -> SellerProfile | None:
        client = self._require_client()
        update = _to_row(fields)
        update["updated_at"] = self.now_provider().isoformat()
        response = await self._execute(
            client.table(PROFILES_TABLE).update(update).eq("id", seller_id),
            "patch_profile",
        )
        rows = response.data or []
        return _profile_from_row(rows[0] if rows else None)

    async def list_active_listings(self, seller_id: str) -> list[Listing]:
        client = self._require_client()
        response = await self._execute(
            client.table(LISTINGS_TABLE)
            .select("id, title, is_paused, created_at")
            .eq("seller_id", seller_id)
            .eq("is_sold", False)
            .eq("is_hidden", False)
            .eq("is_paused", False)
            .gte("active_until", self.now_provider().isoformat())
            .order("created_at", desc=True),
            "list_active_listings",
        )
        return [Listing.model_validate(row) for row in response.data or []]

    async def list_paused_listings(self, seller_id: str) -> list[Listing]:
        client = self._require_client()
        response = await self._execute(
            client.table(LISTINGS_TABLE)
            .select("id, title, is_paused, created_at")
            .eq("seller_id", seller_id)
            .eq("is_paused", True)
            .order("created_at", desc=True),
            "list_paused_listings",
        )
        return [Listing.model_validate(row) for row in response.data or []]

    async def set_listing_paused(self, listing_id: str, paused: bool) -> None:
        client = self._require_client()
        await self._execute(
            client.table(LISTINGS_TABLE)
            .update({"is_paused": paused, "updated_at": self.now_provider().isoformat()})
            .eq("id", listing_id),
            "set_listing_paused",
        )
