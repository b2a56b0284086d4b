"""
Solerz Billing - Main FastAPI Application.

Entry point for the seller subscription billing backend: checkout, customer
portal, plan changes, cancellation, dashboard sync and Stripe webhooks.

Run with:
    uvicorn seller_billing.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from seller_billing.api.v1.billing import router as billing_router
from seller_billing.config import get_settings
from seller_billing.constants import API_TITLE, API_VERSION
from seller_billing.errors import BillingError
from seller_billing.logging_config import setup_logging
from seller_billing.middleware import RequestContextMiddleware
from seller_billing.services.catalog import TierCatalog
from seller_billing.services.listing_quota import ListingQuotaService
from seller_billing.services.profile_store import SupabaseProfileStore
from seller_billing.services.reconciler import SubscriptionReconciler
from seller_billing.services.stripe_gateway import StripeGateway
from seller_billing.services.subscription_service import SubscriptionService
from seller_billing.services.webhook_service import WebhookDispatcher

# Get settings before logging setup so we know the debug flag
settings = get_settings()

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_service_role_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_service_role_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Billing endpoints will return 503")

    _app.state.supabase = supabase_client

    if not settings.stripe.webhook_secret:
        logger.warning("stripe_webhook_secret_missing", detail="Webhook endpoint will return 503")

    gateway: StripeGateway | None = None
    if settings.stripe.secret_key and supabase_client is not None:
        catalog = TierCatalog(settings.stripe)
        gateway = StripeGateway(settings.stripe)
        store = SupabaseProfileStore(supabase_client)
        quota = ListingQuotaService(store, enabled=settings.billing.enforce_listing_limits)
        reconciler = SubscriptionReconciler(gateway, store, catalog, quota=quota)

        _app.state.subscription_service = SubscriptionService(
            gateway, store, catalog, reconciler, settings.billing, quota=quota
        )
        _app.state.webhook_dispatcher = WebhookDispatcher(gateway, store, catalog, quota=quota)
        logger.info("stripe_configured", api_base=settings.stripe.api_base)
    else:
        _app.state.subscription_service = None
        _app.state.webhook_dispatcher = None
        logger.warning("stripe_not_configured", detail="Billing endpoints will return 503")

    logger.info("services_initialized")

    yield

    if gateway is not None:
        await gateway.close()
    logger.info("api_shutdown")


app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription billing for marketplace sellers: Stripe checkout, "
        "plan changes, cancellation and webhook-driven tier updates."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(_request: Request, exc: BillingError) -> JSONResponse:
    """Render billing errors as {"error": message}."""
    if exc.status_code >= 500:
        logger.error("billing_request_failed", status=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


app.include_router(billing_router, prefix="/api")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Seller subscription billing",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
