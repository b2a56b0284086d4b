"""Stripe billing API endpoints."""

import json

import structlog
from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from seller_billing.auth import CurrentUser
from seller_billing.config import get_settings
from seller_billing.constants import STRIPE_SIGNATURE_HEADER
from seller_billing.errors import (
    GatewayError,
    ServiceUnavailableError,
    SignatureError,
    StoreError,
    ValidationError,
    upstream_error_from,
)
from seller_billing.models.billing import (
    CancellationResult,
    PlanChangeResult,
    ReconcileResult,
    StripeEvent,
)
from seller_billing.services.subscription_service import SubscriptionService
from seller_billing.services.webhook_service import WebhookDispatcher, verify_signature

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/stripe", tags=["billing"])


class PlanRequest(BaseModel):
    """Checkout or plan change request."""

    model_config = ConfigDict(populate_by_name=True)

    plan_id: str | None = Field(default=None, alias="planId", description="Requested tier")
    billing_cycle: str | None = Field(
        default=None, alias="billingCycle", description="monthly (default) or yearly"
    )


class PortalRequest(BaseModel):
    """Customer portal request."""

    model_config = ConfigDict(populate_by_name=True)

    return_path: str | None = Field(default=None, alias="returnPath")


class CancelRequest(BaseModel):
    """Cancellation request."""

    model_config = ConfigDict(populate_by_name=True)

    at_period_end: bool = Field(default=True, alias="atPeriodEnd")


class UrlResponse(BaseModel):
    """Hosted Stripe page to redirect to."""

    url: str


class WebhookResponse(BaseModel):
    """Stripe webhook acknowledgement."""

    received: bool


def _get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise ServiceUnavailableError("Missing STRIPE secret key")
    return service


def _get_webhook_dispatcher(request: Request) -> WebhookDispatcher:
    dispatcher = getattr(request.app.state, "webhook_dispatcher", None)
    if dispatcher is None:
        raise ServiceUnavailableError("Missing STRIPE secret key")
    return dispatcher


def _request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


@router.post("/checkout", response_model=UrlResponse)
async def create_checkout_session(
    body: PlanRequest,
    request: Request,
    user: CurrentUser,
) -> UrlResponse:
    """Create a Stripe Checkout session for a paid tier."""
    service = _get_subscription_service(request)
    result = await service.start_checkout(
        user_id=user.id,
        email=user.email,
        plan_id=body.plan_id,
        billing_cycle=body.billing_cycle,
        origin=_request_origin(request),
    )
    return UrlResponse(url=result.url)


@router.post("/portal", response_model=UrlResponse)
async def create_portal_session(
    request: Request,
    user: CurrentUser,
    body: PortalRequest | None = None,
) -> UrlResponse:
    """Create a Stripe Customer Portal session."""
    service = _get_subscription_service(request)
    result = await service.open_portal(
        user_id=user.id,
        email=user.email,
        return_path=body.return_path if body else None,
        origin=_request_origin(request),
    )
    return UrlResponse(url=result.url)


@router.post("/subscription/change", response_model=PlanChangeResult)
async def change_subscription(
    body: PlanRequest,
    request: Request,
    user: CurrentUser,
) -> PlanChangeResult:
    """Upgrade immediately or schedule a downgrade for period end."""
    service = _get_subscription_service(request)
    return await service.change_plan(
        user_id=user.id,
        email=user.email,
        plan_id=body.plan_id,
        billing_cycle=body.billing_cycle,
    )


@router.post("/subscription/cancel", response_model=CancellationResult)
async def cancel_subscription(
    request: Request,
    user: CurrentUser,
    body: CancelRequest | None = None,
) -> CancellationResult:
    """Cancel at period end (default) or immediately."""
    service = _get_subscription_service(request)
    return await service.cancel(
        user_id=user.id,
        email=user.email,
        at_period_end=body.at_period_end if body else True,
    )


@router.get("/subscription/sync", response_model=ReconcileResult)
async def sync_subscription(request: Request, user: CurrentUser) -> ReconcileResult:
    """Reconcile the profile with Stripe and return both views."""
    service = _get_subscription_service(request)
    return await service.sync(user_id=user.id, email=user.email)


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias=STRIPE_SIGNATURE_HEADER),
) -> WebhookResponse:
    """Verify and apply a Stripe webhook event."""
    dispatcher = _get_webhook_dispatcher(request)
    stripe_config = get_settings().stripe
    payload = await request.body()

    try:
        verify_signature(
            payload,
            stripe_signature,
            stripe_config.webhook_secret,
            tolerance=stripe_config.webhook_tolerance_seconds,
        )
    except SignatureError as e:
        logger.warning("webhook_signature_rejected", reason=e.message)
        raise

    try:
        event = StripeEvent.model_validate(json.loads(payload))
    except (ValueError, PydanticValidationError) as e:
        logger.warning("webhook_event_unparseable", error=str(e))
        raise ValidationError("Invalid event payload") from e

    try:
        await dispatcher.dispatch(event)
    except (GatewayError, StoreError) as e:
        logger.error(
            "stripe_webhook_failed",
            event_id=event.id,
            event_type=event.type,
            error=e.message,
        )
        # Non-2xx so Stripe redelivers
        error = upstream_error_from(e)
        error.status_code = 500
        raise error from e

    return WebhookResponse(received=True)
