"""
Billing Router - API endpoints for Stripe billing integration
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from backend.utils.responses import success_response, error_response
from config.settings import Settings, settings as app_settings
from crud.user import UserRepository
from database import get_db
from models.subscription import CheckoutRequest, PortalRequest, SubscriptionRecord
from services.billing_service import BillingService
from services.customer_directory import CustomerDirectory
from services.errors import BillingError, SignatureInvalid
from services.plan_catalog import PlanCatalog
from services.signature_verifier import WebhookSignatureVerifier
from services.stripe_gateway import StripeGateway
from services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_settings() -> Settings:
    return app_settings


def get_stripe_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway:
    return StripeGateway.from_settings(settings)


def get_signature_verifier(settings: Settings = Depends(get_settings)) -> Optional[WebhookSignatureVerifier]:
    if not settings.stripe_webhook_secret:
        return None
    return WebhookSignatureVerifier(
        settings.stripe_webhook_secret,
        tolerance=settings.stripe_webhook_tolerance,
    )


def get_user_repository(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> UserRepository:
    return UserRepository(db, timeout=settings.database_timeout_seconds)


def get_reconciler(
    user_repo: UserRepository = Depends(get_user_repository),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    settings: Settings = Depends(get_settings),
) -> WebhookReconciler:
    return WebhookReconciler(
        user_repo,
        gateway,
        PlanCatalog.from_settings(settings),
        user_id_metadata_key=settings.user_id_metadata_key,
        unmatched_policy=settings.unmatched_event_policy,
    )


def get_billing_service(
    user_repo: UserRepository = Depends(get_user_repository),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    settings: Settings = Depends(get_settings),
) -> BillingService:
    customers = CustomerDirectory(user_repo, gateway, settings.user_id_metadata_key)
    return BillingService(customers, gateway, settings)


# ============================================================================
# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
# ============================================================================

@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    verifier: Optional[WebhookSignatureVerifier] = Depends(get_signature_verifier),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """
    Handle Stripe webhook events with signature verification.

    Status codes tell Stripe whether to redeliver:
    - 200: processed, ignored, or unmatched (nothing a retry could fix)
    - 400: signature did not verify; resending the same bytes cannot succeed
    - 500: persistence or upstream failure; Stripe retries with backoff
    """
    if verifier is None:
        logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
        return Response(content="Webhook not configured", status_code=500)

    # Raw body, exactly as sent: re-serializing would break the signature
    payload = await request.body()
    stripe_signature = request.headers.get("stripe-signature")

    try:
        event = verifier.verify(payload, stripe_signature)
    except SignatureInvalid as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        return Response(content="Webhook Error: invalid signature", status_code=400)

    try:
        outcome = await reconciler.reconcile(event)
    except BillingError as e:
        logger.error(f"Error in webhook handler for event {event.get('id')} ({event.get('type')}): {e}")
        return Response(content="Internal server error", status_code=500)

    logger.info(f"Stripe event {event.get('id')} ({outcome.event_type}): {outcome.action}")
    return Response(status_code=200)


@billing_router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutRequest,
    billing_service: BillingService = Depends(get_billing_service),
):
    """
    Create a Stripe Checkout session for a user.

    Returns:
        JSON response with the checkout session id and URL
    """
    result = await billing_service.create_checkout_session(body.user_id, body.price_id)
    if result.get("is_error"):
        status = 404 if result.get("not_found") else 500
        return error_response("checkout_failed", status=status, message=result.get("error", "Unknown error"))
    return success_response(result["data"])


@billing_router.post("/portal")
async def create_billing_portal_session(
    body: PortalRequest,
    billing_service: BillingService = Depends(get_billing_service),
):
    """
    Create a Stripe Billing Portal session for a user.

    Returns:
        JSON response with portal session URL
    """
    result = await billing_service.create_billing_portal_session(body.user_id)
    if result.get("is_error"):
        status = 404 if result.get("not_found") else 500
        return error_response("portal_failed", status=status, message=result.get("error", "Unknown error"))
    return success_response(result["data"])


@billing_router.get("/subscription/{user_id}")
async def get_subscription(
    user_id: str,
    user_repo: UserRepository = Depends(get_user_repository),
):
    """Return the subscription record stored on a user (empty data when there is none)."""
    try:
        user = await user_repo.get_user_by_id(user_id)
    except BillingError as e:
        logger.error(f"Failed to load subscription for {user_id}: {e}")
        return error_response("storage_error", status=500, message="Could not load subscription")

    if user is None:
        return error_response("user_not_found", status=404, message=f"User not found: {user_id}")

    record = SubscriptionRecord.from_user(user)
    return success_response(record)
