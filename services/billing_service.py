"""
Billing Service - Stripe checkout and billing portal sessions for local users
"""

import logging

from services.customer_directory import CustomerDirectory
from services.errors import BillingError, UserNotFound
from services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class BillingService:
    """
    Service class for the user-facing billing flows.
    Both flows resolve (or lazily create) the user's Stripe customer first.
    """

    def __init__(self, customers: CustomerDirectory, gateway: StripeGateway, settings):
        """
        Initialize the billing service.

        Args:
            customers: CustomerDirectory resolving users to Stripe customers
            gateway: Stripe gateway
            settings: Application settings (frontend URL and redirect paths)
        """
        self.customers = customers
        self.gateway = gateway
        self.frontend_url = (settings.frontend_url or "http://localhost:5173").rstrip("/")
        self.success_path = settings.checkout_success_path
        self.cancel_path = settings.checkout_cancel_path
        self.portal_return_path = settings.portal_return_path
        self.user_id_metadata_key = settings.user_id_metadata_key

    async def create_checkout_session(self, user_id: str, price_id: str):
        """
        Create a Stripe Checkout session for a subscription.

        The local user id travels in the session metadata so the
        checkout.session.completed webhook can find the user again.

        Args:
            user_id: Local user id
            price_id: Stripe price id to subscribe to

        Returns:
            Normalized response: {"data": {"session_id", "url"}, "is_error": False}
            or {"error": str, "is_error": True, "not_found": bool}
        """
        if not price_id:
            return {"error": "price_id is required", "is_error": True, "not_found": False}

        try:
            customer_id = await self.customers.resolve_or_create_customer(user_id)
            session = await self.gateway.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                success_url=f"{self.frontend_url}{self.success_path}",
                cancel_url=f"{self.frontend_url}{self.cancel_path}",
                metadata={self.user_id_metadata_key: user_id},
            )
            return {"data": {"session_id": session.id, "url": session.url}, "is_error": False}
        except UserNotFound as e:
            logger.warning(f"Checkout requested for unknown user: {e}")
            return {"error": str(e), "is_error": True, "not_found": True}
        except BillingError as e:
            logger.error(f"Failed to create checkout session: {e}", exc_info=True)
            return {"error": str(e), "is_error": True, "not_found": False}

    async def create_billing_portal_session(self, user_id: str):
        """
        Create a Stripe Billing Portal session so the user can manage their subscription.

        Args:
            user_id: Local user id

        Returns:
            Normalized response: {"data": {"url"}, "is_error": False}
            or {"error": str, "is_error": True, "not_found": bool}
        """
        try:
            customer_id = await self.customers.resolve_or_create_customer(user_id)
            portal_session = await self.gateway.create_portal_session(
                customer_id=customer_id,
                return_url=f"{self.frontend_url}{self.portal_return_path}",
            )
            return {"data": {"url": portal_session.url}, "is_error": False}
        except UserNotFound as e:
            logger.warning(f"Billing portal requested for unknown user: {e}")
            return {"error": str(e), "is_error": True, "not_found": True}
        except BillingError as e:
            logger.error(f"Failed to create billing portal session: {e}", exc_info=True)
            return {"error": str(e), "is_error": True, "not_found": False}
