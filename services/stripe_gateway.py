"""
Stripe Gateway - thin async wrapper around the Stripe SDK

All calls run in a worker thread with a timeout, and every Stripe failure
comes out as an UpstreamError.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import stripe

from models.subscription import SubscriptionDetail
from services.errors import UpstreamError

logger = logging.getLogger(__name__)


def _field(obj, key: str, default=None):
    """Read a key from a StripeObject or a plain dict"""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _list_data(obj, key: str) -> List[Any]:
    container = _field(obj, key)
    data = _field(container, "data")
    return list(data) if data else []


def project_subscription(subscription) -> SubscriptionDetail:
    """
    Project a Stripe subscription (SDK object or webhook dict) onto SubscriptionDetail.

    Newer API versions report the billing period on the subscription items
    instead of the subscription itself, so fall back to the first item.
    """
    items = _list_data(subscription, "items")
    first_item = items[0] if items else None

    price_ids = []
    for item in items:
        price_id = _field(_field(item, "price"), "id")
        if price_id:
            price_ids.append(price_id)

    period_start = _field(subscription, "current_period_start", _field(first_item, "current_period_start"))
    period_end = _field(subscription, "current_period_end", _field(first_item, "current_period_end"))

    return SubscriptionDetail(
        id=_field(subscription, "id"),
        status=_field(subscription, "status"),
        current_period_start=period_start,
        current_period_end=period_end,
        price_ids=price_ids,
        canceled_at=_field(subscription, "canceled_at"),
    )


class StripeGateway:
    """
    Processor calls used by billing.

    The API key is passed on every request instead of being set globally on
    the stripe module.
    """

    def __init__(self, api_key: Optional[str], timeout: float = 20.0):
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "StripeGateway":
        if not settings.stripe_secret_key:
            logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")
        return cls(settings.stripe_secret_key, timeout=settings.stripe_timeout_seconds)

    async def _call(self, operation: str, func, **params):
        if not self.api_key:
            raise UpstreamError(f"Cannot {operation}: STRIPE_SECRET_KEY is not set")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, api_key=self.api_key, **params),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe call timed out after {self.timeout}s: {operation}")
            raise UpstreamError(f"Timed out trying to {operation}") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe call failed: {operation}: {e}")
            raise UpstreamError(f"Failed to {operation}: {e.user_message or e}") from e

    async def create_customer(
        self,
        email: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        customer = await self._call("create customer", stripe.Customer.create, **params)
        return customer.id

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetail:
        subscription = await self._call(
            f"retrieve subscription {subscription_id}",
            stripe.Subscription.retrieve,
            id=subscription_id,
        )
        return project_subscription(subscription)

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ):
        return await self._call(
            "create checkout session",
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )

    async def create_portal_session(self, customer_id: str, return_url: str):
        return await self._call(
            "create billing portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
