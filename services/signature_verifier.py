"""
Webhook signature verification for Stripe events
"""

import logging
from typing import Any, Dict, Optional, Union

import stripe

from services.errors import SignatureInvalid

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300


def _event_to_dict(event) -> Dict[str, Any]:
    """Plain nested dicts, so handlers never depend on StripeObject behavior."""
    if hasattr(event, "to_dict_recursive"):
        return event.to_dict_recursive()
    return event.to_dict()


class WebhookSignatureVerifier:
    """
    Verifies that a webhook body was signed by Stripe with the endpoint secret.

    Verification runs on the raw request bytes; the body is only parsed after
    the signature checks out.
    """

    def __init__(self, secret: str, tolerance: int = DEFAULT_TOLERANCE):
        if not secret:
            raise ValueError("Webhook secret is required")
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: Union[bytes, str], signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the signature and parse the event.

        Args:
            payload: Raw request body exactly as received
            signature_header: Value of the Stripe-Signature header

        Returns:
            The event as a plain dict

        Raises:
            SignatureInvalid: on any verification or parsing failure
        """
        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload, signature_header, self.secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid("Signature verification failed") from e
        except ValueError as e:
            # Includes bodies that are not UTF-8
            raise SignatureInvalid("Payload is not valid JSON") from e

        event = _event_to_dict(event)
        if not event.get("id") or not event.get("type"):
            raise SignatureInvalid("Payload is not a Stripe event")

        return event
