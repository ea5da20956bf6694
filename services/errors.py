"""
Billing error taxonomy.

Client-origin and join-miss errors are acknowledged to the processor;
upstream and persistence errors are surfaced as server errors so the
processor redelivers the event.
"""


class BillingError(Exception):
    """Base class for all billing errors"""


class SignatureInvalid(BillingError):
    """The webhook payload was not signed by the processor with our secret"""


class UpstreamError(BillingError):
    """The payment processor failed or timed out"""


class UserNotFound(BillingError):
    """No local user exists for the referenced id"""

    def __init__(self, user_id):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class NoMatchingSubscription(BillingError):
    """No local user carries the referenced processor subscription id"""

    def __init__(self, subscription_id):
        super().__init__(f"No user owns subscription {subscription_id}")
        self.subscription_id = subscription_id


class PersistenceError(BillingError):
    """The user record store failed"""


class DuplicateSubscriptionError(PersistenceError):
    """More than one user carries the same processor subscription id"""

    def __init__(self, subscription_id, user_ids):
        super().__init__(
            f"Subscription {subscription_id} is attached to {len(user_ids)} users: {', '.join(user_ids)}"
        )
        self.subscription_id = subscription_id
        self.user_ids = list(user_ids)
