"""
Customer Directory - maps local users to Stripe customers, creating them on first use
"""

import logging

from crud.user import UserRepository
from services.errors import PersistenceError, UserNotFound
from services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class CustomerDirectory:
    """
    Resolves the Stripe customer of a user.

    Two first-time callers for the same user share one Stripe idempotency
    key, so Stripe hands both the same customer. Locally the id is written
    only if the column is still empty; the loser re-reads the winner's id.
    """

    def __init__(self, user_repo: UserRepository, gateway: StripeGateway, user_id_metadata_key: str = "localUserId"):
        """
        Args:
            user_repo: Repository for user records
            gateway: Stripe gateway used to create customers
            user_id_metadata_key: Metadata key tagging the customer with the local user id
        """
        self.user_repo = user_repo
        self.gateway = gateway
        self.user_id_metadata_key = user_id_metadata_key

    async def resolve_or_create_customer(self, user_id: str) -> str:
        """
        Return the user's Stripe customer id, creating the customer if needed.

        Args:
            user_id: Local user id

        Returns:
            Stripe customer id

        Raises:
            UserNotFound: if the user does not exist
            UpstreamError: if Stripe customer creation fails
            PersistenceError: if the mapping cannot be stored
        """
        identity = await self.user_repo.get_billing_identity(user_id)
        if identity is None:
            raise UserNotFound(user_id)

        if identity.stripe_customer_id:
            return identity.stripe_customer_id

        customer_id = await self.gateway.create_customer(
            email=identity.email,
            metadata={self.user_id_metadata_key: user_id},
            idempotency_key=f"customer-{user_id}",
        )

        stored = await self.user_repo.set_customer_id_if_absent(user_id, customer_id)
        await self.user_repo.commit()
        if stored:
            logger.info(f"Created Stripe customer {customer_id} for user {user_id}")
            return customer_id

        # Someone else stored a customer id first
        identity = await self.user_repo.get_billing_identity(user_id)
        if identity is None:
            raise UserNotFound(user_id)
        if not identity.stripe_customer_id:
            raise PersistenceError(f"Customer id for user {user_id} could not be stored")
        if identity.stripe_customer_id != customer_id:
            logger.warning(
                f"Concurrent customer creation for user {user_id}: keeping {identity.stripe_customer_id}, "
                f"discarding {customer_id}"
            )
        return identity.stripe_customer_id
