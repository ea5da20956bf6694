"""
User Lookup Index - resolves a processor subscription id to the owning user
"""

import logging
from typing import Optional

from crud.user import UserRepository
from services.errors import DuplicateSubscriptionError

logger = logging.getLogger(__name__)


class SubscriptionLookup:

    def __init__(self, user_repo: UserRepository):
        self.user_repo = user_repo

    async def find_user_by_subscription_id(self, subscription_id: str) -> Optional[str]:
        """
        Find the user whose subscription record carries ``subscription_id``.

        Returns:
            The user id, or None when no user matches

        Raises:
            DuplicateSubscriptionError: if several users carry the same id
        """
        if not subscription_id:
            return None

        user_ids = await self.user_repo.find_user_ids_by_subscription_id(subscription_id)
        if len(user_ids) > 1:
            logger.error(
                f"Subscription {subscription_id} is attached to several users: {user_ids}"
            )
            raise DuplicateSubscriptionError(subscription_id, user_ids)
        return user_ids[0] if user_ids else None
