"""
UserRepository for database operations on User model
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, or_
from sqlalchemy.exc import SQLAlchemyError
from database_models import User
from services.errors import PersistenceError, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model.

    Every write is a single UPDATE statement touching only the listed
    columns, so concurrent deliveries never clobber each other's fields.
    Users themselves are created by the identity provider, not here.
    """

    def __init__(self, db: AsyncSession, timeout: Optional[float] = DEFAULT_TIMEOUT):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
            timeout: Seconds a single statement or commit may take before it
                fails with UpstreamError (None waits forever)
        """
        self.db = db
        self.timeout = timeout

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        """
        Retrieve a user by ID.

        Args:
            user_id: User's ID

        Returns:
            User object if found, None otherwise
        """
        try:
            result = await self._execute(
                select(User).where(User.id == user_id), f"load user {user_id}"
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load user {user_id}: {e}") from e

    async def get_billing_identity(self, user_id: str):
        """
        Read the email and customer id of a user without loading the entity.

        Returns:
            Row with ``email`` and ``stripe_customer_id`` attributes, or None
        """
        try:
            result = await self._execute(
                select(User.email, User.stripe_customer_id).where(User.id == user_id),
                f"load user {user_id}",
            )
            return result.one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load user {user_id}: {e}") from e

    async def find_user_ids_by_subscription_id(self, subscription_id: str) -> List[str]:
        try:
            result = await self._execute(
                select(User.id).where(User.stripe_subscription_id == subscription_id),
                f"look up subscription {subscription_id}",
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Subscription lookup failed for {subscription_id}: {e}") from e

    async def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> bool:
        """
        Store the processor customer id unless one is already set.

        Returns:
            True if this call stored the id, False if the user already had one
            (or does not exist)
        """
        return await self._update(
            update(User)
            .where(User.id == user_id, User.stripe_customer_id.is_(None))
            .values(stripe_customer_id=customer_id),
            f"customer id for {user_id}",
        )

    async def write_subscription(
        self,
        user_id: str,
        fields: Dict[str, Any],
        event_created: Optional[int] = None,
    ) -> bool:
        """
        Overwrite the whole subscription record of a user.

        When ``event_created`` is given the write only lands if no newer event
        was applied to the record already, and it becomes the record's
        last applied event time.

        Returns:
            True if the row was written, False if the user is missing or the
            record already reflects a newer event
        """
        stmt = update(User).where(User.id == user_id)
        if event_created is not None:
            stmt = stmt.where(_not_newer_than(event_created))
            fields = dict(fields, plan_last_event_at=event_created)
        return await self._update(stmt.values(**fields), f"subscription record for {user_id}")

    async def update_subscription(
        self,
        user_id: str,
        subscription_id: str,
        fields: Dict[str, Any],
        event_created: Optional[int] = None,
    ) -> bool:
        """
        Patch subscription fields of the user that still owns ``subscription_id``.

        When ``event_created`` is given the update only lands if no newer event
        was applied to the record already.

        Returns:
            True if a row was updated, False if the record moved on
        """
        stmt = update(User).where(
            User.id == user_id,
            User.stripe_subscription_id == subscription_id,
        )
        if event_created is not None:
            stmt = stmt.where(_not_newer_than(event_created))
            fields = dict(fields, plan_last_event_at=event_created)
        return await self._update(stmt.values(**fields), f"subscription {subscription_id}")

    async def commit(self) -> None:
        try:
            await self._with_timeout(self.db.commit(), "commit")
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Commit failed: {e}") from e

    async def _update(self, stmt, what: str) -> bool:
        try:
            result = await self._execute(
                stmt.execution_options(synchronize_session=False), f"update {what}"
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to update {what}: {e}")
            raise PersistenceError(f"Failed to update {what}: {e}") from e
        return result.rowcount > 0

    async def _execute(self, stmt, what: str):
        return await self._with_timeout(self.db.execute(stmt), what)

    async def _with_timeout(self, awaitable, what: str):
        if self.timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Database call timed out after {self.timeout}s: {what}")
            raise UpstreamError(f"Timed out trying to {what}") from e


def _not_newer_than(event_created: int):
    """Match records whose last applied event is not newer than ``event_created``."""
    return or_(User.plan_last_event_at.is_(None), User.plan_last_event_at <= event_created)
