"""
Webhook Reconciler - applies verified Stripe events to the local subscription record

Events are delivered at least once and in no particular order, so every
handler is a projection: replaying an event writes the same values again.
Each handler issues exactly one UPDATE against the user row.

Handled events:
    checkout.session.completed      creates or overwrites the subscription record
    customer.subscription.updated   patches status / end date / cancellation
    customer.subscription.deleted   same as updated
Everything else is acknowledged without side effects.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config.settings import UNMATCHED_IGNORE, UNMATCHED_RETRY
from crud.user import UserRepository
from models.subscription import ReconcileOutcome, SubscriptionDetail
from services.errors import NoMatchingSubscription, UserNotFound
from services.plan_catalog import PlanCatalog
from services.stripe_gateway import StripeGateway, project_subscription
from services.subscription_lookup import SubscriptionLookup

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

STATUS_CANCELED = "canceled"


def timestamp_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert Stripe epoch seconds to a naive UTC datetime"""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def status_fields(detail: SubscriptionDetail) -> Dict[str, Any]:
    """
    Status / period / cancellation columns for a subscription.

    A set canceled_at wins over whatever status Stripe reports: the
    subscription stays usable until its period ends but is recorded as canceled.
    """
    fields: Dict[str, Any] = {}
    if detail.status:
        fields["plan_status"] = detail.status
    if detail.current_period_end is not None:
        fields["plan_end_date"] = timestamp_to_datetime(detail.current_period_end)
    if detail.canceled_at:
        fields["plan_status"] = STATUS_CANCELED
        fields["plan_canceled_at"] = timestamp_to_datetime(detail.canceled_at)
    return fields


class WebhookReconciler:
    """
    Interprets verified events and updates the owning user's subscription record.
    """

    def __init__(
        self,
        user_repo: UserRepository,
        gateway: StripeGateway,
        catalog: PlanCatalog,
        lookup: Optional[SubscriptionLookup] = None,
        user_id_metadata_key: str = "localUserId",
        unmatched_policy: str = UNMATCHED_IGNORE,
    ):
        """
        Args:
            user_repo: Repository for user records
            gateway: Stripe gateway used to fetch subscription details
            catalog: Plan catalog used to name and price plans
            lookup: Subscription id -> user id index (defaults to one over user_repo)
            user_id_metadata_key: Checkout session metadata key holding the local user id
            unmatched_policy: "ignore" to acknowledge events for unknown users,
                "retry" to raise so the processor redelivers them
        """
        if unmatched_policy not in (UNMATCHED_IGNORE, UNMATCHED_RETRY):
            raise ValueError(f"Unknown unmatched event policy: {unmatched_policy}")
        self.user_repo = user_repo
        self.gateway = gateway
        self.catalog = catalog
        self.lookup = lookup or SubscriptionLookup(user_repo)
        self.user_id_metadata_key = user_id_metadata_key
        self.unmatched_policy = unmatched_policy
        self._handlers = {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            SUBSCRIPTION_UPDATED: self._handle_subscription_changed,
            SUBSCRIPTION_DELETED: self._handle_subscription_changed,
        }

    async def reconcile(self, event: Dict[str, Any]) -> ReconcileOutcome:
        """
        Apply one verified event.

        Args:
            event: Parsed Stripe event

        Returns:
            ReconcileOutcome describing what happened

        Raises:
            UpstreamError: Stripe failed, or a Stripe or database call timed out (retryable)
            PersistenceError: the user store failed (retryable)
            UserNotFound / NoMatchingSubscription: only with the "retry" policy
        """
        event_type = event.get("type")
        event_id = event.get("id")
        handler = self._handlers.get(event_type)

        if handler is None:
            logger.info(f"Ignoring Stripe event {event_id} of type {event_type}")
            return ReconcileOutcome(event_type=event_type or "", action="ignored")

        data_object = (event.get("data") or {}).get("object") or {}

        try:
            return await handler(event, data_object)
        except (UserNotFound, NoMatchingSubscription) as e:
            if self.unmatched_policy == UNMATCHED_RETRY:
                logger.warning(f"Event {event_id} ({event_type}) unmatched, asking for redelivery: {e}")
                raise
            logger.warning(f"Event {event_id} ({event_type}) unmatched, acknowledging: {e}")
            return ReconcileOutcome(event_type=event_type, action="unmatched", detail=str(e))

    async def _handle_checkout_completed(self, event: Dict[str, Any], session: Dict[str, Any]) -> ReconcileOutcome:
        metadata = session.get("metadata") or {}
        user_id = metadata.get(self.user_id_metadata_key) or session.get("client_reference_id")
        if not user_id:
            # Nothing to join on; redelivery would not help
            logger.warning(f"Checkout session {session.get('id')} carries no user id, skipping")
            return ReconcileOutcome(
                event_type=CHECKOUT_COMPLETED,
                action="unmatched",
                detail="checkout session carries no user id",
            )

        subscription_ref = session.get("subscription")
        if isinstance(subscription_ref, dict):
            subscription_ref = subscription_ref.get("id")
        if not subscription_ref:
            logger.info(f"Checkout session {session.get('id')} has no subscription, skipping")
            return ReconcileOutcome(event_type=CHECKOUT_COMPLETED, action="ignored", user_id=user_id)

        detail = await self.gateway.retrieve_subscription(subscription_ref)
        plan_id = detail.price_ids[0] if detail.price_ids else None
        plan = self.catalog.describe(plan_id)

        fields = {
            "plan_id": plan_id,
            "plan_name": plan.name,
            "plan_price": plan.price,
            "plan_status": None,
            "stripe_subscription_id": subscription_ref,
            "plan_start_date": timestamp_to_datetime(detail.current_period_start),
            "plan_end_date": None,
            "plan_canceled_at": None,
        }
        fields.update(status_fields(detail))

        written = await self.user_repo.write_subscription(
            user_id, fields, event_created=event.get("created")
        )
        if not written:
            if await self.user_repo.get_billing_identity(user_id) is None:
                raise UserNotFound(user_id)
            logger.info(
                f"Discarding stale {CHECKOUT_COMPLETED} event {event.get('id')}: "
                f"user {user_id} already reflects a newer event"
            )
            return ReconcileOutcome(event_type=CHECKOUT_COMPLETED, action="stale", user_id=user_id)
        await self.user_repo.commit()

        logger.info(
            f"Subscription {subscription_ref} recorded for user {user_id}: "
            f"plan={plan_id} ({plan.name}) status={fields['plan_status']}"
        )
        return ReconcileOutcome(event_type=CHECKOUT_COMPLETED, action="applied", user_id=user_id)

    async def _handle_subscription_changed(self, event: Dict[str, Any], subscription: Dict[str, Any]) -> ReconcileOutcome:
        event_type = event.get("type")
        detail = project_subscription(subscription)
        if not detail.id:
            raise NoMatchingSubscription(None)

        user_id = await self.lookup.find_user_by_subscription_id(detail.id)
        if user_id is None:
            raise NoMatchingSubscription(detail.id)

        fields = status_fields(detail)
        if not fields:
            return ReconcileOutcome(event_type=event_type, action="ignored", user_id=user_id)

        applied = await self.user_repo.update_subscription(
            user_id, detail.id, fields, event_created=event.get("created")
        )
        await self.user_repo.commit()

        if not applied:
            logger.info(f"Discarding stale {event_type} event {event.get('id')} for subscription {detail.id}")
            return ReconcileOutcome(event_type=event_type, action="stale", user_id=user_id)

        logger.info(
            f"Subscription {detail.id} of user {user_id} updated: status={fields.get('plan_status')}"
        )
        return ReconcileOutcome(event_type=event_type, action="applied", user_id=user_id)
