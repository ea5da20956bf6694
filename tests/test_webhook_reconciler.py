"""
Tests for the webhook reconciler state machine.

Covers the checkout -> update -> cancel lifecycle, idempotent replays,
unmatched events under both policies, and stale out-of-order updates.
"""
import asyncio
from datetime import datetime

import pytest

from config.settings import UNMATCHED_RETRY
from crud.user import UserRepository
from models.subscription import SubscriptionRecord
from services.errors import (
    DuplicateSubscriptionError,
    NoMatchingSubscription,
    PersistenceError,
    UpstreamError,
    UserNotFound,
)
from services.webhook_reconciler import WebhookReconciler, timestamp_to_datetime
from factories import (
    CANCELED_AT,
    NEXT_PERIOD_END,
    checkout_completed_event,
    make_event,
    subscription_event,
)


@pytest.fixture
def reconciler(user_repo, fake_gateway, catalog):
    return WebhookReconciler(user_repo, fake_gateway, catalog)


@pytest.fixture
def retrying_reconciler(user_repo, fake_gateway, catalog):
    return WebhookReconciler(user_repo, fake_gateway, catalog, unmatched_policy=UNMATCHED_RETRY)


async def _record(fetch_user, user_id):
    return SubscriptionRecord.from_user(await fetch_user(user_id))


@pytest.mark.asyncio
async def test_checkout_creates_subscription_record(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1", status="active", price_id="plan_basic")

    outcome = await reconciler.reconcile(checkout_completed_event(user_id="u1", subscription_id="sub_1"))

    assert outcome.action == "applied"
    assert outcome.user_id == "u1"
    assert fake_gateway.retrieve_calls == ["sub_1"]

    record = await _record(fetch_user, "u1")
    assert record.plan_id == "plan_basic"
    assert record.plan_name == "Basic"
    assert record.plan_price == 5
    assert record.status == "active"
    assert record.stripe_subscription_id == "sub_1"
    assert record.start_date == datetime(2026, 1, 1)
    assert record.end_date == datetime(2026, 2, 1)
    assert record.canceled_at is None


@pytest.mark.asyncio
async def test_checkout_replay_is_idempotent(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1")
    event = checkout_completed_event()

    await reconciler.reconcile(event)
    first = await _record(fetch_user, "u1")
    await reconciler.reconcile(event)
    second = await _record(fetch_user, "u1")

    assert first == second


@pytest.mark.asyncio
async def test_checkout_overwrites_previous_record(reconciler, fake_gateway, create_user, fetch_user):
    await create_user(
        "u1",
        plan_id="plan_basic",
        plan_status="canceled",
        stripe_subscription_id="sub_old",
        plan_canceled_at=datetime(2025, 12, 1),
    )
    fake_gateway.add_subscription("sub_2", price_id="plan_premium")

    await reconciler.reconcile(checkout_completed_event(subscription_id="sub_2"))

    record = await _record(fetch_user, "u1")
    assert record.stripe_subscription_id == "sub_2"
    assert record.plan_name == "Premium"
    assert record.status == "active"
    assert record.canceled_at is None


@pytest.mark.asyncio
async def test_checkout_with_unknown_price_records_unknown_plan(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1", price_id="price_not_in_catalog")

    await reconciler.reconcile(checkout_completed_event())

    record = await _record(fetch_user, "u1")
    assert record.plan_id == "price_not_in_catalog"
    assert record.plan_name == "Unknown Plan"
    assert record.plan_price == 0


@pytest.mark.asyncio
async def test_checkout_falls_back_to_client_reference_id(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1")

    outcome = await reconciler.reconcile(checkout_completed_event(user_id=None, client_reference_id="u1"))

    assert outcome.action == "applied"
    assert (await fetch_user("u1")).stripe_subscription_id == "sub_1"


@pytest.mark.asyncio
async def test_checkout_with_expanded_subscription(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1")
    event = checkout_completed_event()
    event["data"]["object"]["subscription"] = {"id": "sub_1", "object": "subscription"}

    await reconciler.reconcile(event)

    assert (await fetch_user("u1")).stripe_subscription_id == "sub_1"


@pytest.mark.asyncio
async def test_checkout_without_user_id_is_acknowledged(retrying_reconciler, fake_gateway):
    fake_gateway.add_subscription("sub_1")

    outcome = await retrying_reconciler.reconcile(checkout_completed_event(user_id=None))

    assert outcome.action == "unmatched"
    assert fake_gateway.retrieve_calls == []


@pytest.mark.asyncio
async def test_checkout_without_subscription_is_ignored(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")

    outcome = await reconciler.reconcile(checkout_completed_event(subscription_id=None))

    assert outcome.action == "ignored"
    assert fake_gateway.retrieve_calls == []
    assert (await fetch_user("u1")).stripe_subscription_id is None


@pytest.mark.asyncio
async def test_checkout_for_unknown_user_is_acknowledged(reconciler, fake_gateway, fetch_user):
    fake_gateway.add_subscription("sub_1")

    outcome = await reconciler.reconcile(checkout_completed_event(user_id="ghost"))

    assert outcome.action == "unmatched"
    assert await fetch_user("ghost") is None


@pytest.mark.asyncio
async def test_checkout_for_unknown_user_raises_with_retry_policy(retrying_reconciler, fake_gateway):
    fake_gateway.add_subscription("sub_1")

    with pytest.raises(UserNotFound):
        await retrying_reconciler.reconcile(checkout_completed_event(user_id="ghost"))


@pytest.mark.asyncio
async def test_checkout_upstream_failure_propagates(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.fail_with = UpstreamError("timed out")

    with pytest.raises(UpstreamError):
        await reconciler.reconcile(checkout_completed_event())

    assert (await fetch_user("u1")).stripe_subscription_id is None


@pytest.mark.asyncio
async def test_persistence_failure_propagates(reconciler, user_repo, fake_gateway, create_user, monkeypatch):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1")

    async def broken_write(user_id, fields, event_created=None):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(user_repo, "write_subscription", broken_write)

    with pytest.raises(PersistenceError):
        await reconciler.reconcile(checkout_completed_event())


@pytest.mark.asyncio
async def test_update_changes_only_status_and_end_date(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1")
    await reconciler.reconcile(checkout_completed_event(created=1000))
    before = await _record(fetch_user, "u1")

    outcome = await reconciler.reconcile(
        subscription_event(status="past_due", price_id="plan_premium", created=2000)
    )

    after = await _record(fetch_user, "u1")
    assert outcome.action == "applied"
    assert after.status == "past_due"
    assert after.end_date == timestamp_to_datetime(NEXT_PERIOD_END)
    assert after.plan_id == before.plan_id == "plan_basic"
    assert after.plan_name == before.plan_name == "Basic"
    assert after.plan_price == before.plan_price
    assert after.start_date == before.start_date
    assert after.canceled_at is None


@pytest.mark.asyncio
async def test_canceled_at_forces_canceled_status(reconciler, create_user, fetch_user):
    await create_user("u1", stripe_subscription_id="sub_1", plan_id="plan_basic", plan_status="active")

    await reconciler.reconcile(subscription_event(status="active", canceled_at=CANCELED_AT))

    record = await _record(fetch_user, "u1")
    assert record.status == "canceled"
    assert record.canceled_at == timestamp_to_datetime(CANCELED_AT)
    assert record.end_date == timestamp_to_datetime(NEXT_PERIOD_END)


@pytest.mark.asyncio
async def test_deleted_event_uses_the_update_path(reconciler, create_user, fetch_user):
    await create_user("u1", stripe_subscription_id="sub_1", plan_id="plan_basic", plan_status="active")

    outcome = await reconciler.reconcile(
        subscription_event(
            event_type="customer.subscription.deleted",
            status="canceled",
            canceled_at=CANCELED_AT,
        )
    )

    user = await fetch_user("u1")
    assert outcome.action == "applied"
    assert user.plan_status == "canceled"
    assert user.stripe_subscription_id == "sub_1"
    assert user.plan_id == "plan_basic"


@pytest.mark.asyncio
async def test_update_replay_is_a_no_op(reconciler, create_user, fetch_user):
    await create_user("u1", stripe_subscription_id="sub_1", plan_id="plan_basic")
    event = subscription_event(status="past_due")

    await reconciler.reconcile(event)
    first = await _record(fetch_user, "u1")
    outcome = await reconciler.reconcile(event)
    second = await _record(fetch_user, "u1")

    assert outcome.action == "applied"
    assert first == second


@pytest.mark.asyncio
async def test_update_targets_only_the_owner(reconciler, create_user, fetch_user):
    await create_user("u1", stripe_subscription_id="sub_1", plan_status="active")
    await create_user("u2", stripe_subscription_id="sub_2", plan_status="active")

    await reconciler.reconcile(subscription_event(subscription_id="sub_2", status="unpaid"))

    assert (await fetch_user("u1")).plan_status == "active"
    assert (await fetch_user("u2")).plan_status == "unpaid"


@pytest.mark.asyncio
async def test_deleted_for_unknown_subscription_changes_nothing(reconciler, create_user, fetch_user):
    await create_user("u1", stripe_subscription_id="sub_1", plan_status="active")
    before = await _record(fetch_user, "u1")

    outcome = await reconciler.reconcile(
        subscription_event(event_type="customer.subscription.deleted", subscription_id="sub_unknown")
    )

    assert outcome.action == "unmatched"
    assert await _record(fetch_user, "u1") == before


@pytest.mark.asyncio
async def test_unmatched_update_raises_with_retry_policy(retrying_reconciler):
    with pytest.raises(NoMatchingSubscription) as exc_info:
        await retrying_reconciler.reconcile(subscription_event(subscription_id="sub_unknown"))

    assert exc_info.value.subscription_id == "sub_unknown"


@pytest.mark.asyncio
async def test_older_update_is_discarded(reconciler, create_user, fetch_user):
    await create_user("u1", stripe_subscription_id="sub_1", plan_status="active")

    await reconciler.reconcile(subscription_event(status="past_due", event_id="evt_new", created=3000))
    outcome = await reconciler.reconcile(subscription_event(status="active", event_id="evt_old", created=2500))

    assert outcome.action == "stale"
    assert (await fetch_user("u1")).plan_status == "past_due"


@pytest.mark.asyncio
async def test_update_older_than_checkout_is_discarded(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1", status="active")
    await reconciler.reconcile(checkout_completed_event(created=1000))

    outcome = await reconciler.reconcile(subscription_event(status="incomplete", created=900))

    assert outcome.action == "stale"
    assert (await fetch_user("u1")).plan_status == "active"


@pytest.mark.asyncio
async def test_duplicate_owners_are_reported(reconciler, create_user):
    await create_user("u1", stripe_subscription_id="sub_1")
    await create_user("u2", stripe_subscription_id="sub_1")

    with pytest.raises(DuplicateSubscriptionError):
        await reconciler.reconcile(subscription_event(subscription_id="sub_1"))


@pytest.mark.asyncio
@pytest.mark.parametrize("event_type", ["invoice.paid", "customer.created", "payment_intent.succeeded"])
async def test_other_events_are_ignored(reconciler, fake_gateway, event_type):
    outcome = await reconciler.reconcile(make_event(event_type, {"id": "obj_1"}))

    assert outcome.action == "ignored"
    assert outcome.event_type == event_type
    assert fake_gateway.retrieve_calls == []


def test_unknown_policy_is_rejected(fake_gateway, catalog):
    with pytest.raises(ValueError):
        WebhookReconciler(None, fake_gateway, catalog, unmatched_policy="queue")


@pytest.mark.asyncio
async def test_checkout_replay_does_not_reopen_older_updates(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1")
    fake_gateway.add_subscription("sub_1", status="active")
    checkout = checkout_completed_event(created=1000)
    await reconciler.reconcile(checkout)
    await reconciler.reconcile(
        subscription_event(status="active", canceled_at=CANCELED_AT, event_id="evt_cancel", created=5000)
    )
    fake_gateway.add_subscription("sub_1", status="canceled", canceled_at=CANCELED_AT)

    replayed = await reconciler.reconcile(checkout)
    late = await reconciler.reconcile(subscription_event(status="active", event_id="evt_late", created=3000))

    assert replayed.action == "stale"
    assert late.action == "stale"
    user = await fetch_user("u1")
    assert user.plan_status == "canceled"
    assert user.plan_last_event_at == 5000


@pytest.mark.asyncio
async def test_newer_checkout_replaces_record_after_updates(reconciler, fake_gateway, create_user, fetch_user):
    await create_user("u1", stripe_subscription_id="sub_old", plan_status="canceled", plan_last_event_at=4000)
    fake_gateway.add_subscription("sub_2", price_id="plan_plus")

    outcome = await reconciler.reconcile(checkout_completed_event(subscription_id="sub_2", created=4500))

    assert outcome.action == "applied"
    user = await fetch_user("u1")
    assert user.stripe_subscription_id == "sub_2"
    assert user.plan_status == "active"
    assert user.plan_last_event_at == 4500


@pytest.mark.asyncio
async def test_hanging_database_times_out_as_upstream_error(test_db, fake_gateway, catalog, create_user, monkeypatch):
    await create_user("u1", stripe_subscription_id="sub_1")
    reconciler = WebhookReconciler(UserRepository(test_db, timeout=0.05), fake_gateway, catalog)

    async def hanging_execute(*args, **kwargs):
        await asyncio.sleep(5)

    monkeypatch.setattr(test_db, "execute", hanging_execute)

    with pytest.raises(UpstreamError):
        await reconciler.reconcile(subscription_event())
