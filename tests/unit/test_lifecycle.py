"""
Unit tests for the subscription state machine and the typed event log.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.core.errors import IllegalTransitionError
from app.models.enums import PlanChangeType, SubscriptionStatus
from app.models.subscription import Subscription
from app.services import lifecycle
from app.services.lifecycle import LifecycleState, can_transition, state_of, transition

AT = datetime(2024, 3, 15, tzinfo=timezone.utc)


def _row(status=SubscriptionStatus.ACTIVE):
    return Subscription(id=1, user_id=1, plan_id=2, status=status, auto_renew=True, lifecycle_events=[])


def test_new_row_may_only_start_active():
    row = Subscription(user_id=1, plan_id=2, lifecycle_events=[])
    with pytest.raises(IllegalTransitionError):
        transition(row, LifecycleState.GRACE_PERIOD)
    transition(row, LifecycleState.ACTIVE)
    assert row.status == SubscriptionStatus.ACTIVE


def test_pending_downgrade_is_derived_from_pending_columns():
    row = _row()
    transition(row, LifecycleState.ACTIVE_PENDING_DOWNGRADE, pending_plan_id=3, pending_date=AT)
    assert row.status == SubscriptionStatus.ACTIVE
    assert row.pending_plan_change_type == PlanChangeType.DOWNGRADE
    assert state_of(row) == LifecycleState.ACTIVE_PENDING_DOWNGRADE


def test_pending_downgrade_requires_target_and_date():
    with pytest.raises(IllegalTransitionError):
        transition(_row(), LifecycleState.ACTIVE_PENDING_DOWNGRADE, pending_plan_id=3)


def test_cancel_clears_pending_change():
    row = _row()
    transition(row, LifecycleState.ACTIVE_PENDING_DOWNGRADE, pending_plan_id=3, pending_date=AT)
    transition(row, LifecycleState.CANCELLED)
    assert row.status == SubscriptionStatus.CANCELLED
    assert row.pending_plan_change_to is None
    assert row.pending_plan_change_date is None


def test_expire_turns_off_auto_renew():
    row = _row(SubscriptionStatus.GRACE_PERIOD)
    transition(row, LifecycleState.EXPIRED)
    assert row.status == SubscriptionStatus.EXPIRED
    assert row.auto_renew is False


@pytest.mark.parametrize("current,target", [
    (LifecycleState.EXPIRED, LifecycleState.GRACE_PERIOD),
    (LifecycleState.CANCELLED, LifecycleState.GRACE_PERIOD),
    (LifecycleState.EXPIRED, LifecycleState.CANCELLED),
    (LifecycleState.GRACE_PERIOD, LifecycleState.ACTIVE_PENDING_DOWNGRADE),
])
def test_illegal_transitions_are_rejected(current, target):
    assert not can_transition(current, target)
    row = _row(SubscriptionStatus(current.value))
    with pytest.raises(IllegalTransitionError):
        transition(row, target, pending_plan_id=3, pending_date=AT)


def test_events_round_trip_through_json_column():
    row = _row()
    lifecycle.append_event(row, lifecycle.Upgrade(
        at=AT, from_plan_id=1, to_plan_id=2, payment_id="pay_1",
        amount=Decimal("25.00"), currency="USD", is_upgrade=True,
    ))
    lifecycle.append_event(row, lifecycle.Cancellation(at=AT, reason="user_requested"))

    assert row.lifecycle_events[0]["type"] == "upgrade"
    events = lifecycle.events_of(row)
    assert isinstance(events[0], lifecycle.Upgrade)
    assert events[0].amount == Decimal("25.00")
    assert lifecycle.last_event(row, lifecycle.Cancellation).reason == "user_requested"
    assert lifecycle.last_event(row, lifecycle.Renewal) is None
