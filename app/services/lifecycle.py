"""
Explicit subscription state machine and the typed lifecycle event log.

The persisted row only has ``status`` plus the ``pending_plan_change_*``
columns; ``state_of`` folds them into a single ``LifecycleState`` and
``transition`` is the only place that writes them.
"""
import enum
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, FrozenSet, List, Literal, Optional, Type, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.core.errors import IllegalTransitionError
from app.models.enums import PlanChangeType, SubscriptionStatus
from app.models.subscription import Subscription


class LifecycleState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ACTIVE_PENDING_DOWNGRADE = "ACTIVE_PENDING_DOWNGRADE"
    GRACE_PERIOD = "GRACE_PERIOD"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


S = LifecycleState

TRANSITIONS: Dict[LifecycleState, FrozenSet[LifecycleState]] = {
    # ACTIVE -> ACTIVE covers renewal and cancel-at-period-end
    S.ACTIVE: frozenset({S.ACTIVE, S.ACTIVE_PENDING_DOWNGRADE, S.GRACE_PERIOD, S.CANCELLED}),
    # self-transition is the drift deferral; -> ACTIVE clears a stale pending change
    S.ACTIVE_PENDING_DOWNGRADE: frozenset({S.ACTIVE_PENDING_DOWNGRADE, S.ACTIVE, S.CANCELLED}),
    S.GRACE_PERIOD: frozenset({S.EXPIRED, S.ACTIVE, S.CANCELLED}),
    # free plan reactivation reuses the old row
    S.EXPIRED: frozenset({S.ACTIVE}),
    S.CANCELLED: frozenset({S.ACTIVE}),
}


def state_of(subscription: Subscription) -> LifecycleState:
    status = SubscriptionStatus(subscription.status)
    if status == SubscriptionStatus.ACTIVE:
        if (
            subscription.pending_plan_change_to is not None
            and subscription.pending_plan_change_type == PlanChangeType.DOWNGRADE
        ):
            return S.ACTIVE_PENDING_DOWNGRADE
        return S.ACTIVE
    return LifecycleState(status.value)


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(
    subscription: Subscription,
    target: LifecycleState,
    pending_plan_id: Optional[int] = None,
    pending_date: Optional[datetime] = None,
) -> LifecycleState:
    """Move a row to ``target`` or raise ``IllegalTransitionError``.

    A row that was never persisted starts from no state and may only enter ACTIVE.
    """
    if subscription.status is None:
        if target != S.ACTIVE:
            raise IllegalTransitionError(
                f"New subscription cannot start in {target.value}",
                details={"user_id": subscription.user_id},
            )
        current = None
    else:
        current = state_of(subscription)
        if not can_transition(current, target):
            raise IllegalTransitionError(
                f"Illegal subscription transition {current.value} -> {target.value}",
                details={"subscription_id": subscription.id, "user_id": subscription.user_id},
            )

    if target == S.ACTIVE_PENDING_DOWNGRADE:
        if pending_plan_id is None or pending_date is None:
            raise IllegalTransitionError(
                "A pending downgrade needs a target plan and an effective date",
                details={"subscription_id": subscription.id},
            )
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.pending_plan_change_to = pending_plan_id
        subscription.pending_plan_change_date = pending_date
        subscription.pending_plan_change_type = PlanChangeType.DOWNGRADE
    elif target == S.ACTIVE:
        subscription.status = SubscriptionStatus.ACTIVE
        if current == S.ACTIVE_PENDING_DOWNGRADE or subscription.pending_plan_change_type is not None:
            subscription.clear_pending_change()
    elif target == S.GRACE_PERIOD:
        subscription.status = SubscriptionStatus.GRACE_PERIOD
    elif target == S.EXPIRED:
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.auto_renew = False
    elif target == S.CANCELLED:
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.clear_pending_change()
    return target


# Lifecycle events

class _Event(BaseModel):
    at: datetime


class FreemiumActivation(_Event):
    type: Literal["freemium_activation"] = "freemium_activation"
    plan_id: int
    reactivation: bool = False


class PaidActivation(_Event):
    type: Literal["paid_activation"] = "paid_activation"
    plan_id: int
    payment_id: str
    gateway: str
    amount: Decimal
    currency: str


class Upgrade(_Event):
    type: Literal["upgrade"] = "upgrade"
    from_plan_id: int
    to_plan_id: int
    payment_id: str
    amount: Decimal
    currency: str
    is_upgrade: bool


class ScheduledDowngrade(_Event):
    type: Literal["scheduled_downgrade"] = "scheduled_downgrade"
    from_plan_id: int
    to_plan_id: int
    effective_date: datetime
    to_freemium: bool


class Cancellation(_Event):
    type: Literal["cancellation"] = "cancellation"
    reason: str
    replaced_by: Optional[int] = None
    was_freemium: bool = False
    converted_to_paid: bool = False


class FreemiumConversion(_Event):
    type: Literal["freemium_conversion"] = "freemium_conversion"
    from_plan_id: int
    to_plan_id: int


class Renewal(_Event):
    type: Literal["renewal"] = "renewal"
    previous_end_date: datetime
    new_end_date: datetime


class ScheduledChangeApplied(_Event):
    type: Literal["scheduled_change_applied"] = "scheduled_change_applied"
    from_plan_id: int
    to_plan_id: int
    change_type: PlanChangeType


LifecycleEvent = Annotated[
    Union[
        FreemiumActivation,
        PaidActivation,
        Upgrade,
        ScheduledDowngrade,
        Cancellation,
        FreemiumConversion,
        Renewal,
        ScheduledChangeApplied,
    ],
    Field(discriminator="type"),
]

_events_adapter = TypeAdapter(List[LifecycleEvent])


def append_event(subscription: Subscription, event: _Event) -> None:
    # Reassign so the JSON column is flagged dirty
    subscription.lifecycle_events = [
        *(subscription.lifecycle_events or []),
        event.model_dump(mode="json"),
    ]


def events_of(subscription: Subscription) -> List[_Event]:
    return _events_adapter.validate_python(subscription.lifecycle_events or [])


def last_event(subscription: Subscription, event_type: Type[_Event]) -> Optional[_Event]:
    for event in reversed(events_of(subscription)):
        if isinstance(event, event_type):
            return event
    return None
