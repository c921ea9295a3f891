from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from app.models.enums import SubscriptionStatus
from app.models.subscription import Subscription


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def get_by_id(self, subscription_id: int) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def list_active_for_user(self, user_id: int) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .options(joinedload(Subscription.plan))
            .filter(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)
            .order_by(Subscription.id)
            .all()
        )

    def list_in_status_for_user(self, user_id: int, status: SubscriptionStatus) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == status)
            .all()
        )

    def get_by_user_and_plan(self, user_id: int, plan_id: int) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.plan_id == plan_id)
            .order_by(Subscription.id.desc())
            .first()
        )

    def list_by_user(self, user_id: int, limit: Optional[int] = None) -> List[Subscription]:
        q = (
            self.db.query(Subscription)
            .options(joinedload(Subscription.plan))
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.id.desc())
        )
        if limit is not None:
            q = q.limit(limit)
        return q.all()

    def list_renewal_candidates(self, now: datetime, window_end: datetime) -> List[Subscription]:
        """ACTIVE auto-renewing rows whose period ends inside [now, window_end].

        Rows with a scheduled plan change are left to the scheduled-change pass.
        """
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.auto_renew.is_(True),
                Subscription.pending_plan_change_to.is_(None),
                Subscription.end_date >= now,
                Subscription.end_date <= window_end,
            )
            .order_by(Subscription.id)
            .all()
        )

    def list_lapsed_active(self, now: datetime) -> List[Subscription]:
        """ACTIVE rows past their end date, minus those waiting on a scheduled change."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date < now,
                Subscription.pending_plan_change_to.is_(None),
            )
            .order_by(Subscription.id)
            .all()
        )

    def list_grace_expired(self, now: datetime) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.GRACE_PERIOD,
                Subscription.grace_period_end < now,
            )
            .order_by(Subscription.id)
            .all()
        )

    def list_due_plan_changes(self, now: datetime) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.pending_plan_change_to.isnot(None),
                Subscription.pending_plan_change_date <= now,
            )
            .order_by(Subscription.id)
            .all()
        )
