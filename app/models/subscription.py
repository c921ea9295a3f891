from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum, ForeignKey, Index, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import UTCDateTime
from app.models.enums import PaymentGatewayName, PlanChangeType, SubscriptionStatus


class Subscription(Base):
    """
    One row per subscription period of a user on a plan.

    History is append-only: a plan change cancels the current row and inserts
    a new one, so a user accumulates rows over time. Only one of them may be
    ACTIVE at any instant.
    """
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False, index=True)
    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)
    status = Column(Enum(SubscriptionStatus, native_enum=False, length=20), nullable=False, default=SubscriptionStatus.ACTIVE)
    auto_renew = Column(Boolean, default=True, nullable=False)
    payment_gateway = Column(Enum(PaymentGatewayName, native_enum=False, length=20), nullable=False, default=PaymentGatewayName.NONE)
    payment_reference = Column(String(255), nullable=True, index=True)
    previous_plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    upgrade_date = Column(UTCDateTime, nullable=True)
    cancel_date = Column(UTCDateTime, nullable=True)
    grace_period_end = Column(UTCDateTime, nullable=True)
    pending_plan_change_to = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    pending_plan_change_date = Column(UTCDateTime, nullable=True)
    pending_plan_change_type = Column(Enum(PlanChangeType, native_enum=False, length=20), nullable=True)
    # Typed lifecycle events, see app.services.lifecycle
    lifecycle_events = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="subscriptions")
    plan = relationship("Plan", foreign_keys=[plan_id])
    previous_plan = relationship("Plan", foreign_keys=[previous_plan_id])
    pending_plan = relationship("Plan", foreign_keys=[pending_plan_change_to])

    __table_args__ = (
        Index("idx_user_subscriptions_user_status", "user_id", "status"),
    )

    def clear_pending_change(self) -> None:
        self.pending_plan_change_to = None
        self.pending_plan_change_date = None
        self.pending_plan_change_type = None
