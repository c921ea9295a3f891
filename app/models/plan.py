from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum, ForeignKey, Numeric, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.models.enums import BillingCycle, Currency, FeatureType, LimitType, ResetFrequency, TargetRegion


class Plan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    billing_cycle = Column(Enum(BillingCycle, native_enum=False, length=20), nullable=False, default=BillingCycle.MONTHLY)
    is_freemium = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    pricings = relationship("PlanPricing", back_populates="plan", cascade="all, delete-orphan")
    plan_features = relationship("PlanFeature", back_populates="plan", cascade="all, delete-orphan")


class PlanPricing(Base):
    __tablename__ = "plan_pricing"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    target_region = Column(Enum(TargetRegion, native_enum=False, length=20), nullable=False)
    currency = Column(Enum(Currency, native_enum=False, length=3), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    plan = relationship("Plan", back_populates="pricings")

    __table_args__ = (
        UniqueConstraint("plan_id", "target_region", name="uq_plan_pricing_plan_region"),
    )


class Feature(Base):
    __tablename__ = "features"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    feature_type = Column(Enum(FeatureType, native_enum=False, length=20), nullable=False, default=FeatureType.ESSENTIAL)
    is_countable = Column(Boolean, default=False, nullable=False)
    is_token_based = Column(Boolean, default=False, nullable=False)


class PlanFeature(Base):
    __tablename__ = "plan_features"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    feature_id = Column(Integer, ForeignKey("features.id", ondelete="CASCADE"), nullable=False, index=True)
    limit_type = Column(Enum(LimitType, native_enum=False, length=20), nullable=False)
    limit_value = Column(Integer, nullable=True)
    reset_frequency = Column(Enum(ResetFrequency, native_enum=False, length=20), nullable=False, default=ResetFrequency.NEVER)
    is_enabled = Column(Boolean, default=True, nullable=False)

    plan = relationship("Plan", back_populates="plan_features")
    feature = relationship("Feature")

    __table_args__ = (
        UniqueConstraint("plan_id", "feature_id", name="uq_plan_features_plan_feature"),
    )
