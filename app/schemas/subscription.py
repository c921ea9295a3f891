from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.enums import (
    BillingCycle,
    LimitType,
    PaymentGatewayName,
    PlanChangeType,
    ResetFrequency,
    SubscriptionStatus,
)


class PlanFeatureInfo(BaseModel):
    code: str
    name: str
    limit_type: LimitType
    limit_value: Optional[int] = None
    reset_frequency: ResetFrequency
    is_enabled: bool


class PlanInfo(BaseModel):
    """A plan as offered to the current user, priced for their region."""
    id: int
    name: str
    description: Optional[str] = None
    billing_cycle: BillingCycle
    is_freemium: bool
    price: Decimal
    currency: str
    features: List[PlanFeatureInfo] = []


class PlansResponse(BaseModel):
    region: str
    plans: List[PlanInfo]


class SubscriptionResponse(BaseModel):
    id: int
    user_id: int
    plan_id: int
    plan_name: Optional[str] = None
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    auto_renew: bool
    payment_gateway: PaymentGatewayName
    previous_plan_id: Optional[int] = None
    upgrade_date: Optional[datetime] = None
    cancel_date: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    pending_plan_change_to: Optional[int] = None
    pending_plan_change_date: Optional[datetime] = None
    pending_plan_change_type: Optional[PlanChangeType] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_subscription(cls, subscription) -> "SubscriptionResponse":
        response = cls.model_validate(subscription)
        if subscription.plan is not None:
            response.plan_name = subscription.plan.name
        return response


class CurrentSubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionResponse] = None


class SelectPlanRequest(BaseModel):
    plan_id: int


class SelectPlanResponse(BaseModel):
    status: str  # "active" or "pending_payment"
    plan_id: int
    subscription: Optional[SubscriptionResponse] = None


class ActivateFreeRequest(BaseModel):
    plan_id: int


class UpgradeRequest(BaseModel):
    plan_id: int
    payment_id: str = Field(..., min_length=1)
    gateway: str = PaymentGatewayName.RAZORPAY.value
    signature: Optional[str] = None
    gateway_subscription_id: Optional[str] = None


class UpgradeResponse(BaseModel):
    subscription: Optional[SubscriptionResponse] = None
    previous_subscription_id: Optional[int] = None
    is_upgrade: bool
    freemium_conversion: bool
    amount: Decimal
    currency: str
    duplicate: bool


class DowngradeRequest(BaseModel):
    plan_id: int


class DowngradeResponse(BaseModel):
    subscription: SubscriptionResponse
    message: str
    effective_date: datetime
    pending_plan_id: int


class ProrationResponse(BaseModel):
    proration_amount: Decimal
    proration_credit: Decimal
    requires_payment: bool
    is_upgrade: bool
    original_plan_price: Decimal
    new_plan_price: Decimal
    remaining_value: Decimal
    currency: str
    no_proration_policy: bool
    diagnostic_info: Dict[str, Any] = {}


class CancelSubscriptionResponse(BaseModel):
    """Response to a cancellation: access continues until ``access_until``."""
    message: str
    subscription_cancelled: bool
    access_until: datetime
    note: Optional[str] = None


class FeatureUsageResponse(BaseModel):
    feature_id: int
    feature_code: Optional[str] = None
    usage_count: int
    ai_token_count: int
    reset_date: Optional[datetime] = None
    last_used: Optional[datetime] = None

    class Config:
        from_attributes = True


class FeatureAccessResponse(BaseModel):
    allowed: bool
    reason: str
    feature_code: str
    limit: Optional[int] = None
    current: Optional[int] = None
    reset_frequency: Optional[str] = None


class TrackUsageRequest(BaseModel):
    tokens: int = Field(0, ge=0)
