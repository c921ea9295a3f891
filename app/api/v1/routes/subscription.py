from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from app.api.v1.dependencies import get_current_user, get_subscription_service
from app.core.cache import cache_get, cache_set
from app.db.session import get_db
from app.models.user import User
from app.repositories.billing_repository import BillingRepository
from app.repositories.plan_repository import PlanRepository
from app.services.pricing import plan_price, resolve_region
from app.services.subscription_service import SubscriptionService
from app.schemas.subscription import (
    ActivateFreeRequest,
    CancelSubscriptionResponse,
    CurrentSubscriptionResponse,
    DowngradeRequest,
    DowngradeResponse,
    FeatureUsageResponse,
    PlanFeatureInfo,
    PlanInfo,
    PlansResponse,
    ProrationResponse,
    SelectPlanRequest,
    SelectPlanResponse,
    SubscriptionResponse,
    UpgradeRequest,
    UpgradeResponse,
)

router = APIRouter(tags=["subscription"])


@router.get("/plans", response_model=PlansResponse)
def list_plans(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Active plans priced for the current user's billing region."""
    region = resolve_region(BillingRepository(db).get_country(current_user.id))
    cache_key = f"plans:{region.value}"
    cached = cache_get(cache_key)
    if cached is not None:
        return cached

    plans = []
    for plan in PlanRepository(db).list_active():
        price = plan_price(plan, region)
        plans.append(PlanInfo(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            billing_cycle=plan.billing_cycle,
            is_freemium=plan.is_freemium,
            price=price.amount,
            currency=price.currency.value,
            features=[
                PlanFeatureInfo(
                    code=pf.feature.code,
                    name=pf.feature.name,
                    limit_type=pf.limit_type,
                    limit_value=pf.limit_value,
                    reset_frequency=pf.reset_frequency,
                    is_enabled=pf.is_enabled,
                )
                for pf in plan.plan_features
            ],
        ))
    response = PlansResponse(region=region.value, plans=plans)
    cache_set(cache_key, response.model_dump(mode="json"))
    return response


@router.get("/current", response_model=CurrentSubscriptionResponse)
def get_current_subscription(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.get_active_subscription(current_user.id)
    if subscription is None:
        return CurrentSubscriptionResponse(subscription=None)
    return CurrentSubscriptionResponse(subscription=SubscriptionResponse.from_subscription(subscription))


@router.get("/history", response_model=List[SubscriptionResponse])
def get_subscription_history(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return [SubscriptionResponse.from_subscription(s) for s in service.get_subscription_history(current_user.id)]


@router.get("/usage", response_model=List[FeatureUsageResponse])
def get_feature_usage(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    rows = []
    for usage in service.get_feature_usage(current_user.id):
        row = FeatureUsageResponse.model_validate(usage)
        row.feature_code = usage.feature.code if usage.feature else None
        rows.append(row)
    return rows


@router.post("/select-plan", response_model=SelectPlanResponse)
def select_plan(
    payload: SelectPlanRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Free plans activate immediately; paid plans are recorded as pending payment."""
    result = service.associate_user_with_plan(current_user.id, payload.plan_id)
    subscription = result["subscription"]
    return SelectPlanResponse(
        status=result["status"],
        plan_id=result["plan_id"],
        subscription=SubscriptionResponse.from_subscription(subscription) if subscription else None,
    )


@router.post("/activate-free", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def activate_free_plan(
    payload: ActivateFreeRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.activate_free_plan(current_user.id, payload.plan_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.get("/proration/{plan_id}", response_model=ProrationResponse)
def get_proration(
    plan_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.calculate_proration(current_user.id, plan_id)


@router.post("/upgrade", response_model=UpgradeResponse)
def upgrade(
    payload: UpgradeRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Pay for a plan: first paid subscription or an immediate plan change."""
    result = service.process_upgrade(
        current_user.id,
        payload.plan_id,
        payload.payment_id,
        payload.gateway,
        signature=payload.signature,
        gateway_subscription_id=payload.gateway_subscription_id,
    )
    subscription = result["subscription"]
    return UpgradeResponse(
        **{k: v for k, v in result.items() if k != "subscription"},
        subscription=SubscriptionResponse.from_subscription(subscription) if subscription else None,
    )


@router.post("/downgrade", response_model=DowngradeResponse)
def downgrade(
    payload: DowngradeRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    result = service.schedule_downgrade(current_user.id, payload.plan_id)
    return DowngradeResponse(
        subscription=SubscriptionResponse.from_subscription(result["subscription"]),
        message=result["message"],
        effective_date=result["effective_date"],
        pending_plan_id=result["pending_plan_id"],
    )


@router.post("/cancel", response_model=CancelSubscriptionResponse, status_code=status.HTTP_200_OK)
def cancel_subscription(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.cancel_subscription(current_user.id)
    return CancelSubscriptionResponse(
        message="Subscription cancelled. It will not renew.",
        subscription_cancelled=True,
        access_until=subscription.end_date,
        note="You keep access to your plan until the end of the current period.",
    )
