from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.v1.dependencies import get_current_user, get_feature_usage_service, require_feature_access
from app.db.session import get_db
from app.models.user import User
from app.schemas.subscription import FeatureAccessResponse, FeatureUsageResponse, TrackUsageRequest
from app.services.feature_usage_service import FeatureUsageService

router = APIRouter(tags=["features"])


@router.get("/{feature_code}/access", response_model=FeatureAccessResponse)
def check_feature_access(
    feature_code: str,
    current_user: User = Depends(get_current_user),
    usage_service: FeatureUsageService = Depends(get_feature_usage_service),
):
    return usage_service.check_access(current_user.id, feature_code).to_dict()


@router.post(
    "/{feature_code}/use",
    response_model=FeatureUsageResponse,
    dependencies=[Depends(require_feature_access())],
)
def track_feature_usage(
    feature_code: str,
    payload: TrackUsageRequest,
    current_user: User = Depends(get_current_user),
    usage_service: FeatureUsageService = Depends(get_feature_usage_service),
    db: Session = Depends(get_db),
):
    """Count one use (or the given AI tokens) of a feature the plan allows."""
    try:
        usage = usage_service.track_usage(current_user.id, feature_code, tokens=payload.tokens)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if usage is None:
        return FeatureUsageResponse(feature_id=0, feature_code=feature_code, usage_count=0, ai_token_count=0)
    return FeatureUsageResponse(
        feature_id=usage.feature_id,
        feature_code=feature_code,
        usage_count=usage.usage_count,
        ai_token_count=usage.ai_token_count,
        reset_date=usage.reset_date,
        last_used=usage.last_used,
    )
