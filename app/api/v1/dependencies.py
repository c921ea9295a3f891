from typing import Callable, Optional
import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.core.security import decode_access_token
from app.db.session import get_db
from app.repositories.feature_usage_repository import FeatureUsageRepository
from app.repositories.plan_repository import PlanRepository
from app.repositories.user_repository import UserRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.feature_usage_service import FeatureAccessDecision, FeatureUsageService
from app.services.subscription_service import SubscriptionService
from app.models.user import User

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise _unauthorized("Authentication token not provided")
    token = (credentials.credentials or "").strip()
    if token.startswith("Bearer "):
        token = token[7:].strip()
    if not token:
        raise _unauthorized("Invalid or expired token")

    payload = decode_access_token(token)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    user_id_raw = payload.get("sub")
    try:
        user_id = int(user_id_raw)
    except (ValueError, TypeError):
        logger.warning(f"Token carries a non-integer subject: {user_id_raw!r}")
        raise _unauthorized("Invalid token")

    user = UserRepository(db).get_by_id(user_id)
    if user is None:
        logger.warning(f"Token subject {user_id} does not match a user")
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is inactive")
    return user


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    return SubscriptionService(SubscriptionRepository(db))


def get_feature_usage_service(db: Session = Depends(get_db)) -> FeatureUsageService:
    return FeatureUsageService(PlanRepository(db), FeatureUsageRepository(db))


def require_feature_access(feature_code: Optional[str] = None) -> Callable[..., FeatureAccessDecision]:
    """
    Dependency factory gating a route on a feature entitlement:

        @router.post("/reports", dependencies=[Depends(require_feature_access("advanced_reports"))])

    Without a code, the code is taken from the route's ``feature_code`` path
    parameter. Raises 403 with the decision details when the plan does not allow it.
    """
    if feature_code is None:
        def from_path(
            feature_code: str,
            current_user: User = Depends(get_current_user),
            usage_service: FeatureUsageService = Depends(get_feature_usage_service),
        ) -> FeatureAccessDecision:
            return usage_service.require_access(current_user.id, feature_code)

        return from_path

    def dependency(
        current_user: User = Depends(get_current_user),
        usage_service: FeatureUsageService = Depends(get_feature_usage_service),
    ) -> FeatureAccessDecision:
        decision = usage_service.require_access(current_user.id, feature_code)
        logger.debug(f"User {current_user.id} allowed {feature_code}: {decision.reason}")
        return decision

    return dependency
