"""
Feature usage ledger: per-user counters for COUNT entitlements and the
access decision used by the feature-gating dependency.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.core.errors import FeatureAccessDenied, FeatureNotFoundError
from app.models.enums import FeatureType, LimitType, ResetFrequency, SubscriptionStatus
from app.models.feature_usage import FeatureUsage
from app.models.plan import PlanFeature
from app.models.subscription import Subscription
from app.repositories.feature_usage_repository import FeatureUsageRepository
from app.repositories.plan_repository import PlanRepository
from app.services.pricing import next_reset_date

logger = logging.getLogger(__name__)


@dataclass
class FeatureAccessDecision:
    allowed: bool
    reason: str
    feature_code: str
    limit: Optional[int] = None
    current: Optional[int] = None
    reset_frequency: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FeatureUsageService:
    def __init__(self, plans: PlanRepository, usage: FeatureUsageRepository):
        self.plans = plans
        self.usage = usage
        self.db = usage.db

    def initialize_usage(self, user_id: int, plan_id: int, now: datetime) -> int:
        """Create zeroed counters for the plan's COUNT features; existing counters are kept."""
        created = 0
        for plan_feature in self.plans.get_count_features(plan_id):
            if self.usage.get(user_id, plan_feature.feature_id) is not None:
                continue
            self.usage.add(
                FeatureUsage(
                    user_id=user_id,
                    feature_id=plan_feature.feature_id,
                    usage_count=0,
                    ai_token_count=0,
                    reset_date=next_reset_date(now, plan_feature.reset_frequency),
                )
            )
            created += 1
        if created:
            logger.info(f"Initialized {created} feature usage counters for user {user_id} on plan {plan_id}")
        return created

    def reset_plan_usage(self, user_id: int, plan_id: int, now: datetime) -> int:
        """Zero the counters of resettable COUNT features, as on a renewal."""
        reset = 0
        for plan_feature in self.plans.get_count_features(plan_id):
            if ResetFrequency(plan_feature.reset_frequency) == ResetFrequency.NEVER:
                continue
            usage = self.usage.get(user_id, plan_feature.feature_id)
            if usage is None:
                continue
            usage.usage_count = 0
            usage.ai_token_count = 0
            usage.reset_date = next_reset_date(now, plan_feature.reset_frequency)
            reset += 1
        self.db.flush()
        return reset

    def reset_due_usage(self, now: datetime) -> int:
        """Zero every counter whose reset date has passed and advance it by one period.

        The next date is computed from the previous reset date, not from ``now``,
        so a late sweep keeps the original cadence.
        """
        rows = self.usage.list_due_for_reset(now)
        for usage in rows:
            frequency = self._frequency_for(usage)
            usage.usage_count = 0
            usage.ai_token_count = 0
            usage.reset_date = next_reset_date(usage.reset_date, frequency) if frequency else None
        self.db.flush()
        return len(rows)

    def check_access(self, user_id: int, feature_code: str, now: Optional[datetime] = None) -> FeatureAccessDecision:
        now = now or datetime.now(timezone.utc)
        feature = self.plans.get_feature_by_code(feature_code)
        if feature is None:
            raise FeatureNotFoundError(f"Feature not found: {feature_code}")

        subscription = self._active_subscription(user_id)
        if subscription is None:
            return FeatureAccessDecision(False, "no_active_subscription", feature_code)

        plan_feature = self.plans.get_plan_feature(subscription.plan_id, feature.id)
        if plan_feature is None:
            if FeatureType(feature.feature_type) == FeatureType.ESSENTIAL:
                return FeatureAccessDecision(True, "essential_feature", feature_code)
            return FeatureAccessDecision(False, "not_in_plan", feature_code)

        limit_type = LimitType(plan_feature.limit_type)
        if limit_type == LimitType.UNLIMITED:
            return FeatureAccessDecision(True, "unlimited", feature_code)
        if limit_type == LimitType.BOOLEAN:
            if not plan_feature.is_enabled:
                return FeatureAccessDecision(False, "feature_disabled", feature_code)
            return FeatureAccessDecision(True, "enabled", feature_code)

        frequency = ResetFrequency(plan_feature.reset_frequency).value
        if plan_feature.limit_value is None:
            return FeatureAccessDecision(True, "no_limit", feature_code, reset_frequency=frequency)

        usage = self.usage.get(user_id, feature.id)
        current = 0
        if usage is not None and not self._reset_due(usage, now):
            current = usage.ai_token_count if feature.is_token_based else usage.usage_count

        if current >= plan_feature.limit_value:
            reason = "token_limit_exceeded" if feature.is_token_based else "usage_limit_exceeded"
            return FeatureAccessDecision(
                False, reason, feature_code,
                limit=plan_feature.limit_value, current=current, reset_frequency=frequency,
            )
        return FeatureAccessDecision(
            True, "within_limit", feature_code,
            limit=plan_feature.limit_value, current=current, reset_frequency=frequency,
        )

    def require_access(self, user_id: int, feature_code: str, now: Optional[datetime] = None) -> FeatureAccessDecision:
        decision = self.check_access(user_id, feature_code, now=now)
        if not decision.allowed:
            raise FeatureAccessDenied(
                f"Access to {feature_code} denied: {decision.reason}",
                details=decision.to_dict(),
            )
        return decision

    def track_usage(self, user_id: int, feature_code: str, tokens: int = 0, now: Optional[datetime] = None) -> Optional[FeatureUsage]:
        """Count one use (or ``tokens`` AI tokens) of a countable feature."""
        now = now or datetime.now(timezone.utc)
        feature = self.plans.get_feature_by_code(feature_code)
        if feature is None:
            raise FeatureNotFoundError(f"Feature not found: {feature_code}")
        if not feature.is_countable and not feature.is_token_based:
            return None
        if tokens < 0:
            raise ValueError("tokens must be non-negative")

        usage = self.usage.get(user_id, feature.id)
        if usage is None:
            frequency = self._frequency_for_feature(user_id, feature.id)
            usage = self.usage.add(
                FeatureUsage(
                    user_id=user_id,
                    feature_id=feature.id,
                    usage_count=0,
                    ai_token_count=0,
                    reset_date=next_reset_date(now, frequency) if frequency else None,
                )
            )
        elif self._reset_due(usage, now):
            frequency = self._frequency_for(usage)
            usage.usage_count = 0
            usage.ai_token_count = 0
            usage.reset_date = next_reset_date(usage.reset_date, frequency) if frequency else None

        if feature.is_token_based:
            usage.ai_token_count = (usage.ai_token_count or 0) + tokens
        else:
            usage.usage_count = (usage.usage_count or 0) + 1
        usage.last_used = now
        self.db.flush()
        return usage

    def list_for_user(self, user_id: int) -> List[FeatureUsage]:
        return self.usage.list_for_user(user_id)

    @staticmethod
    def _reset_due(usage: FeatureUsage, now: datetime) -> bool:
        return usage.reset_date is not None and usage.reset_date < now

    def _active_subscription(self, user_id: int) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)
            .first()
        )

    def _frequency_for(self, usage: FeatureUsage) -> Optional[ResetFrequency]:
        return self._frequency_for_feature(usage.user_id, usage.feature_id)

    def _frequency_for_feature(self, user_id: int, feature_id: int) -> Optional[ResetFrequency]:
        """Reset frequency from the user's current plan, else from any plan granting the feature."""
        plan_feature = None
        subscription = self._active_subscription(user_id)
        if subscription is not None:
            plan_feature = self.plans.get_plan_feature(subscription.plan_id, feature_id)
        if plan_feature is None:
            plan_feature = (
                self.db.query(PlanFeature)
                .filter(PlanFeature.feature_id == feature_id)
                .order_by(PlanFeature.id)
                .first()
            )
        if plan_feature is None:
            return None
        return ResetFrequency(plan_feature.reset_frequency)
