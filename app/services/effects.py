"""
Best-effort side effects of subscription mutations.

Engine operations return the effects they want alongside their result; the
service commits first and only then hands the list to ``EffectDispatcher``.
A failing effect is retried a bounded number of times and logged; it never
raises back into the caller and never undoes the committed mutation.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.repositories.app_setting_repository import AppSettingRepository
from app.services.notification_service import NotificationService
from app.services.payment_gateways import GatewayError, PaymentGateway, get_gateway

logger = logging.getLogger(__name__)

ANALYTICS_CATEGORY = "analytics"


@dataclass(frozen=True)
class NotifyUser:
    user_id: int
    type: str
    message: str
    category: str = "subscription"
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotifyAdmins:
    type: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordAnalytics:
    event: str
    user_id: int
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CancelRemoteSubscription:
    gateway: str
    reference: str
    cancel_at_cycle_end: bool
    user_id: Optional[int] = None


Effect = Any  # one of the dataclasses above


@dataclass
class DispatchReport:
    succeeded: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)


class EffectDispatcher:
    def __init__(
        self,
        db: Session,
        notifications: Optional[NotificationService] = None,
        gateway_lookup: Callable[[str], PaymentGateway] = get_gateway,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.notifications = notifications or NotificationService(db)
        self.analytics = AppSettingRepository(db)
        self.gateway_lookup = gateway_lookup
        self.max_attempts = max(1, max_attempts or settings.EFFECT_MAX_ATTEMPTS)
        self._handlers = {
            NotifyUser: self._notify_user,
            NotifyAdmins: self._notify_admins,
            RecordAnalytics: self._record_analytics,
            CancelRemoteSubscription: self._cancel_remote,
        }

    def dispatch(self, effects: List[Effect]) -> DispatchReport:
        report = DispatchReport()
        for effect in effects:
            if self._run(effect):
                report.succeeded += 1
            else:
                report.failed += 1
                report.failures.append(type(effect).__name__)
        return report

    def _run(self, effect: Effect) -> bool:
        handler = self._handlers.get(type(effect))
        if handler is None:
            logger.error(f"No handler for effect {effect!r}")
            return False

        for attempt in range(1, self.max_attempts + 1):
            try:
                handler(effect)
                return True
            except GatewayError as e:
                if e.is_no_billing_cycle:
                    logger.info(f"Gateway reports no active billing cycle for {effect!r}; nothing to cancel")
                    return True
                self._log_failure(effect, attempt, e)
            except Exception as e:
                self._log_failure(effect, attempt, e)
        return False

    def _log_failure(self, effect: Effect, attempt: int, error: Exception) -> None:
        if attempt < self.max_attempts:
            logger.warning(f"Effect {type(effect).__name__} failed (attempt {attempt}/{self.max_attempts}): {error}")
        else:
            logger.error(f"Effect {effect!r} gave up after {attempt} attempts: {error}")

    def _notify_user(self, effect: NotifyUser) -> None:
        self.notifications.create_notification(
            recipient_id=effect.user_id,
            type=effect.type,
            category=effect.category,
            message=effect.message,
            data=effect.data,
        )

    def _notify_admins(self, effect: NotifyAdmins) -> None:
        self.notifications.notify_admins(type=effect.type, message=effect.message, data=effect.data)

    def _record_analytics(self, effect: RecordAnalytics) -> None:
        now = datetime.now(timezone.utc)
        key = f"{effect.event}_{effect.user_id}_{int(now.timestamp() * 1000)}"
        try:
            self.analytics.upsert(
                key=key,
                value={**effect.data, "user_id": effect.user_id, "timestamp": now.isoformat()},
                category=ANALYTICS_CATEGORY,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _cancel_remote(self, effect: CancelRemoteSubscription) -> None:
        gateway = self.gateway_lookup(effect.gateway)
        gateway.cancel_subscription(effect.reference, cancel_at_cycle_end=effect.cancel_at_cycle_end)
