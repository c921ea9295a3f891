"""
Notification sink: in-app notification rows plus an email copy when SMTP is set up.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.notification import Notification
from app.repositories.user_repository import UserRepository
from app.services.email_service import EmailService

logger = logging.getLogger(__name__)

DEFAULT_TITLES = {
    "subscription_activated": "Subscription activated",
    "subscription_upgraded": "Plan changed",
    "subscription_downgrade_scheduled": "Plan change scheduled",
    "subscription_plan_changed": "Your plan has changed",
    "subscription_cancelled": "Subscription cancelled",
    "subscription_renewed": "Subscription renewed",
    "subscription_grace_period": "Your subscription has ended",
    "subscription_expired": "Subscription expired",
    "new_subscription": "New subscription",
}


class NotificationService:
    def __init__(self, db: Session, email_service: Optional[EmailService] = None):
        self.db = db
        self.users = UserRepository(db)
        self.email_service = email_service or EmailService()

    def create_notification(
        self,
        recipient_id: int,
        type: str,
        category: str,
        message: str,
        title: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        send_email: bool = True,
    ) -> Notification:
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            category=category,
            title=title or DEFAULT_TITLES.get(type, type.replace("_", " ").capitalize()),
            message=message,
            data=data or {},
        )
        try:
            self.db.add(notification)
            self.db.commit()
            self.db.refresh(notification)
        except Exception:
            self.db.rollback()
            raise

        if send_email and self.email_service.is_configured:
            user = self.users.get_by_id(recipient_id)
            if user and user.email:
                self.email_service.send_notification_email(
                    to=user.email,
                    user_name=user.name,
                    title=notification.title,
                    message=notification.message,
                )
        return notification

    def notify_admins(
        self,
        type: str,
        message: str,
        title: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Fan out to every active admin. Returns how many were notified."""
        admins = self.users.list_admins()
        if not admins:
            logger.warning("No admin users found to notify")
            return 0

        notified = 0
        for admin in admins:
            try:
                self.create_notification(
                    recipient_id=admin.id,
                    type=type,
                    category="admin",
                    title=title,
                    message=message,
                    data=data,
                    send_email=False,
                )
                notified += 1
            except Exception as e:
                logger.error(f"Failed to create admin notification for admin {admin.id}: {e}")
        return notified

