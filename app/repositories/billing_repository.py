from typing import Optional

from sqlalchemy.orm import Session

from app.models.billing_details import UserBillingDetails


class BillingRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_user_id(self, user_id: int) -> Optional[UserBillingDetails]:
        return self.db.query(UserBillingDetails).filter(UserBillingDetails.user_id == user_id).first()

    def get_country(self, user_id: int) -> Optional[str]:
        details = self.get_by_user_id(user_id)
        return details.country if details else None
