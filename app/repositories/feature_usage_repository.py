from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from app.models.feature_usage import FeatureUsage


class FeatureUsageRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, usage: FeatureUsage) -> FeatureUsage:
        self.db.add(usage)
        self.db.flush()
        return usage

    def get(self, user_id: int, feature_id: int) -> Optional[FeatureUsage]:
        return (
            self.db.query(FeatureUsage)
            .filter(FeatureUsage.user_id == user_id, FeatureUsage.feature_id == feature_id)
            .first()
        )

    def list_for_user(self, user_id: int) -> List[FeatureUsage]:
        return (
            self.db.query(FeatureUsage)
            .options(joinedload(FeatureUsage.feature))
            .filter(FeatureUsage.user_id == user_id)
            .order_by(FeatureUsage.feature_id)
            .all()
        )

    def list_due_for_reset(self, now: datetime) -> List[FeatureUsage]:
        return (
            self.db.query(FeatureUsage)
            .filter(FeatureUsage.reset_date.isnot(None), FeatureUsage.reset_date < now)
            .order_by(FeatureUsage.id)
            .all()
        )
