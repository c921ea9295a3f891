from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

from app.models.enums import LimitType
from app.models.plan import Feature, Plan, PlanFeature


class PlanRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, plan_id: int) -> Optional[Plan]:
        return (
            self.db.query(Plan)
            .options(selectinload(Plan.pricings))
            .filter(Plan.id == plan_id)
            .first()
        )

    def list_active(self) -> List[Plan]:
        return (
            self.db.query(Plan)
            .options(selectinload(Plan.pricings), selectinload(Plan.plan_features).selectinload(PlanFeature.feature))
            .filter(Plan.is_active.is_(True))
            .order_by(Plan.price, Plan.id)
            .all()
        )

    def get_feature_by_code(self, code: str) -> Optional[Feature]:
        return self.db.query(Feature).filter(Feature.code == code).first()

    def get_plan_feature(self, plan_id: int, feature_id: int) -> Optional[PlanFeature]:
        return (
            self.db.query(PlanFeature)
            .filter(PlanFeature.plan_id == plan_id, PlanFeature.feature_id == feature_id)
            .first()
        )

    def get_count_features(self, plan_id: int) -> List[PlanFeature]:
        """COUNT-type entitlements of a plan that carry a limit."""
        return (
            self.db.query(PlanFeature)
            .filter(
                PlanFeature.plan_id == plan_id,
                PlanFeature.limit_type == LimitType.COUNT,
                PlanFeature.limit_value.isnot(None),
            )
            .all()
        )
