from sqlalchemy import Column, Integer, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.db.types import UTCDateTime


class FeatureUsage(Base):
    __tablename__ = "feature_usage"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    feature_id = Column(Integer, ForeignKey("features.id", ondelete="CASCADE"), nullable=False, index=True)
    usage_count = Column(Integer, nullable=False, default=0)
    ai_token_count = Column(Integer, nullable=False, default=0)
    reset_date = Column(UTCDateTime, nullable=True)  # None: never resets
    last_used = Column(UTCDateTime, nullable=True)

    feature = relationship("Feature")

    __table_args__ = (
        UniqueConstraint("user_id", "feature_id", name="uq_feature_usage_user_feature"),
        CheckConstraint("usage_count >= 0", name="ck_feature_usage_count_non_negative"),
        CheckConstraint("ai_token_count >= 0", name="ck_feature_usage_tokens_non_negative"),
    )
