from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Numeric, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base
from app.models.enums import Currency, PaymentGatewayName, PaymentStatus


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(Enum(Currency, native_enum=False, length=3), nullable=False)
    gateway = Column(Enum(PaymentGatewayName, native_enum=False, length=20), nullable=False)
    # Idempotency key: a payment id is recorded at most once
    gateway_transaction_id = Column(String(255), unique=True, nullable=True, index=True)
    status = Column(Enum(PaymentStatus, native_enum=False, length=20), nullable=False, default=PaymentStatus.COMPLETED)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscription = relationship("Subscription")
