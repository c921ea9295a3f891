from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.payment_transaction import PaymentTransaction


class TransactionRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, transaction: PaymentTransaction) -> PaymentTransaction:
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def get_by_gateway_transaction_id(self, gateway_transaction_id: str) -> Optional[PaymentTransaction]:
        if not gateway_transaction_id:
            return None
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.gateway_transaction_id == gateway_transaction_id)
            .first()
        )

    def list_by_user(self, user_id: int) -> List[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.user_id == user_id)
            .order_by(PaymentTransaction.id.desc())
            .all()
        )
