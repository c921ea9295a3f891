from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.user import User


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def list_admins(self) -> List[User]:
        return (
            self.db.query(User)
            .filter(User.is_admin.is_(True), User.is_active.is_(True))
            .all()
        )
