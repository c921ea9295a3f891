from typing import Any, List, Optional

from sqlalchemy.orm import Session

from app.models.app_setting import AppSetting


class AppSettingRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, key: str) -> Optional[AppSetting]:
        return self.db.query(AppSetting).filter(AppSetting.key == key).first()

    def upsert(self, key: str, value: Any, category: str) -> AppSetting:
        setting = self.get(key)
        if setting is None:
            setting = AppSetting(key=key, value=value, category=category)
            self.db.add(setting)
        else:
            setting.value = value
            setting.category = category
        self.db.flush()
        return setting

    def list_by_category(self, category: str) -> List[AppSetting]:
        return (
            self.db.query(AppSetting)
            .filter(AppSetting.category == category)
            .order_by(AppSetting.id)
            .all()
        )
