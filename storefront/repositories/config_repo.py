from datetime import datetime, timezone
from typing import Any

from sqlmodel import Session, select

from storefront.models.app_config import AppConfig


class ConfigRepository:
    """
    Key/value access to the app_config table.

    - get returns the raw JSON value or None.
    - upsert inserts or replaces the value for a key and commits.
    """

    def get(self, session: Session, key: str) -> dict[str, Any] | None:
        row = session.exec(select(AppConfig).where(AppConfig.key == key)).first()
        return row.value if row else None

    def upsert(self, session: Session, key: str, value: dict[str, Any]) -> AppConfig:
        row = session.exec(select(AppConfig).where(AppConfig.key == key)).first()
        if row is None:
            row = AppConfig(key=key, value=value)
        else:
            row.value = value
            row.updated_at = datetime.now(timezone.utc)
        session.add(row)
        session.commit()
        session.refresh(row)
        return row

    def exists(self, session: Session, key: str) -> bool:
        return self.get(session, key) is not None
