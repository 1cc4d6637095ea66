from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable

from sqlalchemy.orm import Session

from llm_fallback.db.models import Setting
from llm_fallback.db.session import get_session

logger = logging.getLogger("llm-fallback")


class SettingScope(str, Enum):
    USER = "user"
    WORKSPACE = "workspace"
    SYSTEM = "system"


# Later scopes override earlier ones.
SCOPE_PRECEDENCE = (SettingScope.USER, SettingScope.WORKSPACE, SettingScope.SYSTEM)


class SettingsStore:
    def __init__(self, session_factory: Callable[[], Session] = get_session) -> None:
        self._session_factory = session_factory

    def get_value(self, key: str, default: Any = None) -> Any:
        db = self._session_factory()
        try:
            rows = db.query(Setting).filter(Setting.key == key).all()
        finally:
            db.close()

        by_scope = {row.scope: row.value_json for row in rows}
        value = default
        for scope in SCOPE_PRECEDENCE:
            raw = by_scope.get(scope.value)
            if raw is None:
                continue
            try:
                value = json.loads(raw)
            except ValueError:
                logger.warning(json.dumps({"message": "setting_invalid_json", "scope": scope.value, "key": key}))
        return value

    def get_scoped_value(self, scope: SettingScope, key: str, default: Any = None) -> Any:
        db = self._session_factory()
        try:
            row = db.query(Setting).filter(Setting.scope == scope.value, Setting.key == key).one_or_none()
        finally:
            db.close()
        if row is None:
            return default
        return json.loads(row.value_json)

    def set_value(self, scope: SettingScope, key: str, value: Any) -> None:
        payload = json.dumps(value)
        db = self._session_factory()
        try:
            row = db.query(Setting).filter(Setting.scope == scope.value, Setting.key == key).one_or_none()
            if row is None:
                row = Setting(scope=scope.value, key=key, value_json=payload)
            else:
                row.value_json = payload
            db.add(row)
            db.commit()
        finally:
            db.close()
        logger.info(json.dumps({"message": "setting_saved", "scope": scope.value, "key": key}))
