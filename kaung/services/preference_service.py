"""
用户偏好设置

每个 key 注册一个默认值，类型以默认值为准；
未设置过的 key 返回默认值，不写库。
"""
from typing import Dict, Any
import logging
import time

import config
from ..infra.models import db, UserPreference

logger = logging.getLogger('log')

PREFERENCE_DEFAULTS: Dict[str, Any] = {
    "admin_sound_enabled": config.admin_sound_default,
    "onboarding_seen": False,
    "language": "en",
}


def _type_ok(key: str, value: Any) -> bool:
    # bool 是 int 的子类，这里要求类型完全一致
    return type(value) is type(PREFERENCE_DEFAULTS[key])


def get_preference(user_id: str, key: str) -> Any:
    if key not in PREFERENCE_DEFAULTS:
        raise KeyError(key)
    row = UserPreference.query.filter_by(user_id=user_id, key=key).first()
    if row is None or not _type_ok(key, row.value):
        return PREFERENCE_DEFAULTS[key]
    return row.value


def get_preferences(user_id: str) -> Dict[str, Any]:
    prefs = dict(PREFERENCE_DEFAULTS)
    for row in UserPreference.query.filter_by(user_id=user_id).all():
        if row.key in prefs and _type_ok(row.key, row.value):
            prefs[row.key] = row.value
    return prefs


def set_preference(user_id: str, key: str, value: Any) -> Dict[str, Any]:
    if key not in PREFERENCE_DEFAULTS:
        return {"error": "invalid_preference", "message": f"未知设置项: {key}"}
    if not _type_ok(key, value):
        expected = type(PREFERENCE_DEFAULTS[key]).__name__
        return {"error": "invalid_preference", "message": f"{key} 需要 {expected} 类型"}

    row = UserPreference.query.filter_by(user_id=user_id, key=key).first()
    if row is None:
        row = UserPreference(user_id=user_id, key=key)
        db.session.add(row)
    row.value = value
    row.updated_at = int(time.time())
    db.session.commit()
    logger.info("preference user=%s %s=%r", user_id, key, value)
    return {"ok": True, "key": key, "value": value}
