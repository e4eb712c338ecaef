import json

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.system_setting import SystemSetting
from utils.logger import get_logger

logger = get_logger(__name__)


def _defaults() -> dict:
    return current_app.config.get("SYSTEM_SETTINGS_DEFAULTS", {})


def get_setting(key: str, default=None):
    """
    Stored system_settings value for key, else the configured default.
    A storage error falls back to the default so the security gates keep
    their safe configuration.
    """
    fallback = _defaults().get(key, default)
    try:
        row = SystemSetting.query.filter_by(key=key).first()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("setting_read_failed", key=key, error=str(exc))
        return fallback
    if row is None:
        return fallback
    try:
        return json.loads(row.value_json)
    except ValueError:
        logger.warning("setting_value_invalid", key=key)
        return fallback


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return int(_defaults().get(key, default))


def get_bool(key: str, default: bool = False) -> bool:
    value = get_setting(key, default)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def set_setting(key: str, value) -> None:
    row = SystemSetting.query.filter_by(key=key).first()
    if row is None:
        row = SystemSetting(key=key, value_json=json.dumps(value))
        db.session.add(row)
    else:
        row.value_json = json.dumps(value)
    db.session.commit()
    logger.info("setting_updated", key=key)

