import logging
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import SessionLocal
from .models import AppSetting

logger = logging.getLogger(__name__)

_SETTING_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")

APP_NAME_KEY = "site.app_name"
APP_URL_KEY = "site.app_url"
SUBSCRIBE_URL_KEY = "site.subscribe_url"
THEME_KEY = "site.theme"

STOP_REGISTER_KEY = "register.stop"
EMAIL_VERIFY_KEY = "register.email_verify"
EMAIL_WHITELIST_ENABLE_KEY = "register.email_whitelist_enable"
EMAIL_WHITELIST_SUFFIX_KEY = "register.email_whitelist_suffix"
EMAIL_GMAIL_LIMIT_ENABLE_KEY = "register.email_gmail_limit_enable"
TRY_OUT_PLAN_ID_KEY = "register.try_out_plan_id"
TRY_OUT_HOUR_KEY = "register.try_out_hour"

INVITE_FORCE_KEY = "invite.force"
INVITE_NEVER_EXPIRE_KEY = "invite.never_expire"
INVITE_GEN_LIMIT_KEY = "invite.gen_limit"
INVITE_COMMISSION_KEY = "invite.commission"
COMMISSION_FIRST_TIME_KEY = "invite.commission_first_time_enable"
COMMISSION_AUTO_CHECK_KEY = "invite.commission_auto_check_enable"
COMMISSION_DISTRIBUTION_ENABLE_KEY = "invite.commission_distribution_enable"
COMMISSION_DISTRIBUTION_L1_KEY = "invite.commission_distribution_l1"
COMMISSION_DISTRIBUTION_L2_KEY = "invite.commission_distribution_l2"
COMMISSION_DISTRIBUTION_L3_KEY = "invite.commission_distribution_l3"
WITHDRAW_CLOSE_KEY = "invite.withdraw_close_enable"
COMPLIMENTARY_PLAN_ID_KEY = "invite.complimentary_plan_id"
COMPLIMENTARY_HOURS_KEY = "invite.complimentary_hours"

PASSWORD_LIMIT_ENABLE_KEY = "auth.password_limit_enable"
PASSWORD_LIMIT_COUNT_KEY = "auth.password_limit_count"
PASSWORD_LIMIT_EXPIRE_KEY = "auth.password_limit_expire"
LOGIN_WITH_MAIL_LINK_KEY = "auth.login_with_mail_link_enable"

RESET_TRAFFIC_METHOD_KEY = "traffic.reset_method"
SHOW_INFO_TO_SERVER_KEY = "subscribe.show_info_to_server_enable"
ORDER_TIMEOUT_MINUTES_KEY = "order.timeout_minutes"
SERVER_TOKEN_KEY = "server.token"

DEFAULTS: dict[str, Any] = {
    APP_NAME_KEY: "Orbita",
    APP_URL_KEY: "",
    SUBSCRIBE_URL_KEY: "",
    THEME_KEY: "default",
    STOP_REGISTER_KEY: False,
    EMAIL_VERIFY_KEY: False,
    EMAIL_WHITELIST_ENABLE_KEY: False,
    EMAIL_WHITELIST_SUFFIX_KEY: [
        "gmail.com",
        "qq.com",
        "163.com",
        "yahoo.com",
        "sina.com",
        "126.com",
        "outlook.com",
        "yeah.net",
        "foxmail.com",
    ],
    EMAIL_GMAIL_LIMIT_ENABLE_KEY: False,
    TRY_OUT_PLAN_ID_KEY: 0,
    TRY_OUT_HOUR_KEY: 1,
    INVITE_FORCE_KEY: False,
    INVITE_NEVER_EXPIRE_KEY: False,
    INVITE_GEN_LIMIT_KEY: 5,
    INVITE_COMMISSION_KEY: 10,
    COMMISSION_FIRST_TIME_KEY: True,
    COMMISSION_AUTO_CHECK_KEY: True,
    COMMISSION_DISTRIBUTION_ENABLE_KEY: False,
    COMMISSION_DISTRIBUTION_L1_KEY: 50,
    COMMISSION_DISTRIBUTION_L2_KEY: 30,
    COMMISSION_DISTRIBUTION_L3_KEY: 20,
    WITHDRAW_CLOSE_KEY: False,
    COMPLIMENTARY_PLAN_ID_KEY: 0,
    COMPLIMENTARY_HOURS_KEY: 720,
    PASSWORD_LIMIT_ENABLE_KEY: True,
    PASSWORD_LIMIT_COUNT_KEY: 5,
    PASSWORD_LIMIT_EXPIRE_KEY: 60,
    LOGIN_WITH_MAIL_LINK_KEY: False,
    RESET_TRAFFIC_METHOD_KEY: 0,
    SHOW_INFO_TO_SERVER_KEY: False,
    ORDER_TIMEOUT_MINUTES_KEY: 120,
    SERVER_TOKEN_KEY: "",
}


def to_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def to_int(value: Any, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError):
        out = int(default)
    if min_value is not None:
        out = max(min_value, out)
    if max_value is not None:
        out = min(max_value, out)
    return out


def normalize_setting_key(raw_key: str) -> str:
    key = str(raw_key or "").strip()
    if not key:
        raise ValueError("setting key is required")
    if not _SETTING_KEY_PATTERN.fullmatch(key):
        raise ValueError(
            "invalid setting key: use letters, numbers, dot, underscore, colon, hyphen; max length is 128"
        )
    return key


class SettingsManager:
    def __init__(self, db: Session):
        self.db = db

    def list_settings(self, prefix: str | None = None) -> list[AppSetting]:
        query = self.db.query(AppSetting)
        if prefix:
            query = query.filter(AppSetting.key.like(f"{prefix}%"))
        return query.order_by(AppSetting.key.asc()).all()

    def get_setting(self, key: str) -> AppSetting | None:
        normalized_key = normalize_setting_key(key)
        return self.db.query(AppSetting).filter(AppSetting.key == normalized_key).first()

    def get_value(self, key: str, default: Any = None) -> Any:
        row = self.get_setting(key)
        if row is not None:
            return row.value_json
        return DEFAULTS.get(key) if default is None else default

    def get_bool(self, key: str) -> bool:
        return to_bool(self.get_value(key), to_bool(DEFAULTS.get(key)))

    def get_int(self, key: str, **bounds) -> int:
        return to_int(self.get_value(key), to_int(DEFAULTS.get(key), 0), **bounds)

    def effective(self) -> dict[str, Any]:
        out = dict(DEFAULTS)
        for row in self.list_settings():
            out[row.key] = row.value_json
        return out

    def set_setting(self, key: str, value: Any, description: str | None = None) -> tuple[AppSetting, bool]:
        normalized_key = normalize_setting_key(key)
        row = self.db.query(AppSetting).filter(AppSetting.key == normalized_key).first()
        created = False
        if not row:
            row = AppSetting(key=normalized_key)
            self.db.add(row)
            created = True

        row.value_json = value
        if description is not None:
            row.description = description.strip() or None

        self.db.flush()
        return row, created

    def delete_setting(self, key: str) -> bool:
        row = self.get_setting(key)
        if not row:
            return False
        self.db.delete(row)
        self.db.flush()
        return True


def get_runtime_setting_value(key: str, default: Any = None) -> Any:
    try:
        with SessionLocal() as db:
            return SettingsManager(db).get_value(key, default=default)
    except SQLAlchemyError:
        logger.warning("runtime setting %s unavailable, using default", key)
        return DEFAULTS.get(key) if default is None else default
