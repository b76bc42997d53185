import calendar
import hashlib
import os
import random
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from .settings_manager import APP_URL_KEY, SUBSCRIBE_URL_KEY, get_runtime_setting_value

GIB = 1073741824


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if not value:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw is not None else int(default)
    except (TypeError, ValueError):
        return int(default)


def token_hash(raw_token: str) -> str:
    pepper = os.getenv("SESSION_PEPPER", "")
    return hashlib.sha256(f"{raw_token}:{pepper}".encode("utf-8")).hexdigest()


def guid(format: bool = False) -> str:
    value = uuid.uuid4()
    return str(value) if format else value.hex


def generate_order_no(now: datetime | None = None) -> str:
    now = now or utcnow()
    return now.strftime("%Y%m%d%H%M%S") + "".join(random.choices("0123456789", k=8))


def random_code(length: int = 8) -> str:
    return "".join(random.choices("ABCDEFGHJKLMNPQRSTUVWXYZ23456789", k=length))


def traffic_convert(byte: int | float) -> str:
    byte = byte or 0
    if abs(byte) >= GIB:
        return f"{byte / GIB:.2f} GB"
    if abs(byte) >= 1048576:
        return f"{byte / 1048576:.2f} MB"
    if abs(byte) >= 1024:
        return f"{byte / 1024:.2f} KB"
    return f"{int(byte)} B"


def from_cents(value: int | None) -> float:
    return float(Decimal(int(value or 0)) / 100)


def email_suffix_verify(email: str, suffixes) -> bool:
    if isinstance(suffixes, str):
        suffixes = [item.strip() for item in suffixes.split(",")]
    suffixes = [str(item).strip().lower() for item in suffixes or [] if str(item).strip()]
    _, sep, domain = (email or "").rpartition("@")
    if not sep:
        return False
    return domain.lower() in suffixes


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def site_url(path: str = "") -> str:
    base = str(get_runtime_setting_value(APP_URL_KEY) or "").rstrip("/")
    return f"{base}{path}"


def subscribe_url(token: str) -> str:
    base = str(get_runtime_setting_value(SUBSCRIBE_URL_KEY) or "").rstrip("/")
    if not base:
        base = str(get_runtime_setting_value(APP_URL_KEY) or "").rstrip("/")
    return f"{base}/api/v1/client/subscribe?token={token}"
