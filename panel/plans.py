from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from .helpers import GIB, add_months, as_utc, utcnow
from .models import Plan, User

# period column -> calendar months added on purchase
PERIOD_MONTHS = {
    "month_price": 1,
    "quarter_price": 3,
    "half_year_price": 6,
    "year_price": 12,
    "two_year_price": 24,
    "three_year_price": 36,
}
# nominal lengths used for surplus and renewal maths
PERIOD_DAYS = {
    "month_price": 30,
    "quarter_price": 90,
    "half_year_price": 180,
    "year_price": 365,
    "two_year_price": 730,
    "three_year_price": 1095,
}
ONETIME = "onetime_price"
RESET_PRICE = "reset_price"
PERIODS = (*PERIOD_MONTHS.keys(), ONETIME, RESET_PRICE)

PERIOD_LABELS = {
    "month_price": "Monthly",
    "quarter_price": "Quarterly",
    "half_year_price": "Half-yearly",
    "year_price": "Yearly",
    "two_year_price": "Two years",
    "three_year_price": "Three years",
    "onetime_price": "One-time",
    "reset_price": "Traffic reset package",
}

# reset_traffic_method values
RESET_MONTH_FIRST_DAY = 0
RESET_EXPIRE_DAY = 1
RESET_NEVER = 2
RESET_YEAR_FIRST_DAY = 3
RESET_EXPIRE_YEAR = 4
RESET_QUARTER_CYCLE = 5
RESET_HALF_YEAR_CYCLE = 6
RESET_METHODS = range(0, 7)


def period_label(period: str | None) -> str:
    return PERIOD_LABELS.get(period or "", "Unknown")


def price_for(plan: Plan, period: str) -> int | None:
    if period not in PERIODS:
        return None
    return getattr(plan, period)


def plan_transfer_bytes(plan: Plan) -> int:
    return int(plan.transfer_enable or 0) * GIB


def is_active(user: User, now: datetime | None = None) -> bool:
    if user.banned or not user.plan_id or not user.transfer_enable:
        return False
    expired_at = as_utc(user.expired_at)
    return expired_at is None or expired_at > (now or utcnow())


def have_capacity(db: Session, plan: Plan, now: datetime | None = None) -> bool:
    if plan.capacity_limit is None:
        return True
    now = now or utcnow()
    holders = (
        db.query(User)
        .filter(
            User.plan_id == plan.id,
            (User.expired_at.is_(None)) | (User.expired_at >= now),
        )
        .count()
    )
    return holders < plan.capacity_limit


def extend_expiry(current: datetime | None, period: str, now: datetime) -> datetime | None:
    if period == ONETIME:
        return None
    months = PERIOD_MONTHS.get(period)
    if months is None:
        return as_utc(current)
    current = as_utc(current)
    base = current if current and current > now else now
    return add_months(base, months)


def apply_plan(user: User, plan: Plan) -> None:
    user.plan_id = plan.id
    user.group_id = plan.group_id
    user.transfer_enable = plan_transfer_bytes(plan)
    user.speed_limit = plan.speed_limit
    user.device_limit = plan.device_limit


def apply_plan_period(user: User, plan: Plan, period: str, now: datetime, *, from_now: bool = False) -> None:
    current = None if from_now else user.expired_at
    user.expired_at = extend_expiry(current, period, now)
    apply_plan(user, plan)


def gift_period(hours: int) -> str:
    if hours <= 24 * 30:
        return "month_price"
    if hours <= 24 * 90:
        return "quarter_price"
    if hours <= 24 * 180:
        return "half_year_price"
    return "year_price"


def extend_by_hours(current: datetime | None, hours: int, now: datetime) -> datetime:
    current = as_utc(current)
    base = current if current and current > now else now
    return base + timedelta(hours=hours)


def serialize_plan(plan: Plan) -> dict:
    return {
        "id": plan.id,
        "group_id": plan.group_id,
        "name": plan.name,
        "content": plan.content,
        "transfer_enable": plan.transfer_enable,
        "speed_limit": plan.speed_limit,
        "device_limit": plan.device_limit,
        "show": bool(plan.show),
        "sell": bool(plan.sell),
        "renew": bool(plan.renew),
        "sort": plan.sort,
        "capacity_limit": plan.capacity_limit,
        "reset_traffic_method": plan.reset_traffic_method,
        **{period: getattr(plan, period) for period in PERIODS},
    }
