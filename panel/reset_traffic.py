import calendar
import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy.orm import Session

from .db import SessionLocal
from .helpers import as_utc, utcnow
from .models import Plan, User
from .plans import (
    RESET_EXPIRE_DAY,
    RESET_EXPIRE_YEAR,
    RESET_HALF_YEAR_CYCLE,
    RESET_MONTH_FIRST_DAY,
    RESET_NEVER,
    RESET_QUARTER_CYCLE,
    RESET_YEAR_FIRST_DAY,
    plan_transfer_bytes,
)
from .settings_manager import RESET_TRAFFIC_METHOD_KEY, SettingsManager

logger = logging.getLogger(__name__)

# far enough ahead to reach the next 29 February
_LOOKAHEAD_DAYS = 366 * 4 + 1


def _cycle_match(expired_at: datetime, today: date, step: int) -> bool:
    if today.day != expired_at.day:
        return False
    for i in range(12 // step):
        month = expired_at.month - i * step
        if month <= 0:
            month += 12
        if today.month == month:
            return True
    return False


def should_reset(method: int | None, expired_at: datetime | None, today: date) -> bool:
    if method == RESET_MONTH_FIRST_DAY:
        return today.day == 1
    if method == RESET_YEAR_FIRST_DAY:
        return today.month == 1 and today.day == 1
    if method == RESET_NEVER or method is None:
        return False

    expired_at = as_utc(expired_at)
    if expired_at is None:
        return False
    if method == RESET_EXPIRE_DAY:
        last_day = calendar.monthrange(today.year, today.month)[1]
        return expired_at.day == today.day or (today.day == last_day and expired_at.day >= last_day)
    if method == RESET_EXPIRE_YEAR:
        return (expired_at.month, expired_at.day) == (today.month, today.day)
    if method == RESET_QUARTER_CYCLE:
        return _cycle_match(expired_at, today, 3)
    if method == RESET_HALF_YEAR_CYCLE:
        return _cycle_match(expired_at, today, 6)
    return False


def effective_method(plan: Plan | None, default_method: int) -> int:
    if plan is None or plan.reset_traffic_method is None:
        return default_method
    return plan.reset_traffic_method


def get_reset_day(user: User, plan: Plan | None, today: date | None = None, default_method: int = 0) -> int | None:
    """Days until the next reset after today, or None when traffic is never reset."""
    if plan is None or user.plan_id is None or as_utc(user.expired_at) is None:
        return None
    method = effective_method(plan, default_method)
    if method == RESET_NEVER:
        return None
    today = today or utcnow().date()
    for offset in range(1, _LOOKAHEAD_DAYS + 1):
        if should_reset(method, user.expired_at, today + timedelta(days=offset)):
            return offset
    return None


def reset_users(db: Session, today: date | None = None) -> int:
    today = today or utcnow().date()
    now = datetime.combine(today, time.min, tzinfo=timezone.utc)
    default_method = SettingsManager(db).get_int(RESET_TRAFFIC_METHOD_KEY, min_value=0, max_value=6)

    plans = {plan.id: plan for plan in db.query(Plan).all()}
    grouped: dict[int, list[int]] = defaultdict(list)
    for plan in plans.values():
        grouped[effective_method(plan, default_method)].append(plan.id)

    changed = 0
    for method, plan_ids in grouped.items():
        if method == RESET_NEVER:
            continue
        users = (
            db.query(User)
            .filter(
                User.plan_id.in_(plan_ids),
                User.expired_at.isnot(None),
                User.expired_at > now,
            )
            .all()
        )
        for user in users:
            if not should_reset(method, user.expired_at, today):
                continue
            plan = plans.get(user.plan_id)
            if plan is None:
                continue
            user.u = 0
            user.d = 0
            user.transfer_enable = plan_transfer_bytes(plan)
            changed += 1
    db.flush()
    logger.info("traffic reset for %s users on %s", changed, today.isoformat())
    return changed


def run(today: date | None = None) -> int:
    with SessionLocal() as db:
        changed = reset_users(db, today)
        db.commit()
    return changed


if __name__ == "__main__":
    total = run()
    print(f"reset_traffic_users={total}")
