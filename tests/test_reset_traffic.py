from datetime import date, datetime, timezone

import pytest
from conftest import make_plan, make_user, set_settings

from panel.models import Plan, User
from panel.plans import (
    RESET_EXPIRE_DAY,
    RESET_EXPIRE_YEAR,
    RESET_HALF_YEAR_CYCLE,
    RESET_MONTH_FIRST_DAY,
    RESET_NEVER,
    RESET_QUARTER_CYCLE,
    RESET_YEAR_FIRST_DAY,
)
from panel.reset_traffic import get_reset_day, reset_users, should_reset
from panel.settings_manager import RESET_TRAFFIC_METHOD_KEY


def _at(year, month, day):
    return datetime(year, month, day, 12, 0, tzinfo=timezone.utc)


def test_month_first_day():
    assert should_reset(RESET_MONTH_FIRST_DAY, None, date(2026, 5, 1))
    assert not should_reset(RESET_MONTH_FIRST_DAY, None, date(2026, 5, 2))


def test_expire_day_clamps_to_month_end():
    expired_at = _at(2027, 1, 31)
    assert should_reset(RESET_EXPIRE_DAY, expired_at, date(2026, 2, 28))
    assert should_reset(RESET_EXPIRE_DAY, expired_at, date(2026, 3, 31))
    assert not should_reset(RESET_EXPIRE_DAY, expired_at, date(2026, 3, 30))


def test_year_first_day_only_on_new_year():
    expired_at = _at(2027, 6, 10)
    assert should_reset(RESET_YEAR_FIRST_DAY, expired_at, date(2027, 1, 1))
    assert not should_reset(RESET_YEAR_FIRST_DAY, expired_at, date(2026, 6, 10))


def test_expire_year_matches_anniversary():
    expired_at = _at(2028, 6, 10)
    assert should_reset(RESET_EXPIRE_YEAR, expired_at, date(2026, 6, 10))
    assert not should_reset(RESET_EXPIRE_YEAR, expired_at, date(2026, 7, 10))


def test_quarter_and_half_year_cycles():
    expired_at = _at(2027, 11, 15)
    assert should_reset(RESET_QUARTER_CYCLE, expired_at, date(2026, 2, 15))
    assert should_reset(RESET_QUARTER_CYCLE, expired_at, date(2026, 8, 15))
    assert not should_reset(RESET_QUARTER_CYCLE, expired_at, date(2026, 3, 15))
    assert should_reset(RESET_HALF_YEAR_CYCLE, expired_at, date(2026, 5, 15))
    assert not should_reset(RESET_HALF_YEAR_CYCLE, expired_at, date(2026, 2, 15))


def test_never_and_missing_expiry():
    assert not should_reset(RESET_NEVER, _at(2027, 1, 1), date(2026, 1, 1))
    assert not should_reset(RESET_EXPIRE_DAY, None, date(2026, 1, 1))


def test_reset_day_counts_days_after_today():
    plan = Plan(id=1, reset_traffic_method=RESET_MONTH_FIRST_DAY)
    user = User(plan_id=1, expired_at=_at(2027, 1, 1))
    assert get_reset_day(user, plan, date(2026, 3, 15)) == 17
    assert get_reset_day(user, plan, date(2026, 3, 31)) == 1
    # on the reset day itself the next one is a month away
    assert get_reset_day(user, plan, date(2026, 4, 1)) == 30


def test_reset_day_none_without_plan_or_for_never():
    user = User(plan_id=None, expired_at=_at(2027, 1, 1))
    assert get_reset_day(user, None, date(2026, 3, 15)) is None
    plan = Plan(id=1, reset_traffic_method=RESET_NEVER)
    assert get_reset_day(User(plan_id=1, expired_at=_at(2027, 1, 1)), plan, date(2026, 3, 15)) is None


def test_reset_day_uses_default_method_when_plan_inherits():
    plan = Plan(id=1, reset_traffic_method=None)
    user = User(plan_id=1, expired_at=_at(2027, 3, 20))
    assert get_reset_day(user, plan, date(2026, 3, 15), default_method=RESET_EXPIRE_DAY) == 5


def test_reset_users_zeroes_matching_users(db):
    monthly = make_plan(db, name="Monthly reset", reset_traffic_method=None, transfer_enable=50)
    never = make_plan(db, name="No reset", reset_traffic_method=RESET_NEVER)
    reset_me = make_user(
        db, "a@example.com", plan_id=monthly.id, u=10, d=20, transfer_enable=1, expired_at=_at(2027, 1, 1)
    )
    keep_never = make_user(db, "b@example.com", plan_id=never.id, u=10, d=20, expired_at=_at(2027, 1, 1))
    keep_expired = make_user(db, "c@example.com", plan_id=monthly.id, u=10, d=20, expired_at=_at(2026, 1, 1))

    changed = reset_users(db, date(2026, 4, 1))
    db.commit()

    assert changed == 1
    db.refresh(reset_me)
    db.refresh(keep_never)
    db.refresh(keep_expired)
    assert (reset_me.u, reset_me.d) == (0, 0)
    assert reset_me.transfer_enable == 50 * 1073741824
    assert (keep_never.u, keep_never.d) == (10, 20)
    assert (keep_expired.u, keep_expired.d) == (10, 20)


@pytest.mark.parametrize(
    "method, expired_at, hit, miss",
    [
        (RESET_YEAR_FIRST_DAY, _at(2027, 6, 10), date(2027, 1, 1), date(2027, 1, 2)),
        (RESET_EXPIRE_YEAR, _at(2028, 6, 10), date(2026, 6, 10), date(2026, 6, 11)),
        (RESET_QUARTER_CYCLE, _at(2027, 11, 15), date(2026, 8, 15), date(2026, 9, 15)),
        (RESET_HALF_YEAR_CYCLE, _at(2027, 11, 15), date(2026, 5, 15), date(2026, 2, 15)),
    ],
)
def test_reset_users_follows_global_method(db, method, expired_at, hit, miss):
    set_settings(db, {RESET_TRAFFIC_METHOD_KEY: method})
    plan = make_plan(db, reset_traffic_method=None)
    user = make_user(db, plan_id=plan.id, u=10, d=20, expired_at=expired_at)

    assert reset_users(db, miss) == 0
    assert reset_users(db, hit) == 1
    db.commit()
    db.refresh(user)
    assert (user.u, user.d) == (0, 0)


def test_reset_users_skips_users_of_deleted_plans(db):
    plan = make_plan(db, reset_traffic_method=RESET_MONTH_FIRST_DAY)
    orphan = make_user(db, plan_id=plan.id, u=10, d=20, expired_at=_at(2027, 1, 1))
    db.query(Plan).filter(Plan.id == plan.id).delete()
    db.commit()

    assert reset_users(db, date(2026, 4, 1)) == 0
    db.refresh(orphan)
    assert (orphan.u, orphan.d) == (10, 20)
