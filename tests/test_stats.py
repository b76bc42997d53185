from datetime import date, datetime, timezone

import pytest
from conftest import make_plan, make_user

from panel import stats
from panel.models import CommissionLog, Order, Stat

DAY = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _order(db, user, trade_no, amount, status=3, order_type=1, created_at=DAY, **fields):
    order = Order(
        user_id=user.id,
        trade_no=trade_no,
        period="month_price",
        total_amount=amount,
        status=status,
        type=order_type,
        created_at=created_at,
        paid_at=created_at if status == 3 else None,
        **fields,
    )
    db.add(order)
    db.commit()
    return order


def test_column_chart_rejects_unknown_type(db):
    with pytest.raises(ValueError):
        stats.column_chart(db, "fortnight", DAY, DAY)


def test_column_chart_counts_new_and_renew_orders(db):
    user = make_user(db)
    _order(db, user, "T-1", 1000)
    _order(db, user, "T-2", 2500, order_type=2)
    _order(db, user, "T-3", 700, order_type=3)
    _order(db, user, "T-4", 900, status=0)

    result = stats.column_chart(
        db, "month", datetime(2026, 3, 1, tzinfo=timezone.utc), datetime(2026, 3, 31, tzinfo=timezone.utc)
    )
    values = {item["type"]: item["value"] for item in result["chart_data"]}
    assert values == {"New": 1, "New amount": 10.0, "Renewal": 1, "Renewal amount": 25.0}
    assert result["renewal_rate"] == [{"type": "Renewal rate", "date": "2026-03", "stack": "rate", "value": 100.0}]
    assert result["time_range"] == {"start_time": "2026-03-01", "end_time": "2026-03-31"}


def test_bucket_labels():
    assert stats.bucket_label(DAY, "day") == "03-10"
    assert stats.bucket_label(DAY, "quarter") == "2026 Q1"
    assert stats.bucket_label(DAY, "half_year") == "2026 H1"
    assert stats.bucket_label(DAY, "year") == "2026"


def test_record_daily_stats_overwrites_same_day(db):
    inviter = make_user(db, "inviter@example.com", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    user = make_user(db, invite_user_id=inviter.id, created_at=DAY)
    _order(db, user, "T-1", 1000)
    _order(db, user, "T-2", 500, status=1)
    _order(db, user, "T-3", 900, status=2)
    db.add(
        CommissionLog(
            invite_user_id=inviter.id, user_id=user.id, trade_no="T-1", order_amount=1000, get_amount=100, created_at=DAY
        )
    )
    db.commit()

    row = stats.record_daily_stats(db, date(2026, 3, 10))
    db.commit()
    assert (row.order_count, row.order_total) == (2, 1500)
    assert (row.paid_count, row.paid_total) == (1, 1000)
    assert (row.commission_count, row.commission_total) == (1, 100)
    assert (row.register_count, row.invite_count) == (1, 1)

    _order(db, user, "T-5", 300)
    stats.record_daily_stats(db, date(2026, 3, 10))
    db.commit()
    rows = db.query(Stat).all()
    assert len(rows) == 1
    assert rows[0].order_count == 3


def test_finances_compare_with_previous_period(db):
    user = make_user(db)
    _order(db, user, "T-1", 2000)
    _order(db, user, "T-2", 1000, created_at=datetime(2026, 3, 1, 8, tzinfo=timezone.utc))

    result = stats.finances(
        db, datetime(2026, 3, 5, tzinfo=timezone.utc), datetime(2026, 3, 14, tzinfo=timezone.utc)
    )
    assert result["current_period"]["total"] == 20.0
    assert result["previous_period"]["total"] == 10.0
    assert result["growth_rate"]["mom"] == 100.0
    assert result["growth_rate"]["yoy"] == 100
    assert len(result["chart_data"]) == 10
    assert {"date": "2026-03-10", "current": 20.0, "previous": 10.0, "lastYear": 0.0} in result["chart_data"]


def test_growth_rate_edges():
    assert stats.growth_rate(0, 0) == 0
    assert stats.growth_rate(5, 0) == 100
    assert stats.growth_rate(5, 10) == -50.0


def test_override_counts_month_income_and_pending_commission(db):
    plan = make_plan(db)
    inviter = make_user(db, "inviter@example.com")
    user = make_user(db, invite_user_id=inviter.id)
    _order(db, user, "T-1", 1200, plan_id=plan.id, invite_user_id=inviter.id, commission_balance=120)
    _order(db, user, "T-2", 800, status=0)

    now = datetime(2026, 3, 20, tzinfo=timezone.utc)
    result = stats.override(db, now)
    assert result["month_income"] == 1200
    assert result["day_income"] == 0
    assert result["commission_pending_total"] == 1
    assert result["last_month_income"] == 0
