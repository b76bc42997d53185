import logging
from collections import OrderedDict
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from .helpers import GIB, add_months, as_utc, from_cents, utcnow
from .models import CommissionLog, Order, Server, Stat, StatServer, StatUser, Ticket, User

logger = logging.getLogger(__name__)

COLUMN_CHART_TYPES = ("day", "week", "month", "quarter", "half_year", "year")
UNPAID_STATUSES = (0, 2)


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _income(db: Session, start: datetime, end: datetime) -> int:
    total = (
        db.query(func.coalesce(func.sum(Order.total_amount), 0))
        .filter(Order.created_at >= start, Order.created_at < end, Order.status.notin_(UNPAID_STATUSES))
        .scalar()
    )
    return int(total or 0)


def _payout(db: Session, start: datetime, end: datetime) -> int:
    total = (
        db.query(func.coalesce(func.sum(CommissionLog.get_amount), 0))
        .filter(CommissionLog.created_at >= start, CommissionLog.created_at < end)
        .scalar()
    )
    return int(total or 0)


def override(db: Session, now: datetime | None = None) -> dict:
    now = now or utcnow()
    month_start = _month_start(now)
    last_month_start = add_months(month_start, -1)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "month_income": _income(db, month_start, now),
        "month_register_total": db.query(User)
        .filter(User.created_at >= month_start, User.created_at < now)
        .count(),
        "ticket_pending_total": db.query(Ticket).filter(Ticket.status == 0).count(),
        "commission_pending_total": db.query(Order)
        .filter(
            Order.commission_status == 0,
            Order.invite_user_id.isnot(None),
            Order.status.notin_(UNPAID_STATUSES),
            Order.commission_balance > 0,
        )
        .count(),
        "day_income": _income(db, today_start, now),
        "last_month_income": _income(db, last_month_start, month_start),
        "commission_month_payout": _payout(db, month_start, now),
        "commission_last_month_payout": _payout(db, last_month_start, month_start),
    }


def order_series(db: Session) -> list[dict]:
    rows = (
        db.query(Stat)
        .filter(Stat.record_type == "d")
        .order_by(Stat.record_at.desc())
        .limit(31)
        .all()
    )
    result = []
    for row in reversed(rows):
        label = as_utc(row.record_at).strftime("%m-%d")
        result.extend(
            [
                {"type": "Paid amount", "date": label, "value": from_cents(row.paid_total)},
                {"type": "Paid orders", "date": label, "value": row.paid_count},
                {"type": "Commission paid", "date": label, "value": from_cents(row.commission_total)},
                {"type": "Commission payouts", "date": label, "value": row.commission_count},
            ]
        )
    return result


def server_last_rank(db: Session, today: date | None = None) -> list[dict]:
    today = today or utcnow().date()
    end = _day_start(today)
    start = end - timedelta(days=1)
    total = (StatServer.u + StatServer.d).label("total")
    rows = (
        db.query(StatServer.server_id, StatServer.server_type, StatServer.u, StatServer.d, total)
        .filter(StatServer.record_at >= start, StatServer.record_at < end, StatServer.record_type == "d")
        .order_by(total.desc())
        .limit(10)
        .all()
    )
    names = {server.id: server.name for server in db.query(Server).all()}
    return [
        {
            "server_id": row.server_id,
            "server_type": row.server_type,
            "server_name": names.get(row.server_id),
            "u": row.u,
            "d": row.d,
            "total": row.total / GIB,
        }
        for row in rows
    ]


def stat_user(db: Session, user_id: int, current: int = 1, page_size: int = 10) -> tuple[list[dict], int]:
    current = max(1, int(current or 1))
    page_size = max(10, int(page_size or 10))
    query = db.query(StatUser).filter(StatUser.user_id == user_id)
    total = query.count()
    rows = (
        query.order_by(StatUser.record_at.desc())
        .offset((current - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return (
        [
            {
                "user_id": row.user_id,
                "server_rate": row.server_rate,
                "u": row.u,
                "d": row.d,
                "record_type": row.record_type,
                "record_at": as_utc(row.record_at).isoformat(),
            }
            for row in rows
        ],
        total,
    )


def online_presence(db: Session, now: datetime | None = None) -> dict:
    now = now or utcnow()
    ranges = OrderedDict(
        [
            ("current_online", now - timedelta(minutes=10)),
            ("today_online", now.replace(hour=0, minute=0, second=0, microsecond=0)),
            ("three_days_online", now - timedelta(days=3)),
            ("seven_days_online", now - timedelta(days=7)),
            ("fifteen_days_online", now - timedelta(days=15)),
            ("thirty_days_online", now - timedelta(days=30)),
        ]
    )
    base = db.query(func.count(func.distinct(StatUser.user_id))).filter((StatUser.u > 0) | (StatUser.d > 0))
    statistics = {name: int(base.filter(StatUser.updated_at >= since).scalar() or 0) for name, since in ranges.items()}
    return {"statistics": statistics, "last_updated": now.isoformat()}


def nodal_flow(db: Session, now: datetime | None = None) -> dict:
    now = now or utcnow()
    ranges = OrderedDict(
        [
            ("today", now.replace(hour=0, minute=0, second=0, microsecond=0)),
            ("week", now - timedelta(days=7)),
            ("half_month", now - timedelta(days=15)),
            ("month", now - timedelta(days=30)),
            ("quarter", now - timedelta(days=90)),
            ("half_year", now - timedelta(days=180)),
            ("year", now - timedelta(days=365)),
        ]
    )
    servers = {(server.type, server.id): server.name for server in db.query(Server).all()}
    statistics = {}
    for period, start in ranges.items():
        traffic = func.sum(StatServer.u + StatServer.d)
        rows = (
            db.query(StatServer.server_id, StatServer.server_type, traffic.label("total"))
            .filter(StatServer.record_at >= start, StatServer.record_at <= now)
            .group_by(StatServer.server_id, StatServer.server_type)
            .all()
        )
        period_stats = []
        for row in rows:
            name = servers.get((row.server_type, row.server_id))
            if name is None:
                continue
            total = int(row.total or 0)
            period_stats.append(
                {
                    "server_id": row.server_id,
                    "server_name": name,
                    "server_type": row.server_type,
                    "traffic": {
                        "bytes": total,
                        "mb": round(total / 1024 / 1024, 2),
                        "gb": round(total / GIB, 2),
                    },
                }
            )
        period_stats.sort(key=lambda item: item["traffic"]["bytes"], reverse=True)
        statistics[period] = {
            "time_range": {"start": start.isoformat(), "end": now.isoformat()},
            "total_traffic": sum(item["traffic"]["bytes"] for item in period_stats),
            "servers": period_stats,
        }

    type_counts = {}
    for server_type, _ in servers:
        type_counts[server_type] = type_counts.get(server_type, 0) + 1
    return {
        "statistics": statistics,
        "summary": {
            "total_servers": len(servers),
            "total_traffic": sum(item["total_traffic"] for item in statistics.values()),
            "server_types": type_counts,
        },
        "last_updated": now.isoformat(),
    }


def growth_rate(current: float, previous: float) -> float:
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) / previous * 100, 2)


def _daily_paid(db: Session, start: datetime, end: datetime) -> dict[date, int]:
    out: dict[date, int] = {}
    rows = (
        db.query(Order.created_at, Order.total_amount)
        .filter(Order.status == 3, Order.created_at >= start, Order.created_at <= end)
        .all()
    )
    for created_at, amount in rows:
        day = as_utc(created_at).date()
        out[day] = out.get(day, 0) + int(amount or 0)
    return out


def _minus_year(value: datetime) -> datetime:
    return add_months(value, -12)


def finances(db: Session, start: datetime | None = None, end: datetime | None = None) -> dict:
    end = as_utc(end) or utcnow()
    start = as_utc(start) or _month_start(end)
    length = end - start
    prev_start, prev_end = start - length, end - length
    year_start, year_end = _minus_year(start), _minus_year(end)

    current = _daily_paid(db, start, end)
    previous = _daily_paid(db, prev_start, prev_end)
    last_year = _daily_paid(db, year_start, year_end)

    chart = []
    cursor = start
    while cursor <= end:
        chart.append(
            {
                "date": cursor.date().isoformat(),
                "current": from_cents(current.get(cursor.date(), 0)),
                "previous": from_cents(previous.get((cursor - length).date(), 0)),
                "lastYear": from_cents(last_year.get(_minus_year(cursor).date(), 0)),
            }
        )
        cursor += timedelta(days=1)

    current_total = from_cents(sum(current.values()))
    previous_total = from_cents(sum(previous.values()))
    last_year_total = from_cents(sum(last_year.values()))
    return {
        "current_period": {
            "start_time": start.date().isoformat(),
            "end_time": end.date().isoformat(),
            "total": current_total,
        },
        "previous_period": {
            "start_time": prev_start.date().isoformat(),
            "end_time": prev_end.date().isoformat(),
            "total": previous_total,
        },
        "last_year_period": {
            "start_time": year_start.date().isoformat(),
            "end_time": year_end.date().isoformat(),
            "total": last_year_total,
        },
        "growth_rate": {
            "mom": growth_rate(current_total, previous_total),
            "yoy": growth_rate(current_total, last_year_total),
        },
        "chart_data": chart,
    }


def bucket_label(value: datetime, chart_type: str) -> str:
    if chart_type == "day":
        return value.strftime("%m-%d")
    if chart_type == "week":
        year, week, _ = value.isocalendar()
        return f"{year}-W{week:02d}"
    if chart_type == "month":
        return value.strftime("%Y-%m")
    if chart_type == "quarter":
        return f"{value.year} Q{(value.month - 1) // 3 + 1}"
    if chart_type == "half_year":
        return f"{value.year} H{1 if value.month <= 6 else 2}"
    return str(value.year)


def column_chart(db: Session, chart_type: str, start: datetime, end: datetime) -> dict:
    if chart_type not in COLUMN_CHART_TYPES:
        raise ValueError(f"unsupported chart type {chart_type!r}")
    start, end = as_utc(start), as_utc(end)
    rows = (
        db.query(Order.created_at, Order.type, Order.total_amount)
        .filter(Order.status == 3, Order.type.in_((1, 2)), Order.created_at >= start, Order.created_at <= end)
        .order_by(Order.created_at.asc())
        .all()
    )
    buckets: OrderedDict[str, dict] = OrderedDict()
    for created_at, order_type, amount in rows:
        label = bucket_label(as_utc(created_at), chart_type)
        bucket = buckets.setdefault(label, {"new_order": 0, "new_amount": 0, "renew_order": 0, "renew_amount": 0})
        prefix = "new" if order_type == 1 else "renew"
        bucket[f"{prefix}_order"] += 1
        bucket[f"{prefix}_amount"] += int(amount or 0)

    chart_data = []
    renewal_rate = []
    for label, stats in buckets.items():
        chart_data.extend(
            [
                {"type": "New", "date": label, "stack": "orders", "value": stats["new_order"]},
                {"type": "New amount", "date": label, "stack": "amount", "value": from_cents(stats["new_amount"])},
                {"type": "Renewal", "date": label, "stack": "orders", "value": stats["renew_order"]},
                {
                    "type": "Renewal amount",
                    "date": label,
                    "stack": "amount",
                    "value": from_cents(stats["renew_amount"]),
                },
            ]
        )
        rate = round(stats["renew_order"] / stats["new_order"] * 100, 2) if stats["new_order"] else 0
        renewal_rate.append({"type": "Renewal rate", "date": label, "stack": "rate", "value": rate})

    time_range = {"start_time": start.date().isoformat(), "end_time": end.date().isoformat()}
    return {
        "chart_data": chart_data,
        "renewal_rate": renewal_rate,
        "time_range": time_range,
    }


def record_daily_stats(db: Session, day: date | None = None) -> Stat:
    day = day or (utcnow().date() - timedelta(days=1))
    start = _day_start(day)
    end = start + timedelta(days=1)

    orders = db.query(Order).filter(
        Order.created_at >= start, Order.created_at < end, Order.status.notin_(UNPAID_STATUSES)
    )
    paid = db.query(Order).filter(
        Order.paid_at >= start, Order.paid_at < end, Order.status.notin_(UNPAID_STATUSES)
    )
    commissions = db.query(CommissionLog).filter(CommissionLog.created_at >= start, CommissionLog.created_at < end)
    traffic = (
        db.query(func.coalesce(func.sum(StatServer.u + StatServer.d), 0))
        .filter(StatServer.record_at >= start, StatServer.record_at < end)
        .scalar()
    )

    row = db.query(Stat).filter(Stat.record_at == start, Stat.record_type == "d").first()
    if not row:
        row = Stat(record_at=start, record_type="d")
        db.add(row)
    row.order_count = orders.count()
    row.order_total = sum(order.total_amount or 0 for order in orders.all())
    row.paid_count = paid.count()
    row.paid_total = sum(order.total_amount or 0 for order in paid.all())
    row.commission_count = commissions.count()
    row.commission_total = sum(log.get_amount or 0 for log in commissions.all())
    row.register_count = db.query(User).filter(User.created_at >= start, User.created_at < end).count()
    row.invite_count = (
        db.query(User)
        .filter(User.created_at >= start, User.created_at < end, User.invite_user_id.isnot(None))
        .count()
    )
    row.transfer_used_total = int(traffic or 0)
    db.flush()
    logger.info("daily stats recorded for %s", day.isoformat())
    return row
