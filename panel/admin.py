import logging
from datetime import datetime, timezone

import psutil
from flask import jsonify, request
from sqlalchemy import func

from . import commission
from . import orders as order_service
from . import stats
from .auth import hash_password
from .coupons import COUPON_AMOUNT, COUPON_PERCENT, serialize_coupon
from .db import SessionLocal
from .errors import PanelError
from .helpers import guid, iso, random_code, utcnow
from .models import (
    AuthSession,
    Coupon,
    Order,
    Payment,
    Plan,
    RedeemCode,
    Server,
    ServerGroup,
    ServerRule,
    User,
)
from .payments import DRIVERS, PaymentService, serialize_payment
from .plans import PERIODS, RESET_METHODS, RESET_PRICE, plan_transfer_bytes, serialize_plan
from .servers import SERVER_TYPES, serialize_rule, serialize_server
from .settings_manager import SettingsManager, normalize_setting_key

logger = logging.getLogger(__name__)

MAX_GENERATE_COUNT = 500


def _ok(data=None, **extra):
    return jsonify({"ok": True, "data": data, **extra})


def _fail(message: str, status: int = 400):
    return jsonify({"ok": False, "error": message}), status


def _body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _page_args() -> tuple[int, int]:
    current = max(1, request.args.get("current", 1, type=int) or 1)
    page_size = min(200, max(10, request.args.get("pageSize", 10, type=int) or 10))
    return current, page_size


def _opt_int(body: dict, key: str, *, min_value: int | None = None, max_value: int | None = None):
    raw = body.get(key)
    if raw in (None, ""):
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise PanelError(f"{key} must be an integer") from exc
    if min_value is not None and value < min_value:
        raise PanelError(f"{key} must be >= {min_value}")
    if max_value is not None and value > max_value:
        raise PanelError(f"{key} must be <= {max_value}")
    return value


def _req_int(body: dict, key: str, **bounds) -> int:
    value = _opt_int(body, key, **bounds)
    if value is None:
        raise PanelError(f"{key} is required")
    return value


def _req_str(body: dict, key: str) -> str:
    value = str(body.get(key) or "").strip()
    if not value:
        raise PanelError(f"{key} is required")
    return value


def parse_datetime(value, field: str = "time") -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) or str(value).isdigit():
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise PanelError(f"{field} must be a unix timestamp or ISO datetime") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _int_list(value, field: str) -> list[int]:
    if value in (None, ""):
        return []
    if isinstance(value, str):
        value = [item for item in value.split(",") if item.strip()]
    if not isinstance(value, (list, tuple)):
        raise PanelError(f"{field} must be a list")
    try:
        return [int(item) for item in value]
    except (TypeError, ValueError) as exc:
        raise PanelError(f"{field} must contain integers") from exc


def system_stats() -> dict:
    vm = psutil.virtual_memory()
    du = psutil.disk_usage("/")
    return {
        "cpu_pct": psutil.cpu_percent(interval=0.05),
        "ram_used_pct": round(vm.percent, 1),
        "disk_used_pct": round(du.percent, 1),
        "uptime_s": int(utcnow().timestamp() - psutil.boot_time()),
    }


def serialize_admin_user(user: User, plan: Plan | None = None, inviter: User | None = None) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "uuid": user.uuid,
        "token": user.token,
        "plan_id": user.plan_id,
        "plan_name": plan.name if plan else None,
        "group_id": user.group_id,
        "transfer_enable": user.transfer_enable,
        "u": user.u,
        "d": user.d,
        "expired_at": iso(user.expired_at),
        "balance": user.balance,
        "commission_balance": user.commission_balance,
        "commission_type": user.commission_type,
        "commission_rate": user.commission_rate,
        "discount": user.discount,
        "speed_limit": user.speed_limit,
        "device_limit": user.device_limit,
        "banned": bool(user.banned),
        "is_admin": bool(user.is_admin),
        "is_staff": bool(user.is_staff),
        "invite_user_id": user.invite_user_id,
        "invite_user_email": inviter.email if inviter else None,
        "telegram_id": user.telegram_id,
        "remarks": user.remarks,
        "last_login_at": iso(user.last_login_at),
        "created_at": iso(user.created_at),
    }


def _apply_sort(db, model, ids) -> None:
    ids = _int_list(ids, "ids")
    rows = {row.id: row for row in db.query(model).filter(model.id.in_(ids)).all()} if ids else {}
    missing = [item for item in ids if item not in rows]
    if missing:
        raise PanelError(f"Unknown ids: {', '.join(str(item) for item in missing)}")
    for index, item in enumerate(ids, start=1):
        rows[item].sort = index


def register_admin_routes(app, auth_context, admin_path: str, notifier) -> None:
    prefix = f"/api/v1/{admin_path}"

    # stat

    @app.get(f"{prefix}/stat/getOverride")
    def admin_stat_override():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            return _ok(stats.override(db))

    @app.get(f"{prefix}/stat/getOrder")
    def admin_stat_order():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            return _ok(stats.order_series(db))

    @app.get(f"{prefix}/stat/getServerLastRank")
    def admin_stat_server_rank():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            return _ok(stats.server_last_rank(db))

    @app.get(f"{prefix}/stat/getStatUser")
    def admin_stat_user():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        user_id = request.args.get("user_id", type=int)
        if not user_id:
            return _fail("user_id is required")
        current, page_size = _page_args()
        with SessionLocal() as db:
            rows, total = stats.stat_user(db, user_id, current, page_size)
            return _ok(rows, total=total)

    @app.get(f"{prefix}/stat/getOnlinePresence")
    def admin_stat_online():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            return _ok(stats.online_presence(db))

    @app.get(f"{prefix}/stat/getNodalFlow")
    def admin_stat_nodal_flow():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            return _ok(stats.nodal_flow(db))

    @app.get(f"{prefix}/stat/getFinances")
    def admin_stat_finances():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        start = parse_datetime(request.args.get("start_time"), "start_time")
        end = parse_datetime(request.args.get("end_time"), "end_time")
        with SessionLocal() as db:
            return _ok(stats.finances(db, start, end))

    @app.get(f"{prefix}/stat/getColumnChart")
    def admin_stat_column_chart():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        chart_type = request.args.get("type", "day")
        start = parse_datetime(request.args.get("start_time"), "start_time")
        end = parse_datetime(request.args.get("end_time"), "end_time")
        if not start or not end or start >= end:
            return _fail("start_time and end_time are required and start_time must be before end_time")
        with SessionLocal() as db:
            try:
                return _ok(stats.column_chart(db, chart_type, start, end))
            except ValueError as exc:
                return _fail(str(exc))

    @app.get(f"{prefix}/system/getSystemStatus")
    def admin_system_status():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        return _ok(system_stats())

    # config

    @app.get(f"{prefix}/config/fetch")
    def admin_config_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            return _ok(SettingsManager(db).effective())

    @app.post(f"{prefix}/config/save")
    def admin_config_save():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        if not body:
            return _fail("Nothing to save")
        try:
            keys = {normalize_setting_key(key): value for key, value in body.items()}
        except ValueError as exc:
            return _fail(str(exc))
        with SessionLocal() as db:
            manager = SettingsManager(db)
            for key, value in keys.items():
                if value is None:
                    manager.delete_setting(key)
                else:
                    manager.set_setting(key, value)
            db.commit()
        logger.info("settings updated: %s", ", ".join(sorted(keys)))
        return _ok(True)

    # plans

    @app.get(f"{prefix}/plan/fetch")
    def admin_plan_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            counts = dict(
                db.query(User.plan_id, func.count(User.id))
                .filter(User.plan_id.isnot(None))
                .group_by(User.plan_id)
                .all()
            )
            plans = db.query(Plan).order_by(Plan.sort.asc(), Plan.id.asc()).all()
            return _ok([{**serialize_plan(plan), "count": counts.get(plan.id, 0)} for plan in plans])

    @app.post(f"{prefix}/plan/save")
    def admin_plan_save():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            plan_id = _opt_int(body, "id")
            if plan_id:
                plan = db.query(Plan).filter(Plan.id == plan_id).first()
                if not plan:
                    return _fail("Plan not found", 404)
            else:
                plan = Plan()
                db.add(plan)

            group_id = _req_int(body, "group_id")
            if not db.query(ServerGroup.id).filter(ServerGroup.id == group_id).first():
                return _fail("Server group not found", 404)
            plan.group_id = group_id
            plan.name = _req_str(body, "name")
            plan.content = body.get("content")
            plan.transfer_enable = _req_int(body, "transfer_enable", min_value=0)
            plan.speed_limit = _opt_int(body, "speed_limit", min_value=0)
            plan.device_limit = _opt_int(body, "device_limit", min_value=0)
            plan.capacity_limit = _opt_int(body, "capacity_limit", min_value=0)
            plan.reset_traffic_method = _opt_int(
                body, "reset_traffic_method", min_value=RESET_METHODS.start, max_value=RESET_METHODS.stop - 1
            )
            plan.show = bool(body.get("show", plan.show or False))
            plan.sell = bool(body.get("sell", plan.sell or False))
            plan.renew = bool(body.get("renew", True if plan.renew is None else plan.renew))
            for field in PERIODS:
                setattr(plan, field, _opt_int(body, field, min_value=0))
            db.flush()

            if plan_id and body.get("force_update"):
                (
                    db.query(User)
                    .filter(User.plan_id == plan.id)
                    .update(
                        {
                            User.group_id: plan.group_id,
                            User.transfer_enable: plan_transfer_bytes(plan),
                            User.speed_limit: plan.speed_limit,
                            User.device_limit: plan.device_limit,
                        },
                        synchronize_session=False,
                    )
                )
            db.commit()
            return _ok(serialize_plan(plan))

    @app.post(f"{prefix}/plan/drop")
    def admin_plan_drop():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            plan = db.query(Plan).filter(Plan.id == _req_int(body, "id")).first()
            if not plan:
                return _fail("Plan not found", 404)
            if db.query(Order.id).filter(Order.plan_id == plan.id).first():
                return _fail("This subscription has orders and cannot be deleted")
            if db.query(User.id).filter(User.plan_id == plan.id).first():
                return _fail("This subscription is in use and cannot be deleted")
            db.delete(plan)
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/plan/sort")
    def admin_plan_sort():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            _apply_sort(db, Plan, _body().get("ids"))
            db.commit()
        return _ok(True)

    # users

    @app.get(f"{prefix}/user/fetch")
    def admin_user_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        current, page_size = _page_args()
        email = request.args.get("email", "").strip()
        with SessionLocal() as db:
            query = db.query(User)
            if email:
                query = query.filter(User.email.like(f"%{email}%"))
            plan_id = request.args.get("plan_id", type=int)
            if plan_id:
                query = query.filter(User.plan_id == plan_id)
            total = query.count()
            users = query.order_by(User.id.desc()).offset((current - 1) * page_size).limit(page_size).all()
            plans = {plan.id: plan for plan in db.query(Plan).all()}
            inviter_ids = {user.invite_user_id for user in users if user.invite_user_id}
            inviters = (
                {row.id: row for row in db.query(User).filter(User.id.in_(list(inviter_ids))).all()}
                if inviter_ids
                else {}
            )
            return _ok(
                [
                    serialize_admin_user(user, plans.get(user.plan_id), inviters.get(user.invite_user_id))
                    for user in users
                ],
                total=total,
            )

    @app.get(f"{prefix}/user/getUserInfoById")
    def admin_user_info():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            user = db.query(User).filter(User.id == request.args.get("id", type=int)).first()
            if not user:
                return _fail("The user does not exist", 404)
            plan = db.query(Plan).filter(Plan.id == user.plan_id).first() if user.plan_id else None
            inviter = db.query(User).filter(User.id == user.invite_user_id).first() if user.invite_user_id else None
            return _ok(serialize_admin_user(user, plan, inviter))

    @app.post(f"{prefix}/user/update")
    def admin_user_update():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            user = db.query(User).filter(User.id == _req_int(body, "id")).first()
            if not user:
                return _fail("The user does not exist", 404)

            if "email" in body:
                email = _req_str(body, "email").lower()
                if email != user.email and db.query(User.id).filter(User.email == email).first():
                    return _fail("Email already exists", 409)
                user.email = email
            if body.get("password"):
                password = str(body["password"])
                if len(password) < 8:
                    return _fail("Password must be at least 8 characters")
                user.password = hash_password(password)
                user.password_algo = None
                user.password_salt = None
            if "plan_id" in body:
                plan_id = _opt_int(body, "plan_id")
                if plan_id:
                    plan = db.query(Plan).filter(Plan.id == plan_id).first()
                    if not plan:
                        return _fail("Subscription plan does not exist", 404)
                    user.plan_id = plan.id
                    user.group_id = plan.group_id
                else:
                    user.plan_id = None
                    user.group_id = None
            if "expired_at" in body:
                user.expired_at = parse_datetime(body.get("expired_at"), "expired_at")
            if "invite_user_email" in body:
                invite_email = str(body.get("invite_user_email") or "").strip().lower()
                if invite_email:
                    inviter = db.query(User).filter(User.email == invite_email).first()
                    if not inviter or inviter.id == user.id:
                        return _fail("Inviter does not exist")
                    user.invite_user_id = inviter.id
                else:
                    user.invite_user_id = None

            for field in ("transfer_enable", "u", "d", "balance", "commission_balance"):
                if field in body:
                    setattr(user, field, _req_int(body, field, min_value=0))
            for field in ("speed_limit", "device_limit", "discount", "commission_rate"):
                if field in body:
                    setattr(user, field, _opt_int(body, field, min_value=0))
            if "commission_type" in body:
                user.commission_type = _req_int(body, "commission_type", min_value=0, max_value=2)
            for field in ("is_admin", "is_staff", "banned"):
                if field in body:
                    setattr(user, field, bool(body[field]))
            if "remarks" in body:
                user.remarks = body.get("remarks") or None
            if user.banned:
                db.query(AuthSession).filter(AuthSession.user_id == user.id).delete()
            db.commit()
            return _ok(serialize_admin_user(user))

    @app.post(f"{prefix}/user/resetTraffic")
    def admin_user_reset_traffic():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            user = db.query(User).filter(User.id == _req_int(_body(), "id")).first()
            if not user:
                return _fail("The user does not exist", 404)
            user.u = 0
            user.d = 0
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/user/resetSecret")
    def admin_user_reset_secret():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            user = db.query(User).filter(User.id == _req_int(_body(), "id")).first()
            if not user:
                return _fail("The user does not exist", 404)
            user.uuid = guid(True)
            user.token = guid()
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/user/ban")
    def admin_user_ban():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            user = db.query(User).filter(User.id == _req_int(body, "id")).first()
            if not user:
                return _fail("The user does not exist", 404)
            user.banned = bool(body.get("banned", True))
            if user.banned:
                db.query(AuthSession).filter(AuthSession.user_id == user.id).delete()
            db.commit()
        return _ok(True)

    # orders

    def _order_by_trade_no(db, trade_no) -> Order:
        order = db.query(Order).filter(Order.trade_no == str(trade_no or "")).first() if trade_no else None
        if not order:
            raise PanelError("Order does not exist", 404)
        return order

    @app.get(f"{prefix}/order/fetch")
    def admin_order_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        current, page_size = _page_args()
        with SessionLocal() as db:
            query = db.query(Order)
            status = request.args.get("status", type=int)
            if status is not None:
                query = query.filter(Order.status == status)
            commission_status = request.args.get("commission_status", type=int)
            if commission_status is not None:
                query = query.filter(Order.commission_status == commission_status, Order.commission_balance > 0)
            if request.args.get("trade_no"):
                query = query.filter(Order.trade_no == request.args["trade_no"])
            user_id = request.args.get("user_id", type=int)
            if user_id:
                query = query.filter(Order.user_id == user_id)
            total = query.count()
            rows = query.order_by(Order.id.desc()).offset((current - 1) * page_size).limit(page_size).all()
            plans = {plan.id: plan for plan in db.query(Plan).all()}
            emails = dict(db.query(User.id, User.email).filter(User.id.in_([row.user_id for row in rows])).all())
            data = []
            for row in rows:
                item = order_service.serialize_order(row)
                item["user_id"] = row.user_id
                item["email"] = emails.get(row.user_id)
                item["plan_name"] = plans[row.plan_id].name if row.plan_id in plans else None
                data.append(item)
            return _ok(data, total=total)

    @app.get(f"{prefix}/order/detail")
    def admin_order_detail():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            order = _order_by_trade_no(db, request.args.get("trade_no"))
            plan = db.query(Plan).filter(Plan.id == order.plan_id).first() if order.plan_id else None
            data = order_service.serialize_order(order, plan)
            data["user_id"] = order.user_id
            data["invite_user_id"] = order.invite_user_id
            data["callback_no"] = order.callback_no
            return _ok(data)

    @app.post(f"{prefix}/order/paid")
    def admin_order_paid():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            order = _order_by_trade_no(db, _body().get("trade_no"))
            if order.status != order_service.STATUS_PENDING:
                return _fail("Only pending orders can be marked as paid")
            order_service.OrderService(db, order).paid("manual_operation")
            db.commit()
            notifier.notify(db, order)
        return _ok(True)

    @app.post(f"{prefix}/order/cancel")
    def admin_order_cancel():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            order = _order_by_trade_no(db, _body().get("trade_no"))
            order_service.OrderService(db, order).cancel()
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/order/commission/approve")
    def admin_order_commission_approve():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            order = _order_by_trade_no(db, _body().get("trade_no"))
            paid = commission.approve(db, order)
            db.commit()
        return _ok(paid)

    @app.post(f"{prefix}/order/commission/reject")
    def admin_order_commission_reject():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            order = _order_by_trade_no(db, _body().get("trade_no"))
            commission.reject(db, order)
            db.commit()
        return _ok(True)

    # coupons

    @app.get(f"{prefix}/coupon/fetch")
    def admin_coupon_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        current, page_size = _page_args()
        with SessionLocal() as db:
            query = db.query(Coupon)
            total = query.count()
            rows = query.order_by(Coupon.id.desc()).offset((current - 1) * page_size).limit(page_size).all()
            return _ok([serialize_coupon(row) for row in rows], total=total)

    def _fill_coupon(coupon: Coupon, body: dict) -> None:
        coupon.name = _req_str(body, "name")
        coupon.type = _req_int(body, "type", min_value=COUPON_AMOUNT, max_value=COUPON_PERCENT)
        coupon.value = _req_int(body, "value", min_value=1)
        if coupon.type == COUPON_PERCENT and coupon.value > 100:
            raise PanelError("Percentage coupons cannot exceed 100")
        coupon.show = bool(body.get("show", coupon.show or False))
        coupon.limit_use = _opt_int(body, "limit_use", min_value=0)
        coupon.limit_use_with_user = _opt_int(body, "limit_use_with_user", min_value=0)
        coupon.limit_plan_ids = _int_list(body.get("limit_plan_ids"), "limit_plan_ids") or None
        periods = body.get("limit_period") or None
        if periods is not None:
            if not isinstance(periods, list) or any(item not in PERIODS for item in periods):
                raise PanelError("limit_period contains an unknown period")
        coupon.limit_period = periods
        coupon.started_at = parse_datetime(body.get("started_at"), "started_at")
        coupon.ended_at = parse_datetime(body.get("ended_at"), "ended_at")
        if not coupon.started_at or not coupon.ended_at or coupon.started_at >= coupon.ended_at:
            raise PanelError("started_at and ended_at are required and started_at must be before ended_at")

    @app.post(f"{prefix}/coupon/generate")
    def admin_coupon_generate():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            coupon_id = _opt_int(body, "id")
            if coupon_id:
                coupon = db.query(Coupon).filter(Coupon.id == coupon_id).first()
                if not coupon:
                    return _fail("Coupon does not exist", 404)
                _fill_coupon(coupon, body)
                code = str(body.get("code") or "").strip()
                if code and code != coupon.code:
                    if db.query(Coupon.id).filter(Coupon.code == code).first():
                        return _fail("Coupon code already exists", 409)
                    coupon.code = code
                db.commit()
                return _ok(serialize_coupon(coupon))

            count = _opt_int(body, "generate_count", min_value=1, max_value=MAX_GENERATE_COUNT)
            if count:
                codes = []
                for _ in range(count):
                    coupon = Coupon(code=random_code(8))
                    _fill_coupon(coupon, body)
                    db.add(coupon)
                    codes.append(coupon.code)
                db.commit()
                return _ok(codes)

            code = str(body.get("code") or "").strip() or random_code(8)
            if db.query(Coupon.id).filter(Coupon.code == code).first():
                return _fail("Coupon code already exists", 409)
            coupon = Coupon(code=code)
            _fill_coupon(coupon, body)
            db.add(coupon)
            db.commit()
            return _ok(serialize_coupon(coupon))

    @app.post(f"{prefix}/coupon/show")
    def admin_coupon_show():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            coupon = db.query(Coupon).filter(Coupon.id == _req_int(_body(), "id")).first()
            if not coupon:
                return _fail("Coupon does not exist", 404)
            coupon.show = not coupon.show
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/coupon/drop")
    def admin_coupon_drop():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            coupon = db.query(Coupon).filter(Coupon.id == _req_int(_body(), "id")).first()
            if not coupon:
                return _fail("Coupon does not exist", 404)
            db.delete(coupon)
            db.commit()
        return _ok(True)

    # redeem codes

    @app.get(f"{prefix}/redeem/fetch")
    def admin_redeem_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        current, page_size = _page_args()
        with SessionLocal() as db:
            query = db.query(RedeemCode)
            status = request.args.get("status", type=int)
            if status is not None:
                query = query.filter(RedeemCode.status == status)
            total = query.count()
            rows = query.order_by(RedeemCode.id.desc()).offset((current - 1) * page_size).limit(page_size).all()
            return _ok(
                [
                    {
                        "id": row.id,
                        "code": row.code,
                        "plan_id": row.plan_id,
                        "period": row.period,
                        "status": row.status,
                        "used_user_id": row.used_user_id,
                        "used_at": iso(row.used_at),
                        "created_at": iso(row.created_at),
                    }
                    for row in rows
                ],
                total=total,
            )

    @app.post(f"{prefix}/redeem/generate")
    def admin_redeem_generate():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            plan = db.query(Plan).filter(Plan.id == _req_int(body, "plan_id")).first()
            if not plan:
                return _fail("Subscription plan does not exist", 404)
            period = _req_str(body, "period")
            if period not in PERIODS or period == RESET_PRICE:
                return _fail("Unknown period")
            count = _opt_int(body, "count", min_value=1, max_value=MAX_GENERATE_COUNT) or 1
            codes = []
            for _ in range(count):
                code = random_code(16)
                db.add(RedeemCode(code=code, plan_id=plan.id, period=period))
                codes.append(code)
            db.commit()
        logger.info("generated %s redeem codes for plan %s", len(codes), plan.id)
        return _ok(codes)

    @app.post(f"{prefix}/redeem/drop")
    def admin_redeem_drop():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            row = db.query(RedeemCode).filter(RedeemCode.id == _req_int(_body(), "id")).first()
            if not row:
                return _fail("Redeem code does not exist", 404)
            db.delete(row)
            db.commit()
        return _ok(True)

    # payments

    @app.get(f"{prefix}/payment/fetch")
    def admin_payment_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            rows = db.query(Payment).order_by(Payment.sort.asc(), Payment.id.asc()).all()
            return _ok([serialize_payment(row, admin=True) for row in rows])

    @app.get(f"{prefix}/payment/getPaymentMethods")
    def admin_payment_methods():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        return _ok(sorted(DRIVERS))

    @app.post(f"{prefix}/payment/getPaymentForm")
    def admin_payment_form():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            service = PaymentService(db, _req_str(body, "payment"), payment_id=_opt_int(body, "id"))
            return _ok(service.form())

    @app.post(f"{prefix}/payment/save")
    def admin_payment_save():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        driver = _req_str(body, "payment")
        if driver not in DRIVERS:
            return _fail("Gate is not found", 404)
        config = body.get("config") or {}
        if not isinstance(config, dict):
            return _fail("config must be an object")
        notify_domain = str(body.get("notify_domain") or "").strip().rstrip("/") or None
        if notify_domain and not notify_domain.startswith(("http://", "https://")):
            return _fail("notify_domain must start with http:// or https://")
        with SessionLocal() as db:
            payment_id = _opt_int(body, "id")
            if payment_id:
                payment = db.query(Payment).filter(Payment.id == payment_id).first()
                if not payment:
                    return _fail("Payment method does not exist", 404)
            else:
                payment = Payment(uuid=guid(), enable=False)
                db.add(payment)
            payment.payment = driver
            payment.name = _req_str(body, "name")
            payment.icon = body.get("icon") or None
            payment.config = config
            payment.notify_domain = notify_domain
            payment.handling_fee_fixed = _opt_int(body, "handling_fee_fixed", min_value=0)
            payment.handling_fee_percent = _opt_int(body, "handling_fee_percent", min_value=0, max_value=100)
            if "enable" in body:
                payment.enable = bool(body["enable"])
            db.commit()
            return _ok(serialize_payment(payment, admin=True))

    @app.post(f"{prefix}/payment/show")
    def admin_payment_show():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            payment = db.query(Payment).filter(Payment.id == _req_int(_body(), "id")).first()
            if not payment:
                return _fail("Payment method does not exist", 404)
            payment.enable = not payment.enable
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/payment/drop")
    def admin_payment_drop():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            payment = db.query(Payment).filter(Payment.id == _req_int(_body(), "id")).first()
            if not payment:
                return _fail("Payment method does not exist", 404)
            db.delete(payment)
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/payment/sort")
    def admin_payment_sort():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            _apply_sort(db, Payment, _body().get("ids"))
            db.commit()
        return _ok(True)

    # server groups

    @app.get(f"{prefix}/server/group/fetch")
    def admin_server_group_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            groups = db.query(ServerGroup).order_by(ServerGroup.id.asc()).all()
            user_counts = dict(
                db.query(User.group_id, func.count(User.id))
                .filter(User.group_id.isnot(None))
                .group_by(User.group_id)
                .all()
            )
            servers = db.query(Server).all()
            data = []
            for group in groups:
                server_count = sum(1 for server in servers if group.id in _int_list(server.group_ids, "group_ids"))
                data.append(
                    {
                        "id": group.id,
                        "name": group.name,
                        "user_count": user_counts.get(group.id, 0),
                        "server_count": server_count,
                        "created_at": iso(group.created_at),
                    }
                )
            return _ok(data)

    @app.post(f"{prefix}/server/group/save")
    def admin_server_group_save():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            group_id = _opt_int(body, "id")
            if group_id:
                group = db.query(ServerGroup).filter(ServerGroup.id == group_id).first()
                if not group:
                    return _fail("Server group not found", 404)
            else:
                group = ServerGroup()
                db.add(group)
            group.name = _req_str(body, "name")
            db.commit()
            return _ok({"id": group.id, "name": group.name})

    @app.post(f"{prefix}/server/group/drop")
    def admin_server_group_drop():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            group = db.query(ServerGroup).filter(ServerGroup.id == _req_int(_body(), "id")).first()
            if not group:
                return _fail("Server group not found", 404)
            if db.query(Plan.id).filter(Plan.group_id == group.id).first():
                return _fail("This group is used by a plan and cannot be deleted")
            if db.query(User.id).filter(User.group_id == group.id).first():
                return _fail("This group is used by users and cannot be deleted")
            for server in db.query(Server).all():
                if group.id in _int_list(server.group_ids, "group_ids"):
                    return _fail("This group is used by a node and cannot be deleted")
            db.delete(group)
            db.commit()
        return _ok(True)

    # server nodes

    @app.get(f"{prefix}/server/manage/getNodes")
    def admin_server_nodes():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            rows = db.query(Server).order_by(Server.sort.asc(), Server.id.asc()).all()
            return _ok([serialize_server(row) for row in rows])

    @app.post(f"{prefix}/server/manage/save")
    def admin_server_save():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        server_type = _req_str(body, "type").lower()
        if server_type not in SERVER_TYPES:
            return _fail(f"type must be one of: {', '.join(SERVER_TYPES)}")
        group_ids = _int_list(body.get("group_ids"), "group_ids")
        if not group_ids:
            return _fail("group_ids is required")
        if server_type == "shadowsocks" and not body.get("cipher"):
            return _fail("cipher is required for shadowsocks nodes")
        settings = body.get("settings") or {}
        if not isinstance(settings, dict):
            return _fail("settings must be an object")
        tags = body.get("tags") or []
        if not isinstance(tags, list):
            return _fail("tags must be a list")
        try:
            rate = float(body.get("rate", 1))
        except (TypeError, ValueError):
            return _fail("rate must be a number")
        if rate < 0:
            return _fail("rate must be >= 0")

        with SessionLocal() as db:
            known = {row.id for row in db.query(ServerGroup.id).filter(ServerGroup.id.in_(group_ids)).all()}
            if set(group_ids) - known:
                return _fail("Server group not found", 404)
            server_id = _opt_int(body, "id")
            if server_id:
                server = db.query(Server).filter(Server.id == server_id).first()
                if not server:
                    return _fail("Server not found", 404)
            else:
                server = Server()
                db.add(server)
            server.type = server_type
            server.name = _req_str(body, "name")
            server.group_ids = group_ids
            server.parent_id = _opt_int(body, "parent_id")
            server.host = _req_str(body, "host")
            server.port = _req_int(body, "port", min_value=1, max_value=65535)
            server.server_port = _req_int(body, "server_port", min_value=1, max_value=65535)
            server.cipher = body.get("cipher") or None
            server.network = body.get("network") or None
            server.tls = bool(body.get("tls"))
            server.tags = [str(tag) for tag in tags]
            server.rate = f"{rate:g}"
            server.show = bool(body.get("show", server.show or False))
            server.settings = settings
            db.commit()
            return _ok(serialize_server(server))

    @app.post(f"{prefix}/server/manage/update")
    def admin_server_update():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        with SessionLocal() as db:
            server = db.query(Server).filter(Server.id == _req_int(body, "id")).first()
            if not server:
                return _fail("Server not found", 404)
            server.show = bool(body.get("show"))
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/server/manage/drop")
    def admin_server_drop():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            server = db.query(Server).filter(Server.id == _req_int(_body(), "id")).first()
            if not server:
                return _fail("Server not found", 404)
            db.delete(server)
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/server/manage/sort")
    def admin_server_sort():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            _apply_sort(db, Server, _body().get("ids"))
            db.commit()
        return _ok(True)

    # server rules

    @app.get(f"{prefix}/server/rule/fetch")
    def admin_server_rule_fetch():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            rows = db.query(ServerRule).order_by(ServerRule.sort.asc(), ServerRule.id.asc()).all()
            return _ok([serialize_rule(row) for row in rows])

    @app.post(f"{prefix}/server/rule/save")
    def admin_server_rule_save():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        body = _body()
        group_ids = _int_list(body.get("server_arr"), "server_arr")
        if not group_ids:
            return _fail("server_arr is required")
        with SessionLocal() as db:
            rule_id = _opt_int(body, "id")
            if rule_id:
                rule = db.query(ServerRule).filter(ServerRule.id == rule_id).first()
                if not rule:
                    return _fail("Rule not found", 404)
            else:
                last = db.query(func.max(ServerRule.sort)).scalar()
                rule = ServerRule(sort=(last or 0) + 1)
                db.add(rule)
            rule.name = _req_str(body, "name")
            rule.domain = _req_str(body, "domain")
            rule.ua = _req_str(body, "ua")
            rule.server_arr = ",".join(str(item) for item in group_ids)
            rule.prot = _opt_int(body, "prot", min_value=1, max_value=65535)
            db.commit()
            return _ok(serialize_rule(rule))

    @app.post(f"{prefix}/server/rule/drop")
    def admin_server_rule_drop():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            rule = db.query(ServerRule).filter(ServerRule.id == _req_int(_body(), "id")).first()
            if not rule:
                return _fail("Rule not found", 404)
            db.delete(rule)
            db.commit()
        return _ok(True)

    @app.post(f"{prefix}/server/rule/sort")
    def admin_server_rule_sort():
        _, err = auth_context(require_role="admin")
        if err:
            return err
        with SessionLocal() as db:
            _apply_sort(db, ServerRule, _body().get("ids"))
            db.commit()
        return _ok(True)
