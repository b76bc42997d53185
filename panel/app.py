import os
import re
import secrets
from pathlib import Path

from flask import Flask, Response, jsonify, make_response, render_template, request
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from . import auth as auth_service
from . import orders as order_service
from . import transients
from .admin import register_admin_routes
from .coupons import CouponService, serialize_coupon
from .db import SessionLocal, init_db
from .errors import PanelError
from .helpers import (
    email_suffix_verify,
    env_bool,
    guid,
    iso,
    random_code,
    site_url,
    subscribe_url,
    utcnow,
)
from .mailer import configure_mail, send_login_link, send_verify_code
from .models import CommissionLog, InviteCode, Order, Payment, Plan, Ticket, User
from .notify import OrderNotifyService
from .payments import PaymentService, serialize_payment
from .plans import apply_plan, extend_by_hours, serialize_plan
from .servers import render_general, subscribe_nodes, subscribe_payload, subscription_userinfo
from .settings_manager import (
    APP_NAME_KEY,
    EMAIL_GMAIL_LIMIT_ENABLE_KEY,
    EMAIL_VERIFY_KEY,
    EMAIL_WHITELIST_ENABLE_KEY,
    EMAIL_WHITELIST_SUFFIX_KEY,
    INVITE_COMMISSION_KEY,
    INVITE_FORCE_KEY,
    INVITE_GEN_LIMIT_KEY,
    INVITE_NEVER_EXPIRE_KEY,
    LOGIN_WITH_MAIL_LINK_KEY,
    SERVER_TOKEN_KEY,
    STOP_REGISTER_KEY,
    THEME_KEY,
    TRY_OUT_HOUR_KEY,
    TRY_OUT_PLAN_ID_KEY,
    SettingsManager,
)
from .traffic import find_server, node_config, node_users, push_traffic

BASE_DIR = Path(__file__).resolve().parents[1]
FRONTEND_DIR = BASE_DIR / "frontend"
VERSION = "1.0.0"

EMAIL_VERIFY_CODE = "EMAIL_VERIFY_CODE"
LAST_SEND_EMAIL_VERIFY_TIMESTAMP = "LAST_SEND_EMAIL_VERIFY_TIMESTAMP"
LAST_SEND_LOGIN_WITH_MAIL_LINK_TIMESTAMP = "LAST_SEND_LOGIN_WITH_MAIL_LINK_TIMESTAMP"
FORGET_REQUEST_LIMIT = "FORGET_REQUEST_LIMIT"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def _ok(data=None, **extra):
    return jsonify({"ok": True, "data": data, **extra})


def _fail(message: str, status: int = 400):
    return jsonify({"ok": False, "error": message}), status


def _normalize_email(value) -> str:
    return str(value or "").strip().lower()


def _serialize_user(user: User) -> dict:
    return {
        "email": user.email,
        "uuid": user.uuid,
        "transfer_enable": user.transfer_enable,
        "u": user.u,
        "d": user.d,
        "last_login_at": iso(user.last_login_at),
        "created_at": iso(user.created_at),
        "banned": bool(user.banned),
        "remind_expire": bool(user.remind_expire),
        "remind_traffic": bool(user.remind_traffic),
        "expired_at": iso(user.expired_at),
        "balance": user.balance,
        "commission_balance": user.commission_balance,
        "plan_id": user.plan_id,
        "discount": user.discount,
        "commission_rate": user.commission_rate,
        "telegram_id": user.telegram_id,
        "is_admin": bool(user.is_admin),
        "is_staff": bool(user.is_staff),
    }


def create_app():
    app = Flask(
        __name__,
        template_folder=str(FRONTEND_DIR),
        static_folder=str(FRONTEND_DIR / "static"),
        static_url_path="/static",
    )
    app.config["TEMPLATES_AUTO_RELOAD"] = True
    app.jinja_env.auto_reload = True

    init_db()
    configure_mail(app)

    session_cookie_name = os.getenv("SESSION_COOKIE_NAME", "session")
    admin_path = os.getenv("ADMIN_SECURE_PATH", "admin").strip("/") or "admin"
    notifier = OrderNotifyService()

    @app.errorhandler(PanelError)
    def handle_panel_error(exc: PanelError):
        return _fail(exc.message, exc.status)

    def _raw_session_token() -> str | None:
        header = request.headers.get("Authorization", "")
        if header.lower().startswith("bearer "):
            return header[7:].strip() or None
        return request.cookies.get(session_cookie_name)

    def _auth_context(require_role: str | None = None):
        with SessionLocal() as db:
            user, error = auth_service.resolve_session(db, _raw_session_token())
            if error:
                status = 403 if user is None and error.startswith("Your account") else 401
                return None, _fail(error, status)
            if require_role == "admin" and not user.is_admin:
                return None, _fail("Forbidden", 403)
            if require_role == "staff" and not (user.is_admin or user.is_staff):
                return None, _fail("Forbidden", 403)
            return {
                "user_id": user.id,
                "email": user.email,
                "is_admin": bool(user.is_admin),
                "is_staff": bool(user.is_staff),
            }, None

    def _current_user(db, auth) -> User:
        user = db.query(User).filter(User.id == auth["user_id"]).first()
        if not user:
            raise PanelError("The user does not exist", 404)
        return user

    def _auth_response(user: User, raw_token: str):
        response = make_response(
            _ok(
                {
                    "token": user.token,
                    "is_admin": bool(user.is_admin),
                    "auth_data": raw_token,
                }
            )
        )
        response.set_cookie(
            session_cookie_name,
            raw_token,
            httponly=True,
            secure=env_bool("COOKIE_SECURE", False),
            samesite=os.getenv("COOKIE_SAMESITE", "Lax"),
            max_age=auth_service.session_ttl_days() * 24 * 60 * 60,
            path="/",
        )
        return response

    def _page_settings(db) -> dict:
        settings = SettingsManager(db)
        return {
            "title": settings.get_value(APP_NAME_KEY),
            "version": VERSION,
            "theme": settings.get_value(THEME_KEY),
            "secure_path": admin_path,
        }

    @app.get("/")
    def index():
        with SessionLocal() as db:
            settings = _page_settings(db)
        response = make_response(render_template("dashboard.html", settings=settings))
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        return response

    @app.get(f"/{admin_path}")
    def admin_index():
        with SessionLocal() as db:
            settings = _page_settings(db)
        return render_template("admin.html", settings=settings)

    @app.get("/health")
    def health():
        return {"ok": True}

    # passport

    @app.post("/api/v1/passport/auth/register")
    def register():
        body = request.get_json(silent=True) or {}
        email = _normalize_email(body.get("email"))
        password = str(body.get("password") or "")
        invite_code = str(body.get("invite_code") or "").strip()
        if not _EMAIL_PATTERN.fullmatch(email):
            return _fail("Email format is incorrect")
        if len(password) < MIN_PASSWORD_LENGTH:
            return _fail(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        with SessionLocal() as db:
            settings = SettingsManager(db)
            if settings.get_bool(EMAIL_WHITELIST_ENABLE_KEY) and not email_suffix_verify(
                email, settings.get_value(EMAIL_WHITELIST_SUFFIX_KEY)
            ):
                return _fail("Email suffix is not in the Whitelist")
            if settings.get_bool(EMAIL_GMAIL_LIMIT_ENABLE_KEY):
                local = email.partition("@")[0]
                if "." in local or "+" in local:
                    return _fail("Gmail alias is not supported")
            if settings.get_bool(STOP_REGISTER_KEY):
                return _fail("Registration has closed")
            if settings.get_bool(INVITE_FORCE_KEY) and not invite_code:
                return _fail("You must use the invitation code to register")
            if settings.get_bool(EMAIL_VERIFY_KEY):
                expected = transients.get(db, transients.cache_key(EMAIL_VERIFY_CODE, email))
                if not body.get("email_code") or str(expected) != str(body.get("email_code")):
                    return _fail("Incorrect email verification code")
            if db.query(User.id).filter(User.email == email).first():
                return _fail("Email already exists", 409)

            user = User(
                email=email,
                password=auth_service.hash_password(password),
                uuid=guid(True),
                token=guid(),
            )
            if invite_code:
                invite = (
                    db.query(InviteCode)
                    .filter(InviteCode.code == invite_code, InviteCode.status == 0)
                    .first()
                )
                if not invite:
                    return _fail("Invalid invitation code")
                user.invite_user_id = invite.user_id
                if not settings.get_bool(INVITE_NEVER_EXPIRE_KEY):
                    invite.status = 1
            db.add(user)
            db.flush()

            try_out_plan_id = settings.get_int(TRY_OUT_PLAN_ID_KEY)
            plan = db.query(Plan).filter(Plan.id == try_out_plan_id).first() if try_out_plan_id else None
            if plan:
                apply_plan(user, plan)
                user.expired_at = extend_by_hours(None, settings.get_int(TRY_OUT_HOUR_KEY, min_value=1), utcnow())

            if body.get("code"):
                order_service.redeem(db, user, str(body.get("code")))

            transients.forget(db, transients.cache_key(EMAIL_VERIFY_CODE, email))
            raw_token = auth_service.create_session(
                db, user, ip=request.remote_addr, user_agent=request.headers.get("User-Agent")
            )
            db.commit()
            app.logger.info("user %s registered", user.id)
            return _auth_response(user, raw_token)

    @app.post("/api/v1/passport/auth/login")
    def login():
        body = request.get_json(silent=True) or {}
        email = _normalize_email(body.get("email"))
        password = str(body.get("password") or "")
        if not email or not password:
            return _fail("Email and password are required")
        with SessionLocal() as db:
            user = auth_service.authenticate(db, email, password)
            raw_token = auth_service.create_session(
                db, user, ip=request.remote_addr, user_agent=request.headers.get("User-Agent")
            )
            db.commit()
            return _auth_response(user, raw_token)

    @app.get("/api/v1/passport/auth/token2Login")
    def token_to_login():
        code = request.args.get("verify", "").strip()
        if not code:
            return _fail("Token error")
        with SessionLocal() as db:
            user = auth_service.consume_temp_token(db, code)
            raw_token = auth_service.create_session(
                db, user, ip=request.remote_addr, user_agent=request.headers.get("User-Agent")
            )
            db.commit()
            return _auth_response(user, raw_token)

    @app.post("/api/v1/passport/auth/getQuickLoginUrl")
    def quick_login_url():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        with SessionLocal() as db:
            code = auth_service.issue_temp_token(db, auth["user_id"], 60)
            db.commit()
        base_url = site_url() or request.host_url
        return _ok(auth_service.login_url(code, body.get("redirect"), base_url))

    @app.post("/api/v1/passport/auth/loginWithMailLink")
    def login_with_mail_link():
        body = request.get_json(silent=True) or {}
        email = _normalize_email(body.get("email"))
        if not _EMAIL_PATTERN.fullmatch(email):
            return _fail("Email format is incorrect")
        with SessionLocal() as db:
            if not SettingsManager(db).get_bool(LOGIN_WITH_MAIL_LINK_KEY):
                return _fail("Plugin does not support", 404)
            limit_key = transients.cache_key(LAST_SEND_LOGIN_WITH_MAIL_LINK_TIMESTAMP, email)
            if transients.get(db, limit_key):
                return _fail("Sending frequently, please try again later", 429)
            user = db.query(User).filter(User.email == email).first()
            if user:
                code = auth_service.issue_temp_token(db, user.id, 300)
                link = auth_service.login_url(code, body.get("redirect"), site_url() or request.host_url)
                send_login_link(email, link)
            transients.put(db, limit_key, utcnow().timestamp(), 60)
            db.commit()
        return _ok(True)

    @app.post("/api/v1/passport/auth/forget")
    def forget_password():
        body = request.get_json(silent=True) or {}
        email = _normalize_email(body.get("email"))
        password = str(body.get("password") or "")
        if len(password) < MIN_PASSWORD_LENGTH:
            return _fail(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        with SessionLocal() as db:
            limit_key = transients.cache_key(FORGET_REQUEST_LIMIT, email)
            if int(transients.get(db, limit_key, 0) or 0) >= 3:
                return _fail("Reset failed, Please try again later", 429)
            expected = transients.get(db, transients.cache_key(EMAIL_VERIFY_CODE, email))
            if not body.get("email_code") or str(expected) != str(body.get("email_code")):
                transients.increment(db, limit_key, 300)
                db.commit()
                return _fail("Incorrect email verification code")
            user = db.query(User).filter(User.email == email).first()
            if not user:
                return _fail("This email is not registered in the system", 404)
            auth_service.set_password(user, password)
            transients.forget(db, transients.cache_key(EMAIL_VERIFY_CODE, email))
            db.commit()
        return _ok(True)

    @app.post("/api/v1/passport/comm/sendEmailVerify")
    def send_email_verify():
        body = request.get_json(silent=True) or {}
        email = _normalize_email(body.get("email"))
        if not _EMAIL_PATTERN.fullmatch(email):
            return _fail("Email format is incorrect")
        with SessionLocal() as db:
            limit_key = transients.cache_key(LAST_SEND_EMAIL_VERIFY_TIMESTAMP, email)
            if transients.get(db, limit_key):
                return _fail("Email verification code has been sent, please request again later", 429)
            code = f"{secrets.randbelow(1000000):06d}"
            if not send_verify_code(email, code):
                return _fail("Email sending failed, please try again later", 500)
            transients.put(db, transients.cache_key(EMAIL_VERIFY_CODE, email), code, 300)
            transients.put(db, limit_key, utcnow().timestamp(), 60)
            db.commit()
        return _ok(True)

    @app.post("/api/auth/logout")
    def logout():
        raw_token = _raw_session_token()
        if raw_token:
            with SessionLocal() as db:
                auth_service.revoke_by_raw_token(db, raw_token)
                db.commit()
        response = make_response(_ok(True))
        response.delete_cookie(session_cookie_name, path="/")
        return response

    # user

    @app.get("/api/v1/user/info")
    def user_info():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            return _ok(_serialize_user(_current_user(db, auth)))

    @app.get("/api/v1/user/checkLogin")
    def check_login():
        with SessionLocal() as db:
            user, error = auth_service.resolve_session(db, _raw_session_token())
            if error:
                return _ok({"is_login": False})
            return _ok({"is_login": True, "is_admin": bool(user.is_admin)})

    @app.get("/api/v1/user/getStat")
    def user_stat():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            user_id = auth["user_id"]
            return _ok(
                [
                    db.query(Order).filter(Order.user_id == user_id, Order.status == 0).count(),
                    db.query(Ticket).filter(Ticket.user_id == user_id, Ticket.status == 0).count(),
                    db.query(User).filter(User.invite_user_id == user_id).count(),
                ]
            )

    @app.get("/api/v1/user/getSubscribe")
    def user_subscribe():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            return _ok(subscribe_payload(db, _current_user(db, auth)))

    @app.post("/api/v1/user/resetSecurity")
    def reset_security():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            user = _current_user(db, auth)
            user.uuid = guid(True)
            user.token = guid()
            db.commit()
            return _ok(subscribe_url(user.token))

    @app.post("/api/v1/user/update")
    def user_update():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        with SessionLocal() as db:
            user = _current_user(db, auth)
            if "remind_expire" in body:
                user.remind_expire = bool(body["remind_expire"])
            if "remind_traffic" in body:
                user.remind_traffic = bool(body["remind_traffic"])
            db.commit()
        return _ok(True)

    @app.post("/api/v1/user/changePassword")
    def change_password():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        new_password = str(body.get("new_password") or "")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            return _fail(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        with SessionLocal() as db:
            user = _current_user(db, auth)
            if not auth_service.verify_password(user, str(body.get("old_password") or "")):
                return _fail("The old password is wrong")
            auth_service.set_password(user, new_password)
            db.commit()
        return _ok(True)

    @app.post("/api/v1/user/transfer")
    def transfer_commission():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        try:
            amount = int(body.get("transfer_amount"))
        except (TypeError, ValueError):
            return _fail("Invalid transfer amount")
        if amount <= 0:
            return _fail("Invalid transfer amount")
        with SessionLocal() as db:
            user = _current_user(db, auth)
            if amount > (user.commission_balance or 0):
                return _fail("Insufficient commission balance")
            user.commission_balance -= amount
            user.balance = (user.balance or 0) + amount
            db.commit()
        return _ok(True)

    @app.get("/api/v1/user/getActiveSession")
    def active_sessions():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            return _ok(auth_service.list_sessions(db, _current_user(db, auth)))

    @app.post("/api/v1/user/removeActiveSession")
    def remove_active_session():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        with SessionLocal() as db:
            if not auth_service.remove_session(db, _current_user(db, auth), body.get("session_id")):
                return _fail("Session not found", 404)
            db.commit()
        return _ok(True)

    @app.post("/api/v1/user/redeemPlan")
    def redeem_plan():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        with SessionLocal() as db:
            order = order_service.redeem(db, _current_user(db, auth), body.get("redeem_code"))
            db.commit()
            notifier.notify(db, order)
            return _ok(order_service.serialize_order(order))

    @app.get("/api/v1/user/plan/fetch")
    def plan_fetch():
        auth, err = _auth_context()
        if err:
            return err
        plan_id = request.args.get("id", type=int)
        with SessionLocal() as db:
            user = _current_user(db, auth)
            if plan_id:
                plan = db.query(Plan).filter(Plan.id == plan_id).first()
                if not plan or (not plan.show and user.plan_id != plan.id):
                    return _fail("Subscription plan does not exist", 404)
                return _ok(serialize_plan(plan))
            plans = (
                db.query(Plan)
                .filter(Plan.show.is_(True))
                .order_by(Plan.sort.asc(), Plan.id.asc())
                .all()
            )
            return _ok([serialize_plan(plan) for plan in plans])

    @app.post("/api/v1/user/invite/save")
    def invite_save():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            limit = SettingsManager(db).get_int(INVITE_GEN_LIMIT_KEY, min_value=0)
            unused = (
                db.query(InviteCode)
                .filter(InviteCode.user_id == auth["user_id"], InviteCode.status == 0)
                .count()
            )
            if unused >= limit:
                return _fail("The maximum number of creations has been reached")
            code = random_code(8)
            while db.query(InviteCode.id).filter(InviteCode.code == code).first():
                code = random_code(8)
            db.add(InviteCode(user_id=auth["user_id"], code=code))
            db.commit()
        return _ok(True)

    @app.get("/api/v1/user/invite/fetch")
    def invite_fetch():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            user = _current_user(db, auth)
            codes = (
                db.query(InviteCode)
                .filter(InviteCode.user_id == user.id, InviteCode.status == 0)
                .order_by(InviteCode.id.desc())
                .all()
            )
            registered = db.query(User).filter(User.invite_user_id == user.id).count()
            valid_commission = (
                db.query(func.coalesce(func.sum(CommissionLog.get_amount), 0))
                .filter(CommissionLog.invite_user_id == user.id)
                .scalar()
            )
            pending_commission = (
                db.query(func.coalesce(func.sum(Order.commission_balance), 0))
                .filter(
                    Order.invite_user_id == user.id,
                    Order.status == order_service.STATUS_COMPLETED,
                    Order.commission_status.in_((0, 1)),
                )
                .scalar()
            )
            rate = user.commission_rate
            if rate is None:
                rate = SettingsManager(db).get_int(INVITE_COMMISSION_KEY)
            return _ok(
                {
                    "codes": [
                        {"code": row.code, "pv": row.pv, "created_at": iso(row.created_at)} for row in codes
                    ],
                    "stat": [
                        registered,
                        int(valid_commission or 0),
                        int(pending_commission or 0),
                        rate,
                        user.commission_balance,
                    ],
                }
            )

    @app.get("/api/v1/user/invite/details")
    def invite_details():
        auth, err = _auth_context()
        if err:
            return err
        current = max(1, request.args.get("current", 1, type=int))
        page_size = max(10, request.args.get("page_size", 10, type=int))
        with SessionLocal() as db:
            query = db.query(CommissionLog).filter(CommissionLog.invite_user_id == auth["user_id"])
            total = query.count()
            rows = (
                query.order_by(CommissionLog.id.desc())
                .offset((current - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return _ok(
                [
                    {
                        "id": row.id,
                        "trade_no": row.trade_no,
                        "order_amount": row.order_amount,
                        "get_amount": row.get_amount,
                        "created_at": iso(row.created_at),
                    }
                    for row in rows
                ],
                total=total,
            )

    @app.post("/api/v1/user/coupon/check")
    def coupon_check():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        if not body.get("code"):
            return _fail("Coupon cannot be empty")
        try:
            plan_id = int(body.get("plan_id"))
        except (TypeError, ValueError):
            return _fail("Invalid plan")
        with SessionLocal() as db:
            coupon = CouponService(db, body.get("code")).check(plan_id, body.get("period"), auth["user_id"])
            return _ok(serialize_coupon(coupon))

    # orders

    @app.get("/api/v1/user/order/fetch")
    def order_fetch():
        auth, err = _auth_context()
        if err:
            return err
        status = request.args.get("status", type=int)
        with SessionLocal() as db:
            query = db.query(Order).filter(Order.user_id == auth["user_id"])
            if status is not None:
                query = query.filter(Order.status == status)
            plans = {plan.id: plan for plan in db.query(Plan).all()}
            return _ok(
                [
                    order_service.serialize_order(order, plans.get(order.plan_id))
                    for order in query.order_by(Order.id.desc()).all()
                ]
            )

    @app.get("/api/v1/user/order/detail")
    def order_detail():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            order = order_service.find_user_order(db, _current_user(db, auth), request.args.get("trade_no"))
            if not order:
                return _fail("Order does not exist or has been paid", 404)
            plan = db.query(Plan).filter(Plan.id == order.plan_id).first()
            if not plan:
                return _fail("Subscription plan does not exist", 404)
            data = order_service.serialize_order(order, plan)
            data["try_out_plan_id"] = SettingsManager(db).get_int(TRY_OUT_PLAN_ID_KEY)
            if order.surplus_order_ids:
                surplus = db.query(Order).filter(Order.id.in_(order.surplus_order_ids)).all()
                data["surplus_orders"] = [order_service.serialize_order(item) for item in surplus]
            return _ok(data)

    @app.post("/api/v1/user/order/save")
    def order_save():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        if not body.get("plan_id") or not body.get("period"):
            return _fail("plan_id and period are required")
        with SessionLocal() as db:
            order = order_service.create_order(
                db,
                _current_user(db, auth),
                body.get("plan_id"),
                str(body.get("period")),
                body.get("coupon_code"),
            )
            db.commit()
            return _ok(order.trade_no)

    @app.post("/api/v1/user/order/checkout")
    def order_checkout():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        with SessionLocal() as db:
            user = _current_user(db, auth)
            result = order_service.checkout(db, user, body.get("trade_no"), body.get("method"), body.get("token"))
            db.commit()
            if result["type"] == -1:
                order = order_service.find_user_order(db, user, body.get("trade_no"))
                notifier.notify(db, order)
        return jsonify({"ok": True, "type": result["type"], "data": result["data"]})

    @app.get("/api/v1/user/order/check")
    def order_check():
        auth, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            order = order_service.find_user_order(db, _current_user(db, auth), request.args.get("trade_no"))
            if not order:
                return _fail("Order does not exist", 404)
            return _ok(order.status)

    @app.post("/api/v1/user/order/cancel")
    def order_cancel():
        auth, err = _auth_context()
        if err:
            return err
        body = request.get_json(silent=True) or {}
        if not body.get("trade_no"):
            return _fail("Invalid parameter")
        with SessionLocal() as db:
            order = order_service.find_user_order(db, _current_user(db, auth), body.get("trade_no"))
            if not order:
                return _fail("Order does not exist", 404)
            order_service.OrderService(db, order).cancel()
            db.commit()
        return _ok(True)

    @app.get("/api/v1/user/order/getPaymentMethod")
    def payment_methods():
        _, err = _auth_context()
        if err:
            return err
        with SessionLocal() as db:
            rows = (
                db.query(Payment)
                .filter(Payment.enable.is_(True))
                .order_by(Payment.sort.asc(), Payment.id.asc())
                .all()
            )
            return _ok([serialize_payment(row) for row in rows])

    @app.route("/api/v1/guest/payment/notify/<method>/<uuid>", methods=["GET", "POST"])
    def payment_notify(method: str, uuid: str):
        params = request.values.to_dict()
        if not params:
            params = request.get_json(silent=True) or {}
        try:
            with SessionLocal() as db:
                verified = PaymentService(db, method, uuid=uuid).notify(params)
                if not verified:
                    return Response("verify error", status=422, mimetype="text/plain")
                order = db.query(Order).filter(Order.trade_no == verified.get("trade_no")).first()
                if not order:
                    return Response("order is not found", status=404, mimetype="text/plain")
                if order.status == order_service.STATUS_PENDING:
                    order_service.OrderService(db, order).paid(verified.get("callback_no"))
                    db.commit()
                    notifier.notify(db, order)
        except SQLAlchemyError:
            app.logger.exception("payment notify: database error")
            return Response("fail", status=500, mimetype="text/plain")
        return Response(verified.get("custom_result") or "success", mimetype="text/plain")

    # client

    def _client_user(db):
        token = request.args.get("token", "").strip()
        if not token:
            raise PanelError("token is null", 403)
        user = db.query(User).filter(User.token == token).first()
        if not user:
            raise PanelError("token is error", 403)
        return user

    @app.get("/api/v1/client/subscribe")
    def client_subscribe():
        with SessionLocal() as db:
            user = _client_user(db)
            nodes = subscribe_nodes(
                db,
                user,
                platform=request.args.get("platform") or request.args.get("p"),
                include=request.args.get("include"),
                exclude=request.args.get("exclude"),
                user_agent=request.args.get("flag") or request.headers.get("User-Agent"),
                host=request.host,
            )
            body = render_general(user, nodes)
            response = Response(body, mimetype="text/plain")
            response.headers["subscription-userinfo"] = subscription_userinfo(user)
            return response

    @app.get("/api/v1/client/getuuidSubscribe")
    def client_uuid_subscribe():
        email = _normalize_email(request.args.get("email"))
        uuid = request.args.get("uuid", "").strip()
        with SessionLocal() as db:
            user = db.query(User).filter(User.email == email, User.uuid == uuid).first() if email and uuid else None
            if not user:
                return _fail("The user does not exist", 404)
            if user.plan_id and not db.query(Plan.id).filter(Plan.id == user.plan_id).first():
                return _fail("Subscription plan does not exist", 404)
            return _ok(subscribe_payload(db, user))

    # nodes

    def _node_server(db):
        expected = str(SettingsManager(db).get_value(SERVER_TOKEN_KEY) or "")
        token = request.args.get("token", "")
        if not expected:
            raise PanelError("server token is not configured", 500)
        if not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            raise PanelError("token is error", 403)
        server = find_server(db, request.args.get("node_id"), request.args.get("node_type"))
        if not server:
            raise PanelError("server is not exist", 404)
        return server

    @app.get("/api/v1/server/UniProxy/user")
    def node_user_list():
        with SessionLocal() as db:
            server = _node_server(db)
            return jsonify({"users": node_users(db, server)})

    @app.post("/api/v1/server/UniProxy/push")
    def node_push():
        data = request.get_json(silent=True)
        if data is None:
            return _fail("Invalid traffic data")
        with SessionLocal() as db:
            server = _node_server(db)
            push_traffic(db, server, data)
            db.commit()
        return jsonify({"data": True})

    @app.get("/api/v1/server/UniProxy/config")
    def node_config_view():
        with SessionLocal() as db:
            return jsonify(node_config(_node_server(db)))

    register_admin_routes(app, _auth_context, admin_path, notifier)
    return app
