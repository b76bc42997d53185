import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from . import commission
from .coupons import CouponService
from .errors import PanelError
from .helpers import as_utc, generate_order_no, iso, utcnow
from .models import Coupon, Order, Payment, Plan, RedeemCode, User
from .payments import PaymentService
from .plans import (
    ONETIME,
    PERIOD_DAYS,
    RESET_PRICE,
    apply_plan_period,
    have_capacity,
    is_active,
    plan_transfer_bytes,
    price_for,
    serialize_plan,
)
from .settings_manager import (
    COMMISSION_FIRST_TIME_KEY,
    INVITE_COMMISSION_KEY,
    ORDER_TIMEOUT_MINUTES_KEY,
    SettingsManager,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = 0
STATUS_PROCESSING = 1
STATUS_CANCELLED = 2
STATUS_COMPLETED = 3
STATUS_DISCOUNTED = 4

TYPE_NEW = 1
TYPE_RENEW = 2
TYPE_CHANGE = 3
TYPE_RESET = 4
TYPE_REDEEM = 5
TYPE_FIRST_ORDER_REWARD = commission.ORDER_TYPE_FIRST_ORDER_REWARD

TYPE_LABELS = {
    TYPE_NEW: "New purchase",
    TYPE_RENEW: "Renewal",
    TYPE_CHANGE: "Plan change",
    TYPE_RESET: "Traffic reset",
    TYPE_REDEEM: "Redeem code",
    TYPE_FIRST_ORDER_REWARD: "Invite reward",
}


def has_unfinished_order(db: Session, user_id: int) -> bool:
    return (
        db.query(Order.id)
        .filter(Order.user_id == user_id, Order.status.in_((STATUS_PENDING, STATUS_PROCESSING)))
        .first()
        is not None
    )


class OrderService:
    def __init__(self, db: Session, order: Order):
        self.db = db
        self.order = order

    def set_vip_discount(self, user: User) -> None:
        order = self.order
        if not user.discount or order.total_amount <= 0:
            return
        discount = int(order.total_amount * user.discount / 100)
        order.discount_amount = (order.discount_amount or 0) + discount
        order.total_amount = order.total_amount - discount

    def set_order_type(self, user: User, now: datetime | None = None) -> None:
        now = now or utcnow()
        order = self.order
        if order.period == RESET_PRICE:
            order.type = TYPE_RESET
        elif user.plan_id and user.plan_id != order.plan_id and is_active(user, now):
            order.type = TYPE_CHANGE
            if as_utc(user.expired_at) is None:
                self._surplus_by_traffic(user)
            else:
                self._surplus_by_period(user, now)
            if order.surplus_amount:
                if order.surplus_amount >= order.total_amount:
                    order.refund_amount = order.surplus_amount - order.total_amount
                    order.total_amount = 0
                else:
                    order.total_amount = order.total_amount - order.surplus_amount
        elif is_active(user, now) and user.plan_id == order.plan_id:
            order.type = TYPE_RENEW
        else:
            order.type = TYPE_NEW

    def _completed_plan_orders(self, user: User):
        return (
            self.db.query(Order)
            .filter(
                Order.user_id == user.id,
                Order.plan_id == user.plan_id,
                Order.status == STATUS_COMPLETED,
                Order.period != RESET_PRICE,
            )
            .order_by(Order.id.asc())
            .all()
        )

    @staticmethod
    def _paid_value(order: Order) -> int:
        return (
            (order.total_amount or 0)
            + (order.balance_amount or 0)
            + (order.surplus_amount or 0)
            - (order.refund_amount or 0)
        )

    def _surplus_by_traffic(self, user: User) -> None:
        orders = [item for item in self._completed_plan_orders(user) if item.period == ONETIME]
        if not orders or not user.transfer_enable:
            return
        last = orders[-1]
        unused = user.transfer_enable - (user.u or 0) - (user.d or 0)
        if unused <= 0:
            return
        amount = int(self._paid_value(last) * unused / user.transfer_enable)
        if amount > 0:
            self.order.surplus_amount = amount
            self.order.surplus_order_ids = [last.id]

    def _surplus_by_period(self, user: User, now: datetime) -> None:
        amount_sum = 0
        days_sum = 0
        first_valid_at = None
        order_ids = []
        for item in self._completed_plan_orders(user):
            days = PERIOD_DAYS.get(item.period)
            if not days:
                continue
            created_at = as_utc(item.created_at)
            if created_at + timedelta(days=days) < now:
                continue
            if first_valid_at is None:
                first_valid_at = created_at
            days_sum += days
            amount_sum += self._paid_value(item)
            order_ids.append(item.id)
        if first_valid_at is None or amount_sum <= 0:
            return
        ends_at = first_valid_at + timedelta(days=days_sum)
        if ends_at <= now:
            return
        remaining = (ends_at - now).total_seconds()
        whole = (ends_at - first_valid_at).total_seconds()
        amount = int(amount_sum * remaining / whole)
        if amount > 0:
            self.order.surplus_amount = amount
            self.order.surplus_order_ids = order_ids

    def set_invite(self, user: User) -> None:
        order = self.order
        if not user.invite_user_id or order.total_amount <= 0:
            return
        inviter = self.db.query(User).filter(User.id == user.invite_user_id).first()
        if not inviter:
            return
        order.invite_user_id = inviter.id

        settings = SettingsManager(self.db)
        first_time_only = settings.get_bool(COMMISSION_FIRST_TIME_KEY)
        if inviter.commission_type == 1:
            first_time_only = False
        elif inviter.commission_type == 2:
            first_time_only = True
        if first_time_only and self._has_paid_order(user):
            return

        rate = inviter.commission_rate
        if rate is None:
            rate = settings.get_int(INVITE_COMMISSION_KEY, min_value=0, max_value=100)
        order.commission_balance = int(order.total_amount * rate / 100)

    def _has_paid_order(self, user: User) -> bool:
        query = self.db.query(Order.id).filter(
            Order.user_id == user.id,
            Order.status.in_((STATUS_PROCESSING, STATUS_COMPLETED, STATUS_DISCOUNTED)),
            Order.type != TYPE_FIRST_ORDER_REWARD,
        )
        if self.order.id is not None:
            query = query.filter(Order.id != self.order.id)
        return query.first() is not None

    def paid(self, callback_no: str | None, now: datetime | None = None) -> bool:
        order = self.order
        if order.status != STATUS_PENDING:
            return True
        now = now or utcnow()
        order.status = STATUS_PROCESSING
        order.paid_at = now
        order.callback_no = callback_no
        self.db.flush()
        try:
            self.open(now)
        except PanelError as exc:
            logger.error("order %s paid but could not be opened: %s", order.trade_no, exc.message)
        return True

    def open(self, now: datetime | None = None) -> None:
        now = now or utcnow()
        order = self.order
        user = self.db.query(User).filter(User.id == order.user_id).first()
        plan = self.db.query(Plan).filter(Plan.id == order.plan_id).first()
        if not user:
            raise PanelError("The user does not exist", 404)
        if not plan:
            raise PanelError("Subscription plan does not exist", 404)

        if order.refund_amount:
            user.balance = (user.balance or 0) + order.refund_amount
        if order.surplus_order_ids:
            (
                self.db.query(Order)
                .filter(Order.id.in_([int(item) for item in order.surplus_order_ids]))
                .update({Order.status: STATUS_DISCOUNTED}, synchronize_session="fetch")
            )

        if order.period == RESET_PRICE:
            user.u = 0
            user.d = 0
            user.transfer_enable = plan_transfer_bytes(plan)
        else:
            switching = order.type == TYPE_CHANGE or (
                order.type == TYPE_REDEEM and user.plan_id != plan.id
            )
            if switching or order.period == ONETIME:
                user.u = 0
                user.d = 0
            apply_plan_period(user, plan, order.period, now, from_now=switching)

        order.status = STATUS_COMPLETED
        self.db.flush()
        logger.info("order %s opened for user %s", order.trade_no, user.id)

        commission.settle(self.db, order)
        commission.first_order_reward(self.db, order, now=now)

    def cancel(self) -> None:
        order = self.order
        if order.status != STATUS_PENDING:
            raise PanelError("You can only cancel pending orders")
        if order.balance_amount:
            user = self.db.query(User).filter(User.id == order.user_id).first()
            if user:
                user.balance = (user.balance or 0) + order.balance_amount
        order.status = STATUS_CANCELLED
        order.commission_status = commission.COMMISSION_INVALID
        self.db.flush()


def create_order(
    db: Session,
    user: User,
    plan_id,
    period: str,
    coupon_code: str | None = None,
    now: datetime | None = None,
) -> Order:
    now = now or utcnow()
    if has_unfinished_order(db, user.id):
        raise PanelError("You have an unpaid or pending order, please try again later or cancel it", 409)

    plan = db.query(Plan).filter(Plan.id == plan_id).first() if plan_id else None
    if not plan:
        raise PanelError("Subscription plan does not exist", 404)
    is_reset = period == RESET_PRICE

    if user.plan_id != plan.id and not is_reset and not have_capacity(db, plan, now):
        raise PanelError("Current product is sold out")
    price = price_for(plan, period)
    if price is None:
        raise PanelError("This payment period cannot be purchased, please choose another period")
    if is_reset and (not is_active(user, now) or user.plan_id != plan.id):
        raise PanelError(
            "Subscription has expired or no active subscription, unable to purchase Data Reset Package"
        )
    if not is_reset:
        if (not plan.show and not plan.renew) or (not plan.show and user.plan_id != plan.id):
            raise PanelError("This subscription has been sold out, please choose another subscription")
        if not plan.renew and user.plan_id == plan.id:
            raise PanelError("This subscription cannot be renewed, please change to another subscription")
        if not plan.show and plan.renew and not is_active(user, now):
            raise PanelError("This subscription has expired, please change to another subscription")

    order = Order(
        user_id=user.id,
        plan_id=plan.id,
        period=period,
        trade_no=generate_order_no(now),
        total_amount=price,
        status=STATUS_PENDING,
        commission_status=commission.COMMISSION_PENDING,
        commission_balance=0,
    )
    service = OrderService(db, order)

    if coupon_code:
        CouponService(db, coupon_code).use(order, now=now)

    service.set_vip_discount(user)
    service.set_order_type(user, now)
    service.set_invite(user)

    if user.balance and order.total_amount > 0:
        if user.balance > order.total_amount:
            order.balance_amount = order.total_amount
            user.balance -= order.total_amount
            order.total_amount = 0
        else:
            order.balance_amount = user.balance
            order.total_amount -= user.balance
            user.balance = 0

    db.add(order)
    db.flush()
    logger.info("order %s created for user %s (plan %s, %s)", order.trade_no, user.id, plan.id, period)
    return order


def find_user_order(db: Session, user: User, trade_no: str | None) -> Order | None:
    if not trade_no:
        return None
    return db.query(Order).filter(Order.trade_no == trade_no, Order.user_id == user.id).first()


def checkout(db: Session, user: User, trade_no: str, method, token: str | None = None) -> dict:
    order = (
        db.query(Order)
        .filter(Order.trade_no == trade_no, Order.user_id == user.id, Order.status == STATUS_PENDING)
        .first()
        if trade_no
        else None
    )
    if not order:
        raise PanelError("Order does not exist or has been paid", 404)

    if order.total_amount <= 0:
        OrderService(db, order).paid(order.trade_no)
        return {"type": -1, "data": True}

    try:
        payment_id = int(method)
    except (TypeError, ValueError):
        payment_id = None
    payment = db.query(Payment).filter(Payment.id == payment_id).first() if payment_id else None
    if not payment or not payment.enable:
        raise PanelError("Payment method is not available")

    order.handling_amount = None
    if payment.handling_fee_fixed or payment.handling_fee_percent:
        order.handling_amount = round(
            order.total_amount * (payment.handling_fee_percent or 0) / 100 + (payment.handling_fee_fixed or 0)
        )
    order.payment_id = payment.id
    db.flush()

    return PaymentService(db, payment.payment, payment_id=payment.id).pay(
        {
            "trade_no": order.trade_no,
            "total_amount": order.total_amount + (order.handling_amount or 0),
            "user_id": order.user_id,
            "stripe_token": token,
        }
    )


def check_orders(db: Session, now: datetime | None = None) -> tuple[int, int]:
    now = now or utcnow()
    timeout = SettingsManager(db).get_int(ORDER_TIMEOUT_MINUTES_KEY, min_value=1)
    cutoff = now - timedelta(minutes=timeout)
    cancelled = 0
    opened = 0
    for order in db.query(Order).filter(Order.status == STATUS_PENDING).all():
        if as_utc(order.created_at) < cutoff:
            OrderService(db, order).cancel()
            cancelled += 1
    for order in db.query(Order).filter(Order.status == STATUS_PROCESSING).all():
        try:
            OrderService(db, order).open(now)
        except PanelError as exc:
            logger.error("order %s still cannot be opened: %s", order.trade_no, exc.message)
            continue
        opened += 1
    return cancelled, opened


def redeem(db: Session, user: User, code: str, now: datetime | None = None) -> Order:
    now = now or utcnow()
    redeem_code = db.query(RedeemCode).filter(RedeemCode.code == (code or "").strip()).first()
    if not redeem_code or redeem_code.status != 0:
        raise PanelError("Invalid redeem code")
    plan = db.query(Plan).filter(Plan.id == redeem_code.plan_id).first()
    if not plan:
        raise PanelError("Subscription plan does not exist", 404)
    if not plan.show and user.plan_id != plan.id:
        raise PanelError("This subscription has been sold out, please choose another subscription")
    if price_for(plan, redeem_code.period) is None:
        raise PanelError("This payment period cannot be purchased, please choose another period")

    order = Order(
        user_id=user.id,
        plan_id=plan.id,
        invite_user_id=user.invite_user_id,
        period=redeem_code.period,
        trade_no=generate_order_no(now),
        total_amount=0,
        type=TYPE_REDEEM,
        status=STATUS_PROCESSING,
        commission_status=commission.COMMISSION_INVALID,
        commission_balance=0,
        paid_at=now,
    )
    db.add(order)
    db.flush()
    OrderService(db, order).open(now)

    redeem_code.status = 1
    redeem_code.used_user_id = user.id
    redeem_code.used_at = now
    db.flush()
    return order


def serialize_order(order: Order, plan: Plan | None = None, coupon: Coupon | None = None) -> dict:
    data = {
        "trade_no": order.trade_no,
        "plan_id": order.plan_id,
        "payment_id": order.payment_id,
        "type": order.type,
        "period": order.period,
        "total_amount": order.total_amount,
        "handling_amount": order.handling_amount,
        "balance_amount": order.balance_amount,
        "discount_amount": order.discount_amount,
        "surplus_amount": order.surplus_amount,
        "refund_amount": order.refund_amount,
        "status": order.status,
        "commission_status": order.commission_status,
        "commission_balance": order.commission_balance,
        "actual_commission_balance": order.actual_commission_balance,
        "gift_days": order.gift_days,
        "created_at": iso(order.created_at),
        "paid_at": iso(order.paid_at),
    }
    if plan is not None:
        data["plan"] = serialize_plan(plan)
    if coupon is not None:
        data["coupon_code"] = coupon.code
    return data
