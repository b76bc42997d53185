import logging
from datetime import datetime

from sqlalchemy.orm import Session

from .errors import PanelError
from .helpers import as_utc, guid, utcnow
from .models import CommissionLog, Order, Plan, User
from .plans import apply_plan, extend_by_hours, gift_period, is_active
from .settings_manager import (
    COMMISSION_AUTO_CHECK_KEY,
    COMMISSION_DISTRIBUTION_ENABLE_KEY,
    COMMISSION_DISTRIBUTION_L1_KEY,
    COMMISSION_DISTRIBUTION_L2_KEY,
    COMMISSION_DISTRIBUTION_L3_KEY,
    COMPLIMENTARY_HOURS_KEY,
    COMPLIMENTARY_PLAN_ID_KEY,
    WITHDRAW_CLOSE_KEY,
    SettingsManager,
)

logger = logging.getLogger(__name__)

MAX_LEVELS = 3

COMMISSION_PENDING = 0
COMMISSION_PROCESSING = 1
COMMISSION_VALID = 2
COMMISSION_INVALID = 3

ORDER_TYPE_FIRST_ORDER_REWARD = 6


def share_levels(settings: SettingsManager) -> list[int]:
    if not settings.get_bool(COMMISSION_DISTRIBUTION_ENABLE_KEY):
        return [100]
    return [
        settings.get_int(COMMISSION_DISTRIBUTION_L1_KEY, min_value=0, max_value=100),
        settings.get_int(COMMISSION_DISTRIBUTION_L2_KEY, min_value=0, max_value=100),
        settings.get_int(COMMISSION_DISTRIBUTION_L3_KEY, min_value=0, max_value=100),
    ]


def distribute(db: Session, order: Order) -> int:
    if db.query(CommissionLog.id).filter(CommissionLog.trade_no == order.trade_no).first():
        return order.actual_commission_balance or 0

    settings = SettingsManager(db)
    withdraw_closed = settings.get_bool(WITHDRAW_CLOSE_KEY)
    inviter_id = order.invite_user_id
    paid_out = 0
    for percent in share_levels(settings)[:MAX_LEVELS]:
        if not inviter_id:
            break
        inviter = db.query(User).filter(User.id == inviter_id).first()
        if not inviter:
            break
        amount = int(order.commission_balance * percent / 100)
        if amount > 0:
            if withdraw_closed:
                inviter.balance = (inviter.balance or 0) + amount
            else:
                inviter.commission_balance = (inviter.commission_balance or 0) + amount
            db.add(
                CommissionLog(
                    invite_user_id=inviter.id,
                    user_id=order.user_id,
                    trade_no=order.trade_no,
                    order_amount=order.total_amount,
                    get_amount=amount,
                )
            )
            paid_out += amount
            logger.info(
                "commission %s paid to user %s for order %s", amount, inviter.id, order.trade_no
            )
        inviter_id = inviter.invite_user_id

    order.actual_commission_balance = paid_out
    order.commission_status = COMMISSION_VALID
    db.flush()
    return paid_out


def settle(db: Session, order: Order) -> bool:
    if order.status != 3 or order.commission_status != COMMISSION_PENDING:
        return False
    if not order.invite_user_id or not order.commission_balance:
        return False
    if not SettingsManager(db).get_bool(COMMISSION_AUTO_CHECK_KEY):
        return False
    distribute(db, order)
    return True


def approve(db: Session, order: Order) -> int:
    if order.status != 3:
        raise PanelError("Only completed orders can pay commission")
    if order.commission_status not in (COMMISSION_PENDING, COMMISSION_PROCESSING):
        raise PanelError("Commission has already been handled")
    return distribute(db, order)


def reject(db: Session, order: Order) -> None:
    if order.commission_status not in (COMMISSION_PENDING, COMMISSION_PROCESSING):
        raise PanelError("Commission has already been handled")
    order.commission_status = COMMISSION_INVALID
    db.flush()


def first_order_reward(db: Session, order: Order, now: datetime | None = None) -> Order | None:
    if order.status != 3 or order.total_amount <= 0:
        return None
    user = db.query(User).filter(User.id == order.user_id).first()
    if not user or not user.invite_user_id or user.has_triggered_invite_reward:
        return None
    inviter = db.query(User).filter(User.id == user.invite_user_id).first()
    if not inviter:
        logger.info("inviter %s of user %s is gone, no reward", user.invite_user_id, user.id)
        return None

    has_other_paid = (
        db.query(Order.id)
        .filter(
            Order.user_id == user.id,
            Order.id != order.id,
            Order.status == 3,
            Order.total_amount > 0,
        )
        .first()
    )
    if has_other_paid:
        return None

    settings = SettingsManager(db)
    plan_id = settings.get_int(COMPLIMENTARY_PLAN_ID_KEY)
    plan = db.query(Plan).filter(Plan.id == plan_id).first() if plan_id else None
    if not plan:
        return None

    now = now or utcnow()
    hours = settings.get_int(COMPLIMENTARY_HOURS_KEY, min_value=1)
    reward = Order(
        user_id=inviter.id,
        plan_id=plan.id,
        period=gift_period(hours),
        trade_no=guid(),
        total_amount=0,
        status=3,
        type=ORDER_TYPE_FIRST_ORDER_REWARD,
        invited_user_id=user.id,
        gift_days=round(hours / 24),
        paid_at=now,
    )
    db.add(reward)

    if not is_active(inviter, now) or inviter.plan_id is None:
        apply_plan(inviter, plan)
        inviter.expired_at = extend_by_hours(None, hours, now)
    elif inviter.expired_at is not None:
        inviter.expired_at = extend_by_hours(as_utc(inviter.expired_at), hours, now)
    user.has_triggered_invite_reward = True
    db.flush()
    logger.info("first order reward granted to user %s for invitee %s", inviter.id, user.id)
    return reward
