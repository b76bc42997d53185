import logging
import os

import requests
from sqlalchemy.orm import Session

from .commission import COMMISSION_VALID, share_levels
from .helpers import as_utc, from_cents
from .models import Coupon, Order, Plan, User
from .orders import TYPE_LABELS
from .plans import period_label
from .settings_manager import WITHDRAW_CLOSE_KEY, SettingsManager

logger = logging.getLogger(__name__)


class TelegramService:
    def __init__(self, token: str | None = None, api_base: str | None = None):
        self.token = token if token is not None else os.getenv("TELEGRAM_BOT_TOKEN", "")
        self.api_base = (api_base or os.getenv("TELEGRAM_API_BASE") or "https://api.telegram.org").rstrip("/")
        self.session = requests.Session()

    def send_message(self, chat_id, text: str, parse_mode: str | None = None) -> bool:
        if not self.token:
            logger.warning("TELEGRAM_BOT_TOKEN not set, message to %s dropped", chat_id)
            return False
        payload = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        try:
            response = self.session.post(f"{self.api_base}/bot{self.token}/sendMessage", json=payload, timeout=8)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("telegram sendMessage to %s failed: %s", chat_id, exc)
            return False
        return True

    def send_message_with_admin(self, db: Session, text: str, include_staff: bool = False) -> int:
        query = db.query(User).filter(User.telegram_id.isnot(None))
        if include_staff:
            query = query.filter((User.is_admin.is_(True)) | (User.is_staff.is_(True)))
        else:
            query = query.filter(User.is_admin.is_(True))
        sent = 0
        for user in query.all():
            if self.send_message(user.telegram_id, text, parse_mode="markdown"):
                sent += 1
        return sent


class OrderNotifyService:
    def __init__(self, telegram: TelegramService | None = None):
        self.telegram = telegram or TelegramService()

    @staticmethod
    def _commission(db: Session, order: Order) -> int:
        if order.commission_status == COMMISSION_VALID and order.actual_commission_balance is not None:
            return order.actual_commission_balance
        levels = share_levels(SettingsManager(db))
        return int((order.commission_balance or 0) * levels[0] / 100)

    def build_message(self, db: Session, order: Order) -> str:
        plan = db.query(Plan).filter(Plan.id == order.plan_id).first()
        user = db.query(User).filter(User.id == order.user_id).first()
        commission = self._commission(db, order)

        inviter_email = ""
        inviter_info = "Inviter: none"
        if order.invite_user_id:
            inviter = db.query(User).filter(User.id == order.invite_user_id).first()
            if inviter:
                inviter_email = inviter.email
                if SettingsManager(db).get_bool(WITHDRAW_CLOSE_KEY):
                    inviter_info = f"Inviter total balance: {from_cents(inviter.balance)}"
                else:
                    inviter_info = f"Inviter total commission: {from_cents(inviter.commission_balance)}"

        discount = "none"
        coupon_code = "none"
        if order.coupon_id is not None:
            discount = str(from_cents(order.discount_amount))
            coupon = db.query(Coupon).filter(Coupon.id == order.coupon_id).first()
            if coupon:
                coupon_code = coupon.code

        signup = as_utc(user.created_at).date().isoformat() if user and user.created_at else "unknown"
        return "\n".join(
            [
                f"💰 Payment received {from_cents(order.total_amount)}",
                "———————————————",
                f"Order: `{order.trade_no}`",
                f"Email: `{user.email if user else ''}`",
                f"Plan: {plan.name if plan else ''}",
                f"Type: {TYPE_LABELS.get(order.type, 'Unknown')}",
                f"Period: {period_label(order.period)}",
                f"Discount: {discount}",
                f"Coupon: {coupon_code}",
                f"Commission: {from_cents(commission)}",
                f"Inviter email: `{inviter_email}`",
                inviter_info,
                f"Signed up: {signup}",
            ]
        )

    def notify(self, db: Session, order: Order) -> int:
        try:
            message = self.build_message(db, order)
        except Exception:
            logger.exception("could not build notification for order %s", order.trade_no)
            return 0
        logger.info("order notification for %s", order.trade_no)
        return self.telegram.send_message_with_admin(db, message, include_staff=True)
