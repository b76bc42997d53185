from datetime import datetime

from sqlalchemy.orm import Session

from .errors import PanelError
from .helpers import as_utc, utcnow
from .models import Coupon, Order

COUPON_AMOUNT = 1
COUPON_PERCENT = 2


class CouponService:
    def __init__(self, db: Session, code: str):
        self.db = db
        self.code = (code or "").strip()
        self.coupon = self.db.query(Coupon).filter(Coupon.code == self.code).first() if self.code else None

    @property
    def coupon_id(self) -> int | None:
        return self.coupon.id if self.coupon else None

    def check(self, plan_id: int, period: str | None, user_id: int | None, now: datetime | None = None) -> Coupon:
        coupon = self.coupon
        if not coupon:
            raise PanelError("Invalid coupon")
        if coupon.limit_use is not None and coupon.limit_use <= 0:
            raise PanelError("This coupon is no longer available")
        now = now or utcnow()
        if now < as_utc(coupon.started_at):
            raise PanelError("This coupon has not yet started")
        if now > as_utc(coupon.ended_at):
            raise PanelError("This coupon has expired")
        if coupon.limit_plan_ids and int(plan_id) not in {int(item) for item in coupon.limit_plan_ids}:
            raise PanelError("The coupon code cannot be used for this subscription")
        if coupon.limit_period and period and period not in coupon.limit_period:
            raise PanelError("The coupon code cannot be used for this period")
        if coupon.limit_use_with_user is not None and user_id is not None:
            used = (
                self.db.query(Order)
                .filter(Order.coupon_id == coupon.id, Order.user_id == user_id, Order.status != 2)
                .count()
            )
            if used >= coupon.limit_use_with_user:
                raise PanelError(f"The coupon can only be used {coupon.limit_use_with_user} per person")
        return coupon

    def discount_for(self, total_amount: int) -> int:
        coupon = self.coupon
        if coupon.type == COUPON_AMOUNT:
            discount = int(coupon.value)
        elif coupon.type == COUPON_PERCENT:
            discount = int(total_amount * coupon.value / 100)
        else:
            discount = 0
        return max(0, min(discount, total_amount))

    def use(self, order: Order, now: datetime | None = None) -> None:
        self.check(order.plan_id, order.period, order.user_id, now=now)
        discount = self.discount_for(order.total_amount)
        order.discount_amount = (order.discount_amount or 0) + discount
        order.total_amount = order.total_amount - discount
        order.coupon_id = self.coupon.id
        if self.coupon.limit_use is not None:
            self.coupon.limit_use -= 1


def serialize_coupon(coupon: Coupon) -> dict:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "name": coupon.name,
        "type": coupon.type,
        "value": coupon.value,
        "show": bool(coupon.show),
        "limit_use": coupon.limit_use,
        "limit_use_with_user": coupon.limit_use_with_user,
        "limit_plan_ids": coupon.limit_plan_ids,
        "limit_period": coupon.limit_period,
        "started_at": as_utc(coupon.started_at).isoformat(),
        "ended_at": as_utc(coupon.ended_at).isoformat(),
    }
