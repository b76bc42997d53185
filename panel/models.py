from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .db import Base


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UpdatedMixin(TimestampMixin):
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class User(Base, UpdatedMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(64), unique=True, nullable=False)
    password = Column(String(255), nullable=False)
    password_algo = Column(String(10), nullable=True)
    password_salt = Column(String(10), nullable=True)
    uuid = Column(String(36), unique=True, nullable=False)
    token = Column(String(32), unique=True, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False, server_default="0")
    is_staff = Column(Boolean, nullable=False, default=False, server_default="0")
    banned = Column(Boolean, nullable=False, default=False, server_default="0")
    # money in cents
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    commission_balance = Column(Integer, nullable=False, default=0, server_default="0")
    commission_type = Column(Integer, nullable=False, default=0, server_default="0")  # 0 system | 1 period | 2 onetime
    commission_rate = Column(Integer, nullable=True)
    discount = Column(Integer, nullable=True)
    invite_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="SET NULL"), nullable=True)
    group_id = Column(Integer, nullable=True)
    # traffic in bytes
    transfer_enable = Column(BigInteger, nullable=False, default=0, server_default="0")
    u = Column(BigInteger, nullable=False, default=0, server_default="0")
    d = Column(BigInteger, nullable=False, default=0, server_default="0")
    t = Column(DateTime(timezone=True), nullable=True)
    speed_limit = Column(Integer, nullable=True)
    device_limit = Column(Integer, nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    remind_expire = Column(Boolean, nullable=False, default=True, server_default="1")
    remind_traffic = Column(Boolean, nullable=False, default=True, server_default="1")
    telegram_id = Column(String, unique=True, nullable=True)
    has_triggered_invite_reward = Column(Boolean, nullable=False, default=False, server_default="0")
    remarks = Column(Text, nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    plan = relationship("Plan")
    inviter = relationship("User", remote_side=[id])
    auth_sessions = relationship(
        "AuthSession",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    orders = relationship(
        "Order",
        back_populates="user",
        foreign_keys="Order.user_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Plan(Base, UpdatedMixin):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    transfer_enable = Column(Integer, nullable=False)  # GiB
    speed_limit = Column(Integer, nullable=True)
    device_limit = Column(Integer, nullable=True)
    show = Column(Boolean, nullable=False, default=False, server_default="0")
    sell = Column(Boolean, nullable=False, default=False, server_default="0")
    renew = Column(Boolean, nullable=False, default=True, server_default="1")
    sort = Column(Integer, nullable=True)
    capacity_limit = Column(Integer, nullable=True)
    reset_traffic_method = Column(Integer, nullable=True)
    # prices in cents, NULL means the period is not sold
    month_price = Column(Integer, nullable=True)
    quarter_price = Column(Integer, nullable=True)
    half_year_price = Column(Integer, nullable=True)
    year_price = Column(Integer, nullable=True)
    two_year_price = Column(Integer, nullable=True)
    three_year_price = Column(Integer, nullable=True)
    onetime_price = Column(Integer, nullable=True)
    reset_price = Column(Integer, nullable=True)


class Order(Base, UpdatedMixin):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    invite_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="SET NULL"), nullable=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    type = Column(Integer, nullable=False, default=1, server_default="1")
    period = Column(String, nullable=False)
    trade_no = Column(String(36), unique=True, nullable=False)
    callback_no = Column(String, nullable=True)
    total_amount = Column(Integer, nullable=False, default=0, server_default="0")
    handling_amount = Column(Integer, nullable=True)
    balance_amount = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=True)
    surplus_amount = Column(Integer, nullable=True)
    refund_amount = Column(Integer, nullable=True)
    surplus_order_ids = Column(JSON, nullable=True)
    status = Column(Integer, nullable=False, default=0, server_default="0")
    commission_status = Column(Integer, nullable=False, default=0, server_default="0")
    commission_balance = Column(Integer, nullable=False, default=0, server_default="0")
    actual_commission_balance = Column(Integer, nullable=True)
    gift_days = Column(Integer, nullable=True)
    invited_user_id = Column(Integer, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="orders", foreign_keys=[user_id])
    plan = relationship("Plan")


class Coupon(Base, UpdatedMixin):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True)
    code = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    type = Column(Integer, nullable=False)  # 1 amount | 2 percent
    value = Column(Integer, nullable=False)
    show = Column(Boolean, nullable=False, default=False, server_default="0")
    limit_use = Column(Integer, nullable=True)
    limit_use_with_user = Column(Integer, nullable=True)
    limit_plan_ids = Column(JSON, nullable=True)
    limit_period = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=False)


class RedeemCode(Base, TimestampMixin):
    __tablename__ = "redeem_codes"

    id = Column(Integer, primary_key=True)
    code = Column(String, unique=True, nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False)
    period = Column(String, nullable=False)
    status = Column(Integer, nullable=False, default=0, server_default="0")
    used_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)


class InviteCode(Base, UpdatedMixin):
    __tablename__ = "invite_codes"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    code = Column(String(32), unique=True, nullable=False)
    status = Column(Integer, nullable=False, default=0, server_default="0")
    pv = Column(Integer, nullable=False, default=0, server_default="0")


class CommissionLog(Base, TimestampMixin):
    __tablename__ = "commission_logs"

    id = Column(Integer, primary_key=True)
    invite_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    trade_no = Column(String(36), nullable=False)
    order_amount = Column(Integer, nullable=False)
    get_amount = Column(Integer, nullable=False)


class Payment(Base, UpdatedMixin):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    uuid = Column(String(32), unique=True, nullable=False)
    payment = Column(String, nullable=False)
    name = Column(String, nullable=False)
    icon = Column(String, nullable=True)
    config = Column(JSON, nullable=False, default=dict)
    notify_domain = Column(String, nullable=True)
    handling_fee_fixed = Column(Integer, nullable=True)
    handling_fee_percent = Column(Integer, nullable=True)
    enable = Column(Boolean, nullable=False, default=False, server_default="0")
    sort = Column(Integer, nullable=True)


class ServerGroup(Base, UpdatedMixin):
    __tablename__ = "server_groups"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)


class Server(Base, UpdatedMixin):
    __tablename__ = "servers"

    id = Column(Integer, primary_key=True)
    type = Column(String, nullable=False)  # shadowsocks | vmess | trojan | hysteria
    name = Column(String, nullable=False)
    group_ids = Column(JSON, nullable=False, default=list)
    parent_id = Column(Integer, ForeignKey("servers.id", ondelete="SET NULL"), nullable=True)
    host = Column(String, nullable=False)
    port = Column(Integer, nullable=False)
    server_port = Column(Integer, nullable=False)
    cipher = Column(String, nullable=True)
    network = Column(String, nullable=True)
    tls = Column(Boolean, nullable=False, default=False, server_default="0")
    tags = Column(JSON, nullable=True)
    rate = Column(String, nullable=False, default="1", server_default="1")
    show = Column(Boolean, nullable=False, default=False, server_default="0")
    sort = Column(Integer, nullable=True)
    settings = Column(JSON, nullable=True)


class ServerRule(Base, UpdatedMixin):
    __tablename__ = "server_rules"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    domain = Column(String, nullable=False)
    server_arr = Column(String, nullable=False)  # comma separated server group ids
    ua = Column(String, nullable=False)
    prot = Column(Integer, nullable=True)
    sort = Column(Integer, nullable=False, default=0, server_default="0")


class StatUser(Base, UpdatedMixin):
    __tablename__ = "stat_users"
    __table_args__ = (
        UniqueConstraint("user_id", "server_rate", "record_at", "record_type", name="uq_stat_user_record"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    server_rate = Column(String, nullable=False)
    u = Column(BigInteger, nullable=False, default=0, server_default="0")
    d = Column(BigInteger, nullable=False, default=0, server_default="0")
    record_type = Column(String(1), nullable=False, default="d", server_default="d")
    record_at = Column(DateTime(timezone=True), nullable=False)


class StatServer(Base, UpdatedMixin):
    __tablename__ = "stat_servers"
    __table_args__ = (
        UniqueConstraint("server_id", "server_type", "record_at", "record_type", name="uq_stat_server_record"),
    )

    id = Column(Integer, primary_key=True)
    server_id = Column(Integer, nullable=False)
    server_type = Column(String, nullable=False)
    u = Column(BigInteger, nullable=False, default=0, server_default="0")
    d = Column(BigInteger, nullable=False, default=0, server_default="0")
    record_type = Column(String(1), nullable=False, default="d", server_default="d")
    record_at = Column(DateTime(timezone=True), nullable=False)


class Stat(Base, UpdatedMixin):
    __tablename__ = "stats"
    __table_args__ = (
        UniqueConstraint("record_at", "record_type", name="uq_stat_record"),
    )

    id = Column(Integer, primary_key=True)
    record_at = Column(DateTime(timezone=True), nullable=False)
    record_type = Column(String(1), nullable=False, default="d", server_default="d")
    order_count = Column(Integer, nullable=False, default=0, server_default="0")
    order_total = Column(Integer, nullable=False, default=0, server_default="0")
    paid_count = Column(Integer, nullable=False, default=0, server_default="0")
    paid_total = Column(Integer, nullable=False, default=0, server_default="0")
    commission_count = Column(Integer, nullable=False, default=0, server_default="0")
    commission_total = Column(Integer, nullable=False, default=0, server_default="0")
    register_count = Column(Integer, nullable=False, default=0, server_default="0")
    invite_count = Column(Integer, nullable=False, default=0, server_default="0")
    transfer_used_total = Column(BigInteger, nullable=False, default=0, server_default="0")


class Ticket(Base, UpdatedMixin):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    subject = Column(String, nullable=False)
    level = Column(Integer, nullable=False, default=0, server_default="0")
    status = Column(Integer, nullable=False, default=0, server_default="0")  # 0 open | 1 closed


class AuthSession(Base, TimestampMixin):
    __tablename__ = "auth_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"))
    session_token = Column(String, nullable=False, unique=True)
    ip = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="auth_sessions")


class Transient(Base, TimestampMixin):
    __tablename__ = "transients"

    id = Column(Integer, primary_key=True)
    key = Column(String(191), unique=True, nullable=False)
    value = Column(JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class AppSetting(Base, TimestampMixin):
    __tablename__ = "app_settings"

    id = Column(Integer, primary_key=True)
    key = Column(String(128), unique=True, nullable=False)
    value_json = Column(JSON, nullable=True)
    description = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
