from datetime import timedelta

import pytest
from conftest import make_plan, make_user, set_settings, subscribe

from panel import commission
from panel.errors import PanelError
from panel.helpers import as_utc, utcnow
from panel.models import CommissionLog, Order
from panel.settings_manager import (
    COMMISSION_DISTRIBUTION_ENABLE_KEY,
    COMMISSION_DISTRIBUTION_L1_KEY,
    COMMISSION_DISTRIBUTION_L2_KEY,
    COMMISSION_DISTRIBUTION_L3_KEY,
    COMPLIMENTARY_HOURS_KEY,
    COMPLIMENTARY_PLAN_ID_KEY,
    WITHDRAW_CLOSE_KEY,
)


def _completed_order(db, buyer, inviter, amount=10000, commission_balance=1000, trade_no="T-1"):
    order = Order(
        user_id=buyer.id,
        invite_user_id=inviter.id if inviter else None,
        period="month_price",
        trade_no=trade_no,
        total_amount=amount,
        status=3,
        commission_status=0,
        commission_balance=commission_balance,
    )
    db.add(order)
    db.commit()
    return order


def test_single_level_credits_commission_balance(db):
    inviter = make_user(db, "inviter@example.com")
    buyer = make_user(db, "buyer@example.com", invite_user_id=inviter.id)
    order = _completed_order(db, buyer, inviter)

    assert commission.distribute(db, order) == 1000
    db.commit()

    assert inviter.commission_balance == 1000
    assert order.commission_status == commission.COMMISSION_VALID


def test_three_level_distribution(db):
    set_settings(
        db,
        {
            COMMISSION_DISTRIBUTION_ENABLE_KEY: True,
            COMMISSION_DISTRIBUTION_L1_KEY: 50,
            COMMISSION_DISTRIBUTION_L2_KEY: 30,
            COMMISSION_DISTRIBUTION_L3_KEY: 20,
        },
    )
    top = make_user(db, "top@example.com")
    middle = make_user(db, "middle@example.com", invite_user_id=top.id)
    direct = make_user(db, "direct@example.com", invite_user_id=middle.id)
    buyer = make_user(db, "buyer@example.com", invite_user_id=direct.id)
    order = _completed_order(db, buyer, direct)

    paid = commission.distribute(db, order)
    db.commit()

    assert paid == 1000
    assert (direct.commission_balance, middle.commission_balance, top.commission_balance) == (500, 300, 200)
    assert db.query(CommissionLog).filter(CommissionLog.trade_no == order.trade_no).count() == 3


def test_distribution_is_idempotent(db):
    inviter = make_user(db, "inviter@example.com")
    buyer = make_user(db, "buyer@example.com", invite_user_id=inviter.id)
    order = _completed_order(db, buyer, inviter)

    commission.distribute(db, order)
    commission.distribute(db, order)
    db.commit()

    assert inviter.commission_balance == 1000
    assert db.query(CommissionLog).count() == 1


def test_withdraw_closed_credits_spendable_balance(db):
    set_settings(db, {WITHDRAW_CLOSE_KEY: True})
    inviter = make_user(db, "inviter@example.com")
    buyer = make_user(db, "buyer@example.com", invite_user_id=inviter.id)
    order = _completed_order(db, buyer, inviter)

    commission.distribute(db, order)
    db.commit()

    assert inviter.balance == 1000
    assert inviter.commission_balance == 0


def test_approve_and_reject_guard_states(db):
    inviter = make_user(db, "inviter@example.com")
    buyer = make_user(db, "buyer@example.com", invite_user_id=inviter.id)
    order = _completed_order(db, buyer, inviter)
    order.status = 0
    with pytest.raises(PanelError):
        commission.approve(db, order)

    order.status = 3
    commission.reject(db, order)
    assert order.commission_status == commission.COMMISSION_INVALID
    with pytest.raises(PanelError):
        commission.reject(db, order)
    with pytest.raises(PanelError):
        commission.approve(db, order)


def test_first_order_reward_gives_inactive_inviter_the_complimentary_plan(db):
    gift_plan = make_plan(db, name="Gift", transfer_enable=20)
    set_settings(db, {COMPLIMENTARY_PLAN_ID_KEY: gift_plan.id, COMPLIMENTARY_HOURS_KEY: 72})
    inviter = make_user(db, "inviter@example.com")
    buyer = make_user(db, "buyer@example.com", invite_user_id=inviter.id)
    order = _completed_order(db, buyer, inviter)

    reward = commission.first_order_reward(db, order)
    db.commit()

    assert reward.type == commission.ORDER_TYPE_FIRST_ORDER_REWARD
    assert reward.user_id == inviter.id
    assert reward.invited_user_id == buyer.id
    assert reward.gift_days == 3
    assert inviter.plan_id == gift_plan.id
    expected = utcnow() + timedelta(hours=72)
    assert abs((as_utc(inviter.expired_at) - expected).total_seconds()) < 60
    assert buyer.has_triggered_invite_reward is True
    assert commission.first_order_reward(db, order) is None


def test_first_order_reward_extends_active_inviter(db):
    gift_plan = make_plan(db, name="Gift")
    own_plan = make_plan(db, name="Own")
    set_settings(db, {COMPLIMENTARY_PLAN_ID_KEY: gift_plan.id, COMPLIMENTARY_HOURS_KEY: 24})
    inviter = subscribe(db, make_user(db, "inviter@example.com"), own_plan, days=10)
    before = as_utc(inviter.expired_at)
    buyer = make_user(db, "buyer@example.com", invite_user_id=inviter.id)
    order = _completed_order(db, buyer, inviter)

    commission.first_order_reward(db, order)
    db.commit()

    assert inviter.plan_id == own_plan.id
    assert as_utc(inviter.expired_at) == before + timedelta(hours=24)


def test_free_orders_do_not_trigger_reward(db):
    gift_plan = make_plan(db, name="Gift")
    set_settings(db, {COMPLIMENTARY_PLAN_ID_KEY: gift_plan.id})
    inviter = make_user(db, "inviter@example.com")
    buyer = make_user(db, "buyer@example.com", invite_user_id=inviter.id)
    order = _completed_order(db, buyer, inviter, amount=0, commission_balance=0)

    assert commission.first_order_reward(db, order) is None
