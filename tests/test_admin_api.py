from types import SimpleNamespace

from conftest import login, make_group, make_plan, make_user, subscribe

from panel import orders
from panel.models import AppSetting, Coupon, Order, Payment, Plan, RedeemCode, Server, ServerRule, User

PREFIX = "/api/v1/secret-admin"


def _admin_client(client, db):
    make_user(db, "admin@example.com", is_admin=True)
    login(client, "admin@example.com")
    return client


def test_admin_routes_require_admin_role(client, db):
    assert client.get(f"{PREFIX}/plan/fetch").status_code == 401
    make_user(db)
    login(client)
    response = client.get(f"{PREFIX}/plan/fetch")
    assert response.status_code == 403
    assert response.get_json() == {"ok": False, "error": "Forbidden"}


def test_admin_page_uses_secure_path(client):
    assert client.get("/secret-admin").status_code == 200
    assert client.get("/admin").status_code == 404


def test_config_save_and_fetch(client, db):
    _admin_client(client, db)
    assert client.post(f"{PREFIX}/config/save", json={"bad key!": 1}).status_code == 400
    assert client.post(f"{PREFIX}/config/save", json={"site.app_name": "Nebula"}).status_code == 200

    config = client.get(f"{PREFIX}/config/fetch").get_json()["data"]
    assert config["site.app_name"] == "Nebula"
    assert config["register.stop"] is False
    assert db.query(AppSetting).filter(AppSetting.key == "site.app_name").count() == 1

    client.post(f"{PREFIX}/config/save", json={"site.app_name": None})
    assert client.get(f"{PREFIX}/config/fetch").get_json()["data"]["site.app_name"] == "Orbita"


def test_plan_save_force_update_and_drop(client, db):
    _admin_client(client, db)
    group = make_group(db)
    created = client.post(
        f"{PREFIX}/plan/save",
        json={"group_id": group.id, "name": "Pro", "transfer_enable": 50, "month_price": 1500, "show": True},
    ).get_json()["data"]
    assert created["month_price"] == 1500
    assert created["renew"] is True

    plan = db.query(Plan).filter(Plan.id == created["id"]).one()
    user = subscribe(db, make_user(db), plan)
    client.post(
        f"{PREFIX}/plan/save",
        json={"id": plan.id, "group_id": group.id, "name": "Pro", "transfer_enable": 80, "force_update": True},
    )
    db.expire_all()
    assert db.query(User).filter(User.id == user.id).one().transfer_enable == 80 * 1073741824

    listed = client.get(f"{PREFIX}/plan/fetch").get_json()["data"]
    assert listed[0]["count"] == 1
    in_use = client.post(f"{PREFIX}/plan/drop", json={"id": plan.id})
    assert in_use.get_json()["error"] == "This subscription is in use and cannot be deleted"

    missing_group = client.post(f"{PREFIX}/plan/save", json={"group_id": 999, "name": "X", "transfer_enable": 1})
    assert missing_group.status_code == 404


def test_plan_sort_rejects_unknown_ids(client, db):
    _admin_client(client, db)
    first = make_plan(db, name="First")
    second = make_plan(db, name="Second")
    assert client.post(f"{PREFIX}/plan/sort", json={"ids": [second.id, 999]}).status_code == 400
    assert client.post(f"{PREFIX}/plan/sort", json={"ids": [second.id, first.id]}).status_code == 200
    names = [plan["name"] for plan in client.get(f"{PREFIX}/plan/fetch").get_json()["data"]]
    assert names == ["Second", "First"]


def test_user_update_and_ban(app, client, db):
    _admin_client(client, db)
    plan = make_plan(db)
    user = make_user(db)
    user_client = app.test_client()
    login(user_client)

    response = client.post(
        f"{PREFIX}/user/update",
        json={"id": user.id, "plan_id": plan.id, "transfer_enable": 2048, "expired_at": 1893456000, "balance": 500},
    )
    data = response.get_json()["data"]
    assert data["plan_id"] == plan.id
    assert data["group_id"] == plan.group_id
    assert data["transfer_enable"] == 2048
    assert data["expired_at"].startswith("2030-01-01")

    assert client.post(f"{PREFIX}/user/update", json={"id": user.id, "email": "admin@example.com"}).status_code == 409

    assert client.post(f"{PREFIX}/user/ban", json={"id": user.id}).status_code == 200
    assert user_client.get("/api/v1/user/info").status_code == 401

    listed = client.get(f"{PREFIX}/user/fetch?email=user@").get_json()
    assert listed["total"] == 1
    assert listed["data"][0]["banned"] is True


def test_user_reset_traffic_and_secret(client, db):
    _admin_client(client, db)
    user = make_user(db, u=10, d=20)
    old_token = user.token
    client.post(f"{PREFIX}/user/resetTraffic", json={"id": user.id})
    client.post(f"{PREFIX}/user/resetSecret", json={"id": user.id})

    info = client.get(f"{PREFIX}/user/getUserInfoById?id={user.id}").get_json()["data"]
    assert (info["u"], info["d"]) == (0, 0)
    assert info["token"] != old_token


def test_order_marked_paid_opens_plan(client, db):
    _admin_client(client, db)
    plan = make_plan(db)
    user = make_user(db)
    order = orders.create_order(db, user, plan.id, "month_price")
    db.commit()

    assert client.post(f"{PREFIX}/order/paid", json={"trade_no": order.trade_no}).status_code == 200
    assert client.post(f"{PREFIX}/order/paid", json={"trade_no": order.trade_no}).status_code == 400
    assert client.post(f"{PREFIX}/order/paid", json={"trade_no": "missing"}).status_code == 404

    db.expire_all()
    stored = db.query(Order).filter(Order.trade_no == order.trade_no).one()
    assert stored.status == orders.STATUS_COMPLETED
    assert stored.callback_no == "manual_operation"
    assert db.query(User).filter(User.id == user.id).one().plan_id == plan.id

    listed = client.get(f"{PREFIX}/order/fetch?status=3").get_json()
    assert listed["data"][0]["email"] == "user@example.com"
    assert listed["data"][0]["plan_name"] == "Basic"


def _commission_order(db, trade_no):
    inviter = db.query(User).filter(User.email == "inviter@example.com").first() or make_user(
        db, "inviter@example.com"
    )
    buyer = db.query(User).filter(User.email == "buyer@example.com").first() or make_user(
        db, "buyer@example.com", invite_user_id=inviter.id
    )
    order = Order(
        user_id=buyer.id,
        invite_user_id=inviter.id,
        period="month_price",
        trade_no=trade_no,
        total_amount=5000,
        status=3,
        commission_status=1,
        commission_balance=500,
    )
    db.add(order)
    db.commit()
    return inviter, order


def test_commission_approve_and_reject(client, db):
    _admin_client(client, db)
    inviter, approved = _commission_order(db, "T-A")
    _, rejected = _commission_order(db, "T-R")

    response = client.post(f"{PREFIX}/order/commission/approve", json={"trade_no": approved.trade_no})
    assert response.get_json()["data"] == 500
    again = client.post(f"{PREFIX}/order/commission/approve", json={"trade_no": approved.trade_no})
    assert again.get_json()["error"] == "Commission has already been handled"

    assert client.post(f"{PREFIX}/order/commission/reject", json={"trade_no": rejected.trade_no}).status_code == 200

    db.expire_all()
    assert db.query(User).filter(User.id == inviter.id).one().commission_balance == 500
    assert db.query(Order).filter(Order.trade_no == "T-R").one().commission_status == 3


def test_coupon_generate_single_and_batch(client, db):
    _admin_client(client, db)
    window = {"started_at": "2026-01-01T00:00:00Z", "ended_at": "2026-12-31T00:00:00Z"}

    single = client.post(
        f"{PREFIX}/coupon/generate", json={"name": "Spring", "type": 2, "value": 20, "code": "SPRING", **window}
    )
    assert single.get_json()["data"]["code"] == "SPRING"
    duplicate = client.post(
        f"{PREFIX}/coupon/generate", json={"name": "Spring", "type": 2, "value": 20, "code": "SPRING", **window}
    )
    assert duplicate.status_code == 409
    too_big = client.post(f"{PREFIX}/coupon/generate", json={"name": "Bad", "type": 2, "value": 150, **window})
    assert too_big.status_code == 400

    batch = client.post(
        f"{PREFIX}/coupon/generate", json={"name": "Batch", "type": 1, "value": 100, "generate_count": 3, **window}
    )
    assert len(batch.get_json()["data"]) == 3
    assert db.query(Coupon).count() == 4
    assert client.get(f"{PREFIX}/coupon/fetch").get_json()["total"] == 4


def test_redeem_generate_and_drop(client, db):
    _admin_client(client, db)
    plan = make_plan(db)
    codes = client.post(
        f"{PREFIX}/redeem/generate", json={"plan_id": plan.id, "period": "year_price", "count": 2}
    ).get_json()["data"]
    assert len(codes) == 2 and all(len(code) == 16 for code in codes)
    assert client.post(f"{PREFIX}/redeem/generate", json={"plan_id": plan.id, "period": "reset_price"}).status_code == 400

    row = db.query(RedeemCode).filter(RedeemCode.code == codes[0]).one()
    assert client.post(f"{PREFIX}/redeem/drop", json={"id": row.id}).status_code == 200
    assert client.get(f"{PREFIX}/redeem/fetch").get_json()["total"] == 1


def test_payment_save_form_and_toggle(client, db):
    _admin_client(client, db)
    assert client.get(f"{PREFIX}/payment/getPaymentMethods").get_json()["data"] == ["EPay", "MGate"]
    form = client.post(f"{PREFIX}/payment/getPaymentForm", json={"payment": "EPay"}).get_json()["data"]
    assert set(form) == {"url", "pid", "key"}
    assert client.post(f"{PREFIX}/payment/getPaymentForm", json={"payment": "Nope"}).status_code == 404

    saved = client.post(
        f"{PREFIX}/payment/save",
        json={"payment": "EPay", "name": "Alipay", "config": {"url": "https://pay.example.com", "pid": "1", "key": "k"}},
    ).get_json()["data"]
    assert saved["enable"] is False
    assert saved["notify_url"].endswith(f"/api/v1/guest/payment/notify/EPay/{saved['uuid']}")

    filled = client.post(f"{PREFIX}/payment/getPaymentForm", json={"payment": "EPay", "id": saved["id"]}).get_json()
    assert filled["data"]["pid"]["value"] == "1"

    client.post(f"{PREFIX}/payment/show", json={"id": saved["id"]})
    assert db.query(Payment).filter(Payment.id == saved["id"]).one().enable is True

    bad_domain = client.post(
        f"{PREFIX}/payment/save", json={"payment": "EPay", "name": "X", "notify_domain": "pay.example.com"}
    )
    assert bad_domain.status_code == 400


def test_server_group_node_and_rule_management(client, db):
    _admin_client(client, db)
    group_id = client.post(f"{PREFIX}/server/group/save", json={"name": "Premium"}).get_json()["data"]["id"]

    missing_cipher = client.post(
        f"{PREFIX}/server/manage/save",
        json={"type": "shadowsocks", "name": "SS", "group_ids": [group_id], "host": "a.example.com", "port": 1,
              "server_port": 2},
    )
    assert missing_cipher.status_code == 400

    node = client.post(
        f"{PREFIX}/server/manage/save",
        json={
            "type": "trojan",
            "name": "Trojan",
            "group_ids": [group_id],
            "host": "t.example.com",
            "port": 443,
            "server_port": 8443,
            "rate": "1.5",
            "tags": ["WEB"],
        },
    ).get_json()["data"]
    assert node["rate"] == "1.5"
    assert node["show"] is False
    client.post(f"{PREFIX}/server/manage/update", json={"id": node["id"], "show": True})
    assert db.query(Server).filter(Server.id == node["id"]).one().show is True

    groups = client.get(f"{PREFIX}/server/group/fetch").get_json()["data"]
    assert groups[0]["server_count"] == 1
    in_use = client.post(f"{PREFIX}/server/group/drop", json={"id": group_id})
    assert in_use.get_json()["error"] == "This group is used by a node and cannot be deleted"

    first = client.post(
        f"{PREFIX}/server/rule/save", json={"name": "A", "domain": "a.cdn.com", "ua": "clash", "server_arr": [group_id]}
    ).get_json()["data"]
    second = client.post(
        f"{PREFIX}/server/rule/save", json={"name": "B", "domain": "b.cdn.com", "ua": "shadowrocket",
                                            "server_arr": str(group_id)}
    ).get_json()["data"]
    assert (first["sort"], second["sort"]) == (1, 2)
    client.post(f"{PREFIX}/server/rule/sort", json={"ids": [second["id"], first["id"]]})
    rules = db.query(ServerRule).order_by(ServerRule.sort.asc()).all()
    assert [rule.name for rule in rules] == ["B", "A"]


def test_system_status_reads_psutil(client, db, monkeypatch):
    _admin_client(client, db)
    monkeypatch.setattr("panel.admin.psutil.cpu_percent", lambda interval=None: 12.5)
    monkeypatch.setattr("panel.admin.psutil.virtual_memory", lambda: SimpleNamespace(percent=40.04))
    monkeypatch.setattr("panel.admin.psutil.disk_usage", lambda path: SimpleNamespace(percent=71.26))
    monkeypatch.setattr("panel.admin.psutil.boot_time", lambda: 0)

    data = client.get(f"{PREFIX}/system/getSystemStatus").get_json()["data"]
    assert data["cpu_pct"] == 12.5
    assert data["ram_used_pct"] == 40.0
    assert data["disk_used_pct"] == 71.3
    assert data["uptime_s"] > 0


def test_column_chart_validates_range(client, db):
    _admin_client(client, db)
    assert client.get(f"{PREFIX}/stat/getColumnChart?type=day").status_code == 400
    bad_type = client.get(f"{PREFIX}/stat/getColumnChart?type=decade&start_time=1700000000&end_time=1700086400")
    assert bad_type.status_code == 400
    ok = client.get(f"{PREFIX}/stat/getColumnChart?type=day&start_time=1700000000&end_time=1700086400")
    assert ok.get_json()["data"]["chart_data"] == []
