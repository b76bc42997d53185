from datetime import timedelta

from conftest import make_group, make_plan, make_user, set_settings, subscribe

from panel.helpers import utcnow
from panel.models import Server, StatServer, StatUser, User
from panel.settings_manager import SERVER_TOKEN_KEY
from panel.traffic import node_users, parse_push


def _node(db, group, **fields):
    values = {
        "type": "vmess",
        "name": "Tokyo 01",
        "group_ids": [group.id],
        "host": "tokyo.example.com",
        "port": 443,
        "server_port": 10086,
        "network": "ws",
        "rate": "2",
        "show": True,
        "tags": ["WEB"],
    }
    values.update(fields)
    server = Server(**values)
    db.add(server)
    db.commit()
    return server


def _query(server, token="node-secret", node_type="v2ray"):
    return {"token": token, "node_id": server.id, "node_type": node_type}


def test_node_user_list_requires_token(client, db):
    group = make_group(db)
    server = _node(db, group)
    assert client.get("/api/v1/server/UniProxy/user", query_string=_query(server)).status_code == 500

    set_settings(db, {SERVER_TOKEN_KEY: "node-secret"})
    assert client.get("/api/v1/server/UniProxy/user", query_string=_query(server, token="bad")).status_code == 403
    missing = {"token": "node-secret", "node_id": server.id + 10, "node_type": "vmess"}
    assert client.get("/api/v1/server/UniProxy/user", query_string=missing).status_code == 404


def test_node_user_list_filters_users(client, db):
    set_settings(db, {SERVER_TOKEN_KEY: "node-secret"})
    group = make_group(db)
    plan = make_plan(db, group=group)
    server = _node(db, group)
    active = subscribe(db, make_user(db, "active@example.com"), plan)
    subscribe(db, make_user(db, "banned@example.com", banned=True), plan)
    expired = subscribe(db, make_user(db, "expired@example.com"), plan)
    expired.expired_at = utcnow() - timedelta(days=1)
    exhausted = subscribe(db, make_user(db, "exhausted@example.com"), plan)
    exhausted.u = exhausted.transfer_enable
    db.commit()

    response = client.get("/api/v1/server/UniProxy/user", query_string=_query(server))
    assert response.status_code == 200
    users = response.get_json()["users"]
    assert [item["uuid"] for item in users] == [active.uuid]
    assert [item["uuid"] for item in node_users(db, server)] == [active.uuid]


def test_push_applies_rate_and_records_stats(client, db):
    set_settings(db, {SERVER_TOKEN_KEY: "node-secret"})
    group = make_group(db)
    plan = make_plan(db, group=group)
    server = _node(db, group)
    user = subscribe(db, make_user(db), plan)

    response = client.post(
        "/api/v1/server/UniProxy/push",
        query_string=_query(server),
        json={str(user.id): [100, 200], "999999": [1, 1]},
    )
    assert response.get_json() == {"data": True}
    client.post("/api/v1/server/UniProxy/push", query_string=_query(server), json={str(user.id): [1, 1]})

    db.expire_all()
    stored = db.query(User).filter(User.id == user.id).one()
    assert (stored.u, stored.d) == (202, 402)
    assert stored.t is not None
    stat = db.query(StatUser).filter(StatUser.user_id == user.id).one()
    assert (stat.u, stat.d, stat.server_rate) == (202, 402, "2")
    server_stat = db.query(StatServer).filter(StatServer.server_id == server.id).one()
    assert (server_stat.u, server_stat.d) == (202, 402)


def test_node_config(client, db):
    set_settings(db, {SERVER_TOKEN_KEY: "node-secret"})
    server = _node(db, make_group(db), settings={"network_settings": {"path": "/ws"}})
    data = client.get("/api/v1/server/UniProxy/config", query_string=_query(server)).get_json()
    assert data["server_port"] == 10086
    assert data["network"] == "ws"
    assert data["networkSettings"] == {"path": "/ws"}


def test_parse_push_formats():
    assert parse_push({"1": [10, 20], "x": [1, 1], "2": [-1, 5]}) == {1: (10, 20)}
    assert parse_push([{"user_id": 3, "u": 1, "d": 2}, {"user_id": 3, "u": 4, "d": 0}]) == {3: (5, 2)}
    assert parse_push("garbage") == {}
