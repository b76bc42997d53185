import base64
import json
from datetime import timedelta
from urllib.parse import unquote

from conftest import make_group, make_plan, make_user, set_settings, subscribe

from panel.helpers import utcnow
from panel.models import Server, ServerRule
from panel.servers import build_shadowsocks, build_vmess, filter_by_keywords, subscription_userinfo
from panel.settings_manager import SHOW_INFO_TO_SERVER_KEY


def _server(db, group, **fields):
    values = {
        "type": "trojan",
        "name": "Tokyo Trojan",
        "group_ids": [group.id],
        "host": "tokyo.example.com",
        "port": 443,
        "server_port": 443,
        "show": True,
        "tags": ["WEB"],
        "settings": {"server_name": "tokyo.example.com"},
    }
    values.update(fields)
    server = Server(**values)
    db.add(server)
    db.commit()
    return server


def _lines(response) -> list[str]:
    text = base64.b64decode(response.get_data()).decode("utf-8")
    return [line for line in text.split("\r\n") if line]


def _setup(db):
    group = make_group(db)
    plan = make_plan(db, group=group)
    user = subscribe(db, make_user(db), plan)
    return group, plan, user


def test_subscribe_requires_valid_token(client, db):
    assert client.get("/api/v1/client/subscribe").status_code == 403
    response = client.get("/api/v1/client/subscribe?token=missing")
    assert response.status_code == 403
    assert response.get_json()["error"] == "token is error"


def test_subscribe_lists_user_nodes(client, db):
    group, _, user = _setup(db)
    _server(db, group)
    _server(db, group, type="vmess", name="Osaka VMess", host="osaka.example.com", network="tcp")
    _server(db, make_group(db, "other"), name="Other group")

    response = client.get(f"/api/v1/client/subscribe?token={user.token}")
    assert response.status_code == 200
    lines = _lines(response)
    assert len(lines) == 2
    assert lines[0].startswith(f"trojan://{user.uuid}@tokyo.example.com:443?")
    assert lines[1].startswith("vmess://")
    assert response.headers["subscription-userinfo"].startswith("upload=0; download=0; total=")


def test_expired_user_gets_placeholder_nodes(client, db):
    group, _, user = _setup(db)
    _server(db, group)
    user.expired_at = utcnow() - timedelta(days=1)
    db.commit()

    lines = _lines(client.get(f"/api/v1/client/subscribe?token={user.token}"))
    assert len(lines) == 2
    assert "Your%20service%20has%20expired" in lines[0]


def test_platform_and_keyword_filters(client, db):
    group, _, user = _setup(db)
    _server(db, group, name="Tokyo Web")
    _server(db, group, name="Tokyo iOS", tags=["iOS"])
    _server(db, group, name="London Web", host="london.example.com")

    assert len(_lines(client.get(f"/api/v1/client/subscribe?token={user.token}"))) == 2
    ios = _lines(client.get(f"/api/v1/client/subscribe?token={user.token}&platform=iOS"))
    assert len(ios) == 1 and ios[0].endswith("#Tokyo%20iOS")
    london = _lines(client.get(f"/api/v1/client/subscribe?token={user.token}&exclude=tokyo"))
    assert len(london) == 1 and "london.example.com" in london[0]


def test_server_rule_rewrites_host_for_matching_user_agent(client, db):
    group, _, user = _setup(db)
    _server(db, group)
    db.add(ServerRule(name="CDN", domain="cdn.example.com", server_arr=str(group.id), ua="clash", prot=8443, sort=1))
    db.commit()

    plain = _lines(client.get(f"/api/v1/client/subscribe?token={user.token}"))
    assert "@tokyo.example.com:443" in plain[0]
    rewritten = _lines(
        client.get(f"/api/v1/client/subscribe?token={user.token}", headers={"User-Agent": "ClashforWindows/0.20"})
    )
    assert "@cdn.example.com:8443" in rewritten[0]


def test_info_nodes_are_prepended_when_enabled(client, db):
    set_settings(db, {SHOW_INFO_TO_SERVER_KEY: True})
    group, _, user = _setup(db)
    _server(db, group)
    lines = _lines(client.get(f"/api/v1/client/subscribe?token={user.token}"))
    assert len(lines) == 4
    assert "Remaining" in lines[1]
    assert "Next traffic reset" in unquote(lines[2])
    assert "Tokyo" in unquote(lines[3])


def test_uuid_subscribe(client, db):
    _, plan, user = _setup(db)
    ok = client.get(f"/api/v1/client/getuuidSubscribe?email={user.email}&uuid={user.uuid}")
    assert ok.status_code == 200
    assert ok.get_json()["data"]["plan_id"] == plan.id
    assert client.get(f"/api/v1/client/getuuidSubscribe?email={user.email}&uuid=wrong").status_code == 404


def test_uri_builders():
    node = {"name": "SS 1", "host": "ss.example.com", "port": 8388, "cipher": "aes-128-gcm"}
    uri = build_shadowsocks("pass", node)
    assert uri == "ss://YWVzLTEyOC1nY206cGFzcw@ss.example.com:8388#SS%201\r\n"

    vmess = build_vmess(
        "uuid-1",
        {
            "name": "WS",
            "host": "ws.example.com",
            "port": 443,
            "network": "ws",
            "tls": True,
            "settings": {"network_settings": {"path": "/ray", "headers": {"Host": "cdn.example.com"}}},
        },
    )
    payload = json.loads(base64.b64decode(vmess[len("vmess://"):].strip()))
    assert payload["path"] == "/ray"
    assert payload["host"] == "cdn.example.com"
    assert payload["tls"] == "tls"


def test_keyword_filter_accepts_pipes_and_commas():
    nodes = [{"name": "HK 1"}, {"name": "JP 2"}, {"name": "US 3"}]
    assert [n["name"] for n in filter_by_keywords(nodes, "hk|jp", None)] == ["HK 1", "JP 2"]
    assert [n["name"] for n in filter_by_keywords(nodes, None, "us,jp")] == ["HK 1"]


def test_subscription_userinfo_without_expiry(db):
    user = make_user(db, u=1, d=2, transfer_enable=3)
    assert subscription_userinfo(user) == "upload=1; download=2; total=3; expire="
