import base64
import json
import re
from datetime import datetime
from urllib.parse import quote, urlencode

from sqlalchemy.orm import Session

from .helpers import as_utc, subscribe_url, traffic_convert, utcnow
from .models import Plan, Server, ServerRule, User
from .plans import is_active
from .reset_traffic import get_reset_day
from .settings_manager import (
    APP_URL_KEY,
    RESET_TRAFFIC_METHOD_KEY,
    SHOW_INFO_TO_SERVER_KEY,
    SettingsManager,
)

SERVER_TYPES = ("shadowsocks", "vmess", "trojan", "hysteria")
DEFAULT_PLATFORM_TAGS = {"WEB", "dflt"}


def _group_ids(value) -> set[int]:
    out = set()
    for item in value or []:
        try:
            out.add(int(item))
        except (TypeError, ValueError):
            continue
    return out


def server_to_node(server: Server) -> dict:
    return {
        "id": server.id,
        "type": server.type,
        "name": server.name,
        "host": server.host,
        "port": server.port,
        "server_port": server.server_port,
        "cipher": server.cipher,
        "network": server.network,
        "tls": bool(server.tls),
        "tags": list(server.tags or []),
        "rate": server.rate,
        "group_ids": sorted(_group_ids(server.group_ids)),
        "parent_id": server.parent_id,
        "settings": dict(server.settings or {}),
        "sort": server.sort,
    }


def available_servers(db: Session, user: User) -> list[dict]:
    if user.group_id is None:
        return []
    rows = db.query(Server).filter(Server.show.is_(True)).all()
    nodes = [server_to_node(row) for row in rows if user.group_id in _group_ids(row.group_ids)]
    nodes.sort(key=lambda node: (node["sort"] is None, node["sort"] or 0, node["id"]))
    return nodes


def filter_by_platform(nodes: list[dict], platform: str | None) -> list[dict]:
    if platform:
        return [node for node in nodes if platform in node["tags"]]
    return [node for node in nodes if DEFAULT_PLATFORM_TAGS & set(node["tags"])]


def _split_keywords(raw: str | None) -> list[str]:
    return [item for item in re.split(r"[,|]", raw or "") if item]


def filter_by_keywords(nodes: list[dict], include: str | None, exclude: str | None) -> list[dict]:
    include_words = [word.lower() for word in _split_keywords(include)]
    exclude_words = [word.lower() for word in _split_keywords(exclude)]
    out = []
    for node in nodes:
        name = str(node["name"]).lower()
        if include_words and not any(word in name for word in include_words):
            continue
        if any(word in name for word in exclude_words):
            continue
        out.append(node)
    return out


def expired_nodes(host: str) -> list[dict]:
    placeholder = {
        "type": "shadowsocks",
        "port": 443,
        "host": "www.google.com",
        "cipher": "aes-128-gcm",
        "tags": [],
        "group_ids": [],
        "settings": {},
    }
    return [
        {**placeholder, "name": "Your service has expired"},
        {**placeholder, "name": f"Please log in to {host} to renew"},
    ]


def prepend_info_nodes(db: Session, nodes: list[dict], user: User, now: datetime | None = None) -> list[dict]:
    settings = SettingsManager(db)
    if not nodes or not settings.get_bool(SHOW_INFO_TO_SERVER_KEY):
        return nodes
    now = now or utcnow()
    remaining = traffic_convert(user.transfer_enable - (user.u or 0) - (user.d or 0))
    expired_at = as_utc(user.expired_at)
    expiry = expired_at.date().isoformat() if expired_at else "Never expires"
    plan = db.query(Plan).filter(Plan.id == user.plan_id).first() if user.plan_id else None
    reset_day = get_reset_day(
        user,
        plan,
        now.date(),
        default_method=settings.get_int(RESET_TRAFFIC_METHOD_KEY, min_value=0, max_value=6),
    )

    first = nodes[0]
    info = [{**first, "name": f"Website: {settings.get_value(APP_URL_KEY)}"}]
    info.append({**first, "name": f"Expires: {expiry}; Remaining: {remaining}"})
    if reset_day:
        info.append({**first, "name": f"Next traffic reset in {reset_day} days"})
    return info + nodes


def apply_server_rules(db: Session, nodes: list[dict], user_agent: str | None) -> list[dict]:
    agent = (user_agent or "").lower()
    if not agent:
        return nodes
    rules = db.query(ServerRule).order_by(ServerRule.sort.asc(), ServerRule.id.asc()).all()
    for rule in rules:
        keyword = (rule.ua or "").strip().lower()
        if not keyword or keyword not in agent:
            continue
        groups = _group_ids(rule.server_arr.split(","))
        out = []
        for node in nodes:
            if groups & set(node.get("group_ids") or []):
                node = {**node, "host": rule.domain}
                if rule.prot:
                    node["port"] = rule.prot
            out.append(node)
        return out
    return nodes


def subscribe_nodes(
    db: Session,
    user: User,
    *,
    platform: str | None = None,
    include: str | None = None,
    exclude: str | None = None,
    user_agent: str | None = None,
    host: str = "",
    now: datetime | None = None,
) -> list[dict]:
    now = now or utcnow()
    if not is_active(user, now):
        return expired_nodes(host)
    nodes = filter_by_platform(available_servers(db, user), platform)
    nodes = prepend_info_nodes(db, nodes, user, now)
    nodes = filter_by_keywords(nodes, include, exclude)
    return apply_server_rules(db, nodes, user_agent)


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def build_shadowsocks(password: str, node: dict) -> str:
    userinfo = _b64(f"{node.get('cipher')}:{password}").replace("+", "-").replace("/", "_").rstrip("=")
    return f"ss://{userinfo}@{node['host']}:{node['port']}#{quote(node['name'])}\r\n"


def build_vmess(uuid: str, node: dict) -> str:
    settings = node.get("settings") or {}
    network_settings = settings.get("network_settings") or {}
    config = {
        "v": "2",
        "ps": node["name"],
        "add": node["host"],
        "port": str(node["port"]),
        "id": uuid,
        "aid": "0",
        "net": node.get("network") or "tcp",
        "type": "none",
        "host": "",
        "path": "",
        "tls": "tls" if node.get("tls") else "",
    }
    if config["net"] == "ws":
        config["path"] = network_settings.get("path", "")
        config["host"] = (network_settings.get("headers") or {}).get("Host", "")
    if config["net"] == "grpc":
        config["path"] = network_settings.get("serviceName", "")
    if node.get("tls") and settings.get("server_name"):
        config["sni"] = settings["server_name"]
    return f"vmess://{_b64(json.dumps(config, ensure_ascii=False, separators=(',', ':')))}\r\n"


def build_trojan(password: str, node: dict) -> str:
    settings = node.get("settings") or {}
    params = {"allowInsecure": int(bool(settings.get("allow_insecure")))}
    if settings.get("server_name"):
        params["peer"] = settings["server_name"]
        params["sni"] = settings["server_name"]
    return f"trojan://{password}@{node['host']}:{node['port']}?{urlencode(params)}#{quote(node['name'])}\r\n"


def build_hysteria2(password: str, node: dict) -> str:
    settings = node.get("settings") or {}
    params = {"insecure": int(bool(settings.get("insecure")))}
    if settings.get("server_name"):
        params["sni"] = settings["server_name"]
    if settings.get("obfs"):
        params["obfs"] = "salamander"
        params["obfs-password"] = settings.get("obfs_password", "")
    return f"hysteria2://{password}@{node['host']}:{node['port']}/?{urlencode(params)}#{quote(node['name'])}\r\n"


BUILDERS = {
    "shadowsocks": build_shadowsocks,
    "vmess": build_vmess,
    "trojan": build_trojan,
    "hysteria": build_hysteria2,
}


def render_general(user: User, nodes: list[dict]) -> str:
    lines = []
    for node in nodes:
        builder = BUILDERS.get(node.get("type"))
        if builder:
            lines.append(builder(user.uuid, node))
    return _b64("".join(lines))


def subscription_userinfo(user: User) -> str:
    expired_at = as_utc(user.expired_at)
    expire = int(expired_at.timestamp()) if expired_at else ""
    return f"upload={user.u or 0}; download={user.d or 0}; total={user.transfer_enable or 0}; expire={expire}"


def subscribe_payload(db: Session, user: User, now: datetime | None = None) -> dict:
    now = now or utcnow()
    plan = db.query(Plan).filter(Plan.id == user.plan_id).first() if user.plan_id else None
    default_method = SettingsManager(db).get_int(RESET_TRAFFIC_METHOD_KEY, min_value=0, max_value=6)
    expired_at = as_utc(user.expired_at)
    return {
        "plan_id": user.plan_id,
        "plan": {"id": plan.id, "name": plan.name, "transfer_enable": plan.transfer_enable} if plan else None,
        "token": user.token,
        "email": user.email,
        "uuid": user.uuid,
        "u": user.u or 0,
        "d": user.d or 0,
        "transfer_enable": user.transfer_enable or 0,
        "expired_at": expired_at.isoformat() if expired_at else None,
        "subscribe_url": subscribe_url(user.token),
        "reset_day": get_reset_day(user, plan, now.date(), default_method=default_method),
    }


def serialize_server(server: Server) -> dict:
    data = server_to_node(server)
    data["show"] = bool(server.show)
    return data


def serialize_rule(rule: ServerRule) -> dict:
    return {
        "id": rule.id,
        "name": rule.name,
        "domain": rule.domain,
        "server_arr": rule.server_arr,
        "ua": rule.ua,
        "prot": rule.prot,
        "sort": rule.sort,
    }
