import logging
from datetime import datetime

from sqlalchemy.orm import Session

from .helpers import as_utc, utcnow
from .models import Server, StatServer, StatUser, User

logger = logging.getLogger(__name__)

NODE_TYPE_ALIASES = {
    "v2ray": "vmess",
    "ss": "shadowsocks",
    "hysteria2": "hysteria",
}


def day_start(value: datetime) -> datetime:
    value = as_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def normalize_node_type(node_type: str | None) -> str:
    node_type = (node_type or "").strip().lower()
    return NODE_TYPE_ALIASES.get(node_type, node_type)


def find_server(db: Session, node_id, node_type: str | None) -> Server | None:
    try:
        node_id = int(node_id)
    except (TypeError, ValueError):
        return None
    return (
        db.query(Server)
        .filter(Server.id == node_id, Server.type == normalize_node_type(node_type))
        .first()
    )


def server_rate(server: Server) -> float:
    try:
        return float(server.rate)
    except (TypeError, ValueError):
        return 1.0


def node_users(db: Session, server: Server, now: datetime | None = None) -> list[dict]:
    now = now or utcnow()
    group_ids = [int(item) for item in server.group_ids or []]
    if not group_ids:
        return []
    rows = (
        db.query(User)
        .filter(
            User.group_id.in_(group_ids),
            User.plan_id.isnot(None),
            User.banned.is_(False),
            User.transfer_enable > 0,
            (User.expired_at.is_(None)) | (User.expired_at >= now),
        )
        .order_by(User.id.asc())
        .all()
    )
    return [
        {
            "id": user.id,
            "uuid": user.uuid,
            "speed_limit": user.speed_limit,
            "device_limit": user.device_limit,
        }
        for user in rows
        if (user.u or 0) + (user.d or 0) < user.transfer_enable
    ]


def _stat_user_row(db: Session, user_id: int, rate: str, record_at: datetime) -> StatUser:
    row = (
        db.query(StatUser)
        .filter(
            StatUser.user_id == user_id,
            StatUser.server_rate == rate,
            StatUser.record_at == record_at,
            StatUser.record_type == "d",
        )
        .first()
    )
    if not row:
        row = StatUser(user_id=user_id, server_rate=rate, record_at=record_at, record_type="d", u=0, d=0)
        db.add(row)
    return row


def _stat_server_row(db: Session, server: Server, record_at: datetime) -> StatServer:
    row = (
        db.query(StatServer)
        .filter(
            StatServer.server_id == server.id,
            StatServer.server_type == server.type,
            StatServer.record_at == record_at,
            StatServer.record_type == "d",
        )
        .first()
    )
    if not row:
        row = StatServer(
            server_id=server.id, server_type=server.type, record_at=record_at, record_type="d", u=0, d=0
        )
        db.add(row)
    return row


def parse_push(data) -> dict[int, tuple[int, int]]:
    """Accept `{user_id: [u, d]}` or `[{"user_id", "u", "d"}]` bodies."""
    out: dict[int, tuple[int, int]] = {}
    if isinstance(data, dict):
        items = data.items()
    elif isinstance(data, list):
        items = ((item.get("user_id"), [item.get("u"), item.get("d")]) for item in data if isinstance(item, dict))
    else:
        return out
    for user_id, pair in items:
        try:
            uid = int(user_id)
            up, down = int(pair[0] or 0), int(pair[1] or 0)
        except (TypeError, ValueError, IndexError, KeyError):
            continue
        if up < 0 or down < 0:
            continue
        prev_up, prev_down = out.get(uid, (0, 0))
        out[uid] = (prev_up + up, prev_down + down)
    return out


def push_traffic(db: Session, server: Server, data, now: datetime | None = None) -> int:
    now = now or utcnow()
    record_at = day_start(now)
    rate = server_rate(server)
    traffic = parse_push(data)
    if not traffic:
        return 0

    users = {user.id: user for user in db.query(User).filter(User.id.in_(list(traffic))).all()}
    server_stat = _stat_server_row(db, server, record_at)
    updated = 0
    for user_id, (up, down) in traffic.items():
        user = users.get(user_id)
        if not user:
            continue
        up = int(up * rate)
        down = int(down * rate)
        user.u = (user.u or 0) + up
        user.d = (user.d or 0) + down
        user.t = now

        stat = _stat_user_row(db, user.id, str(server.rate), record_at)
        stat.u = (stat.u or 0) + up
        stat.d = (stat.d or 0) + down
        server_stat.u = (server_stat.u or 0) + up
        server_stat.d = (server_stat.d or 0) + down
        updated += 1
    db.flush()
    logger.info("node %s pushed traffic for %s users", server.id, updated)
    return updated


def node_config(server: Server) -> dict:
    base = {
        "server_port": server.server_port,
        "base_config": {"push_interval": 60, "pull_interval": 60},
    }
    settings = dict(server.settings or {})
    if server.type == "shadowsocks":
        base["cipher"] = server.cipher
    elif server.type == "vmess":
        base["network"] = server.network
        base["networkSettings"] = settings.get("network_settings")
        base["tls"] = int(bool(server.tls))
    elif server.type == "trojan":
        base["host"] = server.host
        base["server_name"] = settings.get("server_name")
    elif server.type == "hysteria":
        base["server_name"] = settings.get("server_name")
        base["up_mbps"] = settings.get("up_mbps")
        base["down_mbps"] = settings.get("down_mbps")
        base["obfs"] = settings.get("obfs")
    return base

