import base64
import json
from datetime import datetime
from typing import Dict, List

import yaml

from core.config import cfg
from core.link_codec import SUPPORTED_TYPES, parse_link, render_link
from core.models.node import CustomNode, Node, UserCustomNode
from core.models.subscription import Subscription
from core.log import get_logger

logger = get_logger(__name__)


GROUP_SELECT = "🚀 节点选择"
GROUP_AUTO = "♻️ 自动选择"

_RULES = [
    "DOMAIN-SUFFIX,local,DIRECT",
    "IP-CIDR,127.0.0.0/8,DIRECT",
    "IP-CIDR,172.16.0.0/12,DIRECT",
    "IP-CIDR,192.168.0.0/16,DIRECT",
    "GEOIP,CN,DIRECT",
    f"MATCH,{GROUP_SELECT}",
]


def _load_node_config(raw: str) -> Dict:
    text = str(raw or "").strip()
    if not text:
        return None
    if "://" in text.split("\n", 1)[0] and not text.startswith("{"):
        return parse_link(text)
    data = json.loads(text)
    return data if isinstance(data, dict) else None


def _normalize(data: Dict, name: str) -> Dict:
    node = {k: v for k, v in data.items() if v is not None and v != ""}
    node["name"] = name
    node["type"] = str(node.get("type") or "").lower()
    node["server"] = str(node.get("server") or "")
    node["port"] = int(node.get("port") or 0)
    if node["type"] == "vmess":
        node.setdefault("alterId", 0)
        node.setdefault("cipher", "auto")
    return node


def dedup_key(node: Dict) -> str:
    credential = node.get("uuid") or node.get("password") or ""
    return f"{node.get('type', '')}:{node.get('server', '')}:{node.get('port', 0)}:{credential}"


def _custom_node_expired(cn: CustomNode, sub: Subscription, now: datetime) -> bool:
    sub_expired = sub.expire_time is not None and sub.expire_time < now
    if cn.follow_user_expire:
        return sub_expired
    if cn.expire_time is not None:
        return cn.expire_time < now
    return sub_expired


def collect_nodes(session, sub: Subscription) -> List[Dict]:
    """
    用户可用的节点集合：已分配的专线节点在前，全局启用节点在后。

    按 类型+地址+端口+凭据 去重，两种输出格式都从这个集合生成。
    """
    now = datetime.now()
    candidates = []

    custom_rows = (
        session.query(CustomNode)
        .join(UserCustomNode, UserCustomNode.custom_node_id == CustomNode.id)
        .filter(UserCustomNode.user_id == sub.user_id, CustomNode.is_active == True)  # noqa: E712
        .order_by(CustomNode.created_at.asc())
        .all()
    )
    for cn in custom_rows:
        if cn.status == "timeout" or _custom_node_expired(cn, sub, now):
            continue
        candidates.append((cn.config, cn.display_name or f"专线-{cn.name}", cn.id))

    global_rows = (
        session.query(Node)
        .filter(Node.is_active == True, Node.status != "timeout")  # noqa: E712
        .order_by(Node.sort_order.asc(), Node.created_at.asc())
        .all()
    )
    for node in global_rows:
        candidates.append((node.config, node.name, node.id))

    nodes = []
    seen = set()
    for raw, name, node_id in candidates:
        try:
            data = _load_node_config(raw)
            if not data:
                continue
            node = _normalize(data, name)
        except (ValueError, TypeError) as e:
            logger.warning("节点配置解析失败: node_id=%s err=%s", node_id, e)
            continue
        if node["type"] not in SUPPORTED_TYPES or not node["server"] or node["port"] <= 0:
            continue
        key = dedup_key(node)
        if key in seen:
            continue
        seen.add(key)
        nodes.append(node)
    return nodes


def _message_node(name: str, password: str = "info") -> Dict:
    return {
        "name": name,
        "type": "ss",
        "server": "baidu.com",
        "port": 1234,
        "cipher": "aes-128-gcm",
        "password": password,
    }


def build_info_nodes(sub: Subscription) -> List[Dict]:
    expire_text = sub.expire_time.strftime("%Y-%m-%d") if sub.expire_time else "无限期"
    nodes = []
    site_url = str(cfg.get("subscription.site_url", "") or "")
    if site_url:
        nodes.append(_message_node(f"📢 官网: {site_url}"))
    nodes.append(_message_node(f"⏰ 到期: {expire_text}"))
    nodes.append(_message_node(f"📱 设备: {int(sub.current_devices or 0)}/{int(sub.device_limit or 0)}"))
    support = str(cfg.get("subscription.support_contact", "") or "")
    if support:
        nodes.append(_message_node(f"💬 客服: {support}"))
    return nodes


def _unique_names(nodes: List[Dict]) -> List[Dict]:
    used = set()
    result = []
    for node in nodes:
        base = str(node.get("name") or f"{node['type']}-{node['server']}")
        name = base
        counter = 1
        while name in used:
            name = f"{base}_{counter}"
            counter += 1
        used.add(name)
        result.append({**node, "name": name})
    return result


def prepare_nodes(session, sub: Subscription, with_info: bool = None) -> List[Dict]:
    if with_info is None:
        with_info = cfg.get_bool("subscription.info_nodes", True)
    nodes = collect_nodes(session, sub)
    if with_info:
        nodes = build_info_nodes(sub) + nodes
    return _unique_names(nodes)


def render_clash(nodes: List[Dict]) -> str:
    names = [n["name"] for n in nodes]
    document = {
        "port": 7890,
        "socks-port": 7891,
        "allow-lan": True,
        "mode": "rule",
        "log-level": "info",
        "external-controller": "127.0.0.1:9090",
        "proxies": nodes,
        "proxy-groups": [
            {"name": GROUP_SELECT, "type": "select", "proxies": [GROUP_AUTO] + names + ["DIRECT"]},
            {
                "name": GROUP_AUTO,
                "type": "url-test",
                "url": "http://www.gstatic.com/generate_204",
                "interval": 300,
                "tolerance": 50,
                "proxies": names or ["DIRECT"],
            },
        ],
        "rules": list(_RULES),
    }
    return yaml.safe_dump(document, allow_unicode=True, sort_keys=False, default_flow_style=False)


def render_universal(nodes: List[Dict]) -> str:
    links = [link for link in (render_link(n) for n in nodes) if link]
    return base64.b64encode("\n".join(links).encode("utf-8")).decode("ascii")


def render_config(session, sub: Subscription, fmt: str, with_info: bool = None) -> str:
    nodes = prepare_nodes(session, sub, with_info=with_info)
    if fmt == "universal":
        return render_universal(nodes)
    return render_clash(nodes)
