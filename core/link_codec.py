"""代理链接与节点字典互转（vmess / vless / trojan / ss / hysteria2）。

节点字典沿用 Clash 的字段名：name, type, server, port, uuid, password,
cipher, network, tls, sni, ws-opts 等。
"""

import base64
import json
from typing import Dict
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

SUPPORTED_TYPES = ("vmess", "vless", "trojan", "ss", "hysteria2")


def _b64encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _b64decode(text: str) -> str:
    raw = str(text or "").strip().replace("-", "+").replace("_", "/")
    raw += "=" * (-len(raw) % 4)
    return base64.b64decode(raw).decode("utf-8")


def _ws_opts(node: Dict) -> Dict:
    opts = node.get("ws-opts") or {}
    return opts if isinstance(opts, dict) else {}


def _query(node: Dict, **extra) -> str:
    params = {}
    if node.get("network"):
        params["type"] = node["network"]
    if node.get("tls"):
        params["security"] = "tls"
    sni = node.get("sni") or node.get("servername")
    if sni:
        params["sni"] = sni
    ws = _ws_opts(node)
    if ws.get("path"):
        params["path"] = ws["path"]
    host = (ws.get("headers") or {}).get("Host")
    if host:
        params["host"] = host
    params.update({k: v for k, v in extra.items() if v})
    return urlencode(params)


def _url(scheme: str, userinfo: str, node: Dict, query: str) -> str:
    link = f"{scheme}://{userinfo}@{node['server']}:{int(node['port'])}"
    if query:
        link += f"?{query}"
    return f"{link}#{quote(str(node.get('name') or ''), safe='')}"


def render_link(node: Dict) -> str:
    """节点字典 -> 分享链接；不支持的类型返回空字符串。"""
    node_type = str(node.get("type") or "").lower()
    if node_type == "vmess":
        ws = _ws_opts(node)
        data = {
            "v": "2",
            "ps": node.get("name", ""),
            "add": node.get("server", ""),
            "port": int(node.get("port") or 0),
            "id": node.get("uuid", ""),
            "aid": int(node.get("alterId") or 0),
            "net": node.get("network") or "tcp",
            "type": "none",
            "tls": "tls" if node.get("tls") else "",
        }
        if ws.get("path"):
            data["path"] = ws["path"]
        host = (ws.get("headers") or {}).get("Host")
        if host:
            data["host"] = host
        return "vmess://" + _b64encode(json.dumps(data, ensure_ascii=False, separators=(",", ":")))
    if node_type == "vless":
        return _url("vless", quote(str(node.get("uuid") or ""), safe=""), node, _query(node, flow=node.get("flow")))
    if node_type == "trojan":
        return _url("trojan", quote(str(node.get("password") or ""), safe=""), node, _query(node))
    if node_type == "ss":
        raw = f"{node.get('cipher', '')}:{node.get('password', '')}".encode("utf-8")
        userinfo = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
        return _url("ss", userinfo, node, "")
    if node_type == "hysteria2":
        insecure = "1" if node.get("skip-cert-verify") else ""
        return _url("hysteria2", quote(str(node.get("password") or ""), safe=""), node, _query(node, insecure=insecure))
    return ""


def parse_link(link: str) -> Dict:
    """分享链接 -> 节点字典；格式不合法时抛出 ValueError。"""
    text = str(link or "").strip()
    scheme, sep, rest = text.partition("://")
    scheme = scheme.lower()
    if not sep or scheme not in SUPPORTED_TYPES + ("hy2",):
        raise ValueError(f"不支持的链接: {text[:30]}")
    if scheme == "vmess":
        data = json.loads(_b64decode(rest))
        node = {
            "name": data.get("ps", ""),
            "type": "vmess",
            "server": data.get("add", ""),
            "port": int(data.get("port") or 0),
            "uuid": data.get("id", ""),
            "alterId": int(data.get("aid") or 0),
            "cipher": "auto",
            "network": data.get("net") or "tcp",
            "tls": data.get("tls") == "tls",
        }
        if data.get("path") or data.get("host"):
            node["ws-opts"] = {"path": data.get("path", "/")}
            if data.get("host"):
                node["ws-opts"]["headers"] = {"Host": data["host"]}
        return node

    parts = urlsplit(text)
    if not parts.hostname or not parts.port:
        raise ValueError(f"链接缺少地址或端口: {text[:30]}")
    query = {k: v[0] for k, v in parse_qs(parts.query).items()}
    node = {
        "name": unquote(parts.fragment or ""),
        "type": "hysteria2" if scheme == "hy2" else scheme,
        "server": parts.hostname,
        "port": int(parts.port),
    }
    userinfo = unquote(parts.username or "")
    if scheme == "ss":
        cipher, _, password = _b64decode(userinfo).partition(":")
        node.update({"cipher": cipher, "password": password})
        return node
    if scheme == "vless":
        node["uuid"] = userinfo
        if query.get("flow"):
            node["flow"] = query["flow"]
    else:
        node["password"] = userinfo
    if query.get("type"):
        node["network"] = query["type"]
    if query.get("security") == "tls":
        node["tls"] = True
    if query.get("sni"):
        node["sni"] = query["sni"]
    if query.get("insecure") == "1":
        node["skip-cert-verify"] = True
    if query.get("path") or query.get("host"):
        node["ws-opts"] = {"path": query.get("path", "/")}
        if query.get("host"):
            node["ws-opts"]["headers"] = {"Host": query["host"]}
    return node
