import hashlib
import re
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict

from core.errors import ForbiddenError
from core.models.device import Device
from core.models.subscription import Subscription
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


UNKNOWN = "Unknown"

# 有序匹配，先命中先返回
_SOFTWARE_KEYWORDS = [
    ("quantumult", "Quantumult"),
    ("hiddify", "Hiddify"),
    ("clash", "Clash"),
    ("v2ray", "V2Ray"),
    ("loon", "Loon"),
    ("surge", "Surge"),
]

_IOS_SOFTWARE = ["shadowrocket", "quantumult", "surge", "loon", "stash", "anx", "anxray", "karing", "kitsunebi", "pharos", "potatso"]
_ANDROID_SOFTWARE = ["clash for android", "clashandroid", "shadowsocks", "v2rayng"]
_WINDOWS_SOFTWARE = ["clash for windows", "clash-verge", "v2rayn", "qv2ray"]
_MACOS_SOFTWARE = ["clash for mac", "clashx", "clashx pro", "surge", "v2rayu"]

_PROXY_CLIENT_KEYWORDS = [
    "clash", "mihomo", "stash", "shadowrocket", "quantumult", "surge", "loon",
    "v2ray", "hiddify", "sing-box", "singbox", "nekobox", "nekoray", "karing",
    "shadowsocks", "ssr", "trojan", "passwall", "openclash",
]
_BROWSER_KEYWORDS = ["mozilla", "chrome", "safari", "edge", "firefox", "opera"]

_IPHONE_MODELS = {
    "iPhone14,2": "iPhone 13 Pro",
    "iPhone14,3": "iPhone 13 Pro Max",
    "iPhone14,4": "iPhone 13 mini",
    "iPhone14,5": "iPhone 13",
    "iPhone15,2": "iPhone 14 Pro",
    "iPhone15,3": "iPhone 14 Pro Max",
    "iPhone15,4": "iPhone 14",
    "iPhone15,5": "iPhone 14 Plus",
    "iPhone16,1": "iPhone 15 Pro",
    "iPhone16,2": "iPhone 15 Pro Max",
    "iPhone16,3": "iPhone 15",
    "iPhone16,4": "iPhone 15 Plus",
}

_ANDROID_BRANDS = [
    ("Samsung", ["samsung", "galaxy"]),
    ("Huawei", ["huawei", "honor"]),
    ("Xiaomi", ["xiaomi", "redmi", "mi "]),
    ("OPPO", ["oppo", "oneplus"]),
    ("vivo", ["vivo", "iqoo"]),
]

_IOS_VERSION_PATTERNS = [
    r"OS\s+(\d+)[._](\d+)(?:[._](\d+))?",
    r"iPhone\s+OS\s+(\d+)[._](\d+)(?:[._](\d+))?",
    r"Version/(\d+)[._](\d+)(?:[._](\d+))?",
    r"iOS\s+(\d+)[._](\d+)(?:[._](\d+))?",
]


def _match_software(ua: str, ua_lower: str) -> str:
    if "shadowrocket" in ua_lower:
        return "Shadowrocket"
    if re.search(r"iPhone\d+,\d+", ua) and ("cfnetwork" in ua_lower or "darwin" in ua_lower):
        for key, name in (("quantumult", "Quantumult"), ("surge", "Surge"), ("loon", "Loon"), ("stash", "Stash")):
            if key in ua_lower:
                return name
        return "Shadowrocket"
    if "v2rayn" in ua_lower:
        return "v2rayN"
    for key, name in _SOFTWARE_KEYWORDS:
        if key in ua_lower:
            return name
    return UNKNOWN


def _parse_os(ua: str, ua_lower: str) -> Dict[str, str]:
    if any(x in ua_lower for x in ("iphone", "ipad", "ipod")):
        for pattern in _IOS_VERSION_PATTERNS:
            match = re.search(pattern, ua)
            if match:
                version = f"{match.group(1)}.{match.group(2)}"
                if match.group(3):
                    version += f".{match.group(3)}"
                return {"os_name": "iOS", "os_version": version}
        return {"os_name": "iOS", "os_version": ""}
    if "android" in ua_lower:
        match = re.search(r"Android\s+(\d+[.\d]*)", ua)
        return {"os_name": "Android", "os_version": match.group(1) if match else ""}
    if "windows" in ua_lower:
        match = re.search(r"Windows\s+NT\s+(\d+\.\d+)", ua)
        return {"os_name": "Windows", "os_version": match.group(1) if match else ""}
    if "macintosh" in ua_lower or "mac os" in ua_lower:
        match = re.search(r"Mac OS X\s+(\d+[._]\d+)", ua)
        return {"os_name": "macOS", "os_version": match.group(1).replace("_", ".") if match else ""}
    if "linux" in ua_lower:
        return {"os_name": "Linux", "os_version": ""}
    return {"os_name": UNKNOWN, "os_version": ""}


def _infer_os_from_software(software: str) -> str:
    sw = software.lower()
    for names, os_name in (
        (_IOS_SOFTWARE, "iOS"),
        (_ANDROID_SOFTWARE, "Android"),
        (_WINDOWS_SOFTWARE, "Windows"),
        (_MACOS_SOFTWARE, "macOS"),
    ):
        if any(x in sw for x in names):
            return os_name
    return UNKNOWN


def _parse_model(ua: str) -> Dict[str, str]:
    ua_lower = ua.lower()
    result = {"device_model": "", "device_brand": ""}
    if any(x in ua_lower for x in ("iphone", "ipad", "ipod")):
        result["device_brand"] = "Apple"
        match = re.search(r"iPhone(\d+,\d+)", ua)
        if match:
            model_id = f"iPhone{match.group(1)}"
            result["device_model"] = _IPHONE_MODELS.get(model_id, f"iPhone {match.group(1).replace(',', '.')}")
        else:
            for pattern, fmt in (
                (r"iPhone\s+(\d+)\s+Pro\s+Max", "iPhone {} Pro Max"),
                (r"iPhone\s+(\d+)\s+Pro", "iPhone {} Pro"),
                (r"iPhone\s+(\d+)\s+mini", "iPhone {} mini"),
                (r"iPhone\s+(\d+)", "iPhone {}"),
            ):
                match = re.search(pattern, ua)
                if match:
                    result["device_model"] = fmt.format(match.group(1))
                    break
        match = re.search(r"iPad(\d+,\d+)", ua)
        if match:
            result["device_model"] = f"iPad {match.group(1).replace(',', '.')}"
        elif "iPad" in ua:
            result["device_model"] = "iPad"
        return result
    if "android" in ua_lower:
        match = re.search(r";\s*([^;]+)\s*build", ua, re.IGNORECASE)
        if match:
            name = match.group(1).strip()
            result["device_model"] = name
            name_lower = name.lower()
            for brand, keywords in _ANDROID_BRANDS:
                if any(k in name_lower for k in keywords):
                    result["device_brand"] = brand
                    break
    return result


def _parse_version(ua: str) -> str:
    for pattern in (r"(\d+\.\d+\.\d+)", r"(\d+\.\d+)"):
        match = re.search(pattern, ua)
        if match:
            return match.group(1)
    return ""


def _device_type(ua_lower: str, info: Dict[str, str]) -> str:
    os_name = info["os_name"].lower()
    software = info["software_name"].lower()
    if "ipad" in ua_lower:
        return "tablet"
    if os_name in ("ios", "android") or "iphone" in ua_lower:
        return "mobile"
    if os_name in ("windows", "macos", "linux"):
        return "desktop"
    if any(x in software for x in ("shadowrocket", "quantumult", "surge")):
        return "mobile"
    if "v2rayn" in software:
        return "desktop"
    return "unknown"


def _device_name(info: Dict[str, str]) -> str:
    parts = []
    if info["software_name"] != UNKNOWN:
        parts.append(info["software_name"])
    if info["device_model"]:
        parts.append(info["device_model"])
    elif info["device_brand"]:
        parts.append(info["device_brand"])
    if info["os_name"] != UNKNOWN:
        parts.append(f"{info['os_name']} {info['os_version']}".strip())
    if info["software_version"]:
        parts.append(f"v{info['software_version']}")
    return " - ".join(parts) if parts else "Unknown Device"


def parse_user_agent(user_agent: str) -> Dict[str, str]:
    """从 User-Agent 解析客户端软件、系统与机型。"""
    info = {
        "software_name": UNKNOWN,
        "software_version": "",
        "os_name": UNKNOWN,
        "os_version": "",
        "device_model": "",
        "device_brand": "",
        "device_type": "unknown",
        "device_name": "Unknown Device",
    }
    ua = str(user_agent or "").strip()
    if not ua:
        return info
    ua_lower = ua.lower()
    info["software_name"] = _match_software(ua, ua_lower)
    info.update(_parse_os(ua, ua_lower))
    if info["os_name"] == UNKNOWN and info["software_name"] != UNKNOWN:
        info["os_name"] = _infer_os_from_software(info["software_name"])
    info.update(_parse_model(ua))
    if not info["device_model"] and not info["device_brand"]:
        if any(x in info["software_name"].lower() for x in _IOS_SOFTWARE):
            info["device_brand"] = "Apple"
    info["software_version"] = _parse_version(ua)
    info["device_type"] = _device_type(ua_lower, info)
    info["device_name"] = _device_name(info)
    return info


def generate_device_hash(user_agent: str, ip_address: str = "", device_id: str = "") -> str:
    """设备指纹：优先使用客户端上报的 device_id，否则取 UA 解析出的特征组合。"""
    device_id = str(device_id or "").strip()
    if device_id:
        return hashlib.sha256(f"device_id:{device_id}".encode("utf-8")).hexdigest()
    info = parse_user_agent(user_agent)
    features = []
    if info["software_name"] != UNKNOWN:
        features.append(f"software:{info['software_name']}")
        if info["software_version"]:
            features.append(f"version:{info['software_version']}")
    if info["os_name"] != UNKNOWN:
        features.append(f"os:{info['os_name']}")
        if info["os_version"]:
            features.append(f"os_version:{info['os_version']}")
    if info["device_model"]:
        features.append(f"model:{info['device_model']}")
    if info["device_brand"]:
        features.append(f"brand:{info['device_brand']}")
    device_string = "|".join(features) or str(user_agent or "")
    return hashlib.sha256(device_string.encode("utf-8")).hexdigest()


def is_proxy_client(user_agent: str) -> bool:
    """浏览器直接打开订阅链接不计入设备。"""
    ua_lower = str(user_agent or "").lower()
    if any(k in ua_lower for k in _PROXY_CLIENT_KEYWORDS):
        return True
    return not any(k in ua_lower for k in _BROWSER_KEYWORDS)


_device_locks: Dict[str, threading.Lock] = {}
_device_locks_guard = threading.Lock()


@contextmanager
def subscription_device_lock(subscription_id: str):
    """同一订阅的设备计数与登记串行执行（进程内锁，与行锁叠加使用）。"""
    with _device_locks_guard:
        lock = _device_locks.setdefault(subscription_id, threading.Lock())
    with lock:
        yield


def _active_device_count(session, subscription_id: str) -> int:
    return session.query(Device).filter(
        Device.subscription_id == subscription_id,
        Device.is_active == True,  # noqa: E712
    ).count()


def record_device_access(
    session,
    sub: Subscription,
    user_agent: str,
    ip_address: str = "",
    device_id: str = "",
    subscription_type: str = "",
) -> Device:
    """
    登记一次订阅访问（调用方须持有 subscription_device_lock，本函数不提交事务）。

    已登记的指纹不受设备上限约束；新指纹在活跃设备数达到上限时
    抛出 ForbiddenError。非代理客户端返回 None，不登记设备。
    """
    if not device_id and not is_proxy_client(user_agent):
        return None
    now = datetime.now()
    fingerprint = generate_device_hash(user_agent, ip_address, device_id)
    device = (
        session.query(Device)
        .filter(Device.subscription_id == sub.id, Device.device_fingerprint == fingerprint)
        .first()
    )
    active_count = _active_device_count(session, sub.id)
    limit = int(sub.device_limit or 0)

    if device:
        if not device.is_active and active_count < limit:
            device.is_active = True
            active_count += 1
        device.last_access = now
        device.access_count = int(device.access_count or 0) + 1
        device.ip_address = (ip_address or device.ip_address or "")[:64]
        device.user_agent = user_agent or device.user_agent
        device.subscription_type = subscription_type or device.subscription_type
        sub.current_devices = active_count
        session.flush()
        return device

    if limit <= 0 or active_count >= limit:
        log_event(
            logger,
            E.DEVICE_LIMIT_REACHED,
            subscription_id=sub.id,
            current=active_count,
            limit=limit,
        )
        raise ForbiddenError(f"设备数量已达上限（{active_count}/{limit}），请在官网删除不使用的设备")

    info = parse_user_agent(user_agent)
    device = Device(
        id=str(uuid.uuid4()),
        subscription_id=sub.id,
        user_id=sub.user_id,
        device_fingerprint=fingerprint,
        device_name=info["device_name"][:200],
        device_type=info["device_type"],
        software_name=info["software_name"][:50],
        software_version=info["software_version"][:50],
        os_name=info["os_name"][:50],
        os_version=info["os_version"][:50],
        device_model=info["device_model"][:100],
        device_brand=info["device_brand"][:50],
        user_agent=user_agent or "",
        ip_address=(ip_address or "")[:64],
        subscription_type=subscription_type,
        is_active=True,
        access_count=1,
        first_seen=now,
        last_access=now,
    )
    session.add(device)
    sub.current_devices = active_count + 1
    session.flush()
    log_event(
        logger,
        E.DEVICE_REGISTER,
        subscription_id=sub.id,
        device=info["device_name"],
        count=sub.current_devices,
        limit=limit,
    )
    return device
