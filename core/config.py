import os
from typing import Any

import yaml


VERSION = "1.0.0"
API_BASE = "/api/v1"

_DEFAULT_CONFIG = {
    "app_name": "SubGate",
    "db": "sqlite:///data/db.db",
    "secret": "change-me",
    "token_expire_minutes": 4320,
    "log": {"level": "INFO", "file": ""},
    "order": {
        "pending_ttl_minutes": 30,
        "reconcile_after_seconds": 5,
        "reconcile_min_interval_seconds": 10,
        "device_upgrade": {
            "price_per_device_month": 10.0,
            "price_per_day": 10.0 / 30.0,
        },
    },
    "payment": {
        "http_timeout_seconds": 10,
        "gateways": {
            "mock": {"enabled": True, "key": "mock-secret"},
        },
    },
    "invite": {
        "enabled": True,
        "inviter_reward": 0.0,
        "invitee_reward": 0.0,
        "min_order_amount": 0.0,
        "new_user_only": True,
    },
    "subscription": {
        "site_url": "",
        "support_contact": "",
        "info_nodes": True,
        "default_device_limit": 3,
    },
    "notify": {"webhook_url": "", "admin_recipient": "", "max_attempts": 5},
    "jobs": {
        "enabled": True,
        "order_sweep_interval_seconds": 300,
        "fulfillment_retry_interval_seconds": 120,
        "outbox_interval_seconds": 15,
    },
}


def _merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


class Config:
    """YAML 配置，支持点号路径读取与环境变量覆盖（a.b.c -> A_B_C）。"""

    def __init__(self, config_path: str = None):
        self.config_path = config_path or os.getenv("CONFIG_FILE", "config.yaml")
        self.config = {}
        self.reload()

    def reload(self):
        data = {}
        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        self.config = _merge(_DEFAULT_CONFIG, data if isinstance(data, dict) else {})
        return self.config

    def save_config(self):
        folder = os.path.dirname(os.path.abspath(self.config_path))
        os.makedirs(folder, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as fh:
            yaml.safe_dump(self.config, fh, allow_unicode=True, sort_keys=False)

    def get(self, key: str, default: Any = None) -> Any:
        env_key = str(key or "").replace(".", "_").upper()
        if env_key and env_key in os.environ:
            return os.environ[env_key]
        cursor: Any = self.config
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        return default if cursor is None else cursor

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)


def set_config(key: str, value: Any):
    keys = [x for x in str(key or "").split(".") if x]
    if not keys:
        return
    cursor = cfg.config
    for part in keys[:-1]:
        if not isinstance(cursor.get(part), dict):
            cursor[part] = {}
        cursor = cursor[part]
    cursor[keys[-1]] = value


cfg = Config()
