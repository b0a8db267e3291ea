"""订单类型：下单时确定并编码进 Order.extra_data，履约时只解码一次。

    PackageKind          购买套餐，按 duration_months 延长
    DeviceUpgradeKind    附加订单，增加设备数 / 天数，不创建订阅

两种类型都可携带 balance_used（余额抵扣部分）。
"""

import json
from typing import Literal, Tuple, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

MIN_DURATION_MONTHS = 1
MAX_DURATION_MONTHS = 60


class PackageKind(BaseModel):
    kind: Literal["package"] = "package"
    duration_months: int = Field(default=1)
    balance_used: float = Field(default=0.0, ge=0)


class DeviceUpgradeKind(BaseModel):
    kind: Literal["device_upgrade"] = "device_upgrade"
    additional_devices: int = Field(default=0, ge=0)
    additional_days: int = Field(default=0, ge=0)
    balance_used: float = Field(default=0.0, ge=0)


OrderKind = Union[PackageKind, DeviceUpgradeKind]


def clamp_months(months) -> int:
    try:
        value = int(months or 1)
    except (TypeError, ValueError):
        value = 1
    return max(MIN_DURATION_MONTHS, min(value, MAX_DURATION_MONTHS))


def encode_order_kind(kind: OrderKind) -> str:
    return kind.model_dump_json()


def _default_kind(order) -> OrderKind:
    if getattr(order, "package_id", None):
        return PackageKind()
    return DeviceUpgradeKind()


def decode_order_kind(order) -> Tuple[OrderKind, bool]:
    """返回 (kind, malformed)。extra_data 无法解析时回退到默认值并记录告警。"""
    raw = str(getattr(order, "extra_data", "") or "").strip()
    if not raw:
        return _default_kind(order), False
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("extra_data 不是对象")
        # 兼容旧格式：{"type": "device_upgrade", ...}
        tag = data.pop("kind", None) or data.pop("type", None)
        if tag is None:
            tag = "package" if getattr(order, "package_id", None) else "device_upgrade"
        if tag == "package":
            kind = PackageKind.model_validate(data)
            kind.duration_months = clamp_months(kind.duration_months)
        elif tag == "device_upgrade":
            kind = DeviceUpgradeKind.model_validate(data)
        else:
            raise ValueError(f"未知订单类型: {tag}")
        return kind, False
    except (ValueError, PydanticValidationError) as e:
        log_event(
            logger,
            E.FULFILLMENT_EXTRA_MALFORMED,
            level="warning",
            order_no=getattr(order, "order_no", ""),
            error=e,
        )
        return _default_kind(order), True
