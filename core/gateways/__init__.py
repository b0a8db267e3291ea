"""
支付网关适配层：每个渠道实现 GatewayAdapter，按渠道 id 注册到 registry。

    adapter = get_gateway("yipay")
    pay_url = adapter.create_payment(order_no, amount, subject)
    if adapter.verify_notify(params): ...
"""

from typing import Callable, Dict, List

from core.config import cfg
from core.errors import NotFoundError

TRADE_SUCCESS = "TRADE_SUCCESS"
TRADE_FINISHED = "TRADE_FINISHED"
TRADE_PENDING = "WAIT_BUYER_PAY"
TRADE_CLOSED = "TRADE_CLOSED"
SUCCESS_TRADE_STATUSES = (TRADE_SUCCESS, TRADE_FINISHED)


class GatewayError(Exception):
    """网关调用失败（网络、超时、响应异常）。"""


class GatewayAdapter:
    """
    支付渠道能力接口。

    parse_notify 把各渠道的回调字段归一成：
        {"order_no", "trade_no", "trade_status", "amount"}
    """

    provider = ""
    ack_text = "success"

    def __init__(self, options: Dict = None):
        self.options = dict(options or {})

    def create_payment(self, order_no: str, amount: float, subject: str = "") -> Dict:
        raise NotImplementedError

    def verify_notify(self, params: Dict[str, str]) -> bool:
        raise NotImplementedError

    def query_order(self, order_no: str) -> Dict:
        raise NotImplementedError

    def parse_notify(self, params: Dict[str, str]) -> Dict:
        amount = params.get("total_amount") or params.get("money") or ""
        return {
            "order_no": str(params.get("out_trade_no") or "").strip(),
            "trade_no": str(params.get("trade_no") or "").strip(),
            "trade_status": str(params.get("trade_status") or "").strip(),
            "amount": float(amount) if amount else None,
        }


_REGISTRY: Dict[str, Callable[[Dict], GatewayAdapter]] = {}


def register_gateway(provider: str, factory: Callable[[Dict], GatewayAdapter]) -> None:
    _REGISTRY[str(provider).strip().lower()] = factory


def available_gateways() -> List[str]:
    result = []
    for provider in sorted(_REGISTRY):
        options = cfg.get(f"payment.gateways.{provider}", {}) or {}
        if isinstance(options, dict) and options.get("enabled", False):
            result.append(provider)
    return result


def get_gateway(provider: str) -> GatewayAdapter:
    key = str(provider or "").strip().lower()
    factory = _REGISTRY.get(key)
    options = cfg.get(f"payment.gateways.{key}", {}) or {}
    if not factory or not isinstance(options, dict) or not options.get("enabled", False):
        raise NotFoundError("支付方式不可用")
    return factory(options)


from .mock import MockGateway  # noqa: E402
from .yipay import YipayGateway  # noqa: E402

register_gateway(MockGateway.provider, MockGateway)
register_gateway(YipayGateway.provider, YipayGateway)
