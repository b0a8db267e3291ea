import hashlib
import hmac
from typing import Dict

from . import GatewayAdapter, TRADE_PENDING

_SIGNED_FIELDS = ("out_trade_no", "trade_no", "trade_status", "total_amount")


class MockGateway(GatewayAdapter):
    """测试 / 沙箱通道：HMAC-SHA256 签名，不发起网络请求。"""

    provider = "mock"

    @property
    def key(self) -> str:
        return str(self.options.get("key", "") or "")

    def sign(self, params: Dict[str, str]) -> str:
        text = "&".join(f"{k}={params.get(k, '')}" for k in _SIGNED_FIELDS)
        return hmac.new(self.key.encode("utf-8"), text.encode("utf-8"), hashlib.sha256).hexdigest()

    def create_payment(self, order_no: str, amount: float, subject: str = "") -> Dict:
        return {
            "type": "mock",
            "pay_url": f"mockpay://{order_no}?amount={amount:.2f}",
            "message": "测试支付通道，请调用回调接口完成支付。",
        }

    def verify_notify(self, params: Dict[str, str]) -> bool:
        if not self.key:
            return False
        if any(not str(params.get(k) or "").strip() for k in _SIGNED_FIELDS + ("sign",)):
            return False
        return hmac.compare_digest(self.sign(params), str(params.get("sign", "")))

    def query_order(self, order_no: str) -> Dict:
        trade = dict(self.options.get("trades", {}) or {}).get(order_no) or {}
        return {
            "trade_no": str(trade.get("trade_no", "")),
            "trade_status": str(trade.get("trade_status", TRADE_PENDING)),
            "amount": trade.get("amount"),
        }
