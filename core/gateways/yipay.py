import hashlib
import hmac
import time
from typing import Dict

import requests

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E

from . import GatewayAdapter, GatewayError

logger = get_logger(__name__)

_EXCLUDED_SIGN_KEYS = ("sign", "sign_type", "rsa_sign")
_REQUIRED_NOTIFY_KEYS = ("pid", "out_trade_no", "trade_no", "trade_status", "sign")


def build_sign_string(params: Dict[str, str]) -> str:
    keys = sorted(k for k, v in params.items() if v not in (None, "") and k not in _EXCLUDED_SIGN_KEYS)
    return "&".join(f"{k}={params[k]}" for k in keys)


def md5_sign(params: Dict[str, str], key: str) -> str:
    text = f"{build_sign_string(params)}&key={key}"
    return hashlib.md5(text.encode("utf-8")).hexdigest().upper()


class YipayGateway(GatewayAdapter):
    """
    易支付（MD5 签名）。

    配置项 payment.gateways.yipay：
        enabled, pid, key, gateway_url, notify_url, return_url, pay_type
    """

    provider = "yipay"

    @property
    def pid(self) -> str:
        return str(self.options.get("pid", "") or "").strip()

    @property
    def key(self) -> str:
        return str(self.options.get("key", "") or "").strip()

    @property
    def gateway_url(self) -> str:
        return str(self.options.get("gateway_url", "") or "").strip().rstrip("/")

    def _timeout(self) -> float:
        return float(cfg.get("payment.http_timeout_seconds", 10) or 10)

    def sign(self, params: Dict[str, str]) -> str:
        return md5_sign(params, self.key)

    def create_payment(self, order_no: str, amount: float, subject: str = "") -> Dict:
        if not self.pid or not self.key or not self.gateway_url:
            raise GatewayError("易支付未配置")
        if amount <= 0:
            raise GatewayError(f"支付金额无效: {amount:.2f}")
        notify_url = str(self.options.get("notify_url", "") or "")
        if not notify_url:
            raise GatewayError("回调地址未配置")
        params = {
            "pid": self.pid,
            "paytype_code": str(self.options.get("pay_type", "alipay") or "alipay"),
            "out_trade_no": order_no,
            "total_amount": f"{amount:.2f}",
            "subject": subject or f"订单支付-{order_no}",
            "timestamp": str(int(time.time())),
            "notify_url": notify_url,
            "return_url": str(self.options.get("return_url", "") or ""),
            "sign_type": "MD5",
        }
        params["sign"] = self.sign(params)
        try:
            resp = requests.post(f"{self.gateway_url}/openapi/pay/create", data=params, timeout=self._timeout())
            resp.raise_for_status()
        except requests.RequestException as e:
            log_event(logger, E.PAYMENT_GATEWAY_HTTP_FAIL, level="warning", provider=self.provider, order_no=order_no, error=e)
            raise GatewayError("支付网关请求失败") from e
        text = resp.text.strip()
        if text.startswith(("http://", "https://")):
            return {"type": "url", "pay_url": text}
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError("支付网关响应格式错误") from e
        if int(data.get("code", 0) or 0) != 1:
            raise GatewayError(f"支付网关返回错误: {data.get('msg', '')}")
        body = data.get("data") or {}
        for field, kind in (("img", "qrcode"), ("qrcode", "qrcode"), ("pay_url", "url")):
            if body.get(field):
                return {"type": kind, "pay_url": body[field], "trade_no": body.get("trade_no", "")}
        raise GatewayError("支付网关未返回支付链接")

    def verify_notify(self, params: Dict[str, str]) -> bool:
        if not self.key:
            return False
        if any(not str(params.get(k) or "").strip() for k in _REQUIRED_NOTIFY_KEYS):
            return False
        if not str(params.get("money") or params.get("total_amount") or "").strip():
            return False
        if str(params.get("pid")) != self.pid:
            return False
        sign_type = str(params.get("sign_type") or "MD5").upper()
        if sign_type != "MD5":
            return False
        expected = self.sign(params)
        return hmac.compare_digest(expected, str(params.get("sign", "")).upper())

    def query_order(self, order_no: str) -> Dict:
        if not self.pid or not self.key or not self.gateway_url:
            raise GatewayError("易支付未配置")
        params = {
            "pid": self.pid,
            "out_trade_no": order_no,
            "timestamp": str(int(time.time())),
            "sign_type": "MD5",
        }
        params["sign"] = self.sign(params)
        try:
            resp = requests.post(f"{self.gateway_url}/openapi/pay/query", data=params, timeout=self._timeout())
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            log_event(logger, E.PAYMENT_GATEWAY_HTTP_FAIL, level="warning", provider=self.provider, order_no=order_no, error=e)
            raise GatewayError("支付网关查询失败") from e
        if int(data.get("code", 0) or 0) != 1:
            raise GatewayError(f"支付网关返回错误: {data.get('msg', '')}")
        body = data.get("data") or {}
        amount = body.get("total_amount") or body.get("money")
        return {
            "trade_no": str(body.get("trade_no") or ""),
            "trade_status": str(body.get("trade_status") or ""),
            "amount": float(amount) if amount else None,
        }
