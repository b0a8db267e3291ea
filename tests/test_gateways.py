import unittest
from unittest.mock import MagicMock, patch

import requests

from core.config import cfg
from core.errors import NotFoundError
from core.gateways import TRADE_SUCCESS, GatewayError, available_gateways, get_gateway
from core.gateways.mock import MockGateway
from core.gateways.yipay import YipayGateway, build_sign_string, md5_sign


YIPAY_OPTIONS = {
    "enabled": True,
    "pid": "1001",
    "key": "secret-key",
    "gateway_url": "https://pay.example.com/",
    "notify_url": "https://shop.example.com/api/v1/payment/notify/yipay",
}


def _yipay_notify():
    params = {
        "pid": "1001",
        "trade_no": "T123",
        "out_trade_no": "ORD001",
        "type": "alipay",
        "name": "VIP",
        "money": "10.00",
        "trade_status": TRADE_SUCCESS,
        "sign_type": "MD5",
    }
    params["sign"] = "B2362F3A450D5D3A2043579D7515C8DA"
    return params


class YipaySignTestCase(unittest.TestCase):
    def setUp(self):
        self.gateway = YipayGateway(YIPAY_OPTIONS)

    def test_sign_string_should_skip_empty_and_sign_fields(self):
        text = build_sign_string({"b": "2", "a": "1", "c": "", "sign": "x", "sign_type": "MD5", "d": None})
        self.assertEqual(text, "a=1&b=2")

    def test_known_vector(self):
        params = _yipay_notify()
        self.assertEqual(md5_sign(params, "secret-key"), params["sign"])

    def test_verify_notify(self):
        self.assertTrue(self.gateway.verify_notify(_yipay_notify()))
        lower = _yipay_notify()
        lower["sign"] = lower["sign"].lower()
        self.assertTrue(self.gateway.verify_notify(lower))

    def test_tampered_amount_should_fail(self):
        params = _yipay_notify()
        params["money"] = "0.01"
        self.assertFalse(self.gateway.verify_notify(params))

    def test_missing_field_or_wrong_pid_should_fail(self):
        params = _yipay_notify()
        params.pop("trade_no")
        self.assertFalse(self.gateway.verify_notify(params))
        params = _yipay_notify()
        params["pid"] = "2002"
        self.assertFalse(self.gateway.verify_notify(params))
        params = _yipay_notify()
        params["sign_type"] = "RSA"
        self.assertFalse(self.gateway.verify_notify(params))

    def test_signed_notify_without_amount_should_fail(self):
        params = _yipay_notify()
        params.pop("money")
        params["sign"] = md5_sign(params, "secret-key")
        self.assertFalse(self.gateway.verify_notify(params))

    def test_parse_notify_should_read_money(self):
        notify = self.gateway.parse_notify(_yipay_notify())
        self.assertEqual(notify["order_no"], "ORD001")
        self.assertEqual(notify["trade_no"], "T123")
        self.assertEqual(notify["amount"], 10.0)


class YipayHttpTestCase(unittest.TestCase):
    def setUp(self):
        self.gateway = YipayGateway(YIPAY_OPTIONS)

    @patch("core.gateways.yipay.requests.post")
    def test_create_payment_should_return_qrcode(self, mock_post):
        resp = MagicMock()
        resp.text = '{"code": 1}'
        resp.json.return_value = {"code": 1, "data": {"qrcode": "weixin://pay/abc", "trade_no": "T9"}}
        mock_post.return_value = resp

        result = self.gateway.create_payment("ORD002", 12.5)
        self.assertEqual(result["type"], "qrcode")
        self.assertEqual(result["pay_url"], "weixin://pay/abc")
        url = mock_post.call_args[0][0]
        data = mock_post.call_args[1]["data"]
        self.assertEqual(url, "https://pay.example.com/openapi/pay/create")
        self.assertEqual(data["total_amount"], "12.50")
        self.assertEqual(data["sign"], md5_sign(data, "secret-key"))

    @patch("core.gateways.yipay.requests.post")
    def test_create_payment_should_accept_plain_url(self, mock_post):
        resp = MagicMock()
        resp.text = "https://pay.example.com/cashier/abc\n"
        mock_post.return_value = resp
        result = self.gateway.create_payment("ORD003", 1.0)
        self.assertEqual(result, {"type": "url", "pay_url": "https://pay.example.com/cashier/abc"})

    @patch("core.gateways.yipay.requests.post")
    def test_gateway_errors_should_raise(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(GatewayError):
            self.gateway.create_payment("ORD004", 1.0)

        mock_post.side_effect = None
        resp = MagicMock()
        resp.text = '{"code": 0}'
        resp.json.return_value = {"code": 0, "msg": "商户不存在"}
        mock_post.return_value = resp
        with self.assertRaises(GatewayError):
            self.gateway.create_payment("ORD005", 1.0)

    @patch("core.gateways.yipay.requests.post")
    def test_query_order(self, mock_post):
        resp = MagicMock()
        resp.json.return_value = {"code": 1, "data": {"trade_no": "T7", "trade_status": TRADE_SUCCESS, "money": "8.00"}}
        mock_post.return_value = resp
        result = self.gateway.query_order("ORD006")
        self.assertEqual(result, {"trade_no": "T7", "trade_status": TRADE_SUCCESS, "amount": 8.0})

    def test_unconfigured_should_raise(self):
        with self.assertRaises(GatewayError):
            YipayGateway({}).create_payment("ORD007", 1.0)


class RegistryTestCase(unittest.TestCase):
    def test_mock_enabled_by_default(self):
        self.assertIn("mock", available_gateways())
        self.assertIsInstance(get_gateway("MOCK"), MockGateway)

    def test_unknown_or_disabled_should_be_not_found(self):
        with self.assertRaises(NotFoundError):
            get_gateway("paypal")
        with patch.dict(cfg.config["payment"]["gateways"], {"yipay": dict(YIPAY_OPTIONS, enabled=False)}):
            with self.assertRaises(NotFoundError):
                get_gateway("yipay")

    def test_enabled_yipay(self):
        with patch.dict(cfg.config["payment"]["gateways"], {"yipay": YIPAY_OPTIONS}):
            self.assertIsInstance(get_gateway("yipay"), YipayGateway)
            self.assertIn("yipay", available_gateways())


class MockGatewayTestCase(unittest.TestCase):
    def test_sign_and_verify(self):
        gateway = MockGateway({"key": "mock-secret"})
        params = {"out_trade_no": "ORD1", "trade_no": "M1", "trade_status": TRADE_SUCCESS, "total_amount": "30.00"}
        params["sign"] = gateway.sign(params)
        self.assertTrue(gateway.verify_notify(params))
        self.assertFalse(MockGateway({"key": "other"}).verify_notify(params))
        params["total_amount"] = "1.00"
        self.assertFalse(gateway.verify_notify(params))

    def test_query_order_defaults_to_pending(self):
        gateway = MockGateway({"key": "k", "trades": {"ORD1": {"trade_no": "M1", "trade_status": TRADE_SUCCESS, "amount": 3.0}}})
        self.assertEqual(gateway.query_order("ORD1")["trade_status"], TRADE_SUCCESS)
        self.assertEqual(gateway.query_order("ORD2")["trade_status"], "WAIT_BUYER_PAY")


if __name__ == "__main__":
    unittest.main()
