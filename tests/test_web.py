import unittest

from core.config import API_BASE, VERSION
from web import UnicodeJSONResponse, app, healthz


class UnicodeResponseTestCase(unittest.TestCase):
    def test_chinese_should_not_be_escaped(self):
        data = {"message": "订单创建成功", "data": {"tags": ["香港", "日本"]}}
        body = UnicodeJSONResponse(content=data).body.decode("utf-8")
        self.assertIn("订单创建成功", body)
        self.assertNotIn("\\u", body)


class RoutesTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_healthz(self):
        self.assertEqual(await healthz(), {"status": "ok", "version": VERSION})

    def test_routes_are_mounted_under_api_base(self):
        paths = {route.path for route in app.routes}
        for path in (
            "/subscriptions/clash/{url}",
            "/subscriptions/universal/{url}",
            "/subscribe/{url}",
            "/payment/notify/{provider}",
            "/orders",
            "/recharge",
            "/auth/login",
        ):
            self.assertIn(f"{API_BASE}{path}", paths)


if __name__ == "__main__":
    unittest.main()
