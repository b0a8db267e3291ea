import threading
import unittest
import uuid
from unittest.mock import patch
from urllib.parse import urlencode

import yaml
from fastapi import HTTPException
from starlette.requests import Request

from apis.order import CreateOrderRequest, ManualPayRequest, create_package_order, get_order_status, manual_pay_order
from apis.payment import payment_notify
from apis.subscription import ResetRequest, fetch_clash, fetch_universal, reset_my_subscription
from apis.user import CreateUserRequest, add_user
from core.auth import create_access_token, get_current_user
from core.db import DB
from core.gateways.mock import MockGateway
from core.models.order import Order
from core.models.user import User
from factories import cleanup_users, make_package, make_subscription, make_user
from test_payment_notify import signed_notify


CLASH_UA = "ClashMetaForAndroid/2.10.1 (Linux; Android 14; Pixel 8 Build/AP1A)"


def _request(path="/", method="GET", headers=None, query=None) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(k.lower().encode("latin-1"), v.encode("utf-8")) for k, v in (headers or {}).items()],
        "query_string": urlencode(query or {}).encode("utf-8"),
        "client": ("10.0.0.9", 52000),
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope)


class SubscriptionApiTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        DB.create_tables()
        session = DB.get_session()
        self.user = make_user(session)
        self.sub = make_subscription(session, self.user, device_limit=2, expire_in_days=10)
        self.url = self.sub.subscription_url
        self.current_user = {"id": self.user.id, "username": self.user.username, "role": "user"}
        session.close()

    def tearDown(self):
        cleanup_users(DB.get_session(), [self.user])

    async def test_fetch_clash_should_return_yaml(self):
        request = _request(headers={"User-Agent": CLASH_UA, "X-Forwarded-For": "1.2.3.4, 10.0.0.1"})
        resp = await fetch_clash(self.url, request, device_id="phone-1")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.media_type.startswith("text/yaml"))
        self.assertIn("expire=", resp.headers["subscription-userinfo"])
        document = yaml.safe_load(resp.body.decode("utf-8"))
        self.assertIn("proxies", document)

    async def test_fetch_should_map_errors_to_status(self):
        resp = await fetch_universal("missing-" + uuid.uuid4().hex, _request(headers={"User-Agent": CLASH_UA}), device_id="")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.body.decode("utf-8"), "订阅不存在")

        for index in range(2):
            await fetch_clash(self.url, _request(headers={"User-Agent": CLASH_UA}), device_id=f"d{index}")
        resp = await fetch_clash(self.url, _request(headers={"User-Agent": CLASH_UA}), device_id="d9")
        self.assertEqual(resp.status_code, 403)

    async def test_fetch_without_nodes_should_return_empty_document(self):
        with patch("core.config_renderer.collect_nodes", return_value=[]), \
                patch("core.config_renderer.build_info_nodes", return_value=[]):
            resp = await fetch_clash(self.url, _request(headers={"User-Agent": CLASH_UA}), device_id="empty-1")
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(yaml.safe_load(resp.body.decode("utf-8"))["proxies"], [])
            resp = await fetch_universal(self.url, _request(headers={"User-Agent": CLASH_UA}), device_id="empty-1")
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.body, b"")

    async def test_reset_should_invalidate_old_link(self):
        result = await reset_my_subscription(ResetRequest(reason="换设备"), current_user=self.current_user)
        self.assertEqual(result["code"], 0)
        self.assertNotIn(self.url, result["data"]["clash_url"])
        resp = await fetch_clash(self.url, _request(headers={"User-Agent": CLASH_UA}), device_id="d1")
        self.assertEqual(resp.status_code, 404)
        self.assertIn("重置", resp.body.decode("utf-8"))


class OrderApiTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        DB.create_tables()
        session = DB.get_session()
        self.user = make_user(session)
        self.other = make_user(session)
        self.package = make_package(session, price=30.0)
        self.current_user = {"id": self.user.id, "username": self.user.username, "role": "user"}
        session.close()
        self.created_usernames = []

    def tearDown(self):
        session = DB.get_session()
        extra = session.query(User).filter(User.username.in_(self.created_usernames)).all() if self.created_usernames else []
        cleanup_users(session, [self.user, self.other] + extra, [self.package])

    async def _create_order(self) -> dict:
        payload = CreateOrderRequest(package_id=self.package.id, payment_method="mock")
        result = await create_package_order(payload, current_user=self.current_user)
        self.assertEqual(result["code"], 0)
        return result["data"]

    async def test_create_order_should_start_payment(self):
        data = await self._create_order()
        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["payable_amount"], 30.0)
        self.assertEqual(data["payment"]["type"], "mock")

        with self.assertRaises(HTTPException) as ctx:
            await get_order_status(data["order_no"], current_user={"id": self.other.id, "role": "user"})
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_gateway_call_should_run_off_event_loop(self):
        loop_thread = threading.get_ident()
        calls = []

        def create_payment(order_no, amount, subject=""):
            calls.append(threading.get_ident())
            return {"type": "mock", "pay_url": f"mockpay://{order_no}"}

        with patch.object(MockGateway, "create_payment", side_effect=create_payment):
            data = await self._create_order()
        self.assertEqual(data["payment"]["type"], "mock")
        self.assertEqual(len(calls), 1)
        self.assertNotEqual(calls[0], loop_thread)

    async def test_unknown_package_should_be_404(self):
        with self.assertRaises(HTTPException) as ctx:
            await create_package_order(CreateOrderRequest(package_id="missing"), current_user=self.current_user)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_notify_endpoint_should_pay_order(self):
        data = await self._create_order()
        params = signed_notify(data["order_no"], "30.00", trade_no="M-API")
        resp = await payment_notify("mock", _request(path="/api/v1/payment/notify/mock", query=params))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.body, b"success")

        status = await get_order_status(data["order_no"], current_user=self.current_user)
        self.assertEqual(status["data"]["status"], "paid")
        self.assertTrue(status["data"]["fulfilled"])

        params["sign"] = "bad"
        resp = await payment_notify("mock", _request(query=params))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.body, b"fail")

    async def test_manual_pay_requires_admin(self):
        data = await self._create_order()
        with self.assertRaises(HTTPException) as ctx:
            await manual_pay_order(data["order_no"], ManualPayRequest(), current_user=self.current_user)
        self.assertEqual(ctx.exception.status_code, 403)

        result = await manual_pay_order(data["order_no"], ManualPayRequest(note="转账"), current_user={"id": "", "username": "admin", "role": "admin"})
        self.assertEqual(result["data"]["status"], "paid")
        self.assertEqual(result["data"]["payment_method"], "manual")

        with self.assertRaises(HTTPException) as ctx:
            await manual_pay_order(data["order_no"], ManualPayRequest(), current_user={"id": "", "username": "admin", "role": "admin"})
        self.assertEqual(ctx.exception.status_code, 409)

        session = DB.get_session()
        try:
            order = session.query(Order).filter(Order.order_no == data["order_no"]).first()
            self.assertIsNotNone(order.fulfilled_at)
        finally:
            session.close()

    async def test_manual_pay_with_wrong_amount_should_fail(self):
        data = await self._create_order()
        admin = {"id": "", "username": "admin", "role": "admin"}
        with self.assertRaises(HTTPException) as ctx:
            await manual_pay_order(data["order_no"], ManualPayRequest(amount=1.0), current_user=admin)
        self.assertEqual(ctx.exception.status_code, 400)
        result = await manual_pay_order(data["order_no"], ManualPayRequest(amount=30.0), current_user=admin)
        self.assertEqual(result["data"]["status"], "paid")

    async def test_admin_add_user_and_token(self):
        username = f"api_user_{uuid.uuid4().hex[:8]}"
        self.created_usernames.append(username)
        payload = CreateUserRequest(username=username, password="demo123456", email=f"{username}@example.com")
        result = await add_user(payload, current_user={"id": "", "username": "admin", "role": "admin"})
        self.assertEqual(result["code"], 0)
        self.assertEqual(result["data"]["username"], username)

        token = create_access_token({"sub": username})
        current = await get_current_user(token)
        self.assertEqual(current["username"], username)
        self.assertEqual(current["role"], "user")

        with self.assertRaises(HTTPException) as ctx:
            await get_current_user("not-a-token")
        self.assertEqual(ctx.exception.status_code, 401)


if __name__ == "__main__":
    unittest.main()
