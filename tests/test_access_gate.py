import threading
import time
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from core import device_service
from core.access_gate import FORMAT_CLASH, FORMAT_UNIVERSAL, check_subscription_access
from core.db import DB
from core.errors import ForbiddenError, NotFoundError
from core.models.device import Device
from core.models.subscription import Subscription
from core.models.subscription_reset import SubscriptionReset
from core.models.user import User
from core.subscription_service import (
    RESET_TYPE_ADMIN,
    remove_device,
    rotate_subscription_url,
)
from factories import cleanup_users, make_subscription, make_user


CLASH_UA = "ClashForAndroid/2.5.12"
BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


class AccessGateTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self.session = DB.get_session()
        self.user = make_user(self.session)
        self.sub = make_subscription(self.session, self.user, device_limit=2, expire_in_days=10)
        self.url = self.sub.subscription_url

    def tearDown(self):
        self.session.close()
        cleanup_users(DB.get_session(), [self.user])

    def _fetch(self, device_id="", user_agent=CLASH_UA, url=None, fmt=FORMAT_CLASH):
        return check_subscription_access(
            self.session,
            url or self.url,
            user_agent=user_agent,
            ip_address="10.0.0.1",
            device_id=device_id,
            fmt=fmt,
        )

    def _device_count(self) -> int:
        return self.session.query(Device).filter(Device.subscription_id == self.sub.id).count()

    def test_device_limit_should_block_new_fingerprint_only(self):
        self._fetch("dev-a")
        self._fetch("dev-b")
        with self.assertRaises(ForbiddenError) as ctx:
            self._fetch("dev-c")
        self.assertIn("2/2", ctx.exception.message)
        result = self._fetch("dev-a")
        self.assertEqual(result["device"].access_count, 2)
        self.assertEqual(self._device_count(), 2)
        self.session.expire_all()
        self.assertEqual(self.session.query(Subscription).filter(Subscription.id == self.sub.id).first().current_devices, 2)

    def test_counters_should_follow_format(self):
        self._fetch("dev-a")
        self._fetch("dev-a", fmt=FORMAT_UNIVERSAL)
        self._fetch("dev-a", fmt=FORMAT_UNIVERSAL)
        self.session.expire_all()
        sub = self.session.query(Subscription).filter(Subscription.id == self.sub.id).first()
        self.assertEqual(sub.clash_count, 1)
        self.assertEqual(sub.universal_count, 2)

    def test_browser_should_not_register_device(self):
        result = self._fetch(user_agent=BROWSER_UA)
        self.assertIsNone(result["device"])
        self.assertEqual(self._device_count(), 0)

    def test_zero_limit_should_reject_new_device(self):
        self.sub.device_limit = 0
        self.session.commit()
        with self.assertRaises(ForbiddenError):
            self._fetch("dev-a")

    def test_concurrent_new_devices_should_respect_limit(self):
        self.sub.device_limit = 1
        self.session.commit()
        real_count = device_service._active_device_count

        def slow_count(session, subscription_id):
            count = real_count(session, subscription_id)
            time.sleep(0.05)
            return count

        results = []

        def worker(index):
            session = DB.get_session()
            try:
                check_subscription_access(session, self.url, user_agent=CLASH_UA, device_id=f"race-{index}")
                results.append("ok")
            except ForbiddenError:
                results.append("forbidden")
            finally:
                session.close()

        with patch("core.device_service._active_device_count", side_effect=slow_count):
            threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

        self.assertEqual(sorted(results), ["forbidden", "forbidden", "forbidden", "ok"])
        self.assertEqual(self._device_count(), 1)
        self.session.expire_all()
        self.assertEqual(self.session.query(Subscription).filter(Subscription.id == self.sub.id).first().current_devices, 1)

    def test_unknown_url_should_be_not_found(self):
        with self.assertRaises(NotFoundError) as ctx:
            self._fetch("dev-a", url="no-such-url-0000")
        self.assertNotIn("重置", ctx.exception.message)
        with self.assertRaises(NotFoundError):
            self._fetch("dev-a", url=" ")

    def test_expired_subscription_should_be_forbidden(self):
        self.sub.expire_time = datetime.now() - timedelta(minutes=1)
        self.session.commit()
        with self.assertRaises(ForbiddenError) as ctx:
            self._fetch("dev-a")
        self.assertIn("过期", ctx.exception.message)
        self.assertEqual(self._device_count(), 0)

    def test_disabled_user_should_be_forbidden(self):
        user = self.session.query(User).filter(User.id == self.user.id).first()
        user.is_active = False
        self.session.commit()
        with self.assertRaises(ForbiddenError) as ctx:
            self._fetch("dev-a")
        self.assertIn("禁用", ctx.exception.message)

    def test_inactive_subscription_should_be_forbidden(self):
        self.sub.status = "inactive"
        self.session.commit()
        with self.assertRaises(ForbiddenError):
            self._fetch("dev-a")

    def test_rotation_should_invalidate_old_url(self):
        self._fetch("dev-a")
        self._fetch("dev-b")
        reset = rotate_subscription_url(self.session, self.sub.id, actor="admin", reason="泄露", reset_type=RESET_TYPE_ADMIN)
        self.assertEqual(reset.old_subscription_url, self.url)
        self.assertEqual(reset.device_count_before, 2)
        self.assertNotEqual(reset.new_subscription_url, self.url)

        with self.assertRaises(NotFoundError) as ctx:
            self._fetch("dev-a")
        self.assertIn("重置", ctx.exception.message)

        self.assertEqual(self._device_count(), 0)
        result = self._fetch("dev-c", url=reset.new_subscription_url)
        self.assertIsNotNone(result["device"])
        self.assertEqual(self._device_count(), 1)
        resets = self.session.query(SubscriptionReset).filter(SubscriptionReset.subscription_id == self.sub.id).count()
        self.assertEqual(resets, 1)

    def test_rotation_of_missing_subscription(self):
        with self.assertRaises(NotFoundError):
            rotate_subscription_url(self.session, "missing-subscription-id")

    def test_remove_device_should_free_slot(self):
        first_id = self._fetch("dev-a")["device"].id
        self._fetch("dev-b")
        with self.assertRaises(ForbiddenError):
            self._fetch("dev-c")
        self.assertTrue(remove_device(self.session, self.sub.id, first_id))
        self._fetch("dev-c")
        self.assertEqual(self._device_count(), 2)
        with self.assertRaises(NotFoundError):
            remove_device(self.session, self.sub.id, first_id)


if __name__ == "__main__":
    unittest.main()
