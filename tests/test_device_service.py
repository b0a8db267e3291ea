import unittest

from core.device_service import generate_device_hash, is_proxy_client, parse_user_agent


ANDROID_UA = "ClashForAndroid/2.5.12 (Linux; Android 13; Xiaomi 2211133C Build/TKQ1)"
IPHONE_UA = "Shadowrocket/1982 CFNetwork/1404.0.5 Darwin/22.3.0 iPhone15,2"
WINDOWS_UA = "v2rayN/6.23 (Windows NT 10.0; Win64; x64)"
BROWSER_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 Version/17.0 Safari/605.1.15"


class ParseUserAgentTestCase(unittest.TestCase):
    def test_android_clash(self):
        info = parse_user_agent(ANDROID_UA)
        self.assertEqual(info["software_name"], "Clash")
        self.assertEqual(info["software_version"], "2.5.12")
        self.assertEqual(info["os_name"], "Android")
        self.assertEqual(info["os_version"], "13")
        self.assertEqual(info["device_model"], "Xiaomi 2211133C")
        self.assertEqual(info["device_brand"], "Xiaomi")
        self.assertEqual(info["device_type"], "mobile")
        self.assertEqual(info["device_name"], "Clash - Xiaomi 2211133C - Android 13 - v2.5.12")

    def test_iphone_shadowrocket(self):
        info = parse_user_agent(IPHONE_UA)
        self.assertEqual(info["software_name"], "Shadowrocket")
        self.assertEqual(info["os_name"], "iOS")
        self.assertEqual(info["device_model"], "iPhone 14 Pro")
        self.assertEqual(info["device_brand"], "Apple")
        self.assertEqual(info["device_type"], "mobile")

    def test_windows_v2rayn(self):
        info = parse_user_agent(WINDOWS_UA)
        self.assertEqual(info["software_name"], "v2rayN")
        self.assertEqual(info["os_name"], "Windows")
        self.assertEqual(info["os_version"], "10.0")
        self.assertEqual(info["device_type"], "desktop")

    def test_empty_user_agent(self):
        info = parse_user_agent("")
        self.assertEqual(info["software_name"], "Unknown")
        self.assertEqual(info["device_name"], "Unknown Device")


class DeviceFingerprintTestCase(unittest.TestCase):
    def test_device_id_wins_over_user_agent(self):
        self.assertEqual(
            generate_device_hash(ANDROID_UA, "1.1.1.1", "abc"),
            generate_device_hash(IPHONE_UA, "2.2.2.2", "abc"),
        )
        self.assertNotEqual(generate_device_hash(ANDROID_UA, device_id="abc"), generate_device_hash(ANDROID_UA, device_id="abd"))

    def test_same_user_agent_same_fingerprint(self):
        self.assertEqual(generate_device_hash(ANDROID_UA, "1.1.1.1"), generate_device_hash(ANDROID_UA, "9.9.9.9"))
        upgraded = ANDROID_UA.replace("2.5.12", "2.5.13")
        self.assertNotEqual(generate_device_hash(ANDROID_UA), generate_device_hash(upgraded))

    def test_proxy_client_detection(self):
        self.assertTrue(is_proxy_client(ANDROID_UA))
        self.assertTrue(is_proxy_client("clash-verge/v1.7.7 Mozilla/5.0"))
        self.assertTrue(is_proxy_client("curl/8.4.0"))
        self.assertFalse(is_proxy_client(BROWSER_UA))


if __name__ == "__main__":
    unittest.main()
