"""Webhook HMAC 签名模块单元测试。"""

import hashlib
import hmac
import re

from marketcore.services.sign import generate_sign, verify_sign


class TestGenerateSign:
    """generate_sign 单元测试。"""

    def test_basic_sign(self):
        sign = generate_sign({"a": "1", "b": "2"}, "secret")
        # 小写 64 位十六进制
        assert re.fullmatch(r"[0-9a-f]{64}", sign)

    def test_ascii_sort_order(self):
        """参数按 ASCII 排序，不同顺序输入应产生相同签名。"""
        params_a = {"z": "1", "a": "2", "m": "3"}
        params_b = {"a": "2", "m": "3", "z": "1"}
        assert generate_sign(params_a, "k") == generate_sign(params_b, "k")

    def test_filters_empty_values_and_sign(self):
        base = {"a": "1", "b": "2"}
        extra = {"a": "1", "b": "2", "c": "", "d": None, "sign": "abc"}
        assert generate_sign(base, "k") == generate_sign(extra, "k")

    def test_numbers_are_stringified(self):
        assert generate_sign({"amount": 1000}, "k") == generate_sign({"amount": "1000"}, "k")

    def test_known_value(self):
        expected = hmac.new(b"KEY", b"a=1&b=2&c=3", hashlib.sha256).hexdigest()
        assert generate_sign({"c": "3", "a": "1", "b": "2"}, "KEY") == expected

    def test_different_secret_different_sign(self):
        params = {"a": "1"}
        assert generate_sign(params, "k1") != generate_sign(params, "k2")


class TestVerifySign:
    """verify_sign 单元测试。"""

    def test_valid_sign(self):
        params = {"event": "payout.paid", "entry_id": "e1"}
        assert verify_sign(params, "whsec", generate_sign(params, "whsec"))

    def test_tampered_params(self):
        params = {"event": "payout.paid", "entry_id": "e1"}
        sign = generate_sign(params, "whsec")
        params["entry_id"] = "e2"
        assert not verify_sign(params, "whsec", sign)

    def test_wrong_secret(self):
        params = {"event": "payout.paid"}
        assert not verify_sign(params, "other", generate_sign(params, "whsec"))

    def test_empty_sign(self):
        assert not verify_sign({"a": "1"}, "whsec", "")
