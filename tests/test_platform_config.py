"""平台配置服务单元测试。"""

import os
import sqlite3
import tempfile
from decimal import Decimal

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="platform_cfg_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-unit-tests"

import marketcore.database as _db_mod
from marketcore.database import init_db
from marketcore.services.platform_config import (
    DEFAULTS,
    PlatformConfigError,
    _decrypt,
    _encrypt,
    get_commission_rate,
    get_config,
    get_int,
    get_percent,
    get_provider_credentials,
    get_provider_status,
    get_seller_commission_rate,
    get_settings,
    save_provider_credentials,
    set_config,
    set_seller_commission_rate,
    update_settings,
)

_TABLES = (
    "payout_entries", "payout_batches", "seller_profiles", "seller_payout_profiles", "daily_rewards",
    "purchase_attempts", "licenses", "orders", "listings", "transactions",
    "accounts", "system_config", "admin",
)


@pytest.fixture(autouse=True)
def _setup_db():
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("".join(f"DROP TABLE IF EXISTS {t};" for t in _TABLES))
    conn.close()
    init_db()
    yield


# ── 通用配置读写 ──


class TestConfigCRUD:
    """get_config / set_config 测试。"""

    def test_get_nonexistent_key_returns_none(self):
        assert get_config("nonexistent") is None

    def test_set_and_get_config(self):
        set_config("foo", "bar")
        assert get_config("foo") == "bar"

    def test_update_existing_config(self):
        set_config("foo", "bar")
        set_config("foo", "baz")
        assert get_config("foo") == "baz"

    def test_set_none_value(self):
        set_config("foo", None)
        assert get_config("foo") is None


# ── 业务参数 ──


class TestSettings:
    """类型化业务参数测试。"""

    def test_defaults(self):
        assert get_percent("commission_rate_percent") == Decimal("15")
        assert get_percent("processor_fee_percent") == Decimal("2.9")
        assert get_int("min_payout_cents") == 1000
        assert get_int("payout_hold_days") == 7

    def test_invalid_stored_value_falls_back(self):
        set_config("payout_hold_days", "abc")
        set_config("commission_rate_percent", "xx")
        assert get_int("payout_hold_days") == 7
        assert get_percent("commission_rate_percent") == Decimal("15")

    def test_get_settings_lists_all_keys(self):
        settings = get_settings()
        assert set(settings) == set(DEFAULTS)
        assert settings["commission_rate_percent"] == "15"

    def test_update_settings(self):
        settings = update_settings({"commission_rate_percent": 12.5, "min_payout_cents": "2000"})
        assert settings["commission_rate_percent"] == "12.5"
        assert get_int("min_payout_cents") == 2000

    @pytest.mark.parametrize("values", [
        {"unknown_key": "1"},
        {"commission_rate_percent": "101"},
        {"commission_rate_percent": "-1"},
        {"processor_fee_percent": "abc"},
        {"min_payout_cents": "1.5"},
        {"payout_hold_days": "-3"},
        {"payout_sub_batch_size": "0"},
        {"payout_max_attempts": "0"},
        {"auto_payouts_enabled": "2"},
    ])
    def test_update_settings_rejects_invalid(self, values):
        with pytest.raises(PlatformConfigError):
            update_settings(values)

    def test_invalid_update_writes_nothing(self):
        with pytest.raises(PlatformConfigError):
            update_settings({"min_payout_cents": "5000", "commission_rate_percent": "200"})
        assert get_int("min_payout_cents") == 1000

    def test_auto_payouts_toggle(self):
        assert get_int("auto_payouts_enabled") == 1
        update_settings({"auto_payouts_enabled": "0"})
        assert get_int("auto_payouts_enabled") == 0


# ── 卖家佣金费率 ──


class TestSellerCommission:
    """卖家专属佣金费率测试。"""

    def test_falls_back_to_platform_rate(self):
        assert get_seller_commission_rate("s1") is None
        assert get_commission_rate("s1") == Decimal("15")
        set_config("commission_rate_percent", "12")
        assert get_commission_rate("s1") == Decimal("12")

    def test_override_and_clear(self):
        set_seller_commission_rate("s1", "8.5")
        assert get_seller_commission_rate("s1") == Decimal("8.5")
        assert get_commission_rate("s1") == Decimal("8.5")
        assert get_commission_rate("s2") == Decimal("15")

        set_seller_commission_rate("s1", None)
        assert get_seller_commission_rate("s1") is None
        assert get_commission_rate("s1") == Decimal("15")

    @pytest.mark.parametrize("rate", ["-1", "100.5", "abc", "nan"])
    def test_invalid_rate_rejected(self, rate):
        with pytest.raises(PlatformConfigError):
            set_seller_commission_rate("s1", rate)
        assert get_seller_commission_rate("s1") is None

    def test_empty_seller_rejected(self):
        with pytest.raises(PlatformConfigError):
            set_seller_commission_rate("", "10")


# ── 加解密 ──


class TestEncryption:
    """Fernet 加解密测试。"""

    def test_encrypt_decrypt_roundtrip(self):
        assert _decrypt(_encrypt("sk_live_abc")) == "sk_live_abc"

    def test_encrypted_value_differs_from_plaintext(self):
        assert _encrypt("sk_live_abc") != "sk_live_abc"


# ── 处理方凭证 ──


class TestProviderCredentials:
    """处理方凭证存取测试。"""

    def test_save_and_get(self):
        save_provider_credentials("processor_a", "https://pa.example.com", "sk", "whsec")
        assert get_provider_credentials("processor_a") == {
            "base_url": "https://pa.example.com", "api_key": "sk", "webhook_secret": "whsec",
        }

    def test_stored_encrypted(self):
        save_provider_credentials("processor_a", "https://pa.example.com", "sk", "whsec")
        assert get_config("processor_a_api_key") != "sk"

    def test_unconfigured_returns_none(self):
        assert get_provider_credentials("processor_b") is None

    def test_empty_values_rejected(self):
        with pytest.raises(PlatformConfigError):
            save_provider_credentials("processor_a", "https://pa.example.com", "", "whsec")

    def test_unknown_provider_rejected(self):
        with pytest.raises(PlatformConfigError):
            save_provider_credentials("processor_z", "u", "k", "w")

    def test_undecryptable_returns_none(self):
        for field in ("base_url", "api_key", "webhook_secret"):
            set_config(f"processor_a_{field}", "not-a-fernet-token")
        assert get_provider_credentials("processor_a") is None

    def test_status(self):
        assert get_provider_status() == {
            "processor_a": "unconfigured", "processor_b": "unconfigured",
        }
        save_provider_credentials("processor_b", "u", "k", "w")
        assert get_provider_status()["processor_b"] == "configured"
