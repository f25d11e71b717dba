"""
平台配置服务：管理 system_config 表的读写。

提供业务参数（佣金、手续费、打款门槛、奖励额度）的类型化读取，
以及支付处理方凭证的加密存储。
使用 Fernet 对称加密保护敏感凭证，密钥由 JWT_SECRET 通过 PBKDF2 派生。
"""

import base64
import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from marketcore.database import get_db
from marketcore.models.schemas import PROVIDERS

logger = logging.getLogger(__name__)


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


# 业务参数默认值，system_config 中未设置时使用
DEFAULTS: dict[str, str] = {
    "commission_rate_percent": "15",
    "processor_fee_percent": "2.9",
    "processor_fixed_fee_cents": "30",
    "min_payout_cents": "1000",
    "payout_hold_days": "7",
    "payout_sub_batch_size": "5",
    "payout_max_attempts": "3",
    "daily_base_reward": "50",
    "streak_bonus_7": "100",
    "streak_bonus_30": "500",
    "signup_bonus": "100",
    "profile_complete_bonus": "100",
    "first_share_bonus": "500",
    # 1 开启定时自动打款，0 仅允许管理员手动触发
    "auto_payouts_enabled": "1",
}

# 以百分比（Decimal）解析的键，其余按非负整数解析
_PERCENT_KEYS = {"commission_rate_percent", "processor_fee_percent"}

# 处理方凭证字段
_CREDENTIAL_FIELDS = ("base_url", "api_key", "webhook_secret")


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"marketcore-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _encrypt(plaintext: str) -> str:
    """加密明文字符串，返回密文。"""
    f = _get_fernet()
    return f.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def _decrypt(ciphertext: str) -> str:
    """解密密文字符串，返回明文。"""
    f = _get_fernet()
    return f.decrypt(ciphertext.encode("utf-8")).decode("utf-8")


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            """INSERT INTO system_config (config_key, config_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(config_key) DO UPDATE
               SET config_value = excluded.config_value, updated_at = excluded.updated_at""",
            (key, value, now),
        )
    finally:
        db.close()


# ── 业务参数 ──────────────────────────────────────────────


def get_percent(key: str) -> Decimal:
    """读取百分比参数（Decimal），非法值回退默认值并记录警告。"""
    raw = get_config(key)
    if raw is not None:
        try:
            return Decimal(raw)
        except InvalidOperation:
            logger.warning("配置 %s 的值无效: %r，使用默认值", key, raw)
    return Decimal(DEFAULTS[key])


def get_int(key: str) -> int:
    """读取整数参数，非法值回退默认值并记录警告。"""
    raw = get_config(key)
    if raw is not None:
        try:
            return int(raw)
        except ValueError:
            logger.warning("配置 %s 的值无效: %r，使用默认值", key, raw)
    return int(DEFAULTS[key])


def get_settings() -> dict:
    """返回全部业务参数的当前生效值（字符串形式，便于 JSON 输出）。"""
    result = {}
    for key in DEFAULTS:
        value = get_percent(key) if key in _PERCENT_KEYS else get_int(key)
        result[key] = str(value)
    return result


def update_settings(values: dict) -> dict:
    """
    批量更新业务参数，写入前逐项校验。

    Raises:
        PlatformConfigError: 未知的键或非法值，此时不写入任何一项。
    """
    cleaned = {}
    for key, value in values.items():
        if key not in DEFAULTS:
            raise PlatformConfigError(f"未知的配置项: {key}")
        text = str(value).strip()
        if key in _PERCENT_KEYS:
            try:
                rate = Decimal(text)
            except InvalidOperation:
                raise PlatformConfigError(f"{key} 必须是数字")
            if not rate.is_finite() or rate < 0 or rate > 100:
                raise PlatformConfigError(f"{key} 必须在 0 到 100 之间")
        else:
            try:
                number = int(text)
            except ValueError:
                raise PlatformConfigError(f"{key} 必须是整数")
            if number < 0:
                raise PlatformConfigError(f"{key} 不能为负数")
            if key == "payout_sub_batch_size" and number < 1:
                raise PlatformConfigError("payout_sub_batch_size 至少为 1")
            if key == "payout_max_attempts" and number < 1:
                raise PlatformConfigError("payout_max_attempts 至少为 1")
            if key == "auto_payouts_enabled" and number not in (0, 1):
                raise PlatformConfigError("auto_payouts_enabled 只能是 0 或 1")
        cleaned[key] = text

    for key, text in cleaned.items():
        set_config(key, text)
    logger.info("业务参数已更新: %s", ", ".join(sorted(cleaned)))
    return get_settings()


# ── 卖家佣金费率 ──────────────────────────────────────────


def set_seller_commission_rate(seller_id: str, rate) -> None:
    """
    设置卖家专属佣金费率，rate 为 None 时清除，回退到平台默认费率。

    Raises:
        PlatformConfigError: 费率不是 0-100 之间的数字。
    """
    if not seller_id:
        raise PlatformConfigError("seller_id 不能为空")
    text = None
    if rate is not None:
        text = str(rate).strip()
        try:
            value = Decimal(text)
        except InvalidOperation:
            raise PlatformConfigError("commission_rate_percent 必须是数字")
        if not value.is_finite() or value < 0 or value > 100:
            raise PlatformConfigError("commission_rate_percent 必须在 0 到 100 之间")

    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            """INSERT INTO seller_profiles (seller_id, commission_rate_percent, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(seller_id) DO UPDATE
               SET commission_rate_percent = excluded.commission_rate_percent,
                   updated_at = excluded.updated_at""",
            (seller_id, text, now),
        )
    finally:
        db.close()
    logger.info("卖家佣金费率已更新: seller=%s, rate=%s", seller_id, text)


def get_seller_commission_rate(seller_id: str) -> Decimal | None:
    """卖家专属佣金费率，未设置时返回 None。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT commission_rate_percent FROM seller_profiles WHERE seller_id = ?",
            (seller_id,),
        ).fetchone()
    finally:
        db.close()
    if not row or row["commission_rate_percent"] is None:
        return None
    return Decimal(row["commission_rate_percent"])


def get_commission_rate(seller_id: str) -> Decimal:
    """一笔销售实际使用的佣金费率：卖家专属费率优先，否则为平台默认。"""
    rate = get_seller_commission_rate(seller_id)
    if rate is not None:
        return rate
    return get_percent("commission_rate_percent")


# ── 处理方凭证 ────────────────────────────────────────────


def save_provider_credentials(provider: str, base_url: str, api_key: str, webhook_secret: str) -> None:
    """加密保存支付处理方凭证。"""
    if provider not in PROVIDERS:
        raise PlatformConfigError(f"未知的处理方: {provider}")
    if not base_url or not api_key or not webhook_secret:
        raise PlatformConfigError("base_url、api_key 和 webhook_secret 不能为空")

    for field, value in zip(_CREDENTIAL_FIELDS, (base_url, api_key, webhook_secret)):
        set_config(f"{provider}_{field}", _encrypt(value))
    logger.info("处理方凭证已保存: %s", provider)


def get_provider_credentials(provider: str) -> dict | None:
    """
    获取解密后的处理方凭证。

    Returns:
        dict: {"base_url", "api_key", "webhook_secret"} 或 None（未配置或解密失败）。
    """
    encrypted = {f: get_config(f"{provider}_{f}") for f in _CREDENTIAL_FIELDS}
    if not all(encrypted.values()):
        return None
    try:
        return {f: _decrypt(v) for f, v in encrypted.items()}
    except InvalidToken:
        logger.error("解密处理方凭证失败: %s", provider)
        return None


def get_provider_status() -> dict:
    """各处理方的凭证配置状态。"""
    return {
        p: "configured" if get_config(f"{p}_api_key") else "unconfigured"
        for p in PROVIDERS
    }
