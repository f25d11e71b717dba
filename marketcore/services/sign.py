"""处理方 Webhook 的 HMAC-SHA256 签名生成与验证模块。"""

import hashlib
import hmac


def _canonical(params: dict) -> str:
    """过滤空值和 sign 字段，按键名 ASCII 排序后拼接 k=v&k=v。"""
    filtered = {
        k: v
        for k, v in params.items()
        if k != "sign" and v is not None and str(v) != ""
    }
    return "&".join(f"{k}={filtered[k]}" for k in sorted(filtered))


def generate_sign(params: dict, secret: str) -> str:
    """
    生成 HMAC-SHA256 签名。

    1. 过滤空值和 sign 参数
    2. 按参数名 ASCII 码从小到大排序
    3. 拼接 URL 键值对（参数值不 URL 编码）
    4. 以 webhook_secret 为密钥计算 HMAC-SHA256

    返回小写十六进制签名字符串。
    """
    message = _canonical(params).encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_sign(params: dict, secret: str, sign: str) -> bool:
    """验证签名，使用常量时间比较。"""
    if not sign:
        return False
    return hmac.compare_digest(generate_sign(params, secret), sign)
