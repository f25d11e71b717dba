"""
运营后台认证：管理员密码 bcrypt 哈希、JWT 签发与校验、登录失败锁定、FastAPI 依赖项。

后台接口（退款、打款批次、业务参数）均依赖 get_current_admin。
"""

import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from marketcore.database import get_db

logger = logging.getLogger(__name__)

JWT_SECRET = os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 12

MAX_LOGIN_FAILURES = 5
LOCKOUT_MINUTES = 15

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


class AdminAuthError(Exception):
    """管理员认证失败。"""
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(username: str) -> str:
    """签发运营后台 JWT。"""
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {"sub": username, "role": "admin", "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并校验 JWT。

    Raises:
        AdminAuthError: 令牌无效、过期或不是后台令牌。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise AdminAuthError(f"令牌无效: {e}")
    if "sub" not in payload or payload.get("role") != "admin":
        raise AdminAuthError("令牌缺少管理员信息")
    return payload


def _register_failure(db: sqlite3.Connection, admin: sqlite3.Row) -> None:
    """累计登录失败次数，达到上限后锁定账号。"""
    fail_count = admin["login_fail_count"] + 1
    locked_until = None
    if fail_count >= MAX_LOGIN_FAILURES:
        locked_until = (datetime.now() + timedelta(minutes=LOCKOUT_MINUTES)).strftime(_TS_FORMAT)
        logger.warning("管理员账号连续登录失败已锁定: %s", admin["username"])
    db.execute(
        "UPDATE admin SET login_fail_count = ?, locked_until = ? WHERE id = ?",
        (fail_count, locked_until, admin["id"]),
    )


def authenticate(username: str, password: str) -> str:
    """
    校验管理员用户名和密码，成功返回 JWT。

    连续失败 MAX_LOGIN_FAILURES 次锁定 LOCKOUT_MINUTES 分钟，锁定过期后自动解除。

    Raises:
        AdminAuthError: 用户名或密码错误、账号锁定中。
    """
    db = get_db()
    try:
        admin = db.execute(
            "SELECT * FROM admin WHERE username = ?", (username,)
        ).fetchone()
        if not admin:
            raise AdminAuthError("用户名或密码错误")

        if admin["locked_until"]:
            locked_until = datetime.strptime(admin["locked_until"], _TS_FORMAT)
            if datetime.now() < locked_until:
                raise AdminAuthError("账号已锁定，请稍后再试")
            db.execute(
                "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
                (admin["id"],),
            )
            admin = db.execute("SELECT * FROM admin WHERE id = ?", (admin["id"],)).fetchone()

        if not verify_password(password, admin["password_hash"]):
            _register_failure(db, admin)
            raise AdminAuthError("用户名或密码错误")

        db.execute(
            "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
            (admin["id"],),
        )
    finally:
        db.close()

    logger.info("管理员登录成功: %s", username)
    return create_token(username)


def get_current_admin(request: Request) -> dict:
    """
    FastAPI 依赖项：从 Authorization: Bearer 头或 token cookie 中取出并校验 JWT。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    token = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
    if not token:
        token = request.cookies.get("token")
    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")

    try:
        return verify_token(token)
    except AdminAuthError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")
