"""运营后台认证模块单元测试。"""

import os
import sqlite3
import tempfile

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

# 在导入 marketcore 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="auth_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-auth"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin123"

import marketcore.database as _db_mod
from marketcore.database import get_db, init_db
from marketcore.main import app
from marketcore.services.auth import (
    AdminAuthError,
    create_token,
    get_current_admin,
    hash_password,
    verify_password,
    verify_token,
)

_TABLES = (
    "payout_entries", "payout_batches", "seller_profiles", "seller_payout_profiles", "daily_rewards",
    "purchase_attempts", "licenses", "orders", "listings", "transactions",
    "accounts", "system_config", "admin",
)


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    os.environ["ADMIN_USERNAME"] = "admin"
    os.environ["ADMIN_PASSWORD"] = "admin123"
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("".join(f"DROP TABLE IF EXISTS {t};" for t in _TABLES))
    conn.close()
    init_db()
    yield


@pytest.fixture
def client():
    return TestClient(app)


def _login(client, password="admin123"):
    return client.post("/v1/admin/auth/login", json={
        "username": "admin", "password": password,
    }).json()


# ── 密码哈希测试 ──


class TestPasswordHashing:
    """密码哈希和验证测试。"""

    def test_hash_and_verify(self):
        hashed = hash_password("mypassword")
        assert verify_password("mypassword", hashed)

    def test_wrong_password_fails(self):
        hashed = hash_password("mypassword")
        assert not verify_password("wrongpassword", hashed)

    def test_different_hashes_for_same_password(self):
        """每次哈希使用不同的盐。"""
        assert hash_password("same") != hash_password("same")


# ── JWT 令牌测试 ──


class TestJWTToken:
    """JWT 令牌生成和验证测试。"""

    def test_create_and_verify_token(self):
        payload = verify_token(create_token("admin"))
        assert payload["sub"] == "admin"
        assert payload["role"] == "admin"
        assert "exp" in payload

    def test_invalid_token_raises(self):
        with pytest.raises(AdminAuthError):
            verify_token("invalid.token.here")

    def test_tampered_token_raises(self):
        token = create_token("admin")
        tampered = token[:-1] + ("a" if token[-1] != "a" else "b")
        with pytest.raises(AdminAuthError):
            verify_token(tampered)


# ── 登录接口测试 ──


class TestLoginRoute:
    """POST /v1/admin/auth/login 路由测试。"""

    def test_login_success(self, client):
        data = _login(client)
        assert data["code"] == 1
        assert verify_token(data["token"])["sub"] == "admin"

    def test_login_wrong_password(self, client):
        data = _login(client, "wrongpass")
        assert data["code"] == -1
        assert "错误" in data["msg"]

    def test_login_wrong_username(self, client):
        resp = client.post("/v1/admin/auth/login", json={
            "username": "nonexistent", "password": "admin123",
        })
        assert resp.json()["code"] == -1


# ── 账号锁定测试 ──


class TestAccountLockout:
    """连续 5 次失败锁定 15 分钟测试。"""

    def test_lockout_after_5_failures(self, client):
        for _ in range(5):
            _login(client, "wrong")
        data = _login(client)
        assert data["code"] == -1
        assert "锁定" in data["msg"]

    def test_4_failures_not_locked(self, client):
        for _ in range(4):
            _login(client, "wrong")
        assert _login(client)["code"] == 1

    def test_success_resets_fail_count(self, client):
        for _ in range(3):
            _login(client, "wrong")
        _login(client)
        for _ in range(4):
            _login(client, "wrong")
        assert _login(client)["code"] == 1

    def test_lockout_expires(self, client):
        for _ in range(5):
            _login(client, "wrong")
        db = get_db()
        try:
            db.execute(
                "UPDATE admin SET locked_until = datetime('now', 'localtime', '-1 minute') "
                "WHERE username = 'admin'"
            )
        finally:
            db.close()
        assert _login(client)["code"] == 1


# ── 依赖项测试 ──


class TestGetCurrentAdmin:
    """get_current_admin 依赖项测试。"""

    @pytest.fixture
    def guarded(self):
        guarded_app = FastAPI()

        @guarded_app.get("/guarded")
        def guarded_route(admin: dict = Depends(get_current_admin)):
            return {"sub": admin["sub"]}

        return TestClient(guarded_app)

    def test_valid_bearer_token(self, guarded):
        resp = guarded.get("/guarded", headers={"Authorization": f"Bearer {create_token('admin')}"})
        assert resp.status_code == 200
        assert resp.json() == {"sub": "admin"}

    def test_cookie_token(self, guarded):
        guarded.cookies.set("token", create_token("admin"))
        resp = guarded.get("/guarded")
        assert resp.status_code == 200

    def test_missing_token_returns_401(self, guarded):
        assert guarded.get("/guarded").status_code == 401

    def test_invalid_token_returns_401(self, guarded):
        resp = guarded.get("/guarded", headers={"Authorization": "Bearer garbage"})
        assert resp.status_code == 401

    def test_admin_routes_require_token(self, client):
        assert client.get("/v1/admin/settings").status_code == 401
        assert client.post("/v1/admin/payouts/run", json={}).status_code == 401
