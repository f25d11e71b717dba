"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。

金额一律以整数最小单位存储（cents / credits），不使用 DECIMAL 或浮点。
"""

import os
import sqlite3
from pathlib import Path

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/marketcore.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。

    isolation_level=None 时由调用方显式 BEGIN，账本的原子单元依赖这一点。
    """
    conn = sqlite3.connect(DB_PATH, timeout=5.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    login_fail_count INTEGER     DEFAULT 0,
    locked_until    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS accounts (
    account_id      VARCHAR(64)  NOT NULL,
    unit            VARCHAR(16)  NOT NULL,
    balance         INTEGER      NOT NULL DEFAULT 0,
    total_earned    INTEGER      NOT NULL DEFAULT 0,
    total_spent     INTEGER      NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (account_id, unit),
    CHECK (balance >= 0),
    CHECK (unit IN ('credits', 'cents'))
);

CREATE TABLE IF NOT EXISTS transactions (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_id  VARCHAR(32)  NOT NULL UNIQUE,
    account_id      VARCHAR(64)  NOT NULL,
    unit            VARCHAR(16)  NOT NULL,
    direction       VARCHAR(8)   NOT NULL,
    amount          INTEGER      NOT NULL,
    balance_after   INTEGER      NOT NULL,
    source          VARCHAR(32)  NOT NULL,
    related_order_id VARCHAR(32),
    reference_id    VARCHAR(32),
    description     TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (account_id, unit) REFERENCES accounts(account_id, unit),
    CHECK (amount > 0),
    CHECK (direction IN ('credit', 'debit'))
);

CREATE TABLE IF NOT EXISTS listings (
    listing_id      VARCHAR(32)  PRIMARY KEY,
    seller_id       VARCHAR(64)  NOT NULL,
    title           VARCHAR(256) NOT NULL,
    content         TEXT         NOT NULL,
    price_cents     INTEGER,
    credit_price    INTEGER,
    accepts_money   INTEGER      NOT NULL DEFAULT 1,
    accepts_credits INTEGER      NOT NULL DEFAULT 0,
    preview_percentage INTEGER   NOT NULL DEFAULT 20,
    sales_count     INTEGER      NOT NULL DEFAULT 0,
    status          VARCHAR(16)  NOT NULL DEFAULT 'active',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    order_id        VARCHAR(32)  PRIMARY KEY,
    idempotency_key VARCHAR(128) NOT NULL UNIQUE,
    listing_id      VARCHAR(32)  NOT NULL REFERENCES listings(listing_id),
    buyer_id        VARCHAR(64)  NOT NULL,
    seller_id       VARCHAR(64)  NOT NULL,
    payment_method  VARCHAR(16)  NOT NULL,
    amount_cents    INTEGER,
    credit_amount   INTEGER,
    commission_cents INTEGER     NOT NULL DEFAULT 0,
    processor_fee_cents INTEGER  NOT NULL DEFAULT 0,
    seller_net_cents INTEGER     NOT NULL DEFAULT 0,
    provider_charge_id VARCHAR(64),
    status          VARCHAR(16)  NOT NULL DEFAULT 'completed',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    refunded_at     DATETIME
);

CREATE TABLE IF NOT EXISTS licenses (
    license_key     VARCHAR(64)  PRIMARY KEY,
    order_id        VARCHAR(32)  NOT NULL UNIQUE REFERENCES orders(order_id),
    issued_at       DATETIME     NOT NULL DEFAULT (datetime('now')),
    revoked_at      DATETIME
);

CREATE TABLE IF NOT EXISTS purchase_attempts (
    idempotency_key VARCHAR(128) PRIMARY KEY,
    buyer_id        VARCHAR(64)  NOT NULL,
    listing_id      VARCHAR(32)  NOT NULL,
    payment_method  VARCHAR(16)  NOT NULL,
    amount          INTEGER,
    state           VARCHAR(16)  NOT NULL DEFAULT 'initiated',
    failure_reason  TEXT,
    provider_charge_id VARCHAR(64),
    order_id        VARCHAR(32),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS daily_rewards (
    account_id      VARCHAR(64)  PRIMARY KEY,
    last_claim_at   DATETIME,
    current_streak  INTEGER      NOT NULL DEFAULT 0,
    longest_streak  INTEGER      NOT NULL DEFAULT 0,
    total_days_claimed INTEGER   NOT NULL DEFAULT 0,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS seller_payout_profiles (
    seller_id       VARCHAR(64)  PRIMARY KEY,
    provider        VARCHAR(32)  NOT NULL,
    destination     VARCHAR(256) NOT NULL,
    paid_through_seq INTEGER     NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS seller_profiles (
    seller_id       VARCHAR(64)  PRIMARY KEY,
    commission_rate_percent VARCHAR(16),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS payout_batches (
    batch_id        VARCHAR(32)  PRIMARY KEY,
    provider        VARCHAR(32)  NOT NULL,
    status          VARCHAR(20)  NOT NULL DEFAULT 'pending',
    total_amount_cents INTEGER   NOT NULL DEFAULT 0,
    recipient_count INTEGER      NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    completed_at    DATETIME
);

CREATE TABLE IF NOT EXISTS payout_entries (
    entry_id        VARCHAR(32)  PRIMARY KEY,
    batch_id        VARCHAR(32)  NOT NULL REFERENCES payout_batches(batch_id),
    seller_id       VARCHAR(64)  NOT NULL,
    amount_cents    INTEGER      NOT NULL,
    window_start_seq INTEGER     NOT NULL,
    window_end_seq  INTEGER      NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    failure_reason  TEXT,
    provider_item_id VARCHAR(64),
    attempts        INTEGER      NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
CREATE INDEX IF NOT EXISTS idx_transactions_account
    ON transactions(account_id, created_at, transaction_id);
CREATE INDEX IF NOT EXISTS idx_transactions_account_seq
    ON transactions(account_id, unit, seq);
CREATE INDEX IF NOT EXISTS idx_transactions_order
    ON transactions(related_order_id);
CREATE INDEX IF NOT EXISTS idx_listings_seller
    ON listings(seller_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_idempotency_key
    ON orders(idempotency_key);
CREATE INDEX IF NOT EXISTS idx_orders_buyer_listing
    ON orders(buyer_id, listing_id);
CREATE INDEX IF NOT EXISTS idx_orders_seller
    ON orders(seller_id, status);
CREATE INDEX IF NOT EXISTS idx_payout_entries_batch
    ON payout_entries(batch_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_payout_entries_window
    ON payout_entries(seller_id, window_start_seq)
    WHERE status != 'failed';
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并在首次启动时创建默认管理员。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        conn.execute("BEGIN")
        _migrate_schema(conn)
        _create_default_admin(conn)
        conn.execute("COMMIT")
    finally:
        conn.close()


def _migrate_schema(conn: sqlite3.Connection) -> None:
    """为已有数据库添加新列（幂等操作）。"""
    # 早期版本的 listings 表没有 status 列
    try:
        conn.execute("SELECT status FROM listings LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute(
            "ALTER TABLE listings ADD COLUMN status VARCHAR(16) NOT NULL DEFAULT 'active'"
        )

    # 早期版本的 purchase_attempts 表没有记录定价金额
    try:
        conn.execute("SELECT amount FROM purchase_attempts LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute("ALTER TABLE purchase_attempts ADD COLUMN amount INTEGER")


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    username = os.getenv("ADMIN_USERNAME", "admin")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (username, password_hash) VALUES (?, ?)",
        (username, password_hash),
    )
