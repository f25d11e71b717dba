"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。金额字段均为整数最小单位。
"""

import sqlite3
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Optional

# 计价单位
UNIT_CREDITS = "credits"
UNIT_CENTS = "cents"
UNITS = (UNIT_CREDITS, UNIT_CENTS)

# 账务方向
CREDIT = "credit"
DEBIT = "debit"

# 流水来源
SOURCES = (
    "signup_bonus",
    "daily_login",
    "prompt_share",
    "purchase",
    "commission",
    "payout",
    "refund",
    "streak_bonus",
    "profile_complete",
)

# 支付方式
METHOD_MONEY = "money"
METHOD_CREDITS = "credits"

# 订单 / 购买尝试状态
ORDER_COMPLETED = "completed"
ORDER_REFUNDED = "refunded"

ATTEMPT_STATES = ("initiated", "priced", "reserved", "committed", "completed", "failed")

# 打款批次 / 条目状态
BATCH_PENDING = "pending"
BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_PARTIALLY_FAILED = "partially_failed"
BATCH_FAILED = "failed"

ENTRY_PENDING = "pending"
ENTRY_SUCCESS = "success"
ENTRY_FAILED = "failed"
# 处理方已打款但账本对账失败，占住收入窗口等待人工处理
ENTRY_MANUAL_REVIEW = "manual_review"

PROVIDERS = ("processor_a", "processor_b")

# 平台佣金入账账户
PLATFORM_ACCOUNT_ID = "platform"


def from_row(cls, row: sqlite3.Row | None):
    """把 sqlite3.Row 转换为 dataclass，忽略表中多出的列。"""
    if row is None:
        return None
    names = {f.name for f in fields(cls)}
    return cls(**{k: row[k] for k in row.keys() if k in names})


@dataclass
class Admin:
    id: int
    username: str
    password_hash: str
    login_fail_count: int = 0
    locked_until: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class SystemConfig:
    id: int
    config_key: str
    config_value: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class Account:
    account_id: str
    unit: str
    balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class Transaction:
    seq: int
    transaction_id: str
    account_id: str
    unit: str
    direction: str
    amount: int
    balance_after: int
    source: str
    related_order_id: Optional[str] = None
    reference_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class Listing:
    listing_id: str
    seller_id: str
    title: str
    content: str
    price_cents: Optional[int] = None
    credit_price: Optional[int] = None
    accepts_money: int = 1
    accepts_credits: int = 0
    preview_percentage: int = 20
    sales_count: int = 0
    status: str = "active"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def price_for(self, method: str) -> Optional[int]:
        """返回指定支付方式的价格，不接受该方式时返回 None。"""
        if method == METHOD_MONEY and self.accepts_money:
            return self.price_cents
        if method == METHOD_CREDITS and self.accepts_credits:
            return self.credit_price
        return None


@dataclass
class Order:
    order_id: str
    idempotency_key: str
    listing_id: str
    buyer_id: str
    seller_id: str
    payment_method: str
    amount_cents: Optional[int] = None
    credit_amount: Optional[int] = None
    commission_cents: int = 0
    processor_fee_cents: int = 0
    seller_net_cents: int = 0
    provider_charge_id: Optional[str] = None
    status: str = ORDER_COMPLETED
    created_at: Optional[str] = None
    refunded_at: Optional[str] = None

    @property
    def unit(self) -> str:
        return UNIT_CENTS if self.payment_method == METHOD_MONEY else UNIT_CREDITS

    @property
    def sale_amount(self) -> int:
        if self.payment_method == METHOD_MONEY:
            return self.amount_cents or 0
        return self.credit_amount or 0

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class License:
    license_key: str
    order_id: str
    issued_at: Optional[str] = None
    revoked_at: Optional[str] = None


@dataclass
class DailyReward:
    account_id: str
    last_claim_at: Optional[str] = None
    current_streak: int = 0
    longest_streak: int = 0
    total_days_claimed: int = 0
    updated_at: Optional[str] = None


@dataclass
class SellerPayoutProfile:
    seller_id: str
    provider: str
    destination: str
    paid_through_seq: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class PayoutBatch:
    batch_id: str
    provider: str
    status: str = BATCH_PENDING
    total_amount_cents: int = 0
    recipient_count: int = 0
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class PayoutEntry:
    entry_id: str
    batch_id: str
    seller_id: str
    amount_cents: int
    window_start_seq: int
    window_end_seq: int
    status: str = ENTRY_PENDING
    failure_reason: Optional[str] = None
    provider_item_id: Optional[str] = None
    attempts: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}
