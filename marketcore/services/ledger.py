"""
账本存储：按账户追加写的流水日志 + 当前余额投影。

- 每个 (account_id, unit) 一个余额缓存行，流水表只追加，不修改不删除
- run_atomic() 按账户 ID 排序获取进程内锁，再以 BEGIN IMMEDIATE 开启单个事务
- 余额更新带 CAS 条件（WHERE balance = 读到的值），冲突时整体回滚并退避重试
"""

import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from typing import Callable, Iterable, TypeVar

from marketcore.database import get_db
from marketcore.models.schemas import (
    CREDIT,
    DEBIT,
    SOURCES,
    UNIT_CREDITS,
    UNITS,
    Account,
    Transaction,
    from_row,
)
from marketcore.services.errors import InsufficientBalance, InvalidAmount, LedgerConflict
from marketcore.services.retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

T = TypeVar("T")

LEDGER_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay=0.05,
    max_delay=1.0,
    retryable_exceptions=(LedgerConflict,),
)

# 进程内按账户的串行化点
_LOCKS: dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(account_id: str) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _LOCKS.get(account_id)
        if lock is None:
            lock = threading.Lock()
            _LOCKS[account_id] = lock
        return lock


def _fmt(now: datetime | None) -> str:
    return (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")


def validate_amount(amount) -> None:
    """金额必须是正整数（bool 不算）。"""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"金额必须是整数: {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"金额必须大于 0: {amount}")


def _validate_entry(direction: str, source: str, unit: str) -> None:
    if direction not in (CREDIT, DEBIT):
        raise InvalidAmount(f"未知的记账方向: {direction}")
    if source not in SOURCES:
        raise InvalidAmount(f"未知的流水来源: {source}")
    if unit not in UNITS:
        raise InvalidAmount(f"未知的计价单位: {unit}")


class LedgerUnit:
    """
    一个原子单元内的写入句柄，由 run_atomic() 创建并传给回调。

    只能操作创建时声明并已加锁的账户；conn 暴露给调用方，
    以便在同一事务中写入订单、授权等关联记录。
    """

    def __init__(self, conn: sqlite3.Connection, account_ids: Iterable[str], now: datetime | None = None):
        self.conn = conn
        self.now = now or datetime.now()
        self.timestamp = _fmt(self.now)
        self._account_ids = frozenset(account_ids)
        self.transactions: list[Transaction] = []

    def _check_locked(self, account_id: str) -> None:
        if account_id not in self._account_ids:
            raise ValueError(f"账户 {account_id} 未在原子单元中声明")

    def _ensure_account(self, account_id: str, unit: str) -> sqlite3.Row:
        self.conn.execute(
            """INSERT OR IGNORE INTO accounts
               (account_id, unit, balance, total_earned, total_spent, created_at, updated_at)
               VALUES (?, ?, 0, 0, 0, ?, ?)""",
            (account_id, unit, self.timestamp, self.timestamp),
        )
        return self.conn.execute(
            "SELECT * FROM accounts WHERE account_id = ? AND unit = ?",
            (account_id, unit),
        ).fetchone()

    def balance(self, account_id: str, unit: str = UNIT_CREDITS) -> int:
        """单元内读取余额（已持有该账户的锁，读到的是强一致值）。"""
        self._check_locked(account_id)
        row = self.conn.execute(
            "SELECT balance FROM accounts WHERE account_id = ? AND unit = ?",
            (account_id, unit),
        ).fetchone()
        return row["balance"] if row else 0

    def apply(
        self,
        account_id: str,
        direction: str,
        amount: int,
        source: str,
        related_order_id: str | None = None,
        unit: str = UNIT_CREDITS,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> Transaction:
        """
        追加一条流水并更新余额缓存。

        Raises:
            InvalidAmount: 金额、方向、来源或单位非法。
            InsufficientBalance: 扣款金额大于当前余额。
            LedgerConflict: 余额 CAS 失败（由 run_atomic 重试）。
        """
        self._check_locked(account_id)
        validate_amount(amount)
        _validate_entry(direction, source, unit)

        row = self._ensure_account(account_id, unit)
        balance = row["balance"]
        total_earned = row["total_earned"]
        total_spent = row["total_spent"]

        if direction == DEBIT:
            if amount > balance:
                raise InsufficientBalance(
                    f"账户 {account_id} 余额不足: 需要 {amount} {unit}，当前 {balance}"
                )
            new_balance = balance - amount
            total_spent += amount
        else:
            new_balance = balance + amount
            total_earned += amount

        cur = self.conn.execute(
            """UPDATE accounts
               SET balance = ?, total_earned = ?, total_spent = ?, updated_at = ?
               WHERE account_id = ? AND unit = ? AND balance = ?""",
            (new_balance, total_earned, total_spent, self.timestamp,
             account_id, unit, balance),
        )
        if cur.rowcount != 1:
            raise LedgerConflict(f"账户 {account_id} 余额已被并发修改")

        transaction_id = uuid.uuid4().hex
        cur = self.conn.execute(
            """INSERT INTO transactions
               (transaction_id, account_id, unit, direction, amount, balance_after,
                source, related_order_id, reference_id, description, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (transaction_id, account_id, unit, direction, amount, new_balance,
             source, related_order_id, reference_id, description, self.timestamp),
        )
        txn = Transaction(
            seq=cur.lastrowid,
            transaction_id=transaction_id,
            account_id=account_id,
            unit=unit,
            direction=direction,
            amount=amount,
            balance_after=new_balance,
            source=source,
            related_order_id=related_order_id,
            reference_id=reference_id,
            description=description,
            created_at=self.timestamp,
        )
        self.transactions.append(txn)
        return txn


class LedgerStore:
    """账本服务：原子写入、余额查询、流水分页和对账。"""

    def __init__(self, retry_config: RetryConfig = LEDGER_RETRY_CONFIG):
        self.retry_config = retry_config

    # ── 原子单元 ──────────────────────────────────────────

    def run_atomic(
        self,
        account_ids: Iterable[str],
        fn: Callable[[LedgerUnit], T],
        now: datetime | None = None,
    ) -> T:
        """
        在一个全有或全无的单元中执行 fn。

        按账户 ID 排序加锁以避免死锁；fn 抛出任何异常都会回滚整个事务。
        并发冲突（LedgerConflict、数据库锁定）会以指数退避重试整个单元，
        因此 fn 不能包含外部调用等不可重放的副作用。
        """
        ids = sorted(set(account_ids))
        if not ids:
            raise ValueError("原子单元至少需要一个账户")
        return retry_call(self._run_once, self.retry_config, ids, fn, now)

    def _run_once(self, ids: list[str], fn: Callable[[LedgerUnit], T], now: datetime | None) -> T:
        locks = [_lock_for(a) for a in ids]
        for lock in locks:
            lock.acquire()
        try:
            conn = get_db()
            try:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                except sqlite3.OperationalError as e:
                    raise LedgerConflict(f"获取写事务失败: {e}") from e

                unit = LedgerUnit(conn, ids, now)
                try:
                    result = fn(unit)
                    conn.execute("COMMIT")
                except sqlite3.OperationalError as e:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    if "locked" in str(e) or "busy" in str(e):
                        raise LedgerConflict(f"数据库锁定: {e}") from e
                    raise
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                if unit.transactions:
                    logger.debug(
                        "原子单元提交: 账户=%s, 流水=%d 条", ids, len(unit.transactions)
                    )
                return result
            finally:
                conn.close()
        finally:
            for lock in reversed(locks):
                lock.release()

    # ── 单笔写入 ──────────────────────────────────────────

    def apply_transaction(
        self,
        account_id: str,
        direction: str,
        amount: int,
        source: str,
        related_order_id: str | None = None,
        unit: str = UNIT_CREDITS,
        reference_id: str | None = None,
        description: str | None = None,
        now: datetime | None = None,
    ) -> Transaction:
        """对单个账户追加一条流水（自身即一个原子单元）。"""
        validate_amount(amount)
        _validate_entry(direction, source, unit)
        return self.run_atomic(
            [account_id],
            lambda u: u.apply(
                account_id, direction, amount, source,
                related_order_id=related_order_id, unit=unit,
                reference_id=reference_id, description=description,
            ),
            now=now,
        )

    # ── 查询 ──────────────────────────────────────────────

    def open_account(self, account_id: str, unit: str = UNIT_CREDITS) -> Account:
        """开户（幂等），返回账户当前状态。"""
        if unit not in UNITS:
            raise InvalidAmount(f"未知的计价单位: {unit}")
        return self.run_atomic(
            [account_id],
            lambda u: from_row(Account, u._ensure_account(account_id, unit)),
        )

    def get_account(self, account_id: str, unit: str = UNIT_CREDITS) -> Account | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM accounts WHERE account_id = ? AND unit = ?",
                (account_id, unit),
            ).fetchone()
            return from_row(Account, row)
        finally:
            db.close()

    def get_balance(self, account_id: str, unit: str = UNIT_CREDITS) -> int:
        """读取余额缓存，账户不存在时为 0。"""
        account = self.get_account(account_id, unit)
        return account.balance if account else 0

    def list_transactions(
        self,
        account_id: str,
        unit: str | None = None,
        limit: int = 50,
        offset: int = 0,
        order: str = "desc",
    ) -> list[Transaction]:
        """按 seq 排序分页列出流水，默认最新在前。"""
        if limit < 1 or limit > 500:
            raise ValueError("limit 必须在 1 到 500 之间")
        if offset < 0:
            raise ValueError("offset 不能为负数")
        direction = "ASC" if order == "asc" else "DESC"

        sql = "SELECT * FROM transactions WHERE account_id = ?"
        params: list = [account_id]
        if unit:
            sql += " AND unit = ?"
            params.append(unit)
        sql += f" ORDER BY seq {direction} LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        db = get_db()
        try:
            rows = db.execute(sql, params).fetchall()
            return [from_row(Transaction, r) for r in rows]
        finally:
            db.close()

    # ── 对账 ──────────────────────────────────────────────

    def recompute_balance(self, account_id: str, unit: str = UNIT_CREDITS) -> int:
        """从完整流水重新计算余额：sum(credit) - sum(debit)。"""
        db = get_db()
        try:
            row = db.execute(
                """SELECT COALESCE(SUM(CASE WHEN direction = 'credit' THEN amount
                                            ELSE -amount END), 0) AS total
                   FROM transactions WHERE account_id = ? AND unit = ?""",
                (account_id, unit),
            ).fetchone()
            return row["total"]
        finally:
            db.close()

    def verify_account(self, account_id: str, unit: str = UNIT_CREDITS) -> dict:
        """
        回放流水校验账户一致性。

        检查每条流水的 balance_after 链、余额缓存与流水合计、
        以及 balance == total_earned - total_spent。

        Returns:
            dict: {"ok": bool, "balance": int, "recomputed": int, "errors": [str]}
        """
        db = get_db()
        try:
            rows = db.execute(
                """SELECT seq, direction, amount, balance_after FROM transactions
                   WHERE account_id = ? AND unit = ? ORDER BY seq ASC""",
                (account_id, unit),
            ).fetchall()
            account = db.execute(
                "SELECT * FROM accounts WHERE account_id = ? AND unit = ?",
                (account_id, unit),
            ).fetchone()
        finally:
            db.close()

        errors = []
        running = 0
        for r in rows:
            running += r["amount"] if r["direction"] == CREDIT else -r["amount"]
            if r["balance_after"] != running:
                errors.append(
                    f"seq={r['seq']} balance_after={r['balance_after']} 期望 {running}"
                )

        balance = account["balance"] if account else 0
        if balance != running:
            errors.append(f"余额缓存 {balance} 与流水合计 {running} 不一致")
        if account and account["total_earned"] - account["total_spent"] != balance:
            errors.append("total_earned - total_spent 与余额不一致")

        if errors:
            logger.warning("账户对账异常 (account=%s, unit=%s): %s", account_id, unit, errors)
        return {"ok": not errors, "balance": balance, "recomputed": running, "errors": errors}
