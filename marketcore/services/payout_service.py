"""
卖家打款批次引擎。

批次状态：pending → processing → completed / partially_failed / failed

- 组批：按卖家水位线 paid_through_seq 之后、已过持有期且订单未退款的
  source=purchase 现金收入求和，不超过当前余额且达到最低打款额才入批
- 每个卖家每批最多一个条目；(seller_id, window_start_seq) 上的部分唯一索引
  保证同一收入窗口不会有两个未失败的条目
- 分发：按子批大小切分调用处理方，ProviderUnavailable 指数退避重试，
  耗尽后条目置为 failed 等待人工复核
- 对账：成功则记一笔 source=payout 的扣款并推进水位线；失败则水位线不动
- 处理方已打款但账本扣账失败的条目置为 manual_review，继续占住收入窗口，
  其余条目和子批次照常处理
"""

import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable

from marketcore.database import get_db
from marketcore.models.schemas import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    BATCH_PARTIALLY_FAILED,
    BATCH_PENDING,
    BATCH_PROCESSING,
    DEBIT,
    ENTRY_FAILED,
    ENTRY_MANUAL_REVIEW,
    ENTRY_PENDING,
    ENTRY_SUCCESS,
    PROVIDERS,
    UNIT_CENTS,
    PayoutBatch,
    PayoutEntry,
    SellerPayoutProfile,
    from_row,
)
from marketcore.services.errors import LedgerError, NotFound, ProviderRejected, ProviderUnavailable
from marketcore.services.ledger import LedgerStore, LedgerUnit
from marketcore.services.platform_config import get_int
from marketcore.services.processor_client import PayoutItemResult, ProcessorClient, get_processor_client
from marketcore.services.retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

# 同一时刻只允许一轮打款（定时任务与手动触发共用）
_run_lock = threading.Lock()


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class PayoutService:
    """打款服务：收款资料、组批、分发、对账、Webhook 和状态查询。"""

    def __init__(
        self,
        ledger: LedgerStore | None = None,
        processor_factory: Callable[[str], ProcessorClient] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger or LedgerStore()
        self.processor_factory = processor_factory or get_processor_client
        self.sleep = sleep

    # ── 收款资料 ──────────────────────────────────────────

    def set_payout_profile(self, seller_id: str, provider: str, destination: str) -> SellerPayoutProfile:
        """设置卖家收款渠道和收款账户，已有水位线保持不变。"""
        if provider not in PROVIDERS:
            raise ValueError(f"未知的处理方: {provider}")
        if not seller_id or not destination:
            raise ValueError("seller_id 和 destination 不能为空")

        now = datetime.now().strftime(_TS_FORMAT)
        db = get_db()
        try:
            db.execute(
                """INSERT INTO seller_payout_profiles
                   (seller_id, provider, destination, paid_through_seq, created_at, updated_at)
                   VALUES (?, ?, ?, 0, ?, ?)
                   ON CONFLICT(seller_id) DO UPDATE SET
                       provider = excluded.provider,
                       destination = excluded.destination,
                       updated_at = excluded.updated_at""",
                (seller_id, provider, destination, now, now),
            )
        finally:
            db.close()
        logger.info("卖家收款资料已更新: seller=%s, provider=%s", seller_id, provider)
        return self.get_payout_profile(seller_id)

    def get_payout_profile(self, seller_id: str) -> SellerPayoutProfile:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM seller_payout_profiles WHERE seller_id = ?", (seller_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFound(f"卖家 {seller_id} 未设置收款资料")
        return from_row(SellerPayoutProfile, row)

    # ── 可打款收入 ────────────────────────────────────────

    @staticmethod
    def _scan_window(conn: sqlite3.Connection, seller_id: str, watermark: int, cutoff: str) -> dict:
        """
        从水位线之后按 seq 顺序扫描卖家的现金收入。

        窗口是连续前缀：遇到第一条尚未过持有期的收入即停止，
        保证推进水位线时不会跳过任何未打款的收入。已退款订单的收入
        计入窗口但金额为 0。

        Returns:
            dict: {"amount", "end_seq", "unaged_amount", "earliest_unaged_at"}
        """
        rows = conn.execute(
            """SELECT t.seq, t.amount, t.created_at, o.status AS order_status
               FROM transactions t
               LEFT JOIN orders o ON o.order_id = t.related_order_id
               WHERE t.account_id = ? AND t.unit = ? AND t.source = 'purchase'
                 AND t.direction = 'credit' AND t.seq > ?
               ORDER BY t.seq ASC""",
            (seller_id, UNIT_CENTS, watermark),
        ).fetchall()

        amount = 0
        end_seq = watermark
        unaged = 0
        earliest_unaged = None
        aged_prefix = True
        for r in rows:
            refunded = r["order_status"] == "refunded"
            if aged_prefix and r["created_at"] <= cutoff:
                if not refunded:
                    amount += r["amount"]
                end_seq = r["seq"]
                continue
            aged_prefix = False
            if not refunded:
                unaged += r["amount"]
                if earliest_unaged is None:
                    earliest_unaged = r["created_at"]
        return {
            "amount": amount,
            "end_seq": end_seq,
            "unaged_amount": unaged,
            "earliest_unaged_at": earliest_unaged,
        }

    def get_pending_earnings(self, seller_id: str, now: datetime | None = None) -> dict:
        """
        卖家仪表盘：当前可打款金额、持有期内金额和下次打款预估时间。
        """
        now = now or datetime.now()
        hold_days = get_int("payout_hold_days")
        min_payout = get_int("min_payout_cents")
        cutoff = (now - timedelta(days=hold_days)).strftime(_TS_FORMAT)

        profile = None
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM seller_payout_profiles WHERE seller_id = ?", (seller_id,)
            ).fetchone()
            profile = from_row(SellerPayoutProfile, row)
            watermark = profile.paid_through_seq if profile else 0
            window = self._scan_window(db, seller_id, watermark, cutoff)
        finally:
            db.close()

        balance = self.ledger.get_balance(seller_id, UNIT_CENTS)
        eligible = min(window["amount"], balance)

        if eligible >= min_payout:
            next_estimate = now.strftime(_TS_FORMAT)
        elif window["earliest_unaged_at"]:
            earliest = datetime.strptime(window["earliest_unaged_at"], _TS_FORMAT)
            next_estimate = (earliest + timedelta(days=hold_days)).strftime(_TS_FORMAT)
        else:
            next_estimate = None

        return {
            "seller_id": seller_id,
            "eligible_cents": eligible,
            "holding_cents": window["unaged_amount"],
            "min_payout_cents": min_payout,
            "paid_through_seq": watermark,
            "has_payout_profile": profile is not None,
            "next_payout_estimate": next_estimate,
        }

    # ── 组批 ──────────────────────────────────────────────

    def _form_batch(self, provider: str, now: datetime) -> PayoutBatch | None:
        """在一个写事务中为该处理方的卖家创建批次和条目。无可打款卖家时返回 None。"""
        hold_days = get_int("payout_hold_days")
        min_payout = get_int("min_payout_cents")
        cutoff = (now - timedelta(days=hold_days)).strftime(_TS_FORMAT)
        ts = now.strftime(_TS_FORMAT)
        batch_id = uuid.uuid4().hex

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            # 条目外键引用批次，先写批次行，无条目时整体回滚
            db.execute(
                """INSERT INTO payout_batches
                   (batch_id, provider, status, total_amount_cents, recipient_count, created_at)
                   VALUES (?, ?, ?, 0, 0, ?)""",
                (batch_id, provider, BATCH_PENDING, ts),
            )
            profiles = db.execute(
                """SELECT * FROM seller_payout_profiles
                   WHERE provider = ? ORDER BY seller_id""",
                (provider,),
            ).fetchall()

            entries = []
            for p in profiles:
                seller_id = p["seller_id"]
                open_entry = db.execute(
                    """SELECT 1 FROM payout_entries
                       WHERE seller_id = ? AND status IN (?, ?) LIMIT 1""",
                    (seller_id, ENTRY_PENDING, ENTRY_MANUAL_REVIEW),
                ).fetchone()
                if open_entry:
                    logger.info("卖家已有未完成或待人工复核的打款条目，跳过: seller=%s", seller_id)
                    continue

                window = self._scan_window(db, seller_id, p["paid_through_seq"], cutoff)
                bal_row = db.execute(
                    "SELECT balance FROM accounts WHERE account_id = ? AND unit = ?",
                    (seller_id, UNIT_CENTS),
                ).fetchone()
                balance = bal_row["balance"] if bal_row else 0
                amount = min(window["amount"], balance)
                if amount < min_payout or amount <= 0:
                    continue

                entry_id = uuid.uuid4().hex
                try:
                    db.execute(
                        """INSERT INTO payout_entries
                           (entry_id, batch_id, seller_id, amount_cents, window_start_seq,
                            window_end_seq, status, attempts, created_at, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                        (entry_id, batch_id, seller_id, amount, p["paid_through_seq"],
                         window["end_seq"], ENTRY_PENDING, ts, ts),
                    )
                except sqlite3.IntegrityError:
                    logger.info("收入窗口已被其他条目覆盖，跳过: seller=%s, window_start=%d",
                                seller_id, p["paid_through_seq"])
                    continue
                entries.append((entry_id, amount))

            if not entries:
                db.execute("ROLLBACK")
                return None

            total = sum(a for _, a in entries)
            db.execute(
                """UPDATE payout_batches SET total_amount_cents = ?, recipient_count = ?
                   WHERE batch_id = ?""",
                (total, len(entries), batch_id),
            )
            db.execute("COMMIT")
        except BaseException:
            if db.in_transaction:
                db.execute("ROLLBACK")
            raise
        finally:
            db.close()

        logger.info("打款批次已创建: batch=%s, provider=%s, 卖家数=%d, 总额=%d",
                    batch_id, provider, len(entries), total)
        return self._get_batch(batch_id)

    # ── 执行批次 ──────────────────────────────────────────

    def run_payout_batch(self, provider: str, now: datetime | None = None) -> PayoutBatch | None:
        """
        为一个处理方组批并分发。

        Returns:
            新批次（分发后的状态），无可打款卖家时返回 None。
        """
        if provider not in PROVIDERS:
            raise ValueError(f"未知的处理方: {provider}")
        now = now or datetime.now()
        batch = self._form_batch(provider, now)
        if batch is None:
            logger.info("没有可打款的卖家: provider=%s", provider)
            return None

        self._set_batch_status(batch.batch_id, BATCH_PROCESSING)
        try:
            self._dispatch(batch)
        finally:
            batch = self._refresh_batch_status(batch.batch_id)
        return batch

    def run_all_providers(self, now: datetime | None = None) -> list[PayoutBatch]:
        """
        依次为所有处理方执行批次，单个处理方异常不影响其他处理方。

        同一进程内已有一轮在执行时直接跳过，返回空列表。
        """
        if not _run_lock.acquire(blocking=False):
            logger.warning("上一轮打款仍在执行，跳过本次触发")
            return []
        try:
            batches = []
            for provider in PROVIDERS:
                try:
                    batch = self.run_payout_batch(provider, now)
                except Exception as e:
                    logger.error("打款批次执行异常 (provider=%s): %s", provider, e)
                    continue
                if batch:
                    batches.append(batch)
            return batches
        finally:
            _run_lock.release()

    def _dispatch(self, batch: PayoutBatch) -> None:
        entries = self._list_entries(batch.batch_id, status=ENTRY_PENDING)
        destinations = self._destinations([e.seller_id for e in entries])
        sub_batch_size = max(get_int("payout_sub_batch_size"), 1)
        config = RetryConfig(
            max_attempts=max(get_int("payout_max_attempts"), 1),
            base_delay=1.0,
            max_delay=30.0,
            retryable_exceptions=(ProviderUnavailable,),
        )

        try:
            client = self.processor_factory(batch.provider)
        except (ProviderUnavailable, ProviderRejected) as e:
            logger.warning("处理方客户端不可用，批次条目全部失败: batch=%s, %s", batch.batch_id, e)
            for entry in entries:
                self._mark_failed(entry.entry_id, f"provider_unavailable: {e}")
            return

        for index, chunk in enumerate(_chunks(entries, sub_batch_size)):
            items = [
                {
                    "entry_id": e.entry_id,
                    "destination": destinations.get(e.seller_id, ""),
                    "amount_cents": e.amount_cents,
                }
                for e in chunk
            ]
            entry_ids = [e.entry_id for e in chunk]

            def _send():
                self._bump_attempts(entry_ids)
                return client.payout(f"{batch.batch_id}-{index}", items)

            try:
                results = retry_call(_send, config, sleep=self.sleep)
            except ProviderUnavailable as e:
                logger.warning("子批次重试耗尽，转人工复核: batch=%s, sub=%d, %s",
                               batch.batch_id, index, e)
                for entry_id in entry_ids:
                    self._mark_failed(entry_id, f"provider_unavailable: {e}")
                continue
            except ProviderRejected as e:
                logger.warning("子批次被处理方拒绝: batch=%s, sub=%d, %s",
                               batch.batch_id, index, e.reason)
                for entry_id in entry_ids:
                    self._mark_failed(entry_id, e.reason)
                continue

            for result in results:
                try:
                    self._apply_result(result)
                except LedgerError as e:
                    # 单个条目对账失败不影响其余条目和后续子批次
                    logger.error("打款条目对账失败，转人工复核: entry=%s, %s", result.entry_id, e)
                    self._mark_manual_review(result.entry_id, f"reconcile_failed: {e}",
                                             result.provider_item_id)

    def _apply_result(self, result: PayoutItemResult) -> None:
        if result.status == ENTRY_SUCCESS:
            self._reconcile_success(result.entry_id, result.provider_item_id)
        elif result.status == ENTRY_FAILED:
            self._mark_failed(result.entry_id, result.failure_reason or "provider_failed",
                              result.provider_item_id)
        else:
            self._record_provider_item(result.entry_id, result.provider_item_id)

    # ── 对账 ──────────────────────────────────────────────

    def _reconcile_success(self, entry_id: str, provider_item_id: str | None = None) -> bool:
        """
        条目成功：扣减卖家现金余额并推进水位线，只执行一次。

        Returns:
            True 本次完成对账，False 条目已不是 pending。
        """
        entry = self._get_entry(entry_id)

        def _settle(u: LedgerUnit) -> bool:
            row = u.conn.execute(
                "SELECT status FROM payout_entries WHERE entry_id = ?", (entry_id,)
            ).fetchone()
            if row["status"] != ENTRY_PENDING:
                return False
            u.apply(entry.seller_id, DEBIT, entry.amount_cents, "payout",
                    unit=UNIT_CENTS, reference_id=entry_id,
                    description=f"打款批次 {entry.batch_id}")
            u.conn.execute(
                """UPDATE payout_entries
                   SET status = ?, provider_item_id = COALESCE(?, provider_item_id),
                       failure_reason = NULL, updated_at = ?
                   WHERE entry_id = ?""",
                (ENTRY_SUCCESS, provider_item_id, u.timestamp, entry_id),
            )
            u.conn.execute(
                """UPDATE seller_payout_profiles
                   SET paid_through_seq = MAX(paid_through_seq, ?), updated_at = ?
                   WHERE seller_id = ?""",
                (entry.window_end_seq, u.timestamp, entry.seller_id),
            )
            return True

        done = self.ledger.run_atomic([entry.seller_id], _settle)
        if done:
            logger.info("打款成功: entry=%s, seller=%s, amount=%d",
                        entry_id, entry.seller_id, entry.amount_cents)
        return done

    @staticmethod
    def _mark_failed(entry_id: str, reason: str, provider_item_id: str | None = None) -> bool:
        """条目失败：记录原因，水位线保持不变。"""
        now = datetime.now().strftime(_TS_FORMAT)
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE payout_entries
                   SET status = ?, failure_reason = ?,
                       provider_item_id = COALESCE(?, provider_item_id), updated_at = ?
                   WHERE entry_id = ? AND status = ?""",
                (ENTRY_FAILED, reason, provider_item_id, now, entry_id, ENTRY_PENDING),
            )
            changed = cursor.rowcount == 1
        finally:
            db.close()
        if changed:
            logger.warning("打款条目失败: entry=%s, reason=%s", entry_id, reason)
        return changed

    @staticmethod
    def _mark_manual_review(entry_id: str, reason: str, provider_item_id: str | None = None) -> bool:
        """处理方已打款但账本未扣账：条目转人工复核，继续占住收入窗口，水位线不动。"""
        now = datetime.now().strftime(_TS_FORMAT)
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE payout_entries
                   SET status = ?, failure_reason = ?,
                       provider_item_id = COALESCE(?, provider_item_id), updated_at = ?
                   WHERE entry_id = ? AND status = ?""",
                (ENTRY_MANUAL_REVIEW, reason, provider_item_id, now, entry_id, ENTRY_PENDING),
            )
            return cursor.rowcount == 1
        finally:
            db.close()

    @staticmethod
    def _record_provider_item(entry_id: str, provider_item_id: str | None) -> None:
        if not provider_item_id:
            return
        db = get_db()
        try:
            db.execute(
                "UPDATE payout_entries SET provider_item_id = ?, updated_at = ? WHERE entry_id = ?",
                (provider_item_id, datetime.now().strftime(_TS_FORMAT), entry_id),
            )
        finally:
            db.close()

    @staticmethod
    def _bump_attempts(entry_ids: list[str]) -> None:
        db = get_db()
        try:
            db.executemany(
                "UPDATE payout_entries SET attempts = attempts + 1 WHERE entry_id = ?",
                [(e,) for e in entry_ids],
            )
        finally:
            db.close()

    # ── Webhook ──────────────────────────────────────────

    def handle_payout_webhook(
        self,
        provider: str,
        entry_id: str,
        status: str,
        failure_reason: str | None = None,
        provider_item_id: str | None = None,
    ) -> PayoutEntry:
        """
        处理方回调打款最终状态。重复回调或已终态的条目不会重复入账。
        """
        entry = self._get_entry(entry_id)
        batch = self._get_batch(entry.batch_id)
        if batch.provider != provider:
            raise NotFound(f"条目 {entry_id} 不属于处理方 {provider}")

        if status == ENTRY_SUCCESS:
            try:
                self._reconcile_success(entry_id, provider_item_id)
            except LedgerError as e:
                logger.error("打款回调对账失败，转人工复核: entry=%s, %s", entry_id, e)
                self._mark_manual_review(entry_id, f"reconcile_failed: {e}", provider_item_id)
        elif status == ENTRY_FAILED:
            self._mark_failed(entry_id, failure_reason or "provider_failed", provider_item_id)
        else:
            raise ValueError(f"未知的打款状态: {status}")

        self._refresh_batch_status(entry.batch_id)
        return self._get_entry(entry_id)

    # ── 状态 ──────────────────────────────────────────────

    @staticmethod
    def _set_batch_status(batch_id: str, status: str) -> None:
        db = get_db()
        try:
            db.execute(
                "UPDATE payout_batches SET status = ? WHERE batch_id = ?", (status, batch_id)
            )
        finally:
            db.close()

    def _refresh_batch_status(self, batch_id: str) -> PayoutBatch:
        """按条目状态推导批次状态：有 pending 为 processing，否则按成功比例判定终态。"""
        db = get_db()
        try:
            row = db.execute(
                """SELECT
                       SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                       SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS success,
                       COUNT(*) AS total
                   FROM payout_entries WHERE batch_id = ?""",
                (batch_id,),
            ).fetchone()
            pending, success, total = row["pending"] or 0, row["success"] or 0, row["total"]

            if pending:
                status, completed_at = BATCH_PROCESSING, None
            else:
                if success == total:
                    status = BATCH_COMPLETED
                elif success == 0:
                    status = BATCH_FAILED
                else:
                    status = BATCH_PARTIALLY_FAILED
                completed_at = datetime.now().strftime(_TS_FORMAT)

            db.execute(
                """UPDATE payout_batches
                   SET status = ?, completed_at = COALESCE(completed_at, ?)
                   WHERE batch_id = ?""",
                (status, completed_at, batch_id),
            )
        finally:
            db.close()

        batch = self._get_batch(batch_id)
        if batch.completed_at:
            logger.info("打款批次结束: batch=%s, status=%s, 成功 %d/%d",
                        batch_id, batch.status, success, total)
        return batch

    def get_payout_batch_status(self, batch_id: str) -> dict:
        """批次及其全部条目。"""
        batch = self._get_batch(batch_id)
        entries = self._list_entries(batch_id)
        return {
            "batch": batch.to_dict(),
            "entries": [e.to_dict() for e in entries],
        }

    def list_batches(self, limit: int = 20) -> list[PayoutBatch]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT * FROM payout_batches ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [from_row(PayoutBatch, r) for r in rows]
        finally:
            db.close()

    # ── 内部查询 ──────────────────────────────────────────

    @staticmethod
    def _get_batch(batch_id: str) -> PayoutBatch:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM payout_batches WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFound(f"打款批次 {batch_id} 不存在")
        return from_row(PayoutBatch, row)

    @staticmethod
    def _get_entry(entry_id: str) -> PayoutEntry:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM payout_entries WHERE entry_id = ?", (entry_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFound(f"打款条目 {entry_id} 不存在")
        return from_row(PayoutEntry, row)

    @staticmethod
    def _list_entries(batch_id: str, status: str | None = None) -> list[PayoutEntry]:
        sql = "SELECT * FROM payout_entries WHERE batch_id = ?"
        params: list = [batch_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY seller_id"
        db = get_db()
        try:
            return [from_row(PayoutEntry, r) for r in db.execute(sql, params).fetchall()]
        finally:
            db.close()

    @staticmethod
    def _destinations(seller_ids: list[str]) -> dict[str, str]:
        if not seller_ids:
            return {}
        placeholders = ",".join("?" for _ in seller_ids)
        db = get_db()
        try:
            rows = db.execute(
                f"SELECT seller_id, destination FROM seller_payout_profiles "
                f"WHERE seller_id IN ({placeholders})",
                seller_ids,
            ).fetchall()
            return {r["seller_id"]: r["destination"] for r in rows}
        finally:
            db.close()
