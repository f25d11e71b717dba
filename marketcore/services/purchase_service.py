"""
购买结算服务：一次购买从定价、扣款到入账、出单、发放授权的完整流程。

状态机（持久化在 purchase_attempts 表）：
    initiated → priced → reserved → committed → completed
任何非终态都可进入 failed。

- 幂等键在定价之前检查，已有订单直接原样返回
- 购买尝试行即占用标记：只有新建或此前失败的尝试可被占用，
  同键的并发请求等待占用者的结果，不会重复扣款
- 现金路径先调用处理方扣款，扣款失败不产生任何账本写入
- 入账、订单、授权在同一个 run_atomic([买家, 卖家, 平台]) 单元内完成
- 退款只追加 source=refund 的反向流水，不修改原流水
"""

import logging
import secrets
import sqlite3
import time
import uuid
from datetime import datetime
from typing import Callable

from marketcore.database import get_db
from marketcore.models.schemas import (
    CREDIT,
    DEBIT,
    ENTRY_MANUAL_REVIEW,
    ENTRY_PENDING,
    METHOD_CREDITS,
    METHOD_MONEY,
    ORDER_COMPLETED,
    ORDER_REFUNDED,
    PLATFORM_ACCOUNT_ID,
    UNIT_CENTS,
    UNIT_CREDITS,
    License,
    Listing,
    Order,
    from_row,
)
from marketcore.services.errors import (
    DuplicateSettlement,
    InsufficientBalance,
    InvalidAmount,
    LedgerError,
    ListingUnavailable,
    NotFound,
    OrderStateError,
    PaymentDeclined,
    ProviderRejected,
    ProviderUnavailable,
    SettlementInProgress,
)
from marketcore.services.fees import FeeSplit, compute_split
from marketcore.services.ledger import LedgerStore, LedgerUnit
from marketcore.services.listing_service import ListingService
from marketcore.services.platform_config import get_commission_rate, get_int, get_percent
from marketcore.services.processor_client import ProcessorClient, get_processor_client

logger = logging.getLogger(__name__)

# 同键请求正在处理时，轮询其结果的间隔
_CLAIM_POLL_SECONDS = 0.05


def _now_str() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class PurchaseService:
    """购买结算服务：结算、Webhook 补单、退款、订单查询。"""

    def __init__(
        self,
        ledger: LedgerStore | None = None,
        listings: ListingService | None = None,
        processor_factory: Callable[[str], ProcessorClient] | None = None,
        charge_provider: str = "processor_a",
        claim_wait_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger or LedgerStore()
        self.listings = listings or ListingService()
        self.processor_factory = processor_factory or get_processor_client
        self.charge_provider = charge_provider
        self.claim_wait_seconds = claim_wait_seconds
        self.sleep = sleep

    # ── 结算 ──────────────────────────────────────────────

    def settle_purchase(
        self,
        buyer_id: str,
        listing_id: str,
        payment_method: str,
        idempotency_key: str,
        buyer_token: str | None = None,
    ) -> Order:
        """
        结算一次购买。

        Args:
            buyer_id: 买家账户 ID。
            listing_id: 商品 ID。
            payment_method: "money" 或 "credits"。
            idempotency_key: 调用方提供的幂等键（每次点击一个）。
            buyer_token: 现金路径下处理方的支付凭证。

        Returns:
            新建或已存在的 Order。

        Raises:
            DuplicateSettlement: 幂等键已被其他买家或商品使用。
            SettlementInProgress: 同键请求仍在处理，等待超时。
            ListingUnavailable: 商品不存在、已下架或不接受该支付方式。
            PaymentDeclined: 处理方拒绝扣款或超时。
            InsufficientBalance: 积分余额不足。
        """
        if payment_method not in (METHOD_MONEY, METHOD_CREDITS):
            raise ListingUnavailable(f"不支持的支付方式: {payment_method}")
        if not idempotency_key:
            raise ValueError("idempotency_key 不能为空")
        if not buyer_id:
            raise ValueError("buyer_id 不能为空")

        # 幂等检查先于定价；只有占用了购买尝试的请求才会继续扣款
        deadline = None
        while not self._claim_attempt(idempotency_key, buyer_id, listing_id, payment_method):
            existing = self.get_order_by_key(idempotency_key)
            if existing:
                self._check_same_request(existing.buyer_id, existing.listing_id, buyer_id, listing_id)
                logger.info("幂等键重复提交，返回已有订单: key=%s, order=%s",
                            idempotency_key, existing.order_id)
                return existing
            if deadline is None:
                deadline = time.monotonic() + self.claim_wait_seconds
            elif time.monotonic() >= deadline:
                raise SettlementInProgress(f"幂等键 {idempotency_key} 的结算仍在处理中")
            self.sleep(_CLAIM_POLL_SECONDS)

        # priced
        try:
            listing, price = self._price(listing_id, buyer_id, payment_method)
        except (ListingUnavailable, NotFound) as e:
            self._fail_attempt(idempotency_key, str(e))
            if isinstance(e, NotFound):
                raise ListingUnavailable(str(e)) from e
            raise
        self._set_state(idempotency_key, "priced", amount=price)
        split = self._split(price, listing.seller_id, payment_method)

        # reserved
        charge_id = None
        if payment_method == METHOD_MONEY:
            charge_id = self._charge(idempotency_key, price, buyer_token)
        self._set_state(idempotency_key, "reserved", provider_charge_id=charge_id)

        # committed
        try:
            order, created = self._commit(
                idempotency_key, listing, buyer_id, payment_method, price, split, charge_id
            )
        except LedgerError as e:
            reason = "insufficient_balance" if isinstance(e, InsufficientBalance) else f"commit_failed: {e}"
            self._fail_attempt(idempotency_key, reason)
            if charge_id:
                logger.error("扣款成功但入账失败，需人工处理: key=%s, charge_id=%s, err=%s",
                             idempotency_key, charge_id, e)
            raise

        # completed
        if created:
            self._complete(idempotency_key, listing.listing_id)
            logger.info(
                "购买结算完成: order=%s, buyer=%s, listing=%s, method=%s, "
                "amount=%d, commission=%d, fee=%d, net=%d",
                order.order_id, buyer_id, listing.listing_id, payment_method, price,
                split.commission_cents, split.processor_fee_cents, split.seller_net_cents,
            )
        return order

    @staticmethod
    def _check_same_request(buyer_a: str, listing_a: str, buyer_b: str, listing_b: str) -> None:
        if buyer_a != buyer_b or listing_a != listing_b:
            raise DuplicateSettlement("幂等键已被其他买家或商品使用")

    def _price(self, listing_id: str, buyer_id: str, payment_method: str) -> tuple[Listing, int]:
        listing = self.listings.get_listing(listing_id)
        if listing.status != "active":
            raise ListingUnavailable(f"商品 {listing_id} 已下架")
        if listing.seller_id == buyer_id:
            raise ListingUnavailable("不能购买自己的商品")
        price = listing.price_for(payment_method)
        if price is None:
            raise ListingUnavailable(f"商品 {listing_id} 不接受 {payment_method} 支付")
        return listing, price

    @staticmethod
    def _split(price: int, seller_id: str, payment_method: str) -> FeeSplit:
        """按卖家适用的佣金费率拆分；积分购买没有处理方手续费。"""
        commission_rate = get_commission_rate(seller_id)
        if payment_method == METHOD_MONEY:
            return compute_split(
                price,
                commission_rate,
                get_percent("processor_fee_percent"),
                get_int("processor_fixed_fee_cents"),
            )
        return compute_split(price, commission_rate, 0, 0)

    def _charge(self, idempotency_key: str, amount_cents: int, buyer_token: str | None) -> str:
        """现金路径扣款，所有失败都转换为 PaymentDeclined，且不写账本。"""
        if not buyer_token:
            self._fail_attempt(idempotency_key, "missing_buyer_token")
            raise PaymentDeclined("缺少支付凭证")
        try:
            client = self.processor_factory(self.charge_provider)
            result = client.charge(amount_cents, buyer_token, idempotency_key)
        except PaymentDeclined as e:
            self._fail_attempt(idempotency_key, f"declined: {e}")
            logger.info("支付被拒绝: key=%s, %s", idempotency_key, e)
            raise
        except ProviderUnavailable as e:
            # 超时视为拒绝；若处理方稍后 Webhook 确认成功，由 complete_from_webhook 补单
            self._fail_attempt(idempotency_key, f"timeout: {e}")
            logger.warning("扣款超时或处理方不可用，按拒绝处理: key=%s, %s", idempotency_key, e)
            raise PaymentDeclined(f"支付处理超时: {e}") from e
        except ProviderRejected as e:
            self._fail_attempt(idempotency_key, f"rejected: {e.reason}")
            raise PaymentDeclined(f"支付请求被拒绝: {e.reason}") from e
        return result.charge_id

    def _commit(
        self,
        idempotency_key: str,
        listing: Listing,
        buyer_id: str,
        payment_method: str,
        price: int,
        split: FeeSplit,
        charge_id: str | None,
    ) -> tuple[Order, bool]:
        """在一个原子单元内写入流水、订单和授权。返回 (订单, 是否本次新建)。"""
        unit_name = UNIT_CENTS if payment_method == METHOD_MONEY else UNIT_CREDITS
        seller_id = listing.seller_id

        def _write(u: LedgerUnit) -> tuple[Order, bool]:
            row = u.conn.execute(
                "SELECT * FROM orders WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
            if row:
                # 并发的同键请求已经先一步提交
                return from_row(Order, row), False

            order_id = uuid.uuid4().hex
            if payment_method == METHOD_CREDITS:
                u.apply(buyer_id, DEBIT, price, "purchase", order_id, unit=unit_name,
                        description=f"购买商品 {listing.listing_id}")
            if split.seller_net_cents > 0:
                u.apply(seller_id, CREDIT, split.seller_net_cents, "purchase", order_id,
                        unit=unit_name, description=f"售出商品 {listing.listing_id}")
            if split.commission_cents > 0:
                u.apply(PLATFORM_ACCOUNT_ID, CREDIT, split.commission_cents, "commission",
                        order_id, unit=unit_name)

            u.conn.execute(
                """INSERT INTO orders
                   (order_id, idempotency_key, listing_id, buyer_id, seller_id,
                    payment_method, amount_cents, credit_amount, commission_cents,
                    processor_fee_cents, seller_net_cents, provider_charge_id,
                    status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (order_id, idempotency_key, listing.listing_id, buyer_id, seller_id,
                 payment_method,
                 price if payment_method == METHOD_MONEY else None,
                 price if payment_method == METHOD_CREDITS else None,
                 split.commission_cents, split.processor_fee_cents, split.seller_net_cents,
                 charge_id, ORDER_COMPLETED, u.timestamp),
            )
            u.conn.execute(
                "INSERT INTO licenses (license_key, order_id, issued_at) VALUES (?, ?, ?)",
                (secrets.token_urlsafe(32), order_id, u.timestamp),
            )
            u.conn.execute(
                """UPDATE purchase_attempts
                   SET state = 'committed', order_id = ?, failure_reason = NULL, updated_at = ?
                   WHERE idempotency_key = ?""",
                (order_id, u.timestamp, idempotency_key),
            )
            row = u.conn.execute(
                "SELECT * FROM orders WHERE order_id = ?", (order_id,)
            ).fetchone()
            return from_row(Order, row), True

        return self.ledger.run_atomic([buyer_id, seller_id, PLATFORM_ACCOUNT_ID], _write)

    def _complete(self, idempotency_key: str, listing_id: str) -> None:
        """committed → completed，并且只在这一步转换成功时累加销量。"""
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            cursor = db.execute(
                """UPDATE purchase_attempts SET state = 'completed', updated_at = ?
                   WHERE idempotency_key = ? AND state = 'committed'""",
                (_now_str(), idempotency_key),
            )
            if cursor.rowcount == 1:
                db.execute(
                    "UPDATE listings SET sales_count = sales_count + 1 WHERE listing_id = ?",
                    (listing_id,),
                )
            db.execute("COMMIT")
        except sqlite3.Error:
            if db.in_transaction:
                db.execute("ROLLBACK")
            raise
        finally:
            db.close()

    # ── 购买尝试状态 ──────────────────────────────────────

    def _claim_attempt(self, key: str, buyer_id: str, listing_id: str, method: str) -> bool:
        """
        登记并占用购买尝试。

        新建的尝试或此前失败的尝试由本次请求占用，返回 True；
        其他状态说明同键请求正在处理或已经提交，返回 False。
        同键不同买家/商品视为冲突。
        """
        now = _now_str()
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            cursor = db.execute(
                """INSERT OR IGNORE INTO purchase_attempts
                   (idempotency_key, buyer_id, listing_id, payment_method, state,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, 'initiated', ?, ?)""",
                (key, buyer_id, listing_id, method, now, now),
            )
            claimed = cursor.rowcount == 1
            if not claimed:
                row = db.execute(
                    "SELECT * FROM purchase_attempts WHERE idempotency_key = ?", (key,)
                ).fetchone()
                self._check_same_request(row["buyer_id"], row["listing_id"], buyer_id, listing_id)
                cursor = db.execute(
                    """UPDATE purchase_attempts
                       SET state = 'initiated', payment_method = ?, amount = NULL,
                           failure_reason = NULL, updated_at = ?
                       WHERE idempotency_key = ? AND state = 'failed'""",
                    (method, now, key),
                )
                claimed = cursor.rowcount == 1
            db.execute("COMMIT")
        except BaseException:
            if db.in_transaction:
                db.execute("ROLLBACK")
            raise
        finally:
            db.close()
        return claimed

    @staticmethod
    def _set_state(
        key: str,
        state: str,
        provider_charge_id: str | None = None,
        amount: int | None = None,
    ) -> None:
        db = get_db()
        try:
            db.execute(
                """UPDATE purchase_attempts
                   SET state = ?, provider_charge_id = COALESCE(?, provider_charge_id),
                       amount = COALESCE(?, amount), updated_at = ?
                   WHERE idempotency_key = ? AND state NOT IN ('committed', 'completed')""",
                (state, provider_charge_id, amount, _now_str(), key),
            )
        finally:
            db.close()

    @staticmethod
    def _fail_attempt(key: str, reason: str) -> None:
        db = get_db()
        try:
            db.execute(
                """UPDATE purchase_attempts
                   SET state = 'failed', failure_reason = ?, updated_at = ?
                   WHERE idempotency_key = ? AND state NOT IN ('committed', 'completed')""",
                (reason, _now_str(), key),
            )
        finally:
            db.close()

    def get_attempt(self, idempotency_key: str) -> dict | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM purchase_attempts WHERE idempotency_key = ?",
                (idempotency_key,),
            ).fetchone()
            return dict(row) if row else None
        finally:
            db.close()

    # ── Webhook 补单 ──────────────────────────────────────

    def complete_from_webhook(
        self,
        idempotency_key: str,
        provider_charge_id: str,
        amount_cents: int | None = None,
    ) -> Order:
        """
        处理方事后确认扣款成功（例如此前请求超时），按幂等键补建订单。

        已有订单时直接返回，不会重复入账。金额以购买尝试定价时记录的
        金额为准（旧记录回退到商品现金价格），回调金额不符时拒绝补单。

        Raises:
            NotFound: 幂等键没有对应的购买尝试。
            InvalidAmount: 回调金额与定价不符。
        """
        existing = self.get_order_by_key(idempotency_key)
        if existing:
            return existing

        attempt = self.get_attempt(idempotency_key)
        if not attempt:
            raise NotFound(f"幂等键 {idempotency_key} 没有对应的购买尝试")
        if attempt["payment_method"] != METHOD_MONEY:
            raise OrderStateError("只有现金购买可以通过 Webhook 补单")

        listing = self.listings.get_listing(attempt["listing_id"])
        price = attempt["amount"] if attempt["amount"] is not None else listing.price_cents
        if price is None:
            raise ListingUnavailable(f"商品 {listing.listing_id} 没有现金价格")
        if amount_cents is not None and amount_cents != price:
            logger.error("Webhook 扣款金额与定价不符，需人工处理: key=%s, charge_id=%s, "
                         "expected=%d, got=%d",
                         idempotency_key, provider_charge_id, price, amount_cents)
            raise InvalidAmount(f"扣款金额 {amount_cents} 与定价 {price} 不符")
        split = self._split(price, listing.seller_id, METHOD_MONEY)

        self._set_state(idempotency_key, "reserved", provider_charge_id=provider_charge_id)
        order, created = self._commit(
            idempotency_key, listing, attempt["buyer_id"], METHOD_MONEY,
            price, split, provider_charge_id,
        )
        if created:
            self._complete(idempotency_key, listing.listing_id)
            logger.info("Webhook 补单完成: key=%s, order=%s, charge_id=%s",
                        idempotency_key, order.order_id, provider_charge_id)
        return order

    def mark_charge_failed(self, idempotency_key: str, reason: str) -> None:
        """处理方 Webhook 通知扣款失败：未提交的尝试置为 failed。"""
        self._fail_attempt(idempotency_key, f"webhook: {reason}")
        logger.info("Webhook 通知扣款失败: key=%s, reason=%s", idempotency_key, reason)

    # ── 退款 ──────────────────────────────────────────────

    def refund_order(self, order_id: str, revoke_license: bool = False, reason: str | None = None) -> Order:
        """
        退款：追加反向流水，订单置为 refunded。

        现金订单先向处理方退款，处理方失败时账本不做任何修改。
        授权默认保留，revoke_license=True 时吊销。

        Raises:
            NotFound: 订单不存在。
            OrderStateError: 订单已退款。
            InsufficientBalance: 卖家余额已不足以冲回（收入已打款）。
        """
        order = self.get_order(order_id)
        if order.status == ORDER_REFUNDED:
            raise OrderStateError(f"订单 {order_id} 已退款")

        # 处理方退款前先确认卖家可用余额（扣除打款中的金额）足以冲回
        db = get_db()
        try:
            available = self._available_for_reversal(db, order.seller_id, order.unit)
        finally:
            db.close()
        if order.seller_net_cents > available:
            raise InsufficientBalance(f"卖家 {order.seller_id} 余额不足以冲回订单 {order_id}")

        refunded_at_provider = False
        if order.payment_method == METHOD_MONEY and order.provider_charge_id:
            client = self.processor_factory(self.charge_provider)
            client.refund(order.provider_charge_id, order.amount_cents)
            refunded_at_provider = True

        def _reverse(u: LedgerUnit) -> None:
            row = u.conn.execute(
                "SELECT status FROM orders WHERE order_id = ?", (order_id,)
            ).fetchone()
            if row["status"] == ORDER_REFUNDED:
                raise OrderStateError(f"订单 {order_id} 已退款")
            # 持有卖家锁的同一事务内复核，打款组批与此互斥
            if order.seller_net_cents > self._available_for_reversal(u.conn, order.seller_id, order.unit):
                raise InsufficientBalance(f"卖家 {order.seller_id} 余额不足以冲回订单 {order_id}")

            originals = u.conn.execute(
                """SELECT * FROM transactions
                   WHERE related_order_id = ? AND source IN ('purchase', 'commission')
                   ORDER BY seq ASC""",
                (order_id,),
            ).fetchall()
            for t in originals:
                opposite = DEBIT if t["direction"] == CREDIT else CREDIT
                u.apply(t["account_id"], opposite, t["amount"], "refund", order_id,
                        unit=t["unit"], reference_id=t["transaction_id"],
                        description=reason)

            u.conn.execute(
                "UPDATE orders SET status = ?, refunded_at = ? WHERE order_id = ?",
                (ORDER_REFUNDED, u.timestamp, order_id),
            )
            if revoke_license:
                u.conn.execute(
                    "UPDATE licenses SET revoked_at = ? WHERE order_id = ? AND revoked_at IS NULL",
                    (u.timestamp, order_id),
                )
            u.conn.execute(
                """UPDATE listings SET sales_count = MAX(sales_count - 1, 0)
                   WHERE listing_id = ?""",
                (order.listing_id,),
            )

        try:
            self.ledger.run_atomic([order.buyer_id, order.seller_id, PLATFORM_ACCOUNT_ID], _reverse)
        except LedgerError as e:
            if refunded_at_provider:
                logger.error("处理方已退款但账本冲回失败，需人工处理: order=%s, charge_id=%s, err=%s",
                             order_id, order.provider_charge_id, e)
            raise
        logger.info("订单已退款: order=%s, revoke_license=%s, reason=%s",
                    order_id, revoke_license, reason)
        return self.get_order(order_id)

    @staticmethod
    def _available_for_reversal(conn: sqlite3.Connection, seller_id: str, unit: str) -> int:
        """卖家可用于冲回的余额：现金需扣除已入批但尚未扣账的打款金额。"""
        row = conn.execute(
            "SELECT balance FROM accounts WHERE account_id = ? AND unit = ?",
            (seller_id, unit),
        ).fetchone()
        available = row["balance"] if row else 0
        if unit == UNIT_CENTS:
            row = conn.execute(
                """SELECT COALESCE(SUM(amount_cents), 0) AS total FROM payout_entries
                   WHERE seller_id = ? AND status IN (?, ?)""",
                (seller_id, ENTRY_PENDING, ENTRY_MANUAL_REVIEW),
            ).fetchone()
            available -= row["total"]
        return available

    # ── 查询 ──────────────────────────────────────────────

    def get_order(self, order_id: str) -> Order:
        db = get_db()
        try:
            row = db.execute("SELECT * FROM orders WHERE order_id = ?", (order_id,)).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFound(f"订单 {order_id} 不存在")
        return from_row(Order, row)

    def get_order_by_key(self, idempotency_key: str) -> Order | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM orders WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
            return from_row(Order, row)
        finally:
            db.close()

    def has_access(self, buyer_id: str, listing_id: str) -> bool:
        """买家是否可以查看商品全文（持有未吊销的授权）。"""
        return self.listings.has_license(buyer_id, listing_id)

    def get_license(self, order_id: str) -> License | None:
        db = get_db()
        try:
            row = db.execute("SELECT * FROM licenses WHERE order_id = ?", (order_id,)).fetchone()
            return from_row(License, row)
        finally:
            db.close()
