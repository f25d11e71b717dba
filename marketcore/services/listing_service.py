"""商品（Prompt 售卖条目）管理服务模块。"""

import logging
import uuid
from datetime import datetime

from marketcore.database import get_db
from marketcore.models.schemas import Listing, from_row
from marketcore.services.errors import NotFound

logger = logging.getLogger(__name__)

# 预览截断时，自然断点需落在预览长度 80% 之后才采用
_BREAK_THRESHOLD = 0.8


def build_preview(content: str, preview_percentage: int) -> str:
    """
    按百分比截取内容预览，尽量停在句号、逗号或空格处。

    先取 floor(len * pct / 100) 个字符；若最后一个句号、逗号、空格
    （按此优先级）位于预览长度 80% 之后，则截断到该处。
    """
    if not content:
        return ""
    length = len(content) * preview_percentage // 100
    preview = content[:length]

    threshold = length * _BREAK_THRESHOLD
    last_period = preview.rfind(".")
    last_comma = preview.rfind(",")
    last_space = preview.rfind(" ")

    if last_period > threshold:
        return preview[:last_period + 1]
    if last_comma > threshold:
        return preview[:last_comma + 1]
    if last_space > threshold:
        return preview[:last_space]
    return preview


class ListingService:
    """商品服务：创建、查询、下架、预览和内容访问。"""

    def create_listing(
        self,
        seller_id: str,
        title: str,
        content: str,
        price_cents: int | None = None,
        credit_price: int | None = None,
        accepts_money: bool = True,
        accepts_credits: bool = False,
        preview_percentage: int = 20,
    ) -> Listing:
        """
        创建商品。

        至少接受一种支付方式，且每种接受的方式都必须有正整数价格。

        Raises:
            ValueError: 参数不合法。
        """
        if not seller_id or not title or not content:
            raise ValueError("卖家、标题和内容不能为空")
        if not accepts_money and not accepts_credits:
            raise ValueError("至少需要接受一种支付方式")
        for accepted, price, name in (
            (accepts_money, price_cents, "price_cents"),
            (accepts_credits, credit_price, "credit_price"),
        ):
            if not accepted:
                continue
            if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
                raise ValueError(f"{name} 必须是正整数")
        if not 0 <= preview_percentage <= 100:
            raise ValueError("preview_percentage 必须在 0 到 100 之间")

        listing_id = uuid.uuid4().hex
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """INSERT INTO listings
                   (listing_id, seller_id, title, content, price_cents, credit_price,
                    accepts_money, accepts_credits, preview_percentage, sales_count,
                    status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 'active', ?, ?)""",
                (listing_id, seller_id, title, content,
                 price_cents if accepts_money else None,
                 credit_price if accepts_credits else None,
                 1 if accepts_money else 0, 1 if accepts_credits else 0,
                 preview_percentage, now, now),
            )
        finally:
            db.close()

        logger.info("商品已创建: listing_id=%s, seller=%s", listing_id, seller_id)
        return self.get_listing(listing_id)

    def get_listing(self, listing_id: str) -> Listing:
        """按 ID 查询商品，不存在时抛出 NotFound。"""
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM listings WHERE listing_id = ?", (listing_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFound(f"商品 {listing_id} 不存在")
        return from_row(Listing, row)

    def archive_listing(self, listing_id: str) -> None:
        """下架商品，历史订单不受影响。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE listings SET status = 'archived', updated_at = ? WHERE listing_id = ?",
                (now, listing_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"商品 {listing_id} 不存在")
        finally:
            db.close()

    def get_preview(self, listing_id: str) -> str:
        listing = self.get_listing(listing_id)
        return build_preview(listing.content, listing.preview_percentage)

    def get_content_for(self, listing_id: str, buyer_id: str | None) -> dict:
        """
        返回买家可见的内容：持有未吊销授权时为全文，否则为预览。
        卖家本人始终可见全文。

        Returns:
            dict: {"full_access": bool, "content": str}
        """
        listing = self.get_listing(listing_id)
        if buyer_id and (buyer_id == listing.seller_id or self.has_license(buyer_id, listing_id)):
            return {"full_access": True, "content": listing.content}
        return {
            "full_access": False,
            "content": build_preview(listing.content, listing.preview_percentage),
        }

    @staticmethod
    def has_license(buyer_id: str, listing_id: str) -> bool:
        """买家是否持有该商品的有效（未吊销）授权。"""
        db = get_db()
        try:
            row = db.execute(
                """SELECT 1 FROM licenses l
                   JOIN orders o ON o.order_id = l.order_id
                   WHERE o.buyer_id = ? AND o.listing_id = ? AND l.revoked_at IS NULL
                   LIMIT 1""",
                (buyer_id, listing_id),
            ).fetchone()
            return row is not None
        finally:
            db.close()
