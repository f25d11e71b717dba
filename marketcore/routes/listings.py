"""商品接口：创建、查询、下架、按授权返回内容。"""

from fastapi import APIRouter, Query
from pydantic import BaseModel

from marketcore.routes.responses import fail, ledger_fail, ok
from marketcore.services.errors import LedgerError
from marketcore.services.listing_service import ListingService

router = APIRouter(prefix="/v1/listings")


class CreateListingRequest(BaseModel):
    seller_id: str
    title: str
    content: str
    price_cents: int | None = None
    credit_price: int | None = None
    accepts_money: bool = True
    accepts_credits: bool = False
    preview_percentage: int = 20


def _public(listing) -> dict:
    """对外展示的商品信息，不含正文。"""
    return {
        "listing_id": listing.listing_id,
        "seller_id": listing.seller_id,
        "title": listing.title,
        "price_cents": listing.price_cents,
        "credit_price": listing.credit_price,
        "accepts_money": bool(listing.accepts_money),
        "accepts_credits": bool(listing.accepts_credits),
        "preview_percentage": listing.preview_percentage,
        "sales_count": listing.sales_count,
        "status": listing.status,
        "created_at": listing.created_at,
    }


@router.post("")
def create_listing(body: CreateListingRequest):
    try:
        listing = ListingService().create_listing(
            body.seller_id,
            body.title,
            body.content,
            price_cents=body.price_cents,
            credit_price=body.credit_price,
            accepts_money=body.accepts_money,
            accepts_credits=body.accepts_credits,
            preview_percentage=body.preview_percentage,
        )
    except ValueError as e:
        return fail(str(e))
    return ok(listing=_public(listing))


@router.get("/{listing_id}")
def get_listing(listing_id: str):
    svc = ListingService()
    try:
        listing = svc.get_listing(listing_id)
    except LedgerError as e:
        return ledger_fail(e)
    data = _public(listing)
    data["preview"] = svc.get_preview(listing_id)
    return ok(listing=data)


@router.get("/{listing_id}/content")
def get_content(listing_id: str, buyer_id: str | None = Query(None)):
    """持有有效授权返回全文，否则返回预览。"""
    try:
        result = ListingService().get_content_for(listing_id, buyer_id)
    except LedgerError as e:
        return ledger_fail(e)
    return ok(**result)


@router.post("/{listing_id}/archive")
def archive_listing(listing_id: str):
    try:
        ListingService().archive_listing(listing_id)
    except LedgerError as e:
        return ledger_fail(e)
    return ok(msg="商品已下架")
