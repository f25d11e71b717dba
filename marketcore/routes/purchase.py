"""
购买接口：POST /v1/purchases 结算购买，GET /v1/orders/{order_id} 查询订单，
GET /v1/orders/{order_id}/license 买家取回授权码。

同一 idempotency_key 重复提交返回原订单，不会重复扣款或入账。
"""

import logging

from fastapi import APIRouter, Query
from pydantic import BaseModel

from marketcore.routes.responses import fail, ledger_fail, ok
from marketcore.services.errors import LedgerError
from marketcore.services.purchase_service import PurchaseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class PurchaseRequest(BaseModel):
    buyer_id: str
    listing_id: str
    payment_method: str
    idempotency_key: str
    buyer_token: str | None = None


def _order_payload(svc: PurchaseService, order, include_key: bool = False) -> dict:
    data = order.to_dict()
    lic = svc.get_license(order.order_id)
    if include_key:
        data["license_key"] = lic.license_key if lic else None
    data["license_revoked"] = bool(lic and lic.revoked_at)
    return data


@router.post("/purchases")
def create_purchase(body: PurchaseRequest):
    """
    结算一次购买。

    成功返回 {code: 1, order: {...}}，order 中带有授权码；
    失败返回 {code: -1, error: "payment_declined" 等, msg: "..."}。
    """
    svc = PurchaseService()
    logger.info("收到购买请求: buyer=%s, listing=%s, method=%s, key=%s",
                body.buyer_id, body.listing_id, body.payment_method, body.idempotency_key)
    try:
        order = svc.settle_purchase(
            body.buyer_id,
            body.listing_id,
            body.payment_method,
            body.idempotency_key,
            buyer_token=body.buyer_token,
        )
    except LedgerError as e:
        return ledger_fail(e)
    except ValueError as e:
        return fail(str(e))
    return ok(order=_order_payload(svc, order, include_key=True))


@router.get("/orders/{order_id}")
def get_order(order_id: str):
    """订单概要，不含授权码。"""
    svc = PurchaseService()
    try:
        order = svc.get_order(order_id)
    except LedgerError as e:
        return ledger_fail(e)
    return ok(order=_order_payload(svc, order))


@router.get("/orders/{order_id}/license")
def get_order_license(order_id: str, buyer_id: str = Query(...)):
    """买家查询自己订单的授权码，buyer_id 与订单不符时按不存在处理。"""
    svc = PurchaseService()
    try:
        order = svc.get_order(order_id)
    except LedgerError as e:
        return ledger_fail(e)
    lic = svc.get_license(order_id)
    if order.buyer_id != buyer_id or lic is None:
        return fail("授权不存在", error="not_found")
    return ok(license_key=lic.license_key, revoked=lic.revoked_at is not None)
