"""
运营后台路由：认证（登录）、业务参数、处理方凭证、退款、打款批次、卖家收款资料与佣金费率、账户对账。
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from marketcore.models.schemas import UNIT_CREDITS, UNITS
from marketcore.routes.responses import fail, ledger_fail, ok
from marketcore.services.auth import AdminAuthError, authenticate, get_current_admin
from marketcore.services.errors import LedgerError
from marketcore.services.ledger import LedgerStore
from marketcore.services.payout_service import PayoutService
from marketcore.services.platform_config import (
    PlatformConfigError,
    get_commission_rate,
    get_provider_status,
    get_seller_commission_rate,
    get_settings,
    save_provider_credentials,
    set_seller_commission_rate,
    update_settings,
)
from marketcore.services.purchase_service import PurchaseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin")


class LoginRequest(BaseModel):
    username: str
    password: str


class SettingsRequest(BaseModel):
    settings: dict[str, str | int | float]


class ProviderCredentialsRequest(BaseModel):
    base_url: str
    api_key: str
    webhook_secret: str


class RefundRequest(BaseModel):
    revoke_license: bool = False
    reason: str | None = None


class RunPayoutRequest(BaseModel):
    provider: str | None = None


class PayoutProfileRequest(BaseModel):
    provider: str
    destination: str


class CommissionRateRequest(BaseModel):
    commission_rate_percent: str | int | float | None = None


@router.post("/auth/login")
def login(body: LoginRequest):
    """
    管理员登录。

    成功返回 {code: 1, token: "..."}，失败返回 {code: -1, msg: "..."}。
    """
    try:
        token = authenticate(body.username, body.password)
    except AdminAuthError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return ok(token=token)


# ── 系统设置 ──────────────────────────────────────────────


@router.get("/settings")
def read_settings(admin: dict = Depends(get_current_admin)):
    return ok(settings=get_settings(), providers=get_provider_status())


@router.post("/settings")
def write_settings(body: SettingsRequest, admin: dict = Depends(get_current_admin)):
    try:
        settings = update_settings(body.settings)
    except PlatformConfigError as e:
        return fail(str(e))
    logger.info("管理员 %s 更新了业务参数", admin["sub"])
    return ok(settings=settings)


@router.post("/settings/providers/{provider}")
def write_provider_credentials(
    provider: str, body: ProviderCredentialsRequest, admin: dict = Depends(get_current_admin)
):
    try:
        save_provider_credentials(provider, body.base_url, body.api_key, body.webhook_secret)
    except PlatformConfigError as e:
        return fail(str(e))
    return ok(providers=get_provider_status())


# ── 订单退款 ──────────────────────────────────────────────


@router.post("/orders/{order_id}/refund")
def refund_order(order_id: str, body: RefundRequest, admin: dict = Depends(get_current_admin)):
    """退款：追加反向流水，授权是否吊销由 revoke_license 决定。"""
    try:
        order = PurchaseService().refund_order(
            order_id, revoke_license=body.revoke_license, reason=body.reason
        )
    except LedgerError as e:
        return ledger_fail(e)
    logger.info("管理员 %s 退款订单 %s", admin["sub"], order_id)
    return ok(order=order.to_dict())


# ── 打款批次 ──────────────────────────────────────────────


@router.post("/payouts/run")
def run_payouts(body: RunPayoutRequest, admin: dict = Depends(get_current_admin)):
    """手动触发打款批次；不指定处理方时依次执行所有处理方。"""
    svc = PayoutService()
    try:
        if body.provider:
            batch = svc.run_payout_batch(body.provider)
            batches = [batch] if batch else []
        else:
            batches = svc.run_all_providers()
    except ValueError as e:
        return fail(str(e))
    return ok(batches=[b.to_dict() for b in batches])


@router.get("/payouts")
def list_payouts(limit: int = Query(20, ge=1, le=200), admin: dict = Depends(get_current_admin)):
    return ok(batches=[b.to_dict() for b in PayoutService().list_batches(limit)])


@router.get("/payouts/{batch_id}")
def payout_status(batch_id: str, admin: dict = Depends(get_current_admin)):
    try:
        return ok(**PayoutService().get_payout_batch_status(batch_id))
    except LedgerError as e:
        return ledger_fail(e)


@router.put("/sellers/{seller_id}/payout-profile")
def set_payout_profile(seller_id: str, body: PayoutProfileRequest, admin: dict = Depends(get_current_admin)):
    try:
        profile = PayoutService().set_payout_profile(seller_id, body.provider, body.destination)
    except ValueError as e:
        return fail(str(e))
    return ok(
        seller_id=profile.seller_id,
        provider=profile.provider,
        destination=profile.destination,
        paid_through_seq=profile.paid_through_seq,
    )


@router.put("/sellers/{seller_id}/commission")
def set_seller_commission(seller_id: str, body: CommissionRateRequest, admin: dict = Depends(get_current_admin)):
    """设置卖家专属佣金费率，commission_rate_percent 为 null 时恢复平台默认。"""
    try:
        set_seller_commission_rate(seller_id, body.commission_rate_percent)
    except PlatformConfigError as e:
        return fail(str(e))
    override = get_seller_commission_rate(seller_id)
    return ok(
        seller_id=seller_id,
        commission_rate_percent=str(override) if override is not None else None,
        effective_rate_percent=str(get_commission_rate(seller_id)),
    )


# ── 账户对账 ──────────────────────────────────────────────


@router.get("/accounts/{account_id}/verify")
def verify_account(
    account_id: str, unit: str = Query(UNIT_CREDITS), admin: dict = Depends(get_current_admin)
):
    """回放流水校验余额缓存。"""
    if unit not in UNITS:
        return fail(f"未知的计价单位: {unit}")
    return ok(account_id=account_id, unit=unit, **LedgerStore().verify_account(account_id, unit))
