"""
账户接口：余额、流水、每日奖励、一次性奖励、卖家收入概览。

账本操作是同步阻塞的，这里使用普通 def，由 FastAPI 放入线程池执行。
"""

import logging

from fastapi import APIRouter, Query
from pydantic import BaseModel

from marketcore.models.schemas import UNIT_CENTS, UNIT_CREDITS, UNITS
from marketcore.routes.responses import fail, ledger_fail, ok
from marketcore.services.errors import LedgerError
from marketcore.services.ledger import LedgerStore
from marketcore.services.payout_service import PayoutService
from marketcore.services.rewards import ONE_TIME_BONUSES, RewardService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class BonusRequest(BaseModel):
    source: str


@router.get("/accounts/{account_id}/balance")
def get_balance(account_id: str, unit: str = Query(UNIT_CREDITS)):
    """查询余额（强一致读取）。"""
    if unit not in UNITS:
        return fail(f"未知的计价单位: {unit}")
    ledger = LedgerStore()
    account = ledger.get_account(account_id, unit)
    return ok(
        account_id=account_id,
        unit=unit,
        balance=account.balance if account else 0,
        total_earned=account.total_earned if account else 0,
        total_spent=account.total_spent if account else 0,
    )


@router.get("/accounts/{account_id}/transactions")
def list_transactions(
    account_id: str,
    unit: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """分页查询流水，最新在前。"""
    if unit is not None and unit not in UNITS:
        return fail(f"未知的计价单位: {unit}")
    txns = LedgerStore().list_transactions(account_id, unit=unit, limit=limit, offset=offset)
    return ok(
        account_id=account_id,
        transactions=[t.to_dict() for t in txns],
        limit=limit,
        offset=offset,
    )


@router.post("/accounts/{account_id}/daily-claim")
def claim_daily(account_id: str):
    """领取每日奖励。"""
    try:
        claim = RewardService().claim_daily(account_id)
    except LedgerError as e:
        return ledger_fail(e)
    return ok(**claim.to_dict())


@router.get("/accounts/{account_id}/daily-status")
def daily_status(account_id: str):
    return ok(**RewardService().get_daily_status(account_id))


@router.post("/accounts/{account_id}/bonus")
def grant_bonus(account_id: str, body: BonusRequest):
    """发放一次性奖励（注册、完善资料、首次分享），重复调用不会重复发放。"""
    if body.source not in ONE_TIME_BONUSES:
        return fail(f"不支持的一次性奖励: {body.source}")
    try:
        txn = RewardService().grant_one_time_bonus(account_id, body.source)
    except LedgerError as e:
        return ledger_fail(e)
    if txn is None:
        return ok(granted=False, amount=0)
    return ok(granted=True, amount=txn.amount, transaction_id=txn.transaction_id)


@router.get("/sellers/{seller_id}/earnings")
def seller_earnings(seller_id: str):
    """卖家收入概览：现金余额、可打款金额、持有期内金额、下次打款预估。"""
    data = PayoutService().get_pending_earnings(seller_id)
    data["balance_cents"] = LedgerStore().get_balance(seller_id, UNIT_CENTS)
    return ok(**data)
