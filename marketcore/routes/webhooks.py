"""
处理方回调接口：POST /v1/webhooks/{provider}

请求体为扁平 JSON，X-Signature 头为 HMAC-SHA256 签名（密钥为该处理方的 webhook_secret）。

支持的事件：
- charge.succeeded  超时后确认扣款成功，按 idempotency_key 补单
- charge.failed     扣款失败，未提交的购买尝试置为 failed
- charge.refunded   退款完成通知，仅记录
- payout.paid       打款条目成功，记账并推进水位线
- payout.failed     打款条目失败，记录原因
"""

import logging

from fastapi import APIRouter, Header

from marketcore.models.schemas import ENTRY_FAILED, ENTRY_SUCCESS, PROVIDERS
from marketcore.routes.responses import fail, ledger_fail, ok
from marketcore.services.errors import LedgerError
from marketcore.services.payout_service import PayoutService
from marketcore.services.platform_config import get_provider_credentials
from marketcore.services.purchase_service import PurchaseService
from marketcore.services.sign import verify_sign

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks")


@router.post("/{provider}")
def receive_webhook(provider: str, payload: dict, x_signature: str | None = Header(None)):
    if provider not in PROVIDERS:
        return fail(f"未知的处理方: {provider}")

    creds = get_provider_credentials(provider)
    if not creds:
        return fail("处理方尚未配置凭证")
    if not verify_sign(payload, creds["webhook_secret"], x_signature or ""):
        logger.warning("Webhook 签名校验失败: provider=%s, event=%s", provider, payload.get("event"))
        return fail("签名错误")

    event = payload.get("event")
    logger.info("收到处理方回调: provider=%s, event=%s", provider, event)
    try:
        if event == "charge.succeeded":
            amount = payload.get("amount")
            order = PurchaseService(charge_provider=provider).complete_from_webhook(
                payload["idempotency_key"],
                payload["charge_id"],
                int(amount) if amount is not None else None,
            )
            return ok(order_id=order.order_id)

        if event == "charge.failed":
            PurchaseService().mark_charge_failed(
                payload["idempotency_key"], payload.get("reason") or "failed"
            )
            return ok()

        if event == "charge.refunded":
            logger.info("处理方确认退款: charge_id=%s", payload.get("charge_id"))
            return ok()

        if event in ("payout.paid", "payout.failed"):
            status = ENTRY_SUCCESS if event == "payout.paid" else ENTRY_FAILED
            entry = PayoutService().handle_payout_webhook(
                provider,
                payload["entry_id"],
                status,
                failure_reason=payload.get("reason"),
                provider_item_id=payload.get("item_id"),
            )
            return ok(entry_id=entry.entry_id, status=entry.status)
    except LedgerError as e:
        return ledger_fail(e)
    except KeyError as e:
        return fail(f"缺少字段: {e.args[0]}")
    except ValueError as e:
        return fail(str(e))

    return fail(f"不支持的事件类型: {event}")
