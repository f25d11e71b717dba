"""
支付处理方 API 客户端：扣款、退款、批量打款。

主要功能：
- charge() 以幂等令牌向处理方发起扣款
- refund() 对已完成扣款发起退款
- payout() 提交一组打款条目，返回逐条结果（最终状态可能由 Webhook 回调确认）

错误映射：
- 超时 / 网络错误 / 5xx → ProviderUnavailable（可重试）
- 4xx 或 status=rejected → ProviderRejected（终态）
- 扣款 status=declined → PaymentDeclined
"""

import json
import logging
import os
from dataclasses import dataclass

import httpx

from marketcore.models.schemas import PROVIDERS
from marketcore.services.errors import PaymentDeclined, ProviderRejected, ProviderUnavailable
from marketcore.services.platform_config import get_provider_credentials

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "10"))


@dataclass
class ChargeResult:
    charge_id: str
    status: str


@dataclass
class PayoutItemResult:
    entry_id: str
    status: str  # success / failed / pending
    provider_item_id: str | None = None
    failure_reason: str | None = None


class ProcessorClient:
    """单个处理方（processor_a / processor_b）的 HTTP 客户端。"""

    def __init__(self, provider: str, base_url: str, api_key: str, timeout: float | None = None):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = timeout if timeout is not None else DEFAULT_TIMEOUT

    def _headers(self, idempotency_token: str | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_token:
            headers["Idempotency-Key"] = idempotency_token
        return headers

    def _post(self, path: str, payload: dict, idempotency_token: str | None = None) -> dict:
        """发送请求并解析 JSON，按状态码映射为业务异常。"""
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    url, json=payload, headers=self._headers(idempotency_token)
                )
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"{self.provider} 请求超时: {e}")
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"{self.provider} 请求失败: {e}")

        if response.status_code >= 500:
            raise ProviderUnavailable(
                f"{self.provider} 服务异常: HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ProviderUnavailable(f"解析 {self.provider} 响应失败: {e}")

        if response.status_code >= 400:
            reason = data.get("error") or data.get("message") or f"HTTP {response.status_code}"
            raise ProviderRejected(f"{self.provider} 拒绝请求: {reason}", reason=reason)
        return data

    def charge(self, amount_cents: int, buyer_token: str, idempotency_token: str) -> ChargeResult:
        """
        发起扣款。

        Raises:
            PaymentDeclined: 处理方拒绝扣款（如余额不足、卡被拒）。
            ProviderUnavailable: 超时或处理方不可用，结果未知。
            ProviderRejected: 请求本身被拒绝（参数错误等）。
        """
        data = self._post(
            "/v1/charges",
            {
                "amount": amount_cents,
                "currency": "usd",
                "source": buyer_token,
                "idempotency_key": idempotency_token,
            },
            idempotency_token=idempotency_token,
        )
        status = data.get("status")
        if status == "declined":
            reason = data.get("decline_reason") or "declined"
            raise PaymentDeclined(f"支付被拒绝: {reason}")
        if status != "succeeded" or not data.get("id"):
            raise ProviderRejected(f"{self.provider} 扣款响应异常: {data}", reason="bad_response")
        logger.info("扣款成功: provider=%s, charge_id=%s, amount=%d",
                    self.provider, data["id"], amount_cents)
        return ChargeResult(charge_id=data["id"], status=status)

    def refund(self, charge_id: str, amount_cents: int) -> str:
        """对一笔扣款退款，返回处理方退款 ID。"""
        data = self._post(
            "/v1/refunds",
            {"charge_id": charge_id, "amount": amount_cents},
            idempotency_token=f"refund-{charge_id}",
        )
        if data.get("status") not in ("succeeded", "pending"):
            raise ProviderRejected(
                f"{self.provider} 退款失败: {data.get('status')}", reason=str(data.get("status"))
            )
        logger.info("退款已提交: provider=%s, charge_id=%s", self.provider, charge_id)
        return data.get("id", "")

    def payout(self, batch_id: str, items: list[dict]) -> list[PayoutItemResult]:
        """
        提交一组打款条目。

        Args:
            batch_id: 平台批次号，作为处理方侧的幂等键。
            items: [{"entry_id", "destination", "amount_cents"}]

        Returns:
            逐条结果；处理方未返回的条目视为 pending，等待 Webhook 确认。
        """
        payload = {
            "sender_batch_id": batch_id,
            "items": [
                {
                    "sender_item_id": it["entry_id"],
                    "recipient": it["destination"],
                    "amount": it["amount_cents"],
                    "currency": "usd",
                }
                for it in items
            ],
        }
        data = self._post("/v1/payouts", payload, idempotency_token=batch_id)
        if data.get("status") == "rejected":
            reason = data.get("error") or "rejected"
            raise ProviderRejected(f"{self.provider} 拒绝打款批次: {reason}", reason=reason)

        by_id = {r.get("sender_item_id"): r for r in data.get("items", [])}
        results = []
        for it in items:
            r = by_id.get(it["entry_id"])
            if r is None:
                results.append(PayoutItemResult(entry_id=it["entry_id"], status="pending"))
                continue
            status = r.get("status", "pending")
            if status not in ("success", "failed", "pending"):
                status = "pending"
            results.append(PayoutItemResult(
                entry_id=it["entry_id"],
                status=status,
                provider_item_id=r.get("item_id"),
                failure_reason=r.get("error") if status == "failed" else None,
            ))
        return results


def get_processor_client(provider: str) -> ProcessorClient:
    """根据已保存的凭证创建处理方客户端。"""
    if provider not in PROVIDERS:
        raise ProviderRejected(f"未知的处理方: {provider}", reason="unknown_provider")
    creds = get_provider_credentials(provider)
    if not creds:
        raise ProviderUnavailable(f"处理方 {provider} 尚未配置凭证")
    return ProcessorClient(provider, creds["base_url"], creds["api_key"])
