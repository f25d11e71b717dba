"""
账本与结算核心的异常体系。

路由层统一捕获 LedgerError，按 code 转换为 {"code": -1, "error": code, "msg": ...}。
"""


class LedgerError(Exception):
    """核心业务异常基类。"""

    code = "ledger_error"


class InsufficientBalance(LedgerError):
    """扣款金额超过账户余额。"""

    code = "insufficient_balance"


class InvalidAmount(LedgerError):
    """金额不是正整数，或方向、来源非法。"""

    code = "invalid_amount"


class InvalidRate(LedgerError):
    """费率为负或百分比超过 100。"""

    code = "invalid_rate"


class ListingUnavailable(LedgerError):
    """商品已下架、不存在或不接受该支付方式。"""

    code = "listing_unavailable"


class PaymentDeclined(LedgerError):
    """支付处理方拒绝扣款（含超时）。"""

    code = "payment_declined"


class AlreadyClaimed(LedgerError):
    """当前 24 小时窗口内已领取过每日奖励。"""

    code = "already_claimed"


class DuplicateSettlement(LedgerError):
    """幂等键已被其他买家或商品占用。"""

    code = "duplicate_settlement"


class ProviderUnavailable(LedgerError):
    """外部处理方暂时不可用，可重试。"""

    code = "provider_unavailable"


class ProviderRejected(LedgerError):
    """外部处理方拒绝请求，对该条目为终态。"""

    code = "provider_rejected"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.reason = reason or message


class LedgerConflict(LedgerError):
    """并发写入冲突（余额 CAS 失败或数据库锁定），内部重试。"""

    code = "ledger_conflict"


class NotFound(LedgerError):
    """订单、批次等记录不存在。"""

    code = "not_found"


class OrderStateError(LedgerError):
    """订单状态不允许该操作，例如重复退款。"""

    code = "order_state_error"


class SettlementInProgress(LedgerError):
    """同一幂等键的结算正在进行，尚未提交。"""

    code = "settlement_in_progress"
