"""
佣金与手续费计算：纯函数，不访问账本。

舍入规则（固定，保证同样输入永远得到同样输出）：
- 每个百分比都按 round(amount * rate / 100) 计算，ROUND_HALF_UP 到整分
- 处理方手续费：百分比部分再加固定手续费
- 卖家净收入：sale - 佣金 - 手续费
- 佣金加手续费超过销售金额时从佣金中扣减，卖家净收入不为负
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from marketcore.services.errors import InvalidAmount, InvalidRate

_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class FeeSplit:
    commission_cents: int
    processor_fee_cents: int
    seller_net_cents: int

    @property
    def total(self) -> int:
        return self.commission_cents + self.processor_fee_cents + self.seller_net_cents


def _to_rate(value, name: str) -> Decimal:
    """把百分比转成 Decimal；float 先经 str() 转换，避免二进制误差。"""
    if isinstance(value, bool):
        raise InvalidRate(f"{name} 不是有效数值: {value!r}")
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRate(f"{name} 不是有效数值: {value!r}")
    if not rate.is_finite():
        raise InvalidRate(f"{name} 不是有效数值: {value!r}")
    if rate < 0:
        raise InvalidRate(f"{name} 不能为负数: {value}")
    if rate > _HUNDRED:
        raise InvalidRate(f"{name} 不能超过 100: {value}")
    return rate


def _percent_of(amount: Decimal, rate: Decimal) -> int:
    return int((amount * rate / _HUNDRED).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def compute_split(
    sale_amount_cents: int,
    commission_rate_percent,
    processor_fee_percent=0,
    processor_fixed_fee_cents: int = 0,
) -> FeeSplit:
    """
    计算一笔销售的平台佣金、处理方手续费和卖家净收入。

    Args:
        sale_amount_cents: 销售金额（整数最小单位）。
        commission_rate_percent: 平台佣金百分比，0-100。
        processor_fee_percent: 处理方百分比手续费，0-100。
        processor_fixed_fee_cents: 处理方固定手续费（整数）。

    Returns:
        FeeSplit，三项之和恒等于 sale_amount_cents。

    Raises:
        InvalidRate: 费率为负、超过 100，或固定手续费为负。
        InvalidAmount: 金额非整数、为负，或手续费超过销售金额。
    """
    if isinstance(sale_amount_cents, bool) or not isinstance(sale_amount_cents, int):
        raise InvalidAmount(f"销售金额必须是整数: {sale_amount_cents!r}")
    if sale_amount_cents < 0:
        raise InvalidAmount(f"销售金额不能为负数: {sale_amount_cents}")

    commission_rate = _to_rate(commission_rate_percent, "佣金费率")
    fee_rate = _to_rate(processor_fee_percent, "手续费率")

    if isinstance(processor_fixed_fee_cents, bool) or not isinstance(processor_fixed_fee_cents, int):
        raise InvalidRate(f"固定手续费必须是整数: {processor_fixed_fee_cents!r}")
    if processor_fixed_fee_cents < 0:
        raise InvalidRate(f"固定手续费不能为负数: {processor_fixed_fee_cents}")

    amount = Decimal(sale_amount_cents)

    processor_fee = _percent_of(amount, fee_rate) + processor_fixed_fee_cents
    if processor_fee > sale_amount_cents:
        raise InvalidAmount(
            f"手续费 {processor_fee} 超过销售金额 {sale_amount_cents}"
        )

    commission = min(_percent_of(amount, commission_rate), sale_amount_cents - processor_fee)
    seller_net = sale_amount_cents - processor_fee - commission

    return FeeSplit(
        commission_cents=commission,
        processor_fee_cents=processor_fee,
        seller_net_cents=seller_net,
    )
