"""佣金与手续费计算测试。"""

import pytest

from marketcore.services.errors import InvalidAmount, InvalidRate
from marketcore.services.fees import compute_split


class TestComputeSplit:
    """compute_split 测试。"""

    def test_standard_split(self):
        """1000 分，佣金 15%，手续费 2.9% + 30 分。"""
        split = compute_split(1000, 15, 2.9, 30)
        assert split.processor_fee_cents == 59
        assert split.commission_cents == 150
        assert split.seller_net_cents == 791
        assert split.total == 1000

    def test_no_processor_fee(self):
        split = compute_split(500, 20)
        assert split.processor_fee_cents == 0
        assert split.commission_cents == 100
        assert split.seller_net_cents == 400

    def test_commission_rounds_half_up(self):
        # 手续费 28.971 -> 29 + 30 = 59；佣金 149.85 -> 150；净收入取剩余
        split = compute_split(999, 15, 2.9, 30)
        assert split.processor_fee_cents == 59
        assert split.commission_cents == 150
        assert split.seller_net_cents == 790
        assert split.total == 999

    def test_commission_rounds_down_below_half(self):
        """1001 * 15% = 150.15 -> 150，剩余全部归卖家。"""
        split = compute_split(1001, 15, 0, 0)
        assert split.commission_cents == 150
        assert split.seller_net_cents == 851

    def test_commission_exact_half(self):
        # 10 * 15% = 1.5 -> 2
        split = compute_split(10, 15)
        assert split.commission_cents == 2
        assert split.seller_net_cents == 8

    def test_commission_capped_by_fee(self):
        """佣金加手续费超过销售金额时，从佣金中扣减。"""
        split = compute_split(1000, 100, 2.9, 30)
        assert split.processor_fee_cents == 59
        assert split.commission_cents == 941
        assert split.seller_net_cents == 0

    def test_half_up_fee_rounding(self):
        # 50 * 5% = 2.5 -> 3
        split = compute_split(50, 0, 5)
        assert split.processor_fee_cents == 3
        assert split.seller_net_cents == 47
        assert split.commission_cents == 0

    @pytest.mark.parametrize("amount", [0, 1, 7, 99, 1001, 123457])
    def test_parts_always_sum_to_sale(self, amount):
        split = compute_split(amount, 15, 0)
        assert split.total == amount
        assert split.seller_net_cents >= 0
        assert split.commission_cents >= 0

    def test_zero_commission(self):
        split = compute_split(1000, 0)
        assert split.seller_net_cents == 1000
        assert split.commission_cents == 0

    def test_full_commission(self):
        split = compute_split(1000, 100)
        assert split.seller_net_cents == 0
        assert split.commission_cents == 1000

    def test_string_rate_accepted(self):
        split = compute_split(1000, "15", "2.9", 30)
        assert split.seller_net_cents == 791

    @pytest.mark.parametrize("rate", [-1, 100.01, "abc", float("nan"), None, True])
    def test_invalid_commission_rate(self, rate):
        with pytest.raises(InvalidRate):
            compute_split(1000, rate)

    def test_invalid_fee_rate(self):
        with pytest.raises(InvalidRate):
            compute_split(1000, 15, -0.5)

    def test_negative_fixed_fee(self):
        with pytest.raises(InvalidRate):
            compute_split(1000, 15, 0, -1)

    def test_negative_sale_amount(self):
        with pytest.raises(InvalidAmount):
            compute_split(-1, 15)

    def test_non_integer_sale_amount(self):
        with pytest.raises(InvalidAmount):
            compute_split(10.5, 15)

    def test_fee_exceeding_sale(self):
        with pytest.raises(InvalidAmount):
            compute_split(20, 15, 2.9, 30)
