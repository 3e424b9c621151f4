"""
计算层
纯函数式的数值工具：四舍五入（ROUND_HALF_UP）、换算、涨跌幅、图表统计
所有层共用同一套舍入规则：内部汇率 4 位小数，换算金额 / 百分比 2 位小数
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from fx_service.models.domain import ChartStatistics

RATE_PLACES = 4
AMOUNT_PLACES = 2

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class Calculator:
    """汇率计算器，无状态"""

    # ── 舍入 ──────────────────────────────────────────────

    @staticmethod
    def round_half_up(value: Decimal, places: int) -> Decimal:
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)

    # ── 换算 / 涨跌幅 ─────────────────────────────────────

    def convert(self, amount: Decimal, rate: Decimal) -> Decimal:
        """金额 × 汇率，保留 2 位小数"""
        return self.round_half_up(amount * rate, AMOUNT_PLACES)

    def change_percent(self, current: Decimal, previous: Decimal) -> Decimal:
        """(current - previous) / previous × 100，previous 为 0 时返回 0"""
        if previous == 0:
            return self.round_half_up(_ZERO, AMOUNT_PLACES)
        return self.round_half_up((current - previous) / previous * _HUNDRED, AMOUNT_PLACES)

    # ── 统计 ──────────────────────────────────────────────

    def statistics(self, rates: Sequence[Decimal]) -> ChartStatistics:
        """最高 / 最低 / 均值（4 位）/ 样本标准差（2 位）"""
        if not rates:
            return ChartStatistics(high=_ZERO, low=_ZERO, average=_ZERO, std_dev=_ZERO)

        mean = sum(rates, _ZERO) / Decimal(len(rates))
        return ChartStatistics(
            high=max(rates),
            low=min(rates),
            average=self.round_half_up(mean, RATE_PLACES),
            std_dev=self.round_half_up(self.sample_std_dev(rates, mean), AMOUNT_PLACES),
        )

    def sample_std_dev(self, rates: Sequence[Decimal], mean: Optional[Decimal] = None) -> Decimal:
        if len(rates) < 2:
            return _ZERO
        if mean is None:
            mean = sum(rates, _ZERO) / Decimal(len(rates))
        variance = sum(((r - mean) ** 2 for r in rates), _ZERO) / Decimal(len(rates) - 1)
        return self.sqrt(variance)

    @staticmethod
    def sqrt(value: Decimal, places: int = 10, max_iterations: int = 100) -> Decimal:
        """牛顿迭代开平方"""
        if value < 0:
            raise ValueError("cannot take square root of a negative number")
        if value == 0:
            return _ZERO

        tolerance = Decimal(1).scaleb(-places)
        guess = value if value > 1 else Decimal(1)
        for _ in range(max_iterations):
            nxt = (guess + value / guess) / 2
            if abs(nxt - guess) < tolerance:
                return nxt
            guess = nxt
        return guess


# ── 模块级别单例 ──────────────────────────────────────────
_calculator: Optional[Calculator] = None


def get_calculator() -> Calculator:
    global _calculator
    if _calculator is None:
        _calculator = Calculator()
    return _calculator
