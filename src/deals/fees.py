"""Platform fee schedule.

The fee is deducted from what the deliverer receives:
  Payer pays 100,000 -> platform keeps 17,500 -> deliverer receives 82,500.

The fee is ``floor(amount * rate)`` clamped to ``[min_fee, max_fee]``. Amounts
are integers in minor units of the ledger currency.
"""

from decimal import ROUND_DOWN, Decimal
from typing import Callable, Optional

from src.config import config
from src.models import FeeBreakdown

FeeSchedule = Callable[[int], int]


class PlatformFeeSchedule:
    """Deterministic, monotonic fee function of the gross amount."""

    def __init__(
        self,
        rate: Optional[float] = None,
        min_fee: Optional[int] = None,
        max_fee: Optional[int] = None,
    ):
        self.rate = config.platform_fee_rate if rate is None else rate
        self.min_fee = config.platform_min_fee if min_fee is None else min_fee
        self.max_fee = config.platform_max_fee if max_fee is None else max_fee

    def __call__(self, amount: int) -> int:
        fee = int((Decimal(amount) * Decimal(str(self.rate))).to_integral_value(rounding=ROUND_DOWN))
        if self.max_fee is not None:
            fee = min(fee, self.max_fee)
        fee = max(self.min_fee, fee)
        # never take more than the payment itself
        return min(fee, amount)

    @property
    def percentage(self) -> str:
        return f"{self.rate * 100:.1f}%"

    def breakdown(self, amount: int) -> FeeBreakdown:
        """Split a gross amount into fee and net."""
        fee = self(amount)
        return FeeBreakdown(
            gross_amount=amount,
            fee_amount=fee,
            net_amount=amount - fee,
            fee_rate=self.rate,
            fee_percentage=self.percentage,
        )


def calculate_platform_fee(amount: int, schedule: Optional[FeeSchedule] = None) -> FeeBreakdown:
    """Compute the gross/fee/net split of an amount.

    Args:
        amount: Gross amount in minor units.
        schedule: Fee function; defaults to the configured platform schedule.

    Returns:
        The fee breakdown.
    """
    schedule = schedule or PlatformFeeSchedule()
    if isinstance(schedule, PlatformFeeSchedule):
        return schedule.breakdown(amount)

    fee = schedule(amount)
    rate = fee / amount if amount else 0.0
    return FeeBreakdown(
        gross_amount=amount,
        fee_amount=fee,
        net_amount=amount - fee,
        fee_rate=rate,
        fee_percentage=f"{rate * 100:.1f}%",
    )
