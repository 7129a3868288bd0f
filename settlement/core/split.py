"""
Fee split for a settlement amount.

Integer-only: the fee is floored and any remainder of the division goes to
the seller, so fee + seller always equals the total.
"""

from __future__ import annotations

from settlement.core.errors import EmptyBalance
from settlement.core.models import SplitResult

DEFAULT_FEE_PERCENT = 5


class SplitCalculator:
    def __init__(self, fee_percent: int = DEFAULT_FEE_PERCENT) -> None:
        if isinstance(fee_percent, bool) or not isinstance(fee_percent, int):
            raise TypeError("fee_percent must be an int")
        if not 0 <= fee_percent <= 100:
            raise ValueError("fee_percent must be within [0, 100]")
        self.fee_percent = fee_percent

    def split(self, total: int) -> SplitResult:
        """
        Split `total` smallest token units into (fee, seller).

        Raises EmptyBalance for zero. Negative or non-integer totals are
        caller bugs and raise ValueError/TypeError.
        """
        if isinstance(total, bool) or not isinstance(total, int):
            raise TypeError(f"total must be an int, got {type(total).__name__}")
        if total < 0:
            raise ValueError("total must be non-negative")
        if total == 0:
            raise EmptyBalance("escrow balance is zero")
        fee = total * self.fee_percent // 100
        return SplitResult(total_amount=total, fee_amount=fee, seller_amount=total - fee)

    def seller_only(self, total: int) -> SplitResult:
        """Whole amount to the seller; used when the fee leg already went out."""
        if total <= 0:
            raise EmptyBalance("escrow balance is zero")
        return SplitResult(total_amount=total, fee_amount=0, seller_amount=total)


def split(total: int, fee_percent: int = DEFAULT_FEE_PERCENT) -> SplitResult:
    return SplitCalculator(fee_percent).split(total)
