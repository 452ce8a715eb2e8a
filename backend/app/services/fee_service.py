"""Platform fee calculation shared by previews and settlement"""
from decimal import Decimal, ROUND_FLOOR
from typing import NamedTuple, Optional

from app.core.config import settings


class FeeBreakdown(NamedTuple):
    gross: int
    fee: int
    net: int

    def to_dict(self):
        return {
            "gross_amount_cents": self.gross,
            "platform_fee_cents": self.fee,
            "net_amount_cents": self.net,
        }


class FeeCalculator:
    """Splits a gross amount into platform fee and net payout.

    fee = floor(gross * rate / 100), net = gross - fee. The rate is fixed at
    construction so a preview and the settlement it precedes always agree.
    """

    def __init__(self, rate_percent: float):
        rate = Decimal(str(rate_percent))
        if rate < 0 or rate >= 100:
            raise ValueError(f"Fee rate must be within [0, 100), got {rate_percent}")
        self.rate_percent = rate

    def calculate(self, gross_cents: int) -> FeeBreakdown:
        fee = int((Decimal(gross_cents) * self.rate_percent / 100).to_integral_value(rounding=ROUND_FLOOR))
        return FeeBreakdown(gross=gross_cents, fee=fee, net=gross_cents - fee)

    def __repr__(self):
        return f"<FeeCalculator(rate={self.rate_percent}%)>"


_default_calculator: Optional[FeeCalculator] = None


def get_fee_calculator() -> FeeCalculator:
    """Calculator built from configuration; FastAPI dependency and service default"""
    global _default_calculator
    if _default_calculator is None:
        _default_calculator = FeeCalculator(settings.PLATFORM_FEE_PERCENTAGE)
    return _default_calculator
