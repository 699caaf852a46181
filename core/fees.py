# Fee calculation for escrow payments
# All amounts are rand values with two decimal places

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from config import app_config
from database.models import PaymentMethod

CENT = Decimal("0.01")

Number = Union[int, float, str, Decimal]


def to_money(value: Number) -> Decimal:
    """Normalise a number to a two-decimal Decimal."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Number, percent: Number) -> Decimal:
    return to_money(to_money(amount) * Decimal(str(percent)) / Decimal(100))


def payment_fee_percent(method: Union[PaymentMethod, str]) -> float:
    method = PaymentMethod(method)
    if method == PaymentMethod.EFT:
        return app_config.PAYMENT_FEE_EFT
    return app_config.PAYMENT_FEE_CARD


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: Decimal
    payment_fee: Decimal
    platform_fee: Decimal

    @property
    def total_charge(self) -> Decimal:
        """What the client is charged: gross plus the gateway processing fee."""
        return self.gross_amount + self.payment_fee

    @property
    def freelancer_net(self) -> Decimal:
        """What the freelancer receives: gross minus the platform fee."""
        return self.gross_amount - self.platform_fee


def calculate_fees(
    gross_amount: Number,
    method: Union[PaymentMethod, str],
    platform_fee_percent: Optional[float] = None,
) -> FeeBreakdown:
    """
    Compute the fee breakdown for an escrow checkout.

    Args:
        gross_amount: The gig amount agreed between client and freelancer
        method: eft or cc, selects the gateway processing fee
        platform_fee_percent: Override for the configured platform fee

    Returns:
        FeeBreakdown with payment fee, platform fee, total charge and net
    """
    gross = to_money(gross_amount)
    if platform_fee_percent is None:
        platform_fee_percent = app_config.PLATFORM_FEE_PERCENT
    return FeeBreakdown(
        gross_amount=gross,
        payment_fee=percent_of(gross, payment_fee_percent(method)),
        platform_fee=percent_of(gross, platform_fee_percent),
    )


def format_rand(amount: Number) -> str:
    """
    Format an amount for display.

    Args:
        amount: Amount in rand

    Returns:
        Formatted string like "R 2,999.00"
    """
    return f"R {to_money(amount):,.2f}"
