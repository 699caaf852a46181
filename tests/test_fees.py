"""Fee arithmetic for escrow checkouts."""
from decimal import Decimal

from core.fees import calculate_fees, format_rand, percent_of, to_money
from database.models import PaymentMethod


def test_eft_checkout_breakdown():
    fees = calculate_fees("1000", PaymentMethod.EFT)

    assert fees.gross_amount == Decimal("1000.00")
    assert fees.payment_fee == Decimal("8.50")
    assert fees.platform_fee == Decimal("100.00")
    assert fees.total_charge == Decimal("1008.50")
    assert fees.freelancer_net == Decimal("900.00")


def test_card_fee_is_charged_on_top():
    fees = calculate_fees(Decimal("2000.00"), "cc")

    assert fees.payment_fee == Decimal("70.00")
    assert fees.total_charge == Decimal("2070.00")
    # The processing fee never reduces what the freelancer receives
    assert fees.freelancer_net == Decimal("1800.00")


def test_platform_fee_override():
    fees = calculate_fees(500, PaymentMethod.EFT, platform_fee_percent=15)

    assert fees.platform_fee == Decimal("75.00")
    assert fees.freelancer_net == Decimal("425.00")


def test_rounding_is_half_up_to_cents():
    assert to_money(0.005) == Decimal("0.01")
    assert to_money("10.125") == Decimal("10.13")
    assert percent_of("333.33", "0.85") == Decimal("2.83")


def test_format_rand():
    assert format_rand(2999) == "R 2,999.00"
    assert format_rand("4500.5") == "R 4,500.50"
