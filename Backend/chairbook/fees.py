"""
Booking Fee Calculator

Pure functions for splitting a service price into marketplace fees and the
provider's net payout. All amounts are integer cents; Decimal is used only
for the intermediate percentage math so nothing drifts.

Fee Formula:
    platform_fee  = round_half_up(amount * platform_rate)
    processor_fee = round_half_up(amount * processor_rate + processor_fixed)
    combined_fee  = platform_fee + processor_fee
    net_amount    = amount - combined_fee

Example:
    $100.00 -> platform $1.00, processor $3.20, combined $4.20, net $95.80
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from .core.config import get_settings
from .core.errors import ValidationError


CENT = Decimal("1")
DOLLAR_CENTS = Decimal("100")


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a fee calculation, in cents."""

    amount: int
    platform_fee: int
    processor_fee: int
    combined_fee: int
    net_amount: int

    def to_dict(self) -> dict:
        """Convert to dollars for JSON serialization."""
        return {
            "amount": to_dollars(self.amount),
            "platform_fee": to_dollars(self.platform_fee),
            "processor_fee": to_dollars(self.processor_fee),
            "combined_fee": to_dollars(self.combined_fee),
            "net_amount": to_dollars(self.net_amount),
        }


def round_half_up(value: Decimal) -> int:
    """Round a cent amount to the nearest whole cent, halves away from zero."""
    return int(value.quantize(CENT, rounding=ROUND_HALF_UP))


def to_cents(dollars: Decimal | str | float | int) -> int:
    """
    Convert a decimal dollar amount to integer cents.

    Examples:
        to_cents("100.00") == 10000
        to_cents(35) == 3500
    """
    return round_half_up(Decimal(str(dollars)) * DOLLAR_CENTS)


def to_dollars(cents: int) -> Decimal:
    """Convert integer cents to a two-place Decimal for display."""
    return (Decimal(cents) / DOLLAR_CENTS).quantize(Decimal("0.01"))


def compute(
    amount_cents: int,
    platform_rate: Decimal | str | None = None,
    processor_rate: Decimal | str | None = None,
    processor_fixed_cents: int | None = None,
) -> FeeBreakdown:
    """
    Calculate platform fee, processor fee and net payout for a charge.

    Rates default to the configured marketplace rates.

    Args:
        amount_cents: Charge amount in cents (full service price)
        platform_rate: Marketplace percentage cut (e.g. 0.01)
        processor_rate: Processor percentage cut (e.g. 0.029)
        processor_fixed_cents: Processor fixed cut per charge (e.g. 30)

    Returns:
        FeeBreakdown in cents

    Raises:
        ValidationError: If the amount is negative or not an integer
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("amount_cents must be an integer", {"amount_cents": amount_cents})
    if amount_cents < 0:
        raise ValidationError("amount_cents must not be negative", {"amount_cents": amount_cents})

    settings = get_settings()
    platform = Decimal(str(platform_rate if platform_rate is not None else settings.platform_fee_rate))
    processor = Decimal(str(processor_rate if processor_rate is not None else settings.processor_fee_rate))
    fixed = Decimal(
        processor_fixed_cents if processor_fixed_cents is not None else settings.processor_fixed_fee_cents
    )

    amount = Decimal(amount_cents)
    platform_fee = round_half_up(amount * platform)
    processor_fee = round_half_up(amount * processor + fixed)
    combined_fee = platform_fee + processor_fee

    return FeeBreakdown(
        amount=amount_cents,
        platform_fee=platform_fee,
        processor_fee=processor_fee,
        combined_fee=combined_fee,
        net_amount=amount_cents - combined_fee,
    )


def compute_from_dollars(amount: Decimal | str | float | int) -> FeeBreakdown:
    """Convenience wrapper for callers holding a decimal dollar amount."""
    return compute(to_cents(amount))
