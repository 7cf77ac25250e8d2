"""Registration fee calculation."""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from event_settlement.core.exceptions import PaymentValidationError

TWO_PLACES = Decimal("0.01")

Amount = Union[Decimal, int, str]


def to_money(value: Amount) -> Decimal:
    """Quantize an amount to two decimal places."""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeBreakdown:
    """Itemized amount for one event payment."""

    registration_fee: Decimal
    guest_fees: Decimal
    donation_amount: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "registration_fee": str(self.registration_fee),
            "guest_fees": str(self.guest_fees),
            "donation_amount": str(self.donation_amount),
            "total": str(self.total),
        }


def calculate_event_total(
    registration_fee: Amount,
    guest_fee: Amount,
    guest_count: int,
    donation_amount: Amount = Decimal("0"),
) -> FeeBreakdown:
    """
    Compute what a registration costs.

    total = registration_fee + guest_count * guest_fee + donation_amount

    Raises:
        PaymentValidationError: On negative inputs or a zero total. Events
            with nothing to pay are registered by the event service directly;
            a zero-amount order would be refused by Razorpay, so no
            transaction is opened for them here.
    """
    if guest_count < 0:
        raise PaymentValidationError("Guest count cannot be negative")

    fee = to_money(registration_fee)
    per_guest = to_money(guest_fee)
    donation = to_money(donation_amount)

    if fee < 0 or per_guest < 0 or donation < 0:
        raise PaymentValidationError("Fees and donation must not be negative")

    guest_fees = to_money(per_guest * guest_count)
    total = to_money(fee + guest_fees + donation)

    if total <= 0:
        raise PaymentValidationError("Nothing to pay for this registration")

    return FeeBreakdown(
        registration_fee=fee,
        guest_fees=guest_fees,
        donation_amount=donation,
        total=total,
    )


def calculate_donation_total(amount: Amount) -> Decimal:
    """Validate and quantize a standalone donation."""
    total = to_money(amount)
    if total <= 0:
        raise PaymentValidationError("Donation amount must be positive")
    return total
