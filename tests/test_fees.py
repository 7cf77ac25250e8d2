"""
Unit tests for fee calculation and registration intents.
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from event_settlement.core.exceptions import PaymentValidationError
from event_settlement.core.fees import calculate_donation_total, calculate_event_total, to_money
from event_settlement.core.intents import (
    DonationIntent,
    EventPaymentIntent,
    dump_intent,
    parse_intent,
)


class TestFeeCalculation:
    """Test suite for event payment pricing."""

    @pytest.mark.unit
    def test_registration_with_guests_and_donation(self) -> None:
        """500 + 2 x 100 + 50 = 750."""
        breakdown = calculate_event_total(
            registration_fee="500", guest_fee="100", guest_count=2, donation_amount="50"
        )

        assert breakdown.total == Decimal("750.00")
        assert breakdown.guest_fees == Decimal("200.00")
        assert breakdown.to_dict()["total"] == "750.00"

    @pytest.mark.unit
    def test_no_guests_no_donation(self) -> None:
        breakdown = calculate_event_total(registration_fee=Decimal("250.50"), guest_fee=0, guest_count=0)
        assert breakdown.total == Decimal("250.50")

    @pytest.mark.unit
    def test_rounds_half_up_to_paise(self) -> None:
        assert to_money("10.005") == Decimal("10.01")
        assert to_money(3) == Decimal("3.00")

    @pytest.mark.unit
    def test_negative_guest_count_rejected(self) -> None:
        with pytest.raises(PaymentValidationError):
            calculate_event_total(registration_fee=100, guest_fee=10, guest_count=-1)

    @pytest.mark.unit
    def test_negative_fee_rejected(self) -> None:
        with pytest.raises(PaymentValidationError):
            calculate_event_total(registration_fee=-1, guest_fee=10, guest_count=1)

    @pytest.mark.unit
    def test_zero_total_rejected(self) -> None:
        """Free registrations do not go through the ledger."""
        with pytest.raises(PaymentValidationError, match="Nothing to pay"):
            calculate_event_total(registration_fee=0, guest_fee=0, guest_count=3)

    @pytest.mark.unit
    def test_donation_must_be_positive(self) -> None:
        assert calculate_donation_total("99.999") == Decimal("100.00")
        with pytest.raises(PaymentValidationError):
            calculate_donation_total(0)


class TestRegistrationIntents:
    """Test suite for the typed intent union."""

    @pytest.mark.unit
    def test_parse_dispatches_on_kind(self) -> None:
        intent = parse_intent(
            {
                "kind": "EVENT_PAYMENT",
                "meal_preference": "vegan",
                "guests": [{"name": "Asha"}],
                "donation_amount": "25.00",
            }
        )

        assert isinstance(intent, EventPaymentIntent)
        assert intent.meal_preference == "VEGAN"
        assert intent.guest_count == 1

        donation = parse_intent({"kind": "DONATION", "amount": "500"})
        assert isinstance(donation, DonationIntent)
        assert donation.amount == Decimal("500")

    @pytest.mark.unit
    def test_stored_form_parses_back(self) -> None:
        intent = EventPaymentIntent(guests=[{"name": "Ravi", "phone": "98450"}])
        assert parse_intent(dump_intent(intent)) == intent

    @pytest.mark.unit
    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_intent({"kind": "MERCH", "amount": "10"})

    @pytest.mark.unit
    def test_invalid_meal_preference_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EventPaymentIntent(meal_preference="PIZZA")

    @pytest.mark.unit
    def test_negative_donation_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EventPaymentIntent(donation_amount=Decimal("-1"))
