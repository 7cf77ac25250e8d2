"""
Typed registration intents.

An intent is what the user asked for before paying. It rides on the
payment transaction as JSON and is parsed back into one of the variants
below when the payment settles, so settlement dispatches on the type
instead of probing optional keys.
"""
from decimal import Decimal
from uuid import UUID
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

REFERENCE_EVENT_PAYMENT = "EVENT_PAYMENT"
REFERENCE_DONATION = "DONATION"

MEAL_PREFERENCES = ("VEG", "NON_VEG", "VEGAN", "JAIN", "NONE")


class GuestDetails(BaseModel):
    """A guest the registrant brings along."""

    name: str = Field(..., min_length=1, max_length=255, description="Guest name")
    email: Optional[str] = Field(default=None, max_length=255, description="Guest email")
    phone: Optional[str] = Field(default=None, max_length=32, description="Guest phone")
    meal_preference: Optional[str] = Field(default=None, description="Guest meal preference")


class EventPaymentIntent(BaseModel):
    """Registration for an event, paid together with guest fees and an optional donation."""

    kind: Literal["EVENT_PAYMENT"] = "EVENT_PAYMENT"
    meal_preference: Optional[str] = Field(default=None, description="Registrant meal preference")
    guests: List[GuestDetails] = Field(default_factory=list, description="Guests to register")
    donation_amount: Decimal = Field(
        default=Decimal("0"), ge=0, decimal_places=2, description="Voluntary donation"
    )

    @field_validator("meal_preference")
    @classmethod
    def validate_meal_preference(cls, v: Optional[str]) -> Optional[str]:
        """Normalize meal preference."""
        if v is None:
            return v
        v = v.upper()
        if v not in MEAL_PREFERENCES:
            raise ValueError(f"Invalid meal preference. Must be one of: {list(MEAL_PREFERENCES)}")
        return v

    @property
    def guest_count(self) -> int:
        return len(self.guests)


class DonationIntent(BaseModel):
    """Standalone donation, not tied to a registration."""

    kind: Literal["DONATION"] = "DONATION"
    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Donation amount")
    message: Optional[str] = Field(default=None, max_length=1000, description="Donor message")
    event_id: Optional[UUID] = Field(
        default=None, description="Event the donation is earmarked for, if any"
    )


RegistrationIntent = Annotated[
    Union[EventPaymentIntent, DonationIntent], Field(discriminator="kind")
]

_intent_adapter = TypeAdapter(RegistrationIntent)


def parse_intent(data: Dict[str, Any]) -> Union[EventPaymentIntent, DonationIntent]:
    """Parse a stored intent payload back into its typed variant."""
    return _intent_adapter.validate_python(data)


def dump_intent(intent: Union[EventPaymentIntent, DonationIntent]) -> Dict[str, Any]:
    """Serialize an intent for the JSON column."""
    return intent.model_dump(mode="json")
