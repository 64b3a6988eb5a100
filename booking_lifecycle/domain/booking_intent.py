import re
from dataclasses import dataclass

from booking_lifecycle.domain.exceptions import ValidationError

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Payer:
    """Either a signed-in user or a guest with contact details."""

    user_id: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def is_guest(self) -> bool:
        return not self.user_id


@dataclass(frozen=True)
class BookingIntent:
    event_id: str
    number_of_tickets: int
    payer: Payer


def validate_intent(intent: BookingIntent) -> None:
    """
    Raises ValidationError for intents that must never reach persistence.
    """
    if isinstance(intent.number_of_tickets, bool) or not isinstance(intent.number_of_tickets, int):
        raise ValidationError("number_of_tickets must be an integer", field="number_of_tickets")

    if intent.number_of_tickets < 1:
        raise ValidationError(
            "At least one ticket is required",
            field="number_of_tickets",
        )

    if not intent.event_id:
        raise ValidationError("event_id is required", field="event_id")

    payer = intent.payer
    if not payer.is_guest:
        return

    if not payer.name or not payer.name.strip():
        raise ValidationError("Guest checkout requires a name", field="guest_name")

    if not payer.email or not _EMAIL_PATTERN.match(payer.email.strip()):
        raise ValidationError(
            "Guest checkout requires a valid email address",
            field="guest_email",
        )
