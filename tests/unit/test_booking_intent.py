# tests/unit/test_booking_intent.py

import pytest

from booking_lifecycle.domain.booking_intent import BookingIntent, Payer, validate_intent
from booking_lifecycle.domain.exceptions import ValidationError


GUEST = Payer(name="Asha Rao", email="asha@example.com", phone="+91 98000 00000")


def test_signed_in_user_needs_no_contact_details():
    validate_intent(BookingIntent(event_id="evt-1", number_of_tickets=2, payer=Payer(user_id="u-1")))


def test_guest_with_name_and_email_is_valid():
    validate_intent(BookingIntent(event_id="evt-1", number_of_tickets=1, payer=GUEST))


@pytest.mark.parametrize("tickets", [0, -1])
def test_ticket_count_must_be_positive(tickets):
    with pytest.raises(ValidationError) as exc_info:
        validate_intent(BookingIntent(event_id="evt-1", number_of_tickets=tickets, payer=GUEST))

    assert exc_info.value.field == "number_of_tickets"


@pytest.mark.parametrize("tickets", [1.5, "2", True])
def test_ticket_count_must_be_an_integer(tickets):
    with pytest.raises(ValidationError):
        validate_intent(BookingIntent(event_id="evt-1", number_of_tickets=tickets, payer=GUEST))


def test_guest_needs_a_name():
    payer = Payer(name="  ", email="asha@example.com")

    with pytest.raises(ValidationError) as exc_info:
        validate_intent(BookingIntent(event_id="evt-1", number_of_tickets=1, payer=payer))

    assert exc_info.value.field == "guest_name"


@pytest.mark.parametrize("email", [None, "", "not-an-email", "asha@", "asha @example.com"])
def test_guest_needs_a_valid_email(email):
    payer = Payer(name="Asha", email=email)

    with pytest.raises(ValidationError) as exc_info:
        validate_intent(BookingIntent(event_id="evt-1", number_of_tickets=1, payer=payer))

    assert exc_info.value.field == "guest_email"


def test_event_is_required():
    with pytest.raises(ValidationError):
        validate_intent(BookingIntent(event_id="", number_of_tickets=1, payer=GUEST))
