

class BookingLifecycleError(Exception):
    """
    Base exception for all domain-level errors
    inside the booking lifecycle coordinator.
    """


class InvalidStateTransitionError(BookingLifecycleError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class ValidationError(BookingLifecycleError):
    """Raised when a booking intent is malformed."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class CapacityExceeded(BookingLifecycleError):
    """Raised when an inventory decrement would drive spots_left below zero."""

    def __init__(self, event_id: str, requested: int, spots_left: int | None = None):
        self.event_id = event_id
        self.requested = requested
        self.spots_left = spots_left

        if spots_left is None:
            message = f"Event {event_id} is full: cannot reserve {requested} spot(s)"
        else:
            message = (
                f"Event {event_id} is full: requested {requested}, "
                f"only {spots_left} spot(s) left"
            )
        super().__init__(message)


class InventoryOverflowError(BookingLifecycleError):
    """Raised when a restore would push spots_left above capacity."""


class InventoryNotFoundError(BookingLifecycleError):
    """Raised when no inventory row exists for an event."""


class StaleState(BookingLifecycleError):
    """
    Raised when a conditional transition finds the booking
    in a different state than the caller expected.
    """

    def __init__(self, booking_id: str, expected: str, actual: str | None = None):
        self.booking_id = booking_id
        self.expected = expected
        self.actual = actual

        message = f"Booking {booking_id} is no longer {expected}"
        if actual is not None:
            message = f"{message} (now {actual})"
        super().__init__(message)


class BookingNotFoundError(BookingLifecycleError):
    """Raised when a booking does not exist."""

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found")


class EventNotFoundError(BookingLifecycleError):
    """Raised when an event does not exist."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} not found")


class CheckoutInitiationFailed(BookingLifecycleError):
    """
    Raised when every attempt to create a hosted checkout session failed.
    The booking stays pending and can be retried later.
    """

    def __init__(
        self,
        booking_id: str,
        attempts: int,
        reason: str,
        booking_reference: str | None = None,
    ):
        self.booking_id = booking_id
        self.attempts = attempts
        self.reason = reason
        self.booking_reference = booking_reference
        super().__init__(
            f"Could not start checkout for booking {booking_reference or booking_id} "
            f"after {attempts} attempt(s): {reason}"
        )


class RefundFailed(BookingLifecycleError):
    """
    Raised by the refund leg of a cancellation.
    Non-fatal: the cancellation itself still completes.
    """

    def __init__(self, booking_id: str, reason: str):
        self.booking_id = booking_id
        self.reason = reason
        super().__init__(f"Refund for booking {booking_id} failed: {reason}")


class NotCancellable(BookingLifecycleError):
    """Raised when a booking is already cancelled or past its deadline."""

    def __init__(self, booking_id: str, reason: str):
        self.booking_id = booking_id
        self.reason = reason
        super().__init__(f"Booking {booking_id} cannot be cancelled: {reason}")


class WebhookVerificationError(BookingLifecycleError):
    """Raised when a payment webhook fails signature verification."""
