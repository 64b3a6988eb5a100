# booking_lifecycle/domain/state_machine.py

from enum import Enum
from typing import ClassVar, Dict, Set, Type

from booking_lifecycle.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    FAILED = "failed"


class InventoryState(str, Enum):
    """
    Whether this booking's tickets are currently held in the event ledger.

    UNADJUSTED -> DECREMENTED -> RESTORED is the only legal path, so a
    second decrement or a second restore cannot be expressed.
    """

    UNADJUSTED = "unadjusted"
    DECREMENTED = "decremented"
    RESTORED = "restored"


class CancellationInitiator(str, Enum):
    USER = "user"
    HOST = "host"
    ADMIN = "admin"
    SYSTEM = "system"


class ConfirmationSource(str, Enum):
    WEBHOOK = "webhook"
    VERIFICATION = "verification"
    MANUAL = "manual"


class _StateMachine:
    """
    Transition table shared by the booking and payment lifecycles.
    Subclasses provide the status type and the legal transitions.
    """

    _STATUS_TYPE: ClassVar[Type[Enum]]
    _ALLOWED_TRANSITIONS: ClassVar[Dict[Enum, Set[Enum]]]

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class BookingStateMachine(_StateMachine):
    """
    Central lifecycle controller for booking transitions.
    A cancelled booking is never resurrected.
    """

    _STATUS_TYPE = BookingStatus
    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.CANCELLED,
        },
        BookingStatus.CANCELLED: set(),
    }


class PaymentStateMachine(_StateMachine):
    """
    Legal payment_status transitions.

    FAILED -> REFUND_PENDING covers a capture that arrives after the
    booking was already aborted.
    """

    _STATUS_TYPE = PaymentStatus
    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.PAID,
            PaymentStatus.FAILED,
            PaymentStatus.REFUND_PENDING,
        },
        PaymentStatus.PAID: {
            PaymentStatus.REFUND_PENDING,
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.FAILED: {
            PaymentStatus.REFUND_PENDING,
        },
        PaymentStatus.REFUND_PENDING: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.REFUNDED: set(),
    }
