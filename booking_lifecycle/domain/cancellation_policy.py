"""Cancellation deadline rules.

End users may cancel only while strictly more than the deadline window
remains before the event starts. Hosts, admins and the system itself
(event deletion, capacity loss) are never bound by the deadline.
"""

import os
from dataclasses import dataclass
from datetime import datetime

from booking_lifecycle.domain.clock import as_utc
from booking_lifecycle.domain.state_machine import CancellationInitiator

CANCELLATION_DEADLINE_HOURS = float(os.getenv("CANCELLATION_DEADLINE_HOURS", "48"))

_EXEMPT_INITIATORS = {
    CancellationInitiator.HOST,
    CancellationInitiator.ADMIN,
    CancellationInitiator.SYSTEM,
}


def hours_until(event_starts_at: datetime, now: datetime) -> float:
    return (as_utc(event_starts_at) - as_utc(now)).total_seconds() / 3600


@dataclass(frozen=True)
class CancellationDecision:
    allowed: bool
    hours_until_event: float
    reason: str | None = None


class CancellationPolicy:

    def __init__(self, deadline_hours: float = CANCELLATION_DEADLINE_HOURS):
        self.deadline_hours = deadline_hours

    def evaluate(
        self,
        event_starts_at: datetime,
        initiator: CancellationInitiator,
        now: datetime,
    ) -> CancellationDecision:
        remaining = hours_until(event_starts_at, now)

        if initiator in _EXEMPT_INITIATORS:
            return CancellationDecision(allowed=True, hours_until_event=remaining)

        if remaining > self.deadline_hours:
            return CancellationDecision(allowed=True, hours_until_event=remaining)

        return CancellationDecision(
            allowed=False,
            hours_until_event=remaining,
            reason=(
                f"cancellations close {self.deadline_hours:g} hours before the event "
                f"({remaining:.1f} hours remaining)"
            ),
        )
