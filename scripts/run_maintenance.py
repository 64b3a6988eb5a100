"""Scheduled housekeeping: abort abandoned checkouts and queue reminders.

Run from cron every few minutes, e.g. ``python -m scripts.run_maintenance``.
"""

import logging
import os

from booking_lifecycle.application.booking_service import BookingService
from booking_lifecycle.infrastructure.db.session import get_db_session
from booking_lifecycle.infrastructure.payments.razorpay_gateway import get_payment_processor

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> None:
    processor = get_payment_processor()
    with get_db_session() as db:
        service = BookingService(db, processor)
        aborted = service.abort_stale_pending()
        reminded = service.send_event_reminders()
    logger.info("Maintenance complete. aborted=%s reminded=%s", aborted, reminded)


if __name__ == "__main__":
    main()
