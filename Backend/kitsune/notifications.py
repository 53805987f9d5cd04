"""
Booking notifications.

Delivery (LINE messages, email) belongs to external collaborators. The
lifecycle manager only calls a BookingNotifier after a transition has been
committed; a failing notifier is logged and never rolls anything back.
"""

import logging
from typing import Optional, Protocol

from .models import Booking

logger = logging.getLogger(__name__)


class BookingNotifier(Protocol):
    async def booking_created(self, booking: Booking) -> None: ...

    async def booking_confirmed(self, booking: Booking) -> None: ...

    async def booking_cancelled(self, booking: Booking, reason: Optional[str]) -> None: ...

    async def booking_completed(self, booking: Booking) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the application log."""

    async def booking_created(self, booking: Booking) -> None:
        logger.info(f"[NOTIFY] booking {booking.id} created ({booking.status.value}) for customer {booking.customer_id}")

    async def booking_confirmed(self, booking: Booking) -> None:
        logger.info(f"[NOTIFY] booking {booking.id} confirmed")

    async def booking_cancelled(self, booking: Booking, reason: Optional[str]) -> None:
        logger.info(f"[NOTIFY] booking {booking.id} cancelled by {booking.cancelled_by.value if booking.cancelled_by else '?'}")

    async def booking_completed(self, booking: Booking) -> None:
        logger.info(f"[NOTIFY] booking {booking.id} completed{' (no-show)' if booking.no_show else ''}")


async def notify_safely(coro_factory, event: str, booking_id) -> None:
    """Await a notifier call, logging instead of raising on failure."""
    try:
        await coro_factory()
    except Exception as exc:
        logger.exception(f"Failed to send {event} notification for booking {booking_id}: {exc}")
