import json
import logging

from sqlalchemy.orm import Session

from . import models, schemas
from .config import settings

logger = logging.getLogger("booking_service")

BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_MEETING_READY = "booking.meeting_ready"
BOOKING_RESCHEDULED = "booking.rescheduled"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_REMINDER = "booking.reminder"


def enqueue(db: Session, event_type: str, booking: models.Booking) -> models.OutboxEvent:
    """
    Adds a notification event for the email service to the outbox.
    Note: Does NOT commit. The caller commits it together with the booking
    change that triggered it, and the outbox poller delivers it later.
    """
    db.flush()  # make sure server-side defaults are populated for the snapshot
    snapshot = schemas.BookingRead.model_validate(booking).model_dump(mode="json")
    payload = {
        "event": event_type,
        "booking": snapshot,
    }

    db_outbox_event = models.OutboxEvent(
        topic=settings.KAFKA_NOTIFICATION_TOPIC,
        payload=json.dumps(payload),
        status="PENDING"
    )
    db.add(db_outbox_event)
    logger.info(f"Queued '{event_type}' notification for booking {booking.id}.")
    return db_outbox_event
