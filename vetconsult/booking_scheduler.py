import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import meetings, reminders
from .config import settings
from .database import SessionLocal
from .models import utcnow

# Get the logger
logger = logging.getLogger("booking_service")  # Use the main service logger


async def run_sweep(db: Session, provisioner: Optional[meetings.WherebyProvisioner] = None) -> dict:
    """
    One pass of the periodic work: send due reminders, then retry meeting
    provisioning for confirmed video consultations that still lack a room.
    A failing step is logged and does not stop the other.
    """
    now = utcnow()
    summary = {"reminders": 0, "meetings": 0}

    try:
        summary["reminders"] = reminders.dispatch_due_reminders(db, now)
    except Exception as e:
        logger.error(f"Reminder sweep failed: {e}")
        db.rollback()

    try:
        summary["meetings"] = await meetings.retry_missing_meetings(
            db, provisioner or meetings.get_meeting_provisioner(), now
        )
    except Exception as e:
        logger.error(f"Meeting retry sweep failed: {e}")
        db.rollback()

    return summary


async def run_booking_scheduler():
    """
    Main background loop for the scheduler.
    """
    while True:
        logger.info("Scheduler waking up to check reminders and pending meetings...")
        db: Session = SessionLocal()
        try:
            await run_sweep(db)
        except Exception as e:
            logger.error(f"Error in booking scheduler loop: {e}")
            db.rollback()
        finally:
            db.close()

        # Wait for the next poll interval
        await asyncio.sleep(settings.SCHEDULER_POLL_INTERVAL_SECONDS)
