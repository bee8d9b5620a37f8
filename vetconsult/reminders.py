"""
Reminder scheduling.

A reminder is a persisted ReminderTask row rather than an in-process timer,
so pending reminders survive restarts. The booking scheduler sweeps due
tasks and re-checks the booking before anything is sent.
"""
import datetime
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models, notifications, policy
from .models import BookingStatus, PaymentStatus, utcnow

logger = logging.getLogger("booking_service")

SWEEP_BATCH_SIZE = 100


def _is_remindable(booking: models.Booking) -> bool:
    return booking.status == BookingStatus.CONFIRMED and booking.payment_status == PaymentStatus.PAID


def _outstanding_tasks(db: Session, booking_id: str) -> list[models.ReminderTask]:
    return db.query(models.ReminderTask).filter(
        models.ReminderTask.booking_id == booking_id,
        models.ReminderTask.cancelled.is_(False),
        models.ReminderTask.dispatched_at.is_(None),
    ).all()


def schedule(db: Session, booking: models.Booking, now: Optional[datetime.datetime] = None) -> Optional[models.ReminderTask]:
    """
    Derives the reminder for the booking's current schedule and makes the
    outstanding tasks match it. Stale tasks are cancelled; a task is only
    created for a confirmed, paid booking whose reminder time is still ahead.

    Note: Does NOT commit. The caller commits with the booking change.
    """
    now = now or utcnow()
    start, _ = policy.booking_window(booking)
    fire_at = policy.reminder_fire_at(start)

    current = None
    for task in _outstanding_tasks(db, booking.id):
        if task.fire_at == fire_at and current is None:
            current = task
        else:
            task.cancelled = True
            logger.info(f"Cancelled stale reminder {task.id} for booking {booking.id} (was {task.fire_at}).")

    if not _is_remindable(booking):
        if current is not None:
            current.cancelled = True
        return None

    if current is not None:
        return current

    if fire_at <= now:
        logger.info(f"Reminder time {fire_at} for booking {booking.id} has passed. Not scheduling.")
        return None

    task = models.ReminderTask(booking_id=booking.id, fire_at=fire_at)
    db.add(task)
    logger.info(f"Scheduled reminder for booking {booking.id} at {fire_at}.")
    return task


def cancel_for_booking(db: Session, booking_id: str) -> int:
    """
    Cancels every outstanding reminder of a booking.
    Note: Does NOT commit.
    """
    tasks = _outstanding_tasks(db, booking_id)
    for task in tasks:
        task.cancelled = True
    if tasks:
        logger.info(f"Cancelled {len(tasks)} reminder(s) for booking {booking_id}.")
    return len(tasks)


def _still_due(booking: Optional[models.Booking], task: models.ReminderTask, now: datetime.datetime) -> bool:
    """Re-checks the booking as it is now, not as it was when the task was made."""
    if booking is None or not _is_remindable(booking):
        return False
    start, _ = policy.booking_window(booking)
    if policy.reminder_fire_at(start) != task.fire_at:
        return False
    # A sweep that runs late must not remind about an appointment in progress
    return now < start


def dispatch_due_reminders(db: Session, now: Optional[datetime.datetime] = None) -> int:
    """
    Sends every reminder whose time has come. Each task is claimed with a
    conditional update, so concurrent sweeps send it at most once.
    Returns the number of reminders queued for delivery.
    """
    now = now or utcnow()
    due_tasks = db.query(models.ReminderTask).filter(
        models.ReminderTask.dispatched_at.is_(None),
        models.ReminderTask.cancelled.is_(False),
        models.ReminderTask.fire_at <= now,
    ).order_by(models.ReminderTask.fire_at).limit(SWEEP_BATCH_SIZE).all()

    if not due_tasks:
        return 0

    logger.info(f"Found {len(due_tasks)} due reminder(s).")
    sent = 0
    for task in due_tasks:
        try:
            booking = db.get(models.Booking, task.booking_id)
            if not _still_due(booking, task, now):
                task.cancelled = True
                db.commit()
                logger.info(f"Dropped reminder {task.id}: booking {task.booking_id} changed since scheduling.")
                continue

            claimed = db.execute(
                update(models.ReminderTask)
                .where(
                    models.ReminderTask.id == task.id,
                    models.ReminderTask.dispatched_at.is_(None),
                    models.ReminderTask.cancelled.is_(False),
                )
                .values(dispatched_at=now)
            ).rowcount
            if claimed != 1:
                continue  # another sweep got there first

            notifications.enqueue(db, notifications.BOOKING_REMINDER, booking)
            db.commit()
            sent += 1
        except Exception as e:
            logger.error(f"Failed to dispatch reminder {task.id} for booking {task.booking_id}: {e}")
            db.rollback()
            continue

    if sent:
        logger.info(f"Queued {sent} reminder(s) for delivery.")
    return sent
