import datetime
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, notifications, policy, reminders, schemas
from .exceptions import BookingNotFound, InvalidStateTransition, RescheduleNotAllowed
from .models import BookingStatus, PaymentStatus, utcnow

logger = logging.getLogger("booking_service")


class ConfirmationOutcome(Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


@dataclass
class ConfirmationResult:
    booking: models.Booking
    outcome: ConfirmationOutcome


def get_booking(db: Session, booking_id: str) -> models.Booking:
    booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
    if booking is None:
        raise BookingNotFound(booking_id)
    return booking


def _reload(db: Session, booking_id: str) -> models.Booking:
    # Conditional updates bypass the identity map, so read the row again
    booking = get_booking(db, booking_id)
    db.refresh(booking)
    return booking


def create_draft(db: Session, booking: schemas.BookingCreate, pet_owner_id: str) -> models.Booking:
    """
    Creates a pending, unpaid booking. Payment is set up separately by checkout.
    """
    now = utcnow()
    db_booking = models.Booking(
        **booking.model_dump(),
        pet_owner_id=pet_owner_id,
        status=BookingStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        created_at=now,
        updated_at=now,
    )
    db.add(db_booking)
    db.commit()
    db.refresh(db_booking)
    logger.info(f"Created draft booking {db_booking.id} for owner {pet_owner_id}.")
    return db_booking


def list_bookings_for_user(db: Session, user_id: str, role: Optional[str], skip: int = 0, limit: int = 100):
    """Pet owners see the bookings they made; vets see the ones assigned to them."""
    query = db.query(models.Booking)
    if role == "vet":
        query = query.filter(models.Booking.vet_id == user_id)
    else:
        query = query.filter(models.Booking.pet_owner_id == user_id)
    return query.order_by(
        models.Booking.booking_date, models.Booking.start_time
    ).offset(skip).limit(limit).all()


def list_transactions(db: Session, skip: int = 0, limit: int = 100):
    return db.query(models.Transaction).order_by(
        models.Transaction.applied_at.desc(), models.Transaction.id.desc()
    ).offset(skip).limit(limit).all()


def attach_gateway_order(db: Session, booking_id: str, gateway_order_id: str, amount: int, currency: str) -> models.Booking:
    """
    Records the gateway order created for a pending booking. A new checkout
    for the same booking replaces the previous order.
    """
    result = db.execute(
        update(models.Booking)
        .where(
            models.Booking.id == booking_id,
            models.Booking.status == BookingStatus.PENDING,
            models.Booking.payment_status == PaymentStatus.UNPAID,
        )
        .values(
            gateway_order_id=gateway_order_id,
            amount=amount,
            currency=currency,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        booking = get_booking(db, booking_id)
        raise InvalidStateTransition(
            f"Booking {booking_id} is {booking.status.value}/{booking.payment_status.value}; checkout needs a pending, unpaid booking."
        )
    db.commit()
    return _reload(db, booking_id)


def _ledger_booking_id(db: Session, gateway_payment_id: str) -> Optional[str]:
    row = db.query(models.Transaction.booking_id).filter(
        models.Transaction.gateway_payment_id == gateway_payment_id
    ).first()
    return row[0] if row is not None else None


def _already_recorded(db: Session, booking_id: str, gateway_payment_id: str) -> bool:
    """
    True if the ledger holds this payment for this booking. A payment that
    was credited to a different booking is a conflict, never a duplicate.
    """
    recorded_for = _ledger_booking_id(db, gateway_payment_id)
    if recorded_for is None:
        return False
    if recorded_for != booking_id:
        raise InvalidStateTransition(
            f"Payment {gateway_payment_id} is recorded against booking {recorded_for}, not {booking_id}."
        )
    return True


def _classify_unapplied(db: Session, booking_id: str, gateway_payment_id: str) -> ConfirmationResult:
    """
    The conditional update matched nothing. Either this very payment already
    confirmed the booking (a duplicate that lost the race) or the booking is
    in a state that cannot take a payment.
    """
    booking = _reload(db, booking_id)
    if booking.gateway_payment_id == gateway_payment_id:
        return ConfirmationResult(booking=booking, outcome=ConfirmationOutcome.ALREADY_APPLIED)
    raise InvalidStateTransition(
        f"Booking {booking_id} is {booking.status.value}; payment {gateway_payment_id} cannot confirm it."
    )


def apply_payment_confirmation(
        db: Session,
        booking_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        amount: int,
        currency: str,
        method: Optional[str] = None,
        meeting: Optional[schemas.MeetingDetails] = None,
        now: Optional[datetime.datetime] = None,
) -> ConfirmationResult:
    """
    Moves a pending booking to confirmed/paid for a verified payment.

    The booking row is changed with a single compare-and-set on its status
    and the ledger row is keyed by the gateway payment id, so a payment is
    credited at most once however often, and however concurrently, the
    gateway delivers it. Redelivery is reported as ALREADY_APPLIED.
    The reminder and the confirmation notification commit with the payment.
    """
    now = now or utcnow()

    if _already_recorded(db, booking_id, gateway_payment_id):
        logger.info(f"Payment {gateway_payment_id} already applied. Skipping.")
        return ConfirmationResult(booking=get_booking(db, booking_id), outcome=ConfirmationOutcome.ALREADY_APPLIED)

    values = {
        "status": BookingStatus.CONFIRMED,
        "payment_status": PaymentStatus.PAID,
        "gateway_order_id": gateway_order_id,
        "gateway_payment_id": gateway_payment_id,
        "updated_at": now,
    }
    if meeting is not None:
        # Never overwrite a meeting that is already on the booking
        values["meeting_id"] = func.coalesce(models.Booking.meeting_id, meeting.meeting_id)
        values["participant_meeting_url"] = func.coalesce(models.Booking.participant_meeting_url, meeting.room_url)
        values["host_meeting_url"] = func.coalesce(models.Booking.host_meeting_url, meeting.host_room_url)

    try:
        result = db.execute(
            update(models.Booking)
            .where(
                models.Booking.id == booking_id,
                models.Booking.status == BookingStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return _classify_unapplied(db, booking_id, gateway_payment_id)

        db.add(models.Transaction(
            booking_id=booking_id,
            gateway_payment_id=gateway_payment_id,
            gateway_order_id=gateway_order_id,
            amount=amount,
            currency=currency,
            method=method,
            applied_at=now,
        ))
        db.flush()
    except IntegrityError:
        # A concurrent delivery of the same payment committed first
        db.rollback()
        if not _already_recorded(db, booking_id, gateway_payment_id):
            raise InvalidStateTransition(
                f"Payment {gateway_payment_id} is already linked to another booking; cannot confirm {booking_id}."
            )
        logger.warning(f"Payment {gateway_payment_id} was recorded concurrently. Treating as already applied.")
        return ConfirmationResult(booking=_reload(db, booking_id), outcome=ConfirmationOutcome.ALREADY_APPLIED)

    booking = _reload(db, booking_id)
    reminders.schedule(db, booking, now)
    notifications.enqueue(db, notifications.BOOKING_CONFIRMED, booking)
    db.commit()
    db.refresh(booking)

    logger.info(f"Booking {booking_id} confirmed by payment {gateway_payment_id} (order {gateway_order_id}).")
    return ConfirmationResult(booking=booking, outcome=ConfirmationOutcome.APPLIED)


def attach_meeting(
        db: Session,
        booking_id: str,
        meeting: schemas.MeetingDetails,
        now: Optional[datetime.datetime] = None,
) -> tuple[models.Booking, bool]:
    """
    Stores a provisioned meeting on a confirmed booking unless one is already
    there. Returns the booking and whether this call attached the meeting.
    """
    result = db.execute(
        update(models.Booking)
        .where(
            models.Booking.id == booking_id,
            models.Booking.status == BookingStatus.CONFIRMED,
            models.Booking.participant_meeting_url.is_(None),
        )
        .values(
            meeting_id=meeting.meeting_id,
            participant_meeting_url=meeting.room_url,
            host_meeting_url=meeting.host_room_url,
            updated_at=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    booking = _reload(db, booking_id)
    if result.rowcount != 1:
        return booking, False

    notifications.enqueue(db, notifications.BOOKING_MEETING_READY, booking)
    db.commit()
    db.refresh(booking)
    logger.info(f"Attached meeting {meeting.meeting_id} to booking {booking_id}.")
    return booking, True


def reschedule(
        db: Session,
        booking_id: str,
        new_date: datetime.date,
        new_start: datetime.time,
        new_end: datetime.time,
        actor_role: Optional[str],
        now: Optional[datetime.datetime] = None,
) -> models.Booking:
    """
    Moves the appointment. Status and payment linkage stay as they are.
    A stored meeting room is scoped to the old slot, so it is released in
    the same write; the caller (or the sweep) provisions one for the new
    slot. The time-window policy is evaluated here, at write time, and the
    write only lands if the schedule is still the one that was checked.
    """
    now = now or utcnow()
    booking = get_booking(db, booking_id)

    if booking.status not in policy.RESCHEDULABLE_STATUSES:
        raise InvalidStateTransition(f"Booking {booking_id} is {booking.status.value} and cannot be rescheduled.")

    start, end = policy.booking_window(booking)
    decision = policy.reschedule_eligibility(now, start, end, actor_role)
    if not decision.allowed:
        raise RescheduleNotAllowed(decision.reason)

    if new_end <= new_start:
        raise RescheduleNotAllowed("Booking end time must be after start time.")
    if policy.to_instant(new_date, new_start) <= now:
        raise RescheduleNotAllowed("New appointment time must be in the future.")

    result = db.execute(
        update(models.Booking)
        .where(
            models.Booking.id == booking_id,
            models.Booking.status.in_(policy.RESCHEDULABLE_STATUSES),
            models.Booking.booking_date == booking.booking_date,
            models.Booking.start_time == booking.start_time,
            models.Booking.end_time == booking.end_time,
        )
        .values(
            booking_date=new_date,
            start_time=new_start,
            end_time=new_end,
            meeting_id=None,
            participant_meeting_url=None,
            host_meeting_url=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateTransition(f"Booking {booking_id} changed while it was being rescheduled. Reload and retry.")

    if booking.meeting_id is not None:
        logger.info(f"Released meeting {booking.meeting_id} of booking {booking_id}; it was scoped to the old slot.")
    booking = _reload(db, booking_id)
    reminders.schedule(db, booking, now)
    notifications.enqueue(db, notifications.BOOKING_RESCHEDULED, booking)
    db.commit()
    db.refresh(booking)

    logger.info(f"Booking {booking_id} rescheduled to {new_date} {new_start}-{new_end}.")
    return booking


def update_status(
        db: Session,
        booking_id: str,
        new_status: BookingStatus,
        now: Optional[datetime.datetime] = None,
) -> models.Booking:
    """
    Applies a status change allowed by the transition table. Confirmation is
    not available here: only a verified payment confirms a booking.
    """
    now = now or utcnow()
    booking = get_booking(db, booking_id)
    current = booking.status

    if new_status == BookingStatus.CONFIRMED or not policy.can_transition(current, new_status):
        raise InvalidStateTransition(
            f"Booking {booking_id} cannot go from {current.value} to {new_status.value}."
        )

    result = db.execute(
        update(models.Booking)
        .where(models.Booking.id == booking_id, models.Booking.status == current)
        .values(status=new_status, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateTransition(f"Booking {booking_id} changed while updating its status. Reload and retry.")

    booking = _reload(db, booking_id)
    reminders.cancel_for_booking(db, booking_id)
    if new_status == BookingStatus.CANCELLED:
        notifications.enqueue(db, notifications.BOOKING_CANCELLED, booking)
    db.commit()
    db.refresh(booking)

    logger.info(f"Booking {booking_id} moved from {current.value} to {new_status.value}.")
    return booking
