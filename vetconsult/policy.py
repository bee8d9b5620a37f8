"""
Time-window and state-transition rules for bookings.

Everything here is a pure function of its arguments. The mutation path
(crud.reschedule) and the read-only views (GET /bookings/{id}, /join)
call the same functions so they can never disagree.
"""
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from .config import settings
from .models import BookingStatus

RESCHEDULE_CUTOFF = datetime.timedelta(hours=3)
JOIN_WINDOW_LEAD = datetime.timedelta(minutes=15)
REMINDER_LEAD = datetime.timedelta(minutes=30)

# Operator roles bypass the reschedule cutoff
ELEVATED_ROLES = frozenset({"admin", "superadmin"})

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

# Statuses in which the appointment may still move
RESCHEDULABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def is_elevated(role: Optional[str]) -> bool:
    return role in ELEVATED_ROLES


# --- Wall clock -> instant ---

def to_instant(day: datetime.date, wall_time: datetime.time, tz_name: Optional[str] = None) -> datetime.datetime:
    """
    Combines a clinic-local date and time into a naive UTC instant.
    """
    zone = ZoneInfo(tz_name or settings.CLINIC_TIMEZONE)
    local = datetime.datetime.combine(day, wall_time).replace(tzinfo=zone)
    return local.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def booking_window(booking, tz_name: Optional[str] = None) -> tuple[datetime.datetime, datetime.datetime]:
    """Returns the (start, end) instants of a booking."""
    start = to_instant(booking.booking_date, booking.start_time, tz_name)
    end = to_instant(booking.booking_date, booking.end_time, tz_name)
    return start, end


# --- Reschedule eligibility ---

@dataclass(frozen=True)
class RescheduleDecision:
    allowed: bool
    reason: Optional[str] = None


def reschedule_eligibility(
        now: datetime.datetime,
        booking_start: datetime.datetime,
        booking_end: datetime.datetime,
        actor_role: Optional[str],
) -> RescheduleDecision:
    """
    Rescheduling closes 3 hours before the appointment starts. The boundary
    itself is already closed. Elevated roles are never cut off.
    """
    if is_elevated(actor_role):
        return RescheduleDecision(allowed=True)
    if now >= booking_start - RESCHEDULE_CUTOFF:
        return RescheduleDecision(
            allowed=False,
            reason="Cannot reschedule within 3 hours of appointment time",
        )
    return RescheduleDecision(allowed=True)


# --- Video join window ---

class JoinState(str, Enum):
    TOO_EARLY = "too_early"
    JOINABLE = "joinable"
    ENDED = "ended"


def join_state(
        now: datetime.datetime,
        booking_start: datetime.datetime,
        booking_end: datetime.datetime,
) -> JoinState:
    if now < booking_start - JOIN_WINDOW_LEAD:
        return JoinState.TOO_EARLY
    if now > booking_end:
        return JoinState.ENDED
    return JoinState.JOINABLE


# --- Reminders ---

def reminder_fire_at(booking_start: datetime.datetime) -> datetime.datetime:
    return booking_start - REMINDER_LEAD
