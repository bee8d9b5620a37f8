"""
Video-meeting provisioning against the Whereby REST API.

Provisioning happens after the payment has committed and is never allowed to
undo it. A booking without a meeting stays confirmed/paid; the booking
scheduler keeps retrying until the room exists or the appointment is over.
"""
import datetime
import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from . import crud, models, policy, schemas
from .config import settings
from .database import SessionLocal
from .exceptions import BookingNotFound, MeetingProvisioningError
from .models import BookingStatus, ConsultationType, PaymentStatus, utcnow

logger = logging.getLogger("booking_service")

# Whereby rejects longer prefixes
ROOM_NAME_PREFIX = "vetconsult"
MAX_ROOM_PREFIX_LENGTH = 16

# Room stays open a little past the scheduled end
ROOM_GRACE = datetime.timedelta(minutes=30)


def _iso_utc(instant: datetime.datetime) -> str:
    return instant.replace(microsecond=0).isoformat() + "Z"


class WherebyProvisioner:

    def __init__(
            self,
            api_key: str,
            base_url: str,
            timeout: float,
            transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def provision(self, booking: models.Booking) -> schemas.MeetingDetails:
        """
        Creates a room scoped to the appointment's time window.
        Raises MeetingProvisioningError on any failure, including timeouts.
        """
        start, end = policy.booking_window(booking)
        body = {
            "startDate": _iso_utc(start - policy.JOIN_WINDOW_LEAD),
            "endDate": _iso_utc(end + ROOM_GRACE),
            "roomNamePrefix": ROOM_NAME_PREFIX[:MAX_ROOM_PREFIX_LENGTH],
            "roomMode": "normal",
            "fields": ["hostRoomUrl"],
        }
        try:
            async with httpx.AsyncClient(
                    base_url=self.base_url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    timeout=self.timeout,
                    transport=self._transport,
            ) as client:
                response = await client.post("/meetings", json=body)
        except httpx.TimeoutException as e:
            raise MeetingProvisioningError(f"Meeting provider timed out: {e}") from e
        except httpx.HTTPError as e:
            raise MeetingProvisioningError(f"Meeting provider request failed: {e}") from e

        if response.status_code >= 400:
            raise MeetingProvisioningError(f"Meeting provider returned HTTP {response.status_code}")

        try:
            return schemas.MeetingDetails.model_validate(response.json())
        except ValueError as e:
            raise MeetingProvisioningError("Meeting provider response is missing meetingId/roomUrl") from e


def get_meeting_provisioner() -> WherebyProvisioner:
    return WherebyProvisioner(
        api_key=settings.WHEREBY_API_KEY.get_secret_value(),
        base_url=settings.WHEREBY_API_URL,
        timeout=settings.OUTBOUND_TIMEOUT_SECONDS,
    )


def needs_meeting(booking: models.Booking) -> bool:
    return (
        booking.consultation_type == ConsultationType.VIDEO_CALL
        and booking.status == BookingStatus.CONFIRMED
        and booking.payment_status == PaymentStatus.PAID
        and booking.participant_meeting_url is None
    )


async def ensure_meeting(db: Session, booking_id: str, provisioner: WherebyProvisioner) -> Optional[models.Booking]:
    """
    Provisions and stores a meeting if the booking still needs one.
    Failures are logged and reported as None: the booking is left in its
    "meeting pending" state for the next retry.
    """
    try:
        booking = crud.get_booking(db, booking_id)
    except BookingNotFound:
        logger.error(f"Cannot provision meeting: booking {booking_id} not found.")
        return None

    if not needs_meeting(booking):
        return booking

    try:
        meeting = await provisioner.provision(booking)
    except MeetingProvisioningError as e:
        logger.error(f"Meeting provisioning failed for booking {booking_id}: {e}. Will retry.")
        return None

    booking, attached = crud.attach_meeting(db, booking_id, meeting)
    if not attached:
        # Someone else stored a room first; ours is simply left unused
        logger.info(f"Booking {booking_id} already had a meeting. Discarded room {meeting.meeting_id}.")
    return booking


async def provision_meeting_in_background(booking_id: str):
    """
    Post-confirmation step run after the webhook has responded.
    Uses its own session: the request's session is closed by then.
    """
    db: Session = SessionLocal()
    try:
        await ensure_meeting(db, booking_id, get_meeting_provisioner())
    except Exception as e:
        logger.error(f"Unexpected error provisioning meeting for booking {booking_id}: {e}")
        db.rollback()
    finally:
        db.close()


async def retry_missing_meetings(db: Session, provisioner: WherebyProvisioner, now: Optional[datetime.datetime] = None) -> int:
    """
    Retries provisioning for confirmed video bookings that still have no room
    and have not ended yet. Returns the number of meetings attached.
    """
    now = now or utcnow()
    candidates = db.query(models.Booking).filter(
        models.Booking.consultation_type == ConsultationType.VIDEO_CALL,
        models.Booking.status == BookingStatus.CONFIRMED,
        models.Booking.payment_status == PaymentStatus.PAID,
        models.Booking.participant_meeting_url.is_(None),
        models.Booking.booking_date >= (now - datetime.timedelta(days=1)).date(),
    ).all()

    attached = 0
    for booking in candidates:
        _, end = policy.booking_window(booking)
        if end < now:
            continue
        result = await ensure_meeting(db, booking.id, provisioner)
        if result is not None and result.participant_meeting_url:
            attached += 1

    if attached:
        logger.info(f"Provisioned {attached} missing meeting(s).")
    return attached
