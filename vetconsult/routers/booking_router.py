import logging
from typing import Annotated, List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from .. import crud, meetings, models, policy, schemas
from ..auth import CurrentUser, get_current_user, get_key_by_user_id_or_ip
from ..database import get_db
from ..exceptions import BookingNotFound, InvalidStateTransition, RescheduleNotAllowed
from ..models import BookingStatus, ConsultationType, utcnow

logger = logging.getLogger("booking_service")

router = APIRouter(prefix="/bookings", tags=["Bookings"])

write_limiter = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
read_limiter = RateLimiter(times=60, minutes=1, identifier=get_key_by_user_id_or_ip)


def _is_party(booking: models.Booking, user: CurrentUser) -> bool:
    return user.id in (booking.pet_owner_id, booking.vet_id) or policy.is_elevated(user.role)


def _load_for_user(db: Session, booking_id: str, user: CurrentUser) -> models.Booking:
    """
    Loads a booking the user takes part in. Other people's bookings are
    reported as missing rather than forbidden.
    """
    try:
        booking = crud.get_booking(db, booking_id)
    except BookingNotFound:
        booking = None
    if booking is None or not _is_party(booking, user):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


def _to_detail(booking: models.Booking, user: CurrentUser) -> schemas.BookingDetail:
    now = utcnow()
    start, end = policy.booking_window(booking)
    decision = policy.reschedule_eligibility(now, start, end, user.role)
    if booking.status not in policy.RESCHEDULABLE_STATUSES:
        decision = policy.RescheduleDecision(allowed=False, reason=f"Booking is {booking.status.value}")

    join_state = None
    if booking.consultation_type == ConsultationType.VIDEO_CALL:
        join_state = policy.join_state(now, start, end)

    return schemas.BookingDetail(
        **schemas.BookingRead.model_validate(booking).model_dump(),
        reschedule_allowed=decision.allowed,
        reschedule_reason=decision.reason,
        join_state=join_state,
    )


@router.post("/", response_model=schemas.BookingRead, status_code=status.HTTP_201_CREATED)
async def create_booking(
        booking: schemas.BookingCreate,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter)
):
    """
    Create a draft (pending, unpaid) booking for the authenticated pet owner.
    """
    start = policy.to_instant(booking.booking_date, booking.start_time)
    if start <= utcnow():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Booking time must be in the future."
        )

    try:
        db_booking = crud.create_draft(db=db, booking=booking, pet_owner_id=user.id)
    except Exception as e:
        logger.error(f"Failed to create booking for owner {user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while creating the booking."
        )
    return db_booking


@router.get("/", response_model=List[schemas.BookingRead])
def read_user_bookings(
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        skip: int = 0,
        limit: int = 100,
        limit2: None = Depends(read_limiter)
):
    """
    Get the bookings of the authenticated pet owner, or of the authenticated vet.
    """
    return crud.list_bookings_for_user(db=db, user_id=user.id, role=user.role, skip=skip, limit=limit)


@router.get("/{booking_id}", response_model=schemas.BookingDetail)
def read_booking(
        booking_id: str,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(read_limiter)
):
    """
    A booking together with what the user may currently do with it.
    """
    booking = _load_for_user(db, booking_id, user)
    return _to_detail(booking, user)


@router.get("/{booking_id}/join", response_model=schemas.JoinInfo)
def join_booking(
        booking_id: str,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(read_limiter)
):
    """
    Join-window state of a video consultation. The meeting link is only
    handed out while the window is open: the host link to the vet and
    operators, the participant link to the pet owner.
    """
    booking = _load_for_user(db, booking_id, user)
    if booking.consultation_type != ConsultationType.VIDEO_CALL:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not a video consultation.")
    if booking.status != BookingStatus.CONFIRMED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Booking is {booking.status.value}.")

    start, end = policy.booking_window(booking)
    state = policy.join_state(utcnow(), start, end)

    meeting_url = None
    if state == policy.JoinState.JOINABLE:
        if user.id == booking.vet_id or policy.is_elevated(user.role):
            meeting_url = booking.host_meeting_url or booking.participant_meeting_url
        else:
            meeting_url = booking.participant_meeting_url

    return schemas.JoinInfo(booking_id=booking.id, join_state=state, meeting_url=meeting_url)


@router.post("/{booking_id}/reschedule", response_model=schemas.BookingRead)
async def reschedule_booking(
        booking_id: str,
        request: schemas.RescheduleRequest,
        background_tasks: BackgroundTasks,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter)
):
    """
    Move the appointment. Closed 3 hours before it starts, except for operators.
    A confirmed video consultation gets a fresh room for the new slot.
    """
    _load_for_user(db, booking_id, user)
    try:
        booking = crud.reschedule(
            db,
            booking_id=booking_id,
            new_date=request.booking_date,
            new_start=request.start_time,
            new_end=request.end_time,
            actor_role=user.role,
        )
    except RescheduleNotAllowed as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.reason)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if meetings.needs_meeting(booking):
        background_tasks.add_task(meetings.provision_meeting_in_background, booking.id)
    return booking


@router.post("/{booking_id}/cancel", response_model=schemas.BookingRead)
async def cancel_booking(
        booking_id: str,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter)
):
    _load_for_user(db, booking_id, user)
    try:
        return crud.update_status(db, booking_id, BookingStatus.CANCELLED)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{booking_id}/complete", response_model=schemas.BookingRead)
async def complete_booking(
        booking_id: str,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter)
):
    """
    Mark a consultation as done. Only the vet or an operator may do this.
    """
    booking = _load_for_user(db, booking_id, user)
    if user.id != booking.vet_id and not policy.is_elevated(user.role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the veterinarian can complete a booking.")
    try:
        return crud.update_status(db, booking_id, BookingStatus.COMPLETED)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
