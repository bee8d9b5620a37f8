import logging
from typing import Annotated, List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .. import checkout, crud, meetings, policy, schemas, webhooks
from ..auth import CurrentUser, get_current_user, get_key_by_user_id_or_ip
from ..config import settings
from ..database import get_db
from ..exceptions import BookingNotFound, InvalidStateTransition, MalformedEventError, PaymentGatewayError
from ..gateway import RazorpayClient, get_payment_gateway

logger = logging.getLogger("booking_service")

router = APIRouter(prefix="/payments", tags=["Payments"])

SIGNATURE_HEADER = "X-Razorpay-Signature"

checkout_limiter = RateLimiter(times=10, minutes=1, identifier=get_key_by_user_id_or_ip)


@router.post("/checkout", response_model=schemas.CheckoutSession)
async def create_checkout_session(
        request: schemas.CheckoutRequest,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        gateway: RazorpayClient = Depends(get_payment_gateway),
        limit: None = Depends(checkout_limiter)
):
    """
    Create a gateway order for the caller's pending booking. The response
    bootstraps the client-side payment widget.
    """
    try:
        booking = crud.get_booking(db, request.booking_id)
    except BookingNotFound:
        booking = None
    if booking is None or booking.pet_owner_id != user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    try:
        return await checkout.create_checkout_session(db, booking, gateway, request.meeting_details)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PaymentGatewayError as e:
        logger.error(f"Checkout for booking {booking.id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment gateway unavailable. Please retry."
        )


@router.post("/webhook", response_model=schemas.WebhookAck)
async def payment_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
):
    """
    Receives payment events from the gateway.

    200 for every outcome the gateway should not retry (applied, duplicate,
    ignored event kind, conflicting payment); 400 for unverifiable or
    malformed input; 503 when storage is contended so the retry is safe.
    """
    # Signature covers the raw bytes, so read them before any parsing
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    secret = settings.RAZORPAY_WEBHOOK_SECRET.get_secret_value()

    if not webhooks.verify_signature(raw_body, signature, secret):
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected payment webhook from {client_host}: missing or invalid signature.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")

    try:
        event = webhooks.parse_event(raw_body)
        if event is None:
            logger.info("Ignoring webhook event kind that does not affect bookings.")
            return schemas.WebhookAck(status="ignored")
        outcome = webhooks.process_payment_event(db, event)
    except MalformedEventError as e:
        logger.error(f"Malformed payment webhook, needs manual reconciliation: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payment event")
    except OperationalError as e:
        db.rollback()
        logger.error(f"Storage error while applying payment webhook: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")

    if outcome.status == "applied" and meetings.needs_meeting(outcome.booking):
        background_tasks.add_task(meetings.provision_meeting_in_background, outcome.booking.id)

    return schemas.WebhookAck(status=outcome.status)


@router.get("/transactions", response_model=List[schemas.TransactionRead])
def read_transactions(
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        skip: int = 0,
        limit: int = 100,
):
    """
    The payment ledger, newest first. Operators only.
    """
    if not policy.is_elevated(user.role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator access required")
    return crud.list_transactions(db, skip=skip, limit=limit)
