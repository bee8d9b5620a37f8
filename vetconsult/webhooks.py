"""
Payment webhook verification and processing.

The gateway delivers at least once, possibly concurrently and out of order.
Authenticity is established from the raw body before anything is parsed;
idempotency comes from crud.apply_payment_confirmation.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .crud import ConfirmationOutcome
from .exceptions import BookingNotFound, InvalidStateTransition, MalformedEventError

logger = logging.getLogger("booking_service")


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    HMAC-SHA256 over the exact bytes received, compared in constant time.
    """
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))


def parse_event(raw_body: bytes) -> Optional[schemas.PaymentEvent]:
    """
    Returns the payment event, or None for event kinds we do not act on.
    Raises MalformedEventError when a payment event is missing required fields.
    """
    try:
        document = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedEventError(f"Webhook body is not JSON: {e}") from e

    if not isinstance(document, dict) or not isinstance(document.get("event"), str):
        raise MalformedEventError("Webhook body has no event kind")

    if document["event"] not in schemas.PAYMENT_EVENT_KINDS:
        return None

    try:
        return schemas.PaymentEvent.model_validate(document)
    except ValidationError as e:
        raise MalformedEventError(f"Payment event is missing required fields: {e.error_count()} error(s)") from e


def parse_meeting_hint(raw: Optional[str]) -> Optional[schemas.MeetingDetails]:
    """Meeting details pre-provisioned at checkout. Unusable hints are dropped."""
    if not raw:
        return None
    try:
        return schemas.MeetingDetails.model_validate_json(raw)
    except ValidationError:
        logger.warning("Could not parse meeting details from payment notes. Ignoring them.")
        return None


@dataclass
class WebhookOutcome:
    status: str  # applied | already_applied | conflict
    booking: Optional[models.Booking] = None


def process_payment_event(db: Session, event: schemas.PaymentEvent) -> WebhookOutcome:
    """
    Applies a verified payment event to its booking.

    Raises MalformedEventError if the event points at a booking that does not
    exist or belongs to someone else. A payment that cannot confirm its
    booking (already cancelled, or confirmed by another payment) is a
    conflict: logged for reconciliation and acknowledged.
    """
    payment = event.payment
    notes = payment.notes

    try:
        booking = crud.get_booking(db, notes.booking_id)
    except BookingNotFound as e:
        raise MalformedEventError(f"Payment {payment.id} references unknown booking {notes.booking_id}") from e

    if booking.pet_owner_id != notes.user_id:
        raise MalformedEventError(
            f"Payment {payment.id} user does not own booking {booking.id}"
        )

    if booking.amount is not None and booking.amount != payment.amount:
        logger.warning(
            f"Payment {payment.id} amount {payment.amount} differs from booking {booking.id} "
            f"charge {booking.amount}. Applying it; flagged for reconciliation."
        )

    try:
        result = crud.apply_payment_confirmation(
            db,
            booking_id=booking.id,
            gateway_order_id=payment.order_id,
            gateway_payment_id=payment.id,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method,
            meeting=parse_meeting_hint(notes.meeting_details),
        )
    except InvalidStateTransition as e:
        logger.warning(f"Payment {payment.id} not applied: {e} Needs manual reconciliation.")
        return WebhookOutcome(status="conflict", booking=booking)

    if result.outcome == ConfirmationOutcome.ALREADY_APPLIED:
        return WebhookOutcome(status="already_applied", booking=result.booking)
    return WebhookOutcome(status="applied", booking=result.booking)
