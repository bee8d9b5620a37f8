import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, models, schemas
from .config import settings
from .exceptions import InvalidStateTransition
from .gateway import RazorpayClient
from .models import BookingStatus, PaymentStatus, utcnow

logger = logging.getLogger("booking_service")

MINOR_UNITS_PER_MAJOR = 100


def charge_amount(fee: Decimal, service_fee_rate: Optional[Decimal] = None) -> int:
    """
    Consultation fee plus the service surcharge, in the currency's minor unit.
    500 at the default 5% -> 52500.
    """
    rate = settings.SERVICE_FEE_RATE if service_fee_rate is None else service_fee_rate
    total = Decimal(fee) * (Decimal(1) + rate) * MINOR_UNITS_PER_MAJOR
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_order_notes(booking: models.Booking, meeting: Optional[schemas.MeetingDetails] = None) -> dict:
    """
    Metadata echoed back on every payment webhook, so the webhook can find
    the booking without asking the gateway for the order.
    """
    notes = {
        "booking_id": booking.id,
        "user_id": booking.pet_owner_id,
        "vet_id": booking.vet_id,
        "pet_id": booking.pet_id,
        "consultation_type": booking.consultation_type.value,
        "booking_date": booking.booking_date.isoformat(),
        "start_time": booking.start_time.strftime("%H:%M"),
    }
    if meeting is not None:
        notes["meeting_details"] = meeting.model_dump_json(by_alias=True)
    return notes


def _receipt_for(booking: models.Booking) -> str:
    # Gateway limit is 40 characters
    return f"bk_{booking.id.split('-')[0]}_{utcnow():%y%m%d%H%M%S}"


async def create_checkout_session(
        db: Session,
        booking: models.Booking,
        gateway: RazorpayClient,
        meeting: Optional[schemas.MeetingDetails] = None,
) -> schemas.CheckoutSession:
    """
    Creates a gateway order for a pending booking and records it on the booking.
    If the gateway call fails the booking is left untouched and the caller
    may simply retry.
    """
    if booking.status != BookingStatus.PENDING or booking.payment_status != PaymentStatus.UNPAID:
        raise InvalidStateTransition(
            f"Booking {booking.id} is {booking.status.value}/{booking.payment_status.value}; nothing to pay."
        )

    amount = charge_amount(booking.consultation_fee)
    currency = settings.PAYMENT_CURRENCY

    # PaymentGatewayError propagates before any local write
    order = await gateway.create_order(
        amount=amount,
        currency=currency,
        receipt=_receipt_for(booking),
        notes=build_order_notes(booking, meeting),
    )
    logger.info(f"Created gateway order {order['id']} for booking {booking.id} ({amount} {currency}).")

    crud.attach_gateway_order(db, booking.id, order["id"], amount, currency)

    return schemas.CheckoutSession(
        order_id=order["id"],
        amount=order.get("amount", amount),
        currency=order.get("currency", currency),
        gateway_public_key_id=gateway.key_id,
        booking_id=booking.id,
    )
