import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import BookingStatus, ConsultationType, PaymentStatus
from .policy import JoinState


class BookingBase(BaseModel):
    vet_id: str
    pet_id: str
    booking_date: datetime.date
    start_time: datetime.time
    end_time: datetime.time
    consultation_type: ConsultationType
    notes: Optional[str] = None


class BookingCreate(BookingBase):
    # pet_owner_id will come from the JWT token
    consultation_fee: Decimal = Field(gt=0, max_digits=10, decimal_places=2)

    @model_validator(mode="after")
    def check_times(self):
        if self.end_time <= self.start_time:
            raise ValueError("Booking end time must be after start time.")
        return self


class BookingRead(BookingBase):
    id: str
    pet_owner_id: str
    status: BookingStatus
    payment_status: PaymentStatus
    consultation_fee: Decimal
    amount: Optional[int] = None
    currency: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    meeting_id: Optional[str] = None
    participant_meeting_url: Optional[str] = None
    host_meeting_url: Optional[str] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    class Config:
        from_attributes = True


class BookingDetail(BookingRead):
    reschedule_allowed: bool
    reschedule_reason: Optional[str] = None
    join_state: Optional[JoinState] = None


class RescheduleRequest(BaseModel):
    booking_date: datetime.date
    start_time: datetime.time
    end_time: datetime.time

    @model_validator(mode="after")
    def check_times(self):
        if self.end_time <= self.start_time:
            raise ValueError("Booking end time must be after start time.")
        return self


class JoinInfo(BaseModel):
    booking_id: str
    join_state: JoinState
    meeting_url: Optional[str] = None


class MeetingDetails(BaseModel):
    """
    A video room. Accepts the provider's camelCase keys as well, since the
    same shape travels through the gateway order notes.
    """
    model_config = ConfigDict(populate_by_name=True)

    meeting_id: str = Field(alias="meetingId")
    room_url: str = Field(alias="roomUrl")
    host_room_url: Optional[str] = Field(default=None, alias="hostRoomUrl")


# --- Checkout ---

class CheckoutRequest(BaseModel):
    booking_id: str
    meeting_details: Optional[MeetingDetails] = None


class CheckoutSession(BaseModel):
    order_id: str
    amount: int
    currency: str
    gateway_public_key_id: str
    booking_id: str


class TransactionRead(BaseModel):
    id: int
    booking_id: str
    gateway_payment_id: str
    gateway_order_id: str
    amount: int
    currency: str
    method: Optional[str] = None
    applied_at: datetime.datetime

    class Config:
        from_attributes = True


# --- Payment webhook events ---
# Only the event kinds we act on are modelled. Anything else is acknowledged
# and dropped before it reaches these classes.

PAYMENT_EVENT_KINDS = ("payment.authorized", "payment.captured")


class PaymentNotes(BaseModel):
    booking_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    meeting_details: Optional[str] = None


class PaymentEntity(BaseModel):
    id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    amount: int
    currency: str
    method: Optional[str] = None
    status: Optional[str] = None
    email: Optional[str] = None
    notes: PaymentNotes


class PaymentEntityWrapper(BaseModel):
    entity: PaymentEntity


class PaymentPayload(BaseModel):
    payment: PaymentEntityWrapper


class PaymentEvent(BaseModel):
    event: Literal["payment.authorized", "payment.captured"]
    payload: PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity


class WebhookAck(BaseModel):
    status: Literal["applied", "already_applied", "ignored", "conflict"]
