import datetime
import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean, Column, Date, ForeignKey, Index, Integer, Numeric, String, Text, Time, TIMESTAMP,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime.datetime:
    """Naive UTC 'now'. Every instant in the database is stored this way."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# --- ENUMS ---
class ConsultationType(PyEnum):
    VIDEO_CALL = "video_call"
    IN_PERSON = "in_person"


class BookingStatus(PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(PyEnum):
    UNPAID = "unpaid"
    PAID = "paid"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)

    # IDs owned by the profile service. No direct DB relationship is enforced.
    pet_owner_id = Column(String(64), index=True, nullable=False)
    vet_id = Column(String(64), index=True, nullable=False)
    pet_id = Column(String(64), nullable=False)

    # Clinic wall-clock values, see policy.booking_window()
    booking_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    consultation_type = Column(SQLEnum(ConsultationType), nullable=False)
    status = Column(SQLEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False, index=True)
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False)

    # Fee in major units as quoted, amount in minor units as charged
    consultation_fee = Column(Numeric(10, 2), nullable=False)
    amount = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    gateway_order_id = Column(String(64), nullable=True, index=True)
    gateway_payment_id = Column(String(64), nullable=True, unique=True)

    meeting_id = Column(String(64), nullable=True)
    participant_meeting_url = Column(Text, nullable=True)
    host_meeting_url = Column(Text, nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, nullable=False)

    transactions = relationship("Transaction", back_populates="booking")


class Transaction(Base):
    """Append-only payment ledger. One row per applied gateway payment."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)

    # Idempotency key for webhook delivery
    gateway_payment_id = Column(String(64), nullable=False, unique=True)
    gateway_order_id = Column(String(64), nullable=False)

    amount = Column(Integer, nullable=False)  # smallest currency unit
    currency = Column(String(3), nullable=False)
    method = Column(String(32), nullable=True)

    applied_at = Column(TIMESTAMP, default=utcnow, nullable=False)

    booking = relationship("Booking", back_populates="transactions")


class ReminderTask(Base):
    __tablename__ = "reminder_tasks"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)

    fire_at = Column(TIMESTAMP, nullable=False)
    cancelled = Column(Boolean, default=False, nullable=False)
    dispatched_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)

    # The sweep only ever looks for outstanding tasks that are due
    __table_args__ = (
        Index('ix_reminder_tasks_due', 'dispatched_at', 'cancelled', 'fire_at'),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been sent
    status = Column(String(20), default="PENDING", nullable=False)

    # The Kafka topic to send the message to
    topic = Column(String(255), nullable=False)

    # The full JSON payload to be sent
    payload = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)

    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
