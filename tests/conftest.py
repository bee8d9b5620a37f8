# Settings are read at import time, so the environment goes first
import os

os.environ["DATABASE_URL"] = "sqlite:///./test_vetconsult.db"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ALGORITHM"] = "HS256"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["WHEREBY_API_KEY"] = "whereby_test_key"
os.environ["CLINIC_TIMEZONE"] = "UTC"

import datetime
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

# Import your application code
from vetconsult.main import app
from vetconsult.config import settings
from vetconsult.database import Base, get_db
from vetconsult.exceptions import MeetingProvisioningError, PaymentGatewayError
from vetconsult.gateway import get_payment_gateway
from vetconsult.routers import booking_router, payment_router
from vetconsult import models, schemas, webhooks

# --- Test Database Setup ---
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_vetconsult.db"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)


# pysqlite does not emit BEGIN itself, which breaks SAVEPOINT. Let SQLAlchemy do it.
@event.listens_for(engine, "connect")
def _disable_pysqlite_begin(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# --- Database Management Fixtures ---
@pytest.fixture(scope="session", autouse=True)
def setup_db():
    """Creates and drops the test database tables."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """
    Provides a clean database session for each test. Commits and rollbacks
    inside the code under test act on a savepoint of the outer transaction.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection, join_transaction_mode="create_savepoint")
    yield session
    session.close()
    transaction.rollback()
    connection.close()


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Mocks the background tasks started on app lifespan, the rate limiter's
    Redis bootstrap and the post-webhook meeting provisioning.
    """
    mocker.patch("vetconsult.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("vetconsult.main.run_booking_scheduler", new_callable=AsyncMock)
    mocker.patch("vetconsult.main.FastAPILimiter.init", new_callable=AsyncMock)
    return mocker.patch("vetconsult.meetings.provision_meeting_in_background", new_callable=AsyncMock)


class FakeGateway:
    """Stands in for the Razorpay client."""
    key_id = "rzp_test_key"

    def __init__(self):
        self.order_id = "ord_1"
        self.fail = False
        self.calls = []

    async def create_order(self, amount, currency, receipt, notes):
        self.calls.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        if self.fail:
            raise PaymentGatewayError("gateway down")
        return {"id": self.order_id, "amount": amount, "currency": currency,
                "receipt": receipt, "status": "created", "notes": notes}


class FakeProvisioner:
    """Stands in for the Whereby client."""

    def __init__(self):
        self.fail = False
        self.calls = []

    async def provision(self, booking):
        self.calls.append(booking.id)
        if self.fail:
            raise MeetingProvisioningError("provider down")
        n = len(self.calls)
        return schemas.MeetingDetails(
            meeting_id=f"mtg_{n}",
            room_url=f"https://vet.whereby.test/room-{n}",
            host_room_url=f"https://vet.whereby.test/room-{n}?roomKey=host",
        )


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_provisioner():
    return FakeProvisioner()


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(db_session, fake_gateway):
    """Provides a TestClient for the booking service."""
    def override_get_db():
        try:
            yield db_session
        finally:
            db_session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    for limiter in (booking_router.write_limiter, booking_router.read_limiter, payment_router.checkout_limiter):
        app.dependency_overrides[limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


# --- Helpers ---
def create_test_token(user_id: str = "owner-1", role: str = "pet_owner") -> str:
    payload = {"sub": user_id, "role": role}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


@pytest.fixture
def auth_headers():
    """Provides a factory for authorization headers (default: pet owner 'owner-1')."""
    def _headers(user_id: str = "owner-1", role: str = "pet_owner") -> dict:
        return {"Authorization": create_test_token(user_id, role)}
    return _headers


def next_slot(days: int = 2, hour: int = 10) -> datetime.datetime:
    """A whole-hour start time some days from now (clinic zone is UTC in tests)."""
    now = models.utcnow()
    return (now + datetime.timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)


@pytest.fixture
def make_booking(db_session):
    """Inserts a booking directly, bypassing the API."""
    def _make(
            start: datetime.datetime = None,
            duration: datetime.timedelta = datetime.timedelta(minutes=30),
            consultation_type: models.ConsultationType = models.ConsultationType.IN_PERSON,
            status: models.BookingStatus = models.BookingStatus.PENDING,
            payment_status: models.PaymentStatus = models.PaymentStatus.UNPAID,
            pet_owner_id: str = "owner-1",
            vet_id: str = "vet-1",
            fee: Decimal = Decimal("500"),
            **extra,
    ) -> models.Booking:
        start = start or next_slot()
        end = start + duration
        booking = models.Booking(
            pet_owner_id=pet_owner_id,
            vet_id=vet_id,
            pet_id="pet-1",
            booking_date=start.date(),
            start_time=start.time(),
            end_time=end.time(),
            consultation_type=consultation_type,
            status=status,
            payment_status=payment_status,
            consultation_fee=fee,
            **extra,
        )
        db_session.add(booking)
        db_session.commit()
        db_session.refresh(booking)
        return booking
    return _make


def payment_event_body(
        booking_id: str,
        user_id: str = "owner-1",
        payment_id: str = "pay_1",
        order_id: str = "ord_1",
        amount: int = 52500,
        event: str = "payment.captured",
        meeting_details: str = None,
) -> bytes:
    notes = {"booking_id": booking_id, "user_id": user_id}
    if meeting_details is not None:
        notes["meeting_details"] = meeting_details
    document = {
        "entity": "event",
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "entity": "payment",
                    "order_id": order_id,
                    "amount": amount,
                    "currency": "INR",
                    "method": "upi",
                    "status": "captured",
                    "notes": notes,
                }
            }
        },
    }
    return json.dumps(document).encode("utf-8")


def sign(body: bytes) -> str:
    return webhooks.compute_signature(body, settings.RAZORPAY_WEBHOOK_SECRET.get_secret_value())


@pytest.fixture
def payment_event():
    return payment_event_body


@pytest.fixture
def signer():
    return sign
