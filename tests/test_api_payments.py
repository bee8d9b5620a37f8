import json

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from vetconsult import models
from vetconsult.models import BookingStatus, ConsultationType, PaymentStatus

from conftest import next_slot

WEBHOOK_URL = "/payments/webhook"


def deliver(client: TestClient, body: bytes, signature: str = None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["X-Razorpay-Signature"] = signature
    return client.post(WEBHOOK_URL, content=body, headers=headers)


def stored_booking(db: Session, booking_id: str) -> models.Booking:
    return db.query(models.Booking).filter(models.Booking.id == booking_id).one()


# --- End to end ---

def test_checkout_then_webhook_confirms_booking(client: TestClient, auth_headers, db_session: Session,
                                                payment_event, signer):
    """Draft, checkout and a verified webhook take a booking to confirmed/paid."""
    start = next_slot()
    draft = client.post("/bookings/", headers=auth_headers(), json={
        "vet_id": "vet-1",
        "pet_id": "pet-1",
        "booking_date": str(start.date()),
        "start_time": "10:00:00",
        "end_time": "10:30:00",
        "consultation_type": "in_person",
        "consultation_fee": "500",
    })
    assert draft.status_code == 201
    booking_id = draft.json()["id"]

    session = client.post("/payments/checkout", json={"booking_id": booking_id}, headers=auth_headers())
    assert session.status_code == 200
    assert session.json() == {
        "order_id": "ord_1",
        "amount": 52500,
        "currency": "INR",
        "gateway_public_key_id": "rzp_test_key",
        "booking_id": booking_id,
    }

    body = payment_event(booking_id, payment_id="pay_1", order_id="ord_1", amount=52500)
    response = deliver(client, body, signer(body))

    assert response.status_code == 200
    assert response.json() == {"status": "applied"}

    booking = stored_booking(db_session, booking_id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.gateway_payment_id == "pay_1"
    transaction = db_session.query(models.Transaction).one()
    assert transaction.gateway_payment_id == "pay_1"
    assert transaction.booking_id == booking_id

    # The confirmation notification waits in the outbox
    payloads = [json.loads(e.payload) for e in db_session.query(models.OutboxEvent).all()]
    assert [p["event"] for p in payloads] == ["booking.confirmed"]
    assert payloads[0]["booking"]["id"] == booking_id


def test_duplicate_delivery_is_acknowledged_once(client: TestClient, make_booking, db_session: Session,
                                                 payment_event, signer):
    booking_id = make_booking().id
    body = payment_event(booking_id)

    first = deliver(client, body, signer(body))
    updated_at = stored_booking(db_session, booking_id).updated_at
    second = deliver(client, body, signer(body))

    assert first.json() == {"status": "applied"}
    assert second.status_code == 200
    assert second.json() == {"status": "already_applied"}
    assert db_session.query(models.Transaction).count() == 1
    assert stored_booking(db_session, booking_id).updated_at == updated_at


# --- Rejections ---

def test_tampered_body_is_rejected(client: TestClient, make_booking, db_session: Session, payment_event, signer):
    booking_id = make_booking().id
    body = payment_event(booking_id)
    signature = signer(body)
    tampered = body.replace(b"52500", b"52501")

    response = deliver(client, tampered, signature)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid webhook signature"
    assert stored_booking(db_session, booking_id).status == BookingStatus.PENDING
    assert db_session.query(models.Transaction).count() == 0


def test_missing_signature_is_rejected(client: TestClient, make_booking, payment_event):
    body = payment_event(make_booking().id)
    assert deliver(client, body).status_code == 400


def test_other_event_kinds_are_ignored(client: TestClient, payment_event, signer):
    body = payment_event("any-booking", event="order.paid")
    response = deliver(client, body, signer(body))
    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}


def test_payment_without_booking_id_is_malformed(client: TestClient, payment_event, signer):
    document = json.loads(payment_event("bk-1"))
    del document["payload"]["payment"]["entity"]["notes"]["booking_id"]
    body = json.dumps(document).encode()

    response = deliver(client, body, signer(body))
    assert response.status_code == 400


def test_payment_for_unknown_booking_is_malformed(client: TestClient, db_session: Session, payment_event, signer):
    body = payment_event("no-such-booking")
    response = deliver(client, body, signer(body))
    assert response.status_code == 400
    assert db_session.query(models.Transaction).count() == 0


def test_payment_for_cancelled_booking_is_a_conflict(client: TestClient, make_booking, db_session: Session,
                                                     payment_event, signer):
    booking_id = make_booking(status=BookingStatus.CANCELLED).id
    body = payment_event(booking_id)

    response = deliver(client, body, signer(body))

    assert response.status_code == 200
    assert response.json() == {"status": "conflict"}
    assert stored_booking(db_session, booking_id).status == BookingStatus.CANCELLED
    assert db_session.query(models.Transaction).count() == 0


# --- Meetings ---

def test_video_confirmation_schedules_meeting_provisioning(client: TestClient, make_booking, payment_event, signer,
                                                           mock_background_tasks):
    booking_id = make_booking(consultation_type=ConsultationType.VIDEO_CALL).id
    body = payment_event(booking_id)

    response = deliver(client, body, signer(body))

    assert response.json() == {"status": "applied"}
    mock_background_tasks.assert_called_once_with(booking_id)


def test_in_person_confirmation_needs_no_meeting(client: TestClient, make_booking, payment_event, signer,
                                                 mock_background_tasks):
    body = payment_event(make_booking().id)
    deliver(client, body, signer(body))
    mock_background_tasks.assert_not_called()


# --- Checkout errors ---

def test_checkout_gateway_failure(client: TestClient, auth_headers, make_booking, db_session: Session, fake_gateway):
    booking_id = make_booking().id
    fake_gateway.fail = True

    response = client.post("/payments/checkout", json={"booking_id": booking_id}, headers=auth_headers())

    assert response.status_code == 502
    assert stored_booking(db_session, booking_id).gateway_order_id is None


def test_checkout_for_someone_elses_booking(client: TestClient, auth_headers, make_booking, fake_gateway):
    booking_id = make_booking(pet_owner_id="owner-2").id
    response = client.post("/payments/checkout", json={"booking_id": booking_id}, headers=auth_headers("owner-1"))
    assert response.status_code == 404
    assert fake_gateway.calls == []


def test_checkout_for_paid_booking(client: TestClient, auth_headers, make_booking):
    booking_id = make_booking(status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.PAID).id
    response = client.post("/payments/checkout", json={"booking_id": booking_id}, headers=auth_headers())
    assert response.status_code == 409


def test_checkout_passes_meeting_hint_to_order_notes(client: TestClient, auth_headers, make_booking, fake_gateway):
    booking_id = make_booking(consultation_type=ConsultationType.VIDEO_CALL).id
    response = client.post("/payments/checkout", headers=auth_headers(), json={
        "booking_id": booking_id,
        "meeting_details": {"meetingId": "mtg_9", "roomUrl": "https://vet.whereby.test/9"},
    })

    assert response.status_code == 200
    hint = json.loads(fake_gateway.calls[0]["notes"]["meeting_details"])
    assert hint["meetingId"] == "mtg_9"


# --- Ledger ---

def test_transactions_visible_to_operators_only(client: TestClient, auth_headers, make_booking, payment_event, signer):
    body = payment_event(make_booking().id)
    deliver(client, body, signer(body))

    admin = client.get("/payments/transactions", headers=auth_headers("ops-1", "admin"))
    owner = client.get("/payments/transactions", headers=auth_headers("owner-1"))

    assert admin.status_code == 200
    assert [t["gateway_payment_id"] for t in admin.json()] == ["pay_1"]
    assert admin.json()[0]["amount"] == 52500
    assert owner.status_code == 403
