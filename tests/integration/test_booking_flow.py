import json

from tests.fakes import WEBHOOK_SIGNATURE, sign


def _create_event(client, total_seats=10, price=1800):
    response = client.post(
        "/events",
        json={
            "name": "Sunidhi Chauhan Live Concert",
            "date_time": "2026-12-20T19:30:00+05:30",
            "location": "Indira Gandhi Arena, New Delhi",
            "seatings": [
                {"seat_type": "Regular", "price": price, "total_seats": total_seats},
            ],
        },
    )
    assert response.status_code == 200
    body = response.json()
    return body["id"], body["seatings"][0]["id"]


def test_lock_confirm_flow(client):
    event_id, seating_id = _create_event(client, total_seats=10)

    lock_response = client.post(
        "/bookings/lock",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 3},
        headers={"X-User-Id": "user1"},
    )
    assert lock_response.status_code == 200
    locked = lock_response.json()
    assert locked["seat_type"] == "Regular"
    assert locked["quantity"] == 3
    assert locked["locked_seats"] == 3
    assert locked["remaining_seats"] == 7
    assert locked["status"] == "available"

    confirm_response = client.post(
        "/bookings/confirm",
        json={
            "event_id": event_id,
            "seating_id": seating_id,
            "quantity": 3,
            "lock_id": locked["lock_id"],
        },
    )
    assert confirm_response.status_code == 200
    assert confirm_response.json()["locked_seats"] == 0
    assert confirm_response.json()["remaining_seats"] == 7

    repeat = client.post(
        "/bookings/confirm",
        json={
            "event_id": event_id,
            "seating_id": seating_id,
            "quantity": 3,
            "lock_id": locked["lock_id"],
        },
    )
    assert repeat.status_code == 409
    assert repeat.json()["code"] == "NOTHING_TO_CONFIRM"

    oversell = client.post(
        "/bookings/lock",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 8},
    )
    assert oversell.status_code == 409
    assert oversell.json()["detail"] == "Only 7 seats available. You requested 8"
    assert oversell.json()["remaining"] == 7


def test_cancel_returns_seats(client):
    event_id, seating_id = _create_event(client, total_seats=4)
    locked = client.post(
        "/bookings/lock",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 4},
    ).json()
    assert locked["status"] == "sold_out"

    response = client.post(
        "/bookings/cancel",
        json={
            "event_id": event_id,
            "seating_id": seating_id,
            "quantity": 4,
            "lock_id": locked["lock_id"],
        },
    )

    assert response.status_code == 200
    assert response.json()["remaining_seats"] == 4


def test_invalid_requests(client):
    event_id, seating_id = _create_event(client)

    zero = client.post(
        "/bookings/lock",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 0},
    )
    assert zero.status_code == 400
    assert zero.json()["code"] == "VALIDATION_ERROR"

    missing = client.post(
        "/bookings/lock",
        json={"event_id": event_id, "seating_id": "nope", "quantity": 1},
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


def test_payment_checkout_and_verify(client, gateway):
    event_id, seating_id = _create_event(client, total_seats=10, price=1800)

    order_response = client.post(
        "/payments/orders",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 2},
        headers={"X-User-Id": "user1"},
    )
    assert order_response.status_code == 200
    order = order_response.json()
    assert order["status"] == "PENDING"
    assert order["amount"] == 1800 * 2 * 100
    assert order["key_id"] == "rzp_test_key"

    verify_response = client.post(
        f"/payments/orders/{order['order_id']}/verify",
        json={
            "razorpay_order_id": order["remote_order_id"],
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": sign(order["remote_order_id"], "pay_1"),
        },
    )
    assert verify_response.status_code == 200
    assert verify_response.json()["status"] == "CAPTURED"

    availability = client.get(f"/events/{event_id}/seatings/{seating_id}/availability").json()
    assert availability["seats_sold"] == 2
    assert availability["locked_seats"] == 0

    webhook = client.post(
        "/payments/webhook",
        content=json.dumps(
            {
                "event": "payment.captured",
                "payload": {
                    "payment": {
                        "entity": {"id": "pay_1", "order_id": order["remote_order_id"]},
                    },
                },
            }
        ),
        headers={"X-Razorpay-Signature": WEBHOOK_SIGNATURE},
    )
    assert webhook.status_code == 200
    assert webhook.json()["status"] == "processed"

    availability = client.get(f"/events/{event_id}/seatings/{seating_id}/availability").json()
    assert availability["seats_sold"] == 2

    refund = client.post(f"/payments/orders/{order['order_id']}/refund", json={})
    assert refund.status_code == 200
    assert refund.json()["status"] == "REFUNDED"
    assert gateway.refunds[0]["payment_id"] == "pay_1"


def test_gateway_outage_returns_502_and_frees_seats(client, gateway):
    event_id, seating_id = _create_event(client, total_seats=5)
    gateway.fail_create = True

    response = client.post(
        "/payments/orders",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 5},
    )

    assert response.status_code == 502
    assert response.json()["code"] == "UPSTREAM_PAYMENT_ERROR"
    availability = client.get(f"/events/{event_id}/seatings/{seating_id}/availability").json()
    assert availability["remaining_seats"] == 5


def test_invalid_signature_returns_502(client):
    event_id, seating_id = _create_event(client, total_seats=5)
    order = client.post(
        "/payments/orders",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 1},
    ).json()

    response = client.post(
        f"/payments/orders/{order['order_id']}/verify",
        json={
            "razorpay_order_id": order["remote_order_id"],
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "forged",
        },
    )

    assert response.status_code == 502
    assert client.get(f"/payments/orders/{order['order_id']}").json()["status"] == "FAILED"


def test_webhook_rejects_bad_signature(client):
    response = client.post(
        "/payments/webhook",
        content='{"event": "payment.captured"}',
        headers={"X-Razorpay-Signature": "forged"},
    )

    assert response.status_code == 400


def test_webhook_with_undecodable_body_is_rejected(client):
    response = client.post(
        "/payments/webhook",
        content=b"\xff\xfe{\"event\": \"payment.captured\"}",
        headers={"X-Razorpay-Signature": WEBHOOK_SIGNATURE},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_paid_lock_is_confirmed_only_by_payment(client, gateway):
    event_id, seating_id = _create_event(client, total_seats=10)
    order = client.post(
        "/payments/orders",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 2},
    ).json()

    confirm = client.post(
        "/bookings/confirm",
        json={
            "event_id": event_id,
            "seating_id": seating_id,
            "quantity": 2,
            "lock_id": order["lock_id"],
        },
    )
    assert confirm.status_code == 409
    assert confirm.json()["code"] == "NOTHING_TO_CONFIRM"

    verify = client.post(
        f"/payments/orders/{order['order_id']}/verify",
        json={
            "razorpay_order_id": order["remote_order_id"],
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": sign(order["remote_order_id"], "pay_1"),
        },
    )
    assert verify.status_code == 200
    assert verify.json()["status"] == "CAPTURED"
    assert gateway.refunds == []

    availability = client.get(f"/events/{event_id}/seatings/{seating_id}/availability").json()
    assert availability["seats_sold"] == 2
    assert availability["locked_seats"] == 0


def test_category_archive_and_sweep(client):
    event_id, seating_id = _create_event(client, total_seats=5)
    client.post(
        "/bookings/lock",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 1},
    )

    removal = client.delete(f"/events/{event_id}/seatings/{seating_id}")
    assert removal.status_code == 200
    assert removal.json()["action"] == "archived"
    assert client.get(f"/events/{event_id}/availability").json() == []

    sweep = client.post("/maintenance/sweep")
    assert sweep.status_code == 200
    assert sweep.json()["errors"] == 0


def test_outbox_listing_and_publish(client):
    event_id, seating_id = _create_event(client, total_seats=5)
    locked = client.post(
        "/bookings/lock",
        json={"event_id": event_id, "seating_id": seating_id, "quantity": 1},
    ).json()
    client.post(
        "/bookings/cancel",
        json={
            "event_id": event_id,
            "seating_id": seating_id,
            "quantity": 1,
            "lock_id": locked["lock_id"],
        },
    )

    events = client.get("/outbox/events").json()
    assert [event["event_type"] for event in events] == ["SEATS_RELEASED"]

    published = client.post(f"/outbox/events/{events[0]['id']}/mark-published")
    assert published.status_code == 200
    assert published.json()["status"] == "PUBLISHED"
    assert client.get("/outbox/events").json() == []


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
