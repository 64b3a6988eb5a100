from booking_lifecycle.infrastructure.payments.gateway import TransientPaymentError

VALID_SIGNATURE = "valid-signature"


def _create_event(client, capacity=10, date_time="2026-03-10T19:00:00+00:00"):
    response = client.post(
        "/events",
        json={
            "title": "Supper Club",
            "host_id": "host-1",
            "date_time": date_time,
            "price_per_ticket": "750.00",
            "capacity": capacity,
        },
    )
    assert response.status_code == 201
    return response.json()["id"]


def _checkout(client, event_id, tickets=2):
    return client.post(
        f"/events/{event_id}/checkout",
        json={
            "number_of_tickets": tickets,
            "guest_name": "Asha Rao",
            "guest_email": "asha@example.com",
        },
    )


def _post_webhook(client, body, delivery_id, signature=VALID_SIGNATURE):
    return client.post(
        "/payments/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Razorpay-Signature": signature,
            "X-Razorpay-Event-Id": delivery_id,
        },
    )


def test_booking_flow(client, processor, make_webhook_body):
    event_id = _create_event(client, capacity=10)

    response = _checkout(client, event_id, tickets=2)

    assert response.status_code == 201
    checkout = response.json()
    booking_id = checkout["booking_id"]
    assert checkout["status"] == "pending"
    assert checkout["checkout_url"].endswith(checkout["session_id"])

    payment_reference = processor.pay(checkout["session_id"])
    webhook = _post_webhook(
        client,
        make_webhook_body("checkout.paid", session_id=checkout["session_id"], payment_reference=payment_reference),
        "evt-1",
    )
    assert webhook.status_code == 200
    assert webhook.json()["action"] == "confirmed"

    booking = client.get(f"/bookings/{booking_id}").json()
    assert booking["status"] == "confirmed"
    assert booking["payment_status"] == "paid"
    assert booking["total_amount"] == "1500.00"
    assert client.get(f"/events/{event_id}").json()["spots_left"] == 8

    by_reference = client.get(f"/bookings/reference/{checkout['booking_reference']}")
    assert by_reference.json()["booking_id"] == booking_id

    cancel = client.post(f"/bookings/{booking_id}/cancel", json={"reason": "plans changed"})
    assert cancel.status_code == 200
    assert cancel.json()["booking"]["payment_status"] == "refunded"
    assert cancel.json()["refund_pending"] is False
    assert client.get(f"/events/{event_id}").json()["spots_left"] == 10


def test_outbox_publishing(client, processor):
    event_id = _create_event(client)
    checkout = _checkout(client, event_id, tickets=1).json()
    processor.pay(checkout["session_id"])
    client.post("/payments/verify", json={"session_id": checkout["session_id"]})

    pending = client.get("/outbox/events").json()
    assert [item["event_type"] for item in pending] == ["BOOKING_CONFIRMED"]

    published = client.post(f"/outbox/events/{pending[0]['id']}/mark-published")
    assert published.status_code == 200
    assert published.json()["status"] == "PUBLISHED"
    assert client.get("/outbox/events").json() == []


def test_duplicate_webhook_delivery(client, processor, make_webhook_body):
    event_id = _create_event(client, capacity=4)
    checkout = _checkout(client, event_id, tickets=2).json()
    payment_reference = processor.pay(checkout["session_id"])
    body = make_webhook_body("checkout.paid", session_id=checkout["session_id"], payment_reference=payment_reference)

    assert _post_webhook(client, body, "evt-7").json()["action"] == "confirmed"
    assert _post_webhook(client, body, "evt-7").json()["action"] == "duplicate"
    assert client.get(f"/events/{event_id}").json()["spots_left"] == 2


def test_bad_webhook_signature_is_rejected(client, make_webhook_body):
    response = _post_webhook(client, make_webhook_body("checkout.paid"), "evt-1", signature="forged")

    assert response.status_code == 400


def test_manual_confirmation(client):
    event_id = _create_event(client, capacity=3)
    checkout = _checkout(client, event_id, tickets=1).json()

    first = client.post(f"/bookings/{checkout['booking_id']}/confirm")
    second = client.post(f"/bookings/{checkout['booking_id']}/confirm")

    assert first.json()["confirmed"] is True
    assert first.json()["booking"]["confirmation_source"] == "manual"
    assert second.json()["confirmed"] is False
    assert client.get(f"/events/{event_id}").json()["spots_left"] == 2


def test_unknown_resources_return_404(client):
    assert client.get("/bookings/missing").status_code == 404
    assert client.get("/bookings/reference/BK-NOPE").status_code == 404
    assert client.get("/events/missing").status_code == 404
    assert _checkout(client, "missing").status_code == 404


def test_invalid_ticket_count_returns_422(client):
    event_id = _create_event(client)

    response = _checkout(client, event_id, tickets=0)

    assert response.status_code == 422
    assert response.json()["detail"]["field"] == "number_of_tickets"


def test_sold_out_event_returns_409(client):
    event_id = _create_event(client, capacity=1)

    assert _checkout(client, event_id, tickets=2).status_code == 409


def test_late_user_cancellation_returns_409(client, processor):
    # Fixture clock is 2026-03-01 12:00 UTC, so this event is 30 hours out.
    event_id = _create_event(client, date_time="2026-03-02T18:00:00+00:00")
    checkout = _checkout(client, event_id, tickets=1).json()
    client.post(f"/bookings/{checkout['booking_id']}/confirm")

    user_cancel = client.post(f"/bookings/{checkout['booking_id']}/cancel", json={})
    # The public route always acts for the guest, whatever the body claims.
    posing_as_host = client.post(
        f"/bookings/{checkout['booking_id']}/cancel",
        json={"initiator": "host"},
    )
    host_cancel = client.post(
        f"/staff/bookings/{checkout['booking_id']}/cancel",
        json={"initiator": "host", "reason": "kitchen closed"},
    )

    assert user_cancel.status_code == 409
    assert posing_as_host.status_code == 409
    assert host_cancel.status_code == 200
    assert host_cancel.json()["booking"]["cancelled_by"] == "host"


def test_checkout_failure_returns_502_and_can_be_retried(client, processor, sleeps):
    event_id = _create_event(client)
    processor.create_failures = [TransientPaymentError("timeout")] * 3

    failed = _checkout(client, event_id, tickets=1)

    assert failed.status_code == 502
    detail = failed.json()["detail"]
    assert detail["attempts"] == 3
    assert sleeps == [1.0, 2.0]

    retried = client.post(f"/bookings/{detail['booking_id']}/checkout/retry")
    assert retried.status_code == 200
    assert retried.json()["checkout_attempts"] == 2


def test_verify_with_processor_outage_returns_502(client, processor):
    event_id = _create_event(client)
    checkout = _checkout(client, event_id, tickets=1).json()
    processor.sessions.pop(checkout["session_id"])

    response = client.post("/payments/verify", json={"session_id": checkout["session_id"]})

    assert response.status_code == 502


def test_event_cancellation_and_maintenance(client, processor, clock):
    event_id = _create_event(client, capacity=5)
    paid = _checkout(client, event_id, tickets=2).json()
    processor.pay(paid["session_id"])
    client.post("/payments/verify", json={"session_id": paid["session_id"]})
    abandoned = _checkout(client, event_id, tickets=1).json()

    clock.advance(hours=1)
    sweep = client.post("/maintenance/pending/sweep", json={"older_than_minutes": 30})
    assert sweep.json() == {"aborted": 1}
    assert client.get(f"/bookings/{abandoned['booking_id']}").json()["status"] == "cancelled"

    cancelled = client.post(f"/events/{event_id}/cancel", json={"reason": "storm"})
    assert cancelled.status_code == 200
    assert cancelled.json()["cancelled_bookings"] == [paid["booking_id"]]
    assert client.get(f"/events/{event_id}").json()["status"] == "cancelled"
    assert client.post("/maintenance/reminders").json() == {"reminded": 0}
