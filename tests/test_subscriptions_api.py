"""Tests for the subscription, seat, waiting-list and payment endpoints."""
from __future__ import annotations

from datetime import datetime

from readingroom.extensions import db
from readingroom.models import Seat, Subscription, WaitingList
from readingroom.services.subscriptions import assign_seat


def _payload(member, location, **overrides) -> dict:
    payload = {
        "memberId": member.member_code,
        "locationId": location.location_id,
        "seatNumber": 5,
        "startDate": "2099-01-01",
        "duration": "1 month",
        "amount": 1200,
        "paymentMethod": "UPI",
        "upiCode": "txn-123",
        "dateTime": "2099-01-01T10:00:00Z",
    }
    payload.update(overrides)
    return payload


def test_create_subscription(client, admin, location, member, auth_headers) -> None:
    response = client.post("/api/subscriptions", json=_payload(member, location), headers=auth_headers(admin))

    assert response.status_code == 201
    subscription = response.get_json()["subscription"]
    assert subscription["status"] == "active"
    assert subscription["seat"]["seat_number"] == 5
    assert subscription["end_date"] == "2099-02-01T00:00:00"
    payment = subscription["payments"][0]
    assert payment["method"] == "UPI"
    assert payment["upi_code"] == "txn-123"
    assert payment["unique_code"] == "EVOLVE209901001"


def test_occupied_seat_goes_to_waiting_list(client, admin, location, make_member, auth_headers) -> None:
    first = client.post("/api/subscriptions", json=_payload(make_member(), location), headers=auth_headers(admin))
    assert first.status_code == 201

    response = client.post(
        "/api/subscriptions", json=_payload(make_member("Ravi"), location), headers=auth_headers(admin)
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["message"] == "Seat occupied, added to waiting list"
    assert body["waiting"]["seat_number"] == 5
    assert WaitingList.query.count() == 1
    assert Subscription.query.count() == 1


def test_expired_holder_is_replaced_through_api(client, admin, location, make_member, seat_request,
                                                auth_headers) -> None:
    old = assign_seat(
        seat_request(make_member(), seat_number=5, start=datetime(2019, 12, 1), duration="31 days"),
        now=datetime(2019, 12, 1),
    ).subscription

    response = client.post(
        "/api/subscriptions", json=_payload(make_member("Ravi"), location), headers=auth_headers(admin)
    )

    assert response.status_code == 201
    assert db.session.get(Subscription, old.subscription_id).status == "expired"
    seat = Seat.query.filter_by(location_id=location.location_id, seat_number=5).one()
    assert seat.subscription_id == response.get_json()["subscription"]["id"]


def test_create_subscription_validation(client, admin, location, member, auth_headers) -> None:
    payload = _payload(member, location)
    del payload["duration"]

    response = client.post("/api/subscriptions", json=payload, headers=auth_headers(admin))

    assert response.status_code == 400
    assert "duration" in response.get_json()["message"]

    response = client.post(
        "/api/subscriptions", json=_payload(member, location, paymentMethod="cheque"), headers=auth_headers(admin)
    )
    assert response.status_code == 400


def test_create_subscription_not_found(client, admin, location, member, auth_headers) -> None:
    response = client.post(
        "/api/subscriptions", json=_payload(member, location, seatNumber=42), headers=auth_headers(admin)
    )
    assert response.status_code == 404
    assert response.get_json()["error"] == "seat_not_found"

    response = client.post(
        "/api/subscriptions", json=_payload(member, location, memberId="MEM9999"), headers=auth_headers(admin)
    )
    assert response.status_code == 404
    assert response.get_json()["error"] == "member_not_found"


def test_list_subscriptions_sweeps_and_filters(client, admin, make_location, make_member, seat_request,
                                               auth_headers) -> None:
    other = make_location("Annex", total_seats=3)
    stale = assign_seat(
        seat_request(make_member(), seat_number=1, start=datetime(2020, 1, 1)), now=datetime(2020, 1, 1)
    ).subscription
    assign_seat(seat_request(make_member(), seat_number=1, start=datetime(2099, 1, 1),
                             location_id=other.location_id))

    response = client.get("/api/subscriptions", headers=auth_headers(admin))

    assert response.status_code == 200
    statuses = {item["id"]: item["status"] for item in response.get_json()["subscriptions"]}
    assert statuses[stale.subscription_id] == "expired"
    assert len(statuses) == 2

    response = client.get(f"/api/subscriptions?locationId={other.location_id}", headers=auth_headers(admin))
    assert [item["location_id"] for item in response.get_json()["subscriptions"]] == [other.location_id]

    response = client.get("/api/subscriptions?locationId=abc", headers=auth_headers(admin))
    assert response.status_code == 400


def test_end_subscription_endpoint_promotes_waiting(client, manager, location, make_member, auth_headers) -> None:
    created = client.post("/api/subscriptions", json=_payload(make_member(), location),
                          headers=auth_headers(manager)).get_json()["subscription"]
    waiting_member = make_member("Ravi")
    client.post("/api/subscriptions", json=_payload(waiting_member, location), headers=auth_headers(manager))

    response = client.put(f"/api/subscriptions/{created['id']}", headers=auth_headers(manager))

    assert response.status_code == 200
    promoted = response.get_json()["promoted"]
    assert promoted["member"]["id"] == waiting_member.member_id
    assert promoted["seat"]["seat_number"] == 5
    assert WaitingList.query.count() == 0


def test_member_sees_own_subscriptions_only(client, admin, location, make_member, auth_headers) -> None:
    owner = make_member()
    stranger = make_member("Stranger")
    client.post("/api/subscriptions", json=_payload(owner, location), headers=auth_headers(admin))

    response = client.get(f"/api/subscriptions/member/{owner.member_code}", headers=auth_headers(owner.user))
    assert response.status_code == 200
    body = response.get_json()
    assert len(body["subscriptions"]) == 1
    assert body["active_subscription"]["seat"]["seat_number"] == 5

    response = client.get(f"/api/subscriptions/member/{owner.member_id}", headers=auth_headers(stranger.user))
    assert response.status_code == 403

    response = client.get(f"/api/payments/member/{owner.member_id}", headers=auth_headers(owner.user))
    assert response.status_code == 200
    assert response.get_json()["total_paid"] == 1200


def test_seats_waiting_and_recent_payments(client, admin, location, make_member, auth_headers) -> None:
    client.post("/api/subscriptions", json=_payload(make_member(), location), headers=auth_headers(admin))
    client.post("/api/subscriptions", json=_payload(make_member("Ravi"), location), headers=auth_headers(admin))

    seats = client.get(f"/api/seats?locationId={location.location_id}", headers=auth_headers(admin)).get_json()
    assert seats["occupied"] == 1
    assert seats["vacant"] == 9

    waiting = client.get("/api/waiting", headers=auth_headers(admin)).get_json()["waiting"]
    assert len(waiting) == 1

    payments = client.get("/api/payments/recent?limit=5", headers=auth_headers(admin)).get_json()["payments"]
    assert len(payments) == 1
    assert payments[0]["seat_number"] == 5

    response = client.delete(f"/api/waiting/{waiting[0]['id']}", headers=auth_headers(admin))
    assert response.status_code == 200
    assert WaitingList.query.count() == 0
