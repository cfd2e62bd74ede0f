"""Tests for login and role checks."""
from __future__ import annotations

from itsdangerous import URLSafeTimedSerializer

from conftest import PASSWORD
from readingroom.extensions import db


def test_login_success(client, admin) -> None:
    response = client.post("/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD})

    assert response.status_code == 200
    body = response.get_json()
    assert body["token"]
    assert body["user"]["email"] == "admin@example.com"
    assert body["user"]["role"] == "Admin"


def test_login_is_case_insensitive_on_email(client, admin) -> None:
    response = client.post("/api/auth/login", json={"email": "Admin@Example.com", "password": PASSWORD})

    assert response.status_code == 200


def test_login_invalid_password(client, admin) -> None:
    response = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "BadPass"})

    assert response.status_code == 401
    assert response.get_json()["error"] == "unauthorized"


def test_login_missing_fields(client) -> None:
    response = client.post("/api/auth/login", json={"email": "admin@example.com"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_payload"


def test_token_from_login_is_accepted(client, admin) -> None:
    token = client.post(
        "/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD}
    ).get_json()["token"]

    response = client.get("/api/users", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200


def test_missing_token_is_unauthorized(client) -> None:
    response = client.get("/api/subscriptions")

    assert response.status_code == 401
    assert response.get_json()["error"] == "unauthorized"


def test_token_signed_with_other_key_is_rejected(client, admin) -> None:
    forged = URLSafeTimedSerializer("not-the-key", salt="auth-token").dumps({"user_id": admin.user_id})

    response = client.get("/api/users", headers={"Authorization": f"Bearer {forged}"})

    assert response.status_code == 401


def test_wrong_role_is_forbidden(client, member, auth_headers) -> None:
    response = client.get("/api/subscriptions", headers=auth_headers(member.user))

    assert response.status_code == 403
    assert response.get_json()["error"] == "forbidden"


def test_manager_is_limited_to_assigned_locations(client, manager, make_location, auth_headers) -> None:
    own = make_location("North Wing", total_seats=2)
    other = make_location("South Wing", total_seats=3)
    manager.locations = [own]
    db.session.commit()

    response = client.get("/api/seats", headers=auth_headers(manager))

    assert response.status_code == 200
    seats = response.get_json()["seats"]
    assert len(seats) == 2
    assert {seat["location_id"] for seat in seats} == {own.location_id}

    response = client.put(
        f"/api/locations/{other.location_id}", json={"name": "Renamed"}, headers=auth_headers(manager)
    )
    assert response.status_code == 403
