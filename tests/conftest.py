"""Shared pytest fixtures: app, client, seeded users and a location with seats."""
from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash

# Ensure the project root is available on sys.path so tests can import the package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from readingroom import create_app  # noqa: E402
from readingroom.auth import build_token  # noqa: E402
from readingroom.extensions import db  # noqa: E402
from readingroom.models import Location, Member, Seat, User  # noqa: E402
from readingroom.services.subscriptions import SeatRequest  # noqa: E402

PASSWORD = "Secret123!"


@pytest.fixture()
def app():
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


def _create_user(name: str, email: str, role: str, locations=()) -> User:
    user = User(name=name, email=email, role=role, password_hash=generate_password_hash(PASSWORD))
    user.locations = list(locations)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture()
def admin(app) -> User:
    return _create_user("Admin", "admin@example.com", "Admin")


@pytest.fixture()
def manager(app) -> User:
    return _create_user("Manager", "manager@example.com", "Manager")


@pytest.fixture()
def make_location(app):
    def factory(name: str = "Central Reading Room", total_seats: int = 10) -> Location:
        location = Location(name=name, address="12 Library Road", total_seats=total_seats)
        db.session.add(location)
        db.session.flush()
        db.session.add_all(
            Seat(seat_number=n, location_id=location.location_id, status="vacant")
            for n in range(1, total_seats + 1)
        )
        db.session.commit()
        return location

    return factory


@pytest.fixture()
def location(make_location) -> Location:
    return make_location()


@pytest.fixture()
def make_member(app):
    counter = {"n": 0}

    def factory(name: str = "Asha Rao", with_account: bool = True) -> Member:
        counter["n"] += 1
        email = f"member{counter['n']}@example.com"
        member = Member(
            member_code=f"MEM{counter['n']:04d}",
            name=name,
            email=email,
            phone="9876543210",
            address="4 College Street",
        )
        if with_account:
            member.user = _create_user(name, email, "Member")
        db.session.add(member)
        db.session.commit()
        return member

    return factory


@pytest.fixture()
def member(make_member) -> Member:
    return make_member()


@pytest.fixture()
def auth_headers(app):
    def headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {build_token(user)}"}

    return headers


@pytest.fixture()
def seat_request(location):
    def factory(member: Member, seat_number: int = 5, start: datetime = datetime(2024, 1, 1),
                duration: str = "30 days", paid_at: datetime | None = None,
                location_id: int | None = None) -> SeatRequest:
        return SeatRequest(
            member=member,
            location_id=location_id or location.location_id,
            seat_number=seat_number,
            start_date=start,
            duration=duration,
            amount=1500.0,
            payment_method="cash",
            date_time=paid_at or start,
        )

    return factory
