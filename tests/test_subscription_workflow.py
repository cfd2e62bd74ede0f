"""Tests for the seat assignment workflow and the expiry sweep."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from dateutil.relativedelta import relativedelta
from sqlalchemy import update

from readingroom.extensions import db
from readingroom.models import Log, Payment, Seat, Subscription, WaitingList
from readingroom.services.subscriptions import (SeatConflictError, SeatNotFoundError, assign_seat,
                                                calculate_end_date, end_subscription,
                                                next_payment_code, parse_duration, sweep_expired)


def _seat(location, number: int) -> Seat:
    return Seat.query.filter_by(location_id=location.location_id, seat_number=number).one()


def _assert_seat_invariant() -> None:
    for seat in Seat.query.all():
        subscription = seat.subscription
        linked_active = subscription is not None and subscription.status == "active"
        assert (seat.status == "occupied") == linked_active, seat.to_dict()


@pytest.mark.parametrize(
    ("duration", "expected"),
    [
        ("2 months", relativedelta(months=2)),
        ("1 month", relativedelta(months=1)),
        ("30 days", timedelta(days=30)),
        ("15", timedelta(days=15)),
        ("forever", timedelta(0)),
        (None, timedelta(0)),
    ],
)
def test_parse_duration(duration, expected) -> None:
    assert parse_duration(duration) == expected


def test_month_arithmetic_clamps_to_month_end() -> None:
    assert calculate_end_date(datetime(2024, 1, 31), "1 month") == datetime(2024, 2, 29)
    assert calculate_end_date(datetime(2024, 1, 31), "10 days") == datetime(2024, 2, 10)


def test_assign_vacant_seat_creates_subscription_and_payment(app, location, member, seat_request) -> None:
    result = assign_seat(seat_request(member, seat_number=3, duration="1 month"), performed_by="admin@example.com")

    assert not result.queued
    subscription = result.subscription
    assert subscription.status == "active"
    assert subscription.end_date == datetime(2024, 2, 1)
    assert len(subscription.payments) == 1

    seat = _seat(location, 3)
    assert seat.status == "occupied"
    assert seat.subscription_id == subscription.subscription_id
    assert seat.assigned_member_id == member.member_id

    log = Log.query.filter_by(entity="Subscription").one()
    assert log.performed_by == "admin@example.com"


def test_unknown_seat_raises(app, location, member, seat_request) -> None:
    with pytest.raises(SeatNotFoundError):
        assign_seat(seat_request(member, seat_number=99))


def test_payment_codes_are_distinct_and_sequence_is_global(app, location, make_member, seat_request) -> None:
    first = assign_seat(seat_request(make_member(), seat_number=1, paid_at=datetime(2024, 1, 15)))
    second = assign_seat(seat_request(make_member(), seat_number=2, paid_at=datetime(2024, 1, 16)))
    third = assign_seat(seat_request(make_member(), seat_number=3, paid_at=datetime(2024, 2, 1)))

    codes = [result.subscription.payments[0].unique_code for result in (first, second, third)]
    assert codes == ["EVOLVE202401001", "EVOLVE202401002", "EVOLVE202402003"]
    assert len(set(codes)) == 3


def test_next_payment_code_starts_at_one(app) -> None:
    assert next_payment_code(datetime(2025, 7, 4)) == "EVOLVE202507001"


def test_occupied_seat_queues_request_without_touching_seat(app, location, make_member, seat_request) -> None:
    holder = assign_seat(
        seat_request(make_member(), seat_number=5, start=datetime(2029, 12, 1), duration="1 month"),
        now=datetime(2029, 12, 1),
    ).subscription
    seat = _seat(location, 5)
    before = (seat.status, seat.subscription_id, seat.assigned_member_id)

    result = assign_seat(seat_request(make_member("Ravi"), seat_number=5), now=datetime(2029, 12, 15))

    assert result.queued
    assert WaitingList.query.count() == 1
    assert result.waiting.seat_number == 5
    db.session.refresh(seat)
    assert (seat.status, seat.subscription_id, seat.assigned_member_id) == before
    assert db.session.get(Subscription, holder.subscription_id).status == "active"
    assert Payment.query.count() == 1


def test_stale_occupancy_is_taken_over(app, location, make_member, seat_request) -> None:
    old = assign_seat(
        seat_request(make_member(), seat_number=5, start=datetime(2019, 12, 1), duration="31 days"),
        now=datetime(2019, 12, 1),
    ).subscription
    assert old.end_date == datetime(2020, 1, 1)

    result = assign_seat(
        seat_request(make_member("Ravi"), seat_number=5, start=datetime(2024, 1, 1)),
        now=datetime(2024, 1, 1),
    )

    assert not result.queued
    assert result.replaced.subscription_id == old.subscription_id
    assert db.session.get(Subscription, old.subscription_id).status == "expired"
    seat = _seat(location, 5)
    assert seat.status == "occupied"
    assert seat.subscription_id == result.subscription.subscription_id
    assert WaitingList.query.count() == 0
    _assert_seat_invariant()


def test_occupied_seat_without_subscription_is_taken_over(app, location, member, seat_request) -> None:
    seat = _seat(location, 4)
    seat.status = "occupied"
    db.session.commit()

    result = assign_seat(seat_request(member, seat_number=4))

    assert not result.queued
    assert result.replaced is None
    assert _seat(location, 4).subscription_id == result.subscription.subscription_id


def test_sweep_is_idempotent(app, location, member, seat_request) -> None:
    subscription = assign_seat(seat_request(member, seat_number=2)).subscription

    first = sweep_expired(now=datetime(2024, 3, 1))
    second = sweep_expired(now=datetime(2024, 3, 1))

    assert [s.subscription_id for s in first] == [subscription.subscription_id]
    assert second == []
    assert subscription.status == "expired"
    seat = _seat(location, 2)
    assert seat.status == "vacant"
    assert seat.subscription_id is None
    _assert_seat_invariant()


def test_sweep_leaves_seat_owned_by_newer_subscription(app, location, make_member, seat_request) -> None:
    old = assign_seat(seat_request(make_member(), seat_number=6)).subscription
    # Seat already handed to someone else without the old row being expired.
    newer = assign_seat(
        seat_request(make_member("Ravi"), seat_number=6, start=datetime(2024, 2, 5)),
        now=datetime(2024, 2, 5),
    ).subscription
    old.status = "active"
    db.session.commit()

    sweep_expired(now=datetime(2024, 2, 10))

    assert old.status == "expired"
    seat = _seat(location, 6)
    assert seat.status == "occupied"
    assert seat.subscription_id == newer.subscription_id


def test_end_subscription_promotes_oldest_waiting_entry(app, location, make_member, seat_request) -> None:
    holder = assign_seat(
        seat_request(make_member(), seat_number=5, start=datetime(2030, 1, 1)), now=datetime(2030, 1, 1)
    ).subscription
    early = make_member("Early Bird")
    late = make_member("Late Comer")
    assign_seat(seat_request(early, seat_number=5, start=datetime(2030, 1, 2)), now=datetime(2030, 1, 2))
    assign_seat(seat_request(late, seat_number=5, start=datetime(2030, 1, 3)), now=datetime(2030, 1, 3))
    assert WaitingList.query.count() == 2

    promoted = end_subscription(holder, performed_by="manager@example.com", now=datetime(2030, 1, 10))

    assert holder.status == "expired"
    assert promoted is not None
    assert promoted.member_id == early.member_id
    assert promoted.start_date == datetime(2030, 1, 10)
    assert promoted.end_date == datetime(2030, 2, 9)
    assert WaitingList.query.count() == 1
    seat = _seat(location, 5)
    assert seat.subscription_id == promoted.subscription_id
    _assert_seat_invariant()


def test_end_subscription_without_waiting_list_vacates_seat(app, location, member, seat_request) -> None:
    holder = assign_seat(seat_request(member, seat_number=7)).subscription

    assert end_subscription(holder) is None
    assert _seat(location, 7).status == "vacant"


def test_concurrent_claim_raises_conflict(app, location, member, seat_request) -> None:
    seat = _seat(location, 8)
    # Another writer claims the seat behind this session's back.
    db.session.execute(
        update(Seat).where(Seat.seat_id == seat.seat_id).values(status="occupied")
        .execution_options(synchronize_session=False)
    )
    assert seat.status == "vacant"

    with pytest.raises(SeatConflictError):
        assign_seat(seat_request(member, seat_number=8))
    db.session.rollback()

    assert Subscription.query.count() == 0
    assert Payment.query.count() == 0
