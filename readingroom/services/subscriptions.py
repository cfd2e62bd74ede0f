"""Subscription and seat lifecycle: expiry sweep, seat assignment, waiting list.

Seat occupancy is only trustworthy after ``sweep_expired`` has run, so every
entry point that reads or writes seat state calls it first. Seats are claimed
with a conditional UPDATE (``status = 'vacant'`` in the WHERE clause) so two
requests racing for the same seat cannot both win; the loser gets
``SeatConflictError`` and may retry.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta
from flask import current_app
from sqlalchemy import or_, update

from ..extensions import db
from ..models import Member, Payment, Seat, Subscription, WaitingList, utc_now
from ..utils import parse_datetime, payload_value, start_of_day
from . import audit

logger = logging.getLogger(__name__)

PAYMENT_METHODS = {"cash": "cash", "upi": "UPI"}

_LEADING_INT = re.compile(r"^\s*(\d+)")


class SubscriptionError(Exception):
    status_code = 400
    error_code = "invalid_request"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidSubscriptionRequest(SubscriptionError):
    pass


class MemberNotFoundError(SubscriptionError):
    status_code = 404
    error_code = "member_not_found"


class SeatNotFoundError(SubscriptionError):
    status_code = 404
    error_code = "seat_not_found"


class SeatConflictError(SubscriptionError):
    status_code = 409
    error_code = "seat_conflict"


@dataclass
class SeatRequest:
    member: Member
    location_id: int
    seat_number: int
    start_date: datetime
    duration: str
    amount: float
    payment_method: str
    date_time: datetime
    upi_code: str | None = None


@dataclass
class AssignmentResult:
    subscription: Subscription | None = None
    waiting: WaitingList | None = None
    replaced: Subscription | None = None

    @property
    def queued(self) -> bool:
        return self.waiting is not None


def parse_duration(duration: str | None) -> relativedelta | timedelta:
    """Turn "2 months" / "30 days" into an offset.

    Anything mentioning "month" counts in calendar months; everything else is
    days. A missing leading number means zero.
    """
    text = duration or ""
    match = _LEADING_INT.match(text)
    count = int(match.group(1)) if match else 0
    if "month" in text:
        return relativedelta(months=count)
    return timedelta(days=count)


def calculate_end_date(start: datetime, duration: str | None) -> datetime:
    return start + parse_duration(duration)


def normalize_payment_method(value: object) -> str:
    method = PAYMENT_METHODS.get(str(value or "").strip().lower())
    if method is None:
        raise InvalidSubscriptionRequest("paymentMethod must be 'cash' or 'UPI'")
    return method


def next_payment_code(when: datetime) -> str:
    """Build the next receipt code, e.g. EVOLVE202401007.

    The three-digit sequence continues from the most recently created payment
    in the whole system. It is not reset per month; only the year/month part
    of the code changes.
    """
    prefix = current_app.config.get("PAYMENT_CODE_PREFIX", "EVOLVE")
    last = Payment.query.order_by(Payment.payment_id.desc()).first()

    sequence = 1
    if last is not None and last.unique_code:
        tail = last.unique_code[-3:]
        if tail.isdigit():
            sequence = int(tail) + 1

    return f"{prefix}{when.year}{when.month:02d}{sequence:03d}"


def resolve_member(value: object) -> Member | None:
    """Look a member up by primary key or by its human-readable code."""
    if value is None:
        return None
    text = str(value).strip()
    if text.isdigit():
        member = db.session.get(Member, int(text))
        if member is not None:
            return member
    return Member.query.filter_by(member_code=text).first()


def build_seat_request(payload: dict) -> SeatRequest:
    """Validate a subscription request body into a ``SeatRequest``."""
    member_ref = payload_value(payload, "memberId", "member_id")
    seat_number = payload_value(payload, "seatNumber", "seat_number")
    location_id = payload_value(payload, "locationId", "location_id")
    start_date = payload_value(payload, "startDate", "start_date")
    duration = payload_value(payload, "duration")
    amount = payload_value(payload, "amount")
    payment_method = payload_value(payload, "paymentMethod", "payment_method")

    missing = [
        name
        for name, value in (
            ("memberId", member_ref),
            ("seatNumber", seat_number),
            ("locationId", location_id),
            ("startDate", start_date),
            ("duration", duration),
            ("amount", amount),
            ("paymentMethod", payment_method),
        )
        if value is None
    ]
    if missing:
        raise InvalidSubscriptionRequest(f"missing required fields: {', '.join(missing)}")

    try:
        seat_number = int(seat_number)
        location_id = int(location_id)
        amount = float(amount)
        start = parse_datetime(start_date)
        paid_at = payload_value(payload, "dateTime", "date_time")
        paid_at = parse_datetime(paid_at) if paid_at is not None else utc_now()
    except (TypeError, ValueError) as exc:
        raise InvalidSubscriptionRequest(f"invalid field value: {exc}") from exc

    if amount < 0:
        raise InvalidSubscriptionRequest("amount must not be negative")

    method = normalize_payment_method(payment_method)

    member = resolve_member(member_ref)
    if member is None:
        raise MemberNotFoundError(f"member {member_ref} not found")

    return SeatRequest(
        member=member,
        location_id=location_id,
        seat_number=seat_number,
        start_date=start,
        duration=str(duration),
        amount=amount,
        payment_method=method,
        upi_code=payload_value(payload, "upiCode", "upi_code") if method == "UPI" else None,
        date_time=paid_at,
    )


def _expire(subscription: Subscription) -> None:
    subscription.status = "expired"
    seat = subscription.seat
    # Only free the seat if it still belongs to this subscription.
    if seat is not None and seat.status == "occupied" and seat.subscription_id == subscription.subscription_id:
        seat.vacate()


def sweep_expired(now: datetime | None = None) -> list[Subscription]:
    """Expire every active subscription past its end date and free its seat.

    Safe to call repeatedly: only ``active`` rows are considered, so a second
    run over the same data changes nothing.
    """
    now = now or utc_now()
    stale = (
        Subscription.query
        .filter(Subscription.status == "active", Subscription.end_date < now)
        .all()
    )
    for subscription in stale:
        _expire(subscription)

    if stale:
        db.session.commit()
        logger.info("Expired %d subscription(s) ending before %s", len(stale), now.isoformat())
    return stale


def _claim_seat(seat: Seat, subscription: Subscription) -> None:
    db.session.flush()
    result = db.session.execute(
        update(Seat)
        .where(Seat.seat_id == seat.seat_id, Seat.status == "vacant")
        .values(
            status="occupied",
            assigned_member_id=subscription.member_id,
            subscription_id=subscription.subscription_id,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Seat %s at location %s was claimed concurrently", seat.seat_number, seat.location_id)
        raise SeatConflictError(f"seat {seat.seat_number} was just taken, please retry")
    db.session.expire(seat)


def _open_subscription(seat: Seat, request: SeatRequest, performed_by: str | None) -> Subscription:
    subscription = Subscription(
        member_id=request.member.member_id,
        location_id=seat.location_id,
        seat_id=seat.seat_id,
        start_date=request.start_date,
        end_date=calculate_end_date(request.start_date, request.duration),
        duration=request.duration,
        total_amount=request.amount,
        status="active",
    )
    db.session.add(subscription)
    db.session.flush()

    payment = Payment(
        subscription_id=subscription.subscription_id,
        amount=request.amount,
        method=request.payment_method,
        upi_code=request.upi_code,
        date_time=request.date_time,
        unique_code=next_payment_code(request.date_time),
    )
    db.session.add(payment)
    subscription.payments.append(payment)

    _claim_seat(seat, subscription)

    audit.record(
        "CREATE",
        "Subscription",
        subscription.subscription_id,
        f"Assigned seat {seat.seat_number} to {request.member.name} "
        f"until {subscription.end_date.date().isoformat()} (receipt {payment.unique_code})",
        performed_by,
    )
    return subscription


def assign_seat(request: SeatRequest, performed_by: str | None = None, now: datetime | None = None) -> AssignmentResult:
    """Give the requested seat to the member, or queue them if it is taken.

    A seat still marked occupied by a subscription that has already ended is
    taken over: the old subscription is expired and the seat reassigned. The
    caller rolls back the session if this raises.
    """
    now = now or utc_now()
    seat = Seat.query.filter_by(location_id=request.location_id, seat_number=request.seat_number).first()
    if seat is None:
        raise SeatNotFoundError(f"seat {request.seat_number} not found at location {request.location_id}")

    result = AssignmentResult()
    if seat.status == "occupied":
        current = db.session.get(Subscription, seat.subscription_id) if seat.subscription_id else None
        if current is None or current.status == "expired" or current.end_date < now:
            if current is not None:
                _expire(current)
                result.replaced = current
            seat.vacate()
            logger.info("Taking over stale seat %s at location %s", seat.seat_number, seat.location_id)
        else:
            waiting = WaitingList(
                member_id=request.member.member_id,
                location_id=request.location_id,
                seat_number=request.seat_number,
                start_date=request.start_date,
                duration=request.duration,
                amount=request.amount,
                payment_method=request.payment_method,
                upi_code=request.upi_code,
                date_time=request.date_time,
            )
            db.session.add(waiting)
            db.session.flush()
            audit.record(
                "CREATE",
                "WaitingList",
                waiting.waiting_id,
                f"{request.member.name} queued for occupied seat {seat.seat_number}",
                performed_by,
            )
            db.session.commit()
            logger.info("Seat %s occupied, member %s added to waiting list", seat.seat_number, request.member.member_id)
            result.waiting = waiting
            return result

    result.subscription = _open_subscription(seat, request, performed_by)
    db.session.commit()
    return result


def promote_waiting_list(seat: Seat, performed_by: str | None = None, now: datetime | None = None) -> Subscription | None:
    """Hand a freed seat to the oldest waiting request for its location."""
    now = now or utc_now()
    entry = (
        WaitingList.query
        .filter(or_(WaitingList.location_id == seat.location_id, WaitingList.location_id.is_(None)))
        .order_by(WaitingList.requested_date.asc(), WaitingList.waiting_id.asc())
        .first()
    )
    if entry is None:
        return None

    request = SeatRequest(
        member=entry.member,
        location_id=seat.location_id,
        seat_number=seat.seat_number,
        start_date=max(entry.start_date, start_of_day(now)),
        duration=entry.duration,
        amount=entry.amount,
        payment_method=normalize_payment_method(entry.payment_method),
        upi_code=entry.upi_code,
        date_time=entry.date_time,
    )
    subscription = _open_subscription(seat, request, performed_by)
    db.session.delete(entry)
    logger.info("Promoted waiting entry %s to subscription %s", entry.waiting_id, subscription.subscription_id)
    return subscription


def end_subscription(subscription: Subscription, performed_by: str | None = None, now: datetime | None = None) -> Subscription | None:
    """End a subscription early, free its seat and promote the waiting list.

    Returns the subscription created for the promoted waiting member, if any.
    """
    seat = subscription.seat
    _expire(subscription)
    audit.record(
        "UPDATE",
        "Subscription",
        subscription.subscription_id,
        f"Ended subscription for {subscription.member.name if subscription.member else 'unknown member'}",
        performed_by,
    )

    promoted = None
    if seat is not None and seat.status == "vacant":
        promoted = promote_waiting_list(seat, performed_by, now)

    db.session.commit()
    return promoted
