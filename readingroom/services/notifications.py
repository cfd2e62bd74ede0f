"""Notification generation.

``generate_all_notifications`` is the batch entry point used by the admin
endpoint and by ``scripts/generate_notifications.py``. It sweeps expired
subscriptions once, then runs each generator in turn. Generators only read
entity state and insert notifications; every insert goes through
``should_emit`` so running the batch again without state changes creates
nothing new (windowed types aside, which repeat once their window passes).
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import and_, case, exists, func, or_

from ..extensions import db
from ..models import (NOTIFICATION_CATEGORIES, NOTIFICATION_PRIORITIES, NOTIFICATION_TYPES,
                      STAFF_ROLES, Grievance, Inventory, Location, Notification, NotificationRead,
                      Payment, Seat, Subscription, User, WaitingList, utc_now)
from ..utils import payload_text
from .subscriptions import sweep_expired

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)
WEEK = timedelta(days=7)

GRIEVANCE_ALERTS = {
    "Low": ("new_grievance", "medium"),
    "Medium": ("new_grievance", "medium"),
    "High": ("high_priority_grievance", "high"),
    "Critical": ("high_priority_grievance", "critical"),
}


class NotificationError(ValueError):
    pass


def should_emit(
    user_id: int | None,
    notification_type: str,
    correlation_key: object = None,
    window: timedelta | None = None,
    now: datetime | None = None,
) -> bool:
    """Return True when no equivalent notification exists yet.

    Equivalent means same recipient and type, the same correlation key when
    one is given, and, for windowed types, created within ``window`` of now.
    """
    query = Notification.query.filter(Notification.notification_type == notification_type)
    if user_id is None:
        query = query.filter(Notification.user_id.is_(None))
    else:
        query = query.filter(Notification.user_id == user_id)
    if correlation_key is not None:
        query = query.filter(Notification.correlation_key == str(correlation_key))
    if window is not None:
        query = query.filter(Notification.created_at >= (now or utc_now()) - window)
    return not db.session.query(query.exists()).scalar()


def emit(
    user_id: int | None,
    notification_type: str,
    title: str,
    message: str,
    *,
    category: str,
    priority: str = "medium",
    correlation_key: object = None,
    window: timedelta | None = None,
    data: dict | None = None,
    now: datetime | None = None,
) -> bool:
    """Insert a notification unless an equivalent one already exists."""
    now = now or utc_now()
    if not should_emit(user_id, notification_type, correlation_key, window, now):
        return False

    db.session.add(
        Notification(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            message=message,
            data=data or {},
            correlation_key=str(correlation_key) if correlation_key is not None else None,
            priority=priority,
            category=category,
            created_at=now,
        )
    )
    # Flush so the next should_emit in this pass sees the row.
    db.session.flush()
    return True


def _staff() -> list[User]:
    return User.query.filter(User.role.in_(STAFF_ROLES)).order_by(User.user_id).all()


def _subscription_data(subscription: Subscription) -> dict[str, object]:
    member = subscription.member
    seat = subscription.seat
    return {
        "subscriptionId": subscription.subscription_id,
        "memberId": member.member_id if member else None,
        "memberName": member.name if member else None,
        "seatNumber": seat.seat_number if seat else None,
        "locationId": subscription.location_id,
        "date": subscription.end_date.isoformat(),
        "amount": subscription.total_amount,
    }


def generate_subscription_notifications(now: datetime | None = None) -> int:
    now = now or utc_now()
    staff = _staff()
    created = 0

    upcoming = (
        Subscription.query
        .filter(
            Subscription.status == "active",
            Subscription.end_date >= now,
            Subscription.end_date <= now + WEEK,
        )
        .order_by(Subscription.end_date)
        .all()
    )
    for subscription in upcoming:
        member = subscription.member
        name = member.name if member else "A member"
        ends_on = subscription.end_date.strftime("%a %b %d %Y")
        data = _subscription_data(subscription)

        if subscription.end_date <= now + timedelta(days=3):
            member_type, priority = "subscription_expiry_3days", "critical"
            member_title = "Subscription expires in 3 days"
            staff_key = f"{subscription.subscription_id}:3d"
        else:
            member_type, priority = "subscription_expiry_reminder", "high"
            member_title = "Subscription expiring this week"
            staff_key = str(subscription.subscription_id)

        if member is not None and member.user_id:
            created += emit(
                member.user_id,
                member_type,
                member_title,
                f"Your subscription expires on {ends_on}. Renew to keep your seat.",
                category="subscription",
                priority=priority,
                correlation_key=subscription.subscription_id,
                data=data,
                now=now,
            )
        # Staff get one alert per window, so the 3-day one escalates to critical
        for user in staff:
            created += emit(
                user.user_id,
                "member_subscription_expiring",
                "Subscription expiring soon",
                f"{name}'s subscription expires on {ends_on}",
                category="subscription",
                priority=priority,
                correlation_key=staff_key,
                data=data,
                now=now,
            )

    lookback = timedelta(days=current_app.config.get("EXPIRED_NOTIFICATION_LOOKBACK_DAYS", 30))
    expired = (
        Subscription.query
        .filter(
            Subscription.status == "expired",
            Subscription.end_date < now,
            Subscription.end_date >= now - lookback,
        )
        .all()
    )
    for subscription in expired:
        member = subscription.member
        name = member.name if member else "A member"
        ended_on = subscription.end_date.strftime("%a %b %d %Y")
        data = _subscription_data(subscription)

        if member is not None and member.user_id:
            created += emit(
                member.user_id,
                "subscription_expired",
                "Subscription expired",
                f"Your subscription ended on {ended_on}.",
                category="subscription",
                priority="high",
                correlation_key=subscription.subscription_id,
                data=data,
                now=now,
            )
        for user in staff:
            created += emit(
                user.user_id,
                "member_subscription_expired",
                "Member subscription expired",
                f"{name}'s subscription ended on {ended_on}",
                category="subscription",
                priority="medium",
                correlation_key=subscription.subscription_id,
                data=data,
                now=now,
            )

    db.session.commit()
    return created


def generate_payment_notifications(now: datetime | None = None) -> int:
    now = now or utc_now()
    staff = _staff()
    created = 0

    expired = Subscription.query.filter(Subscription.status == "expired").all()
    for subscription in expired:
        if subscription.payments:
            continue
        name = subscription.member.name if subscription.member else "A member"
        for user in staff:
            created += emit(
                user.user_id,
                "payment_overdue",
                "Payment overdue",
                f"Payment overdue for {name} since {subscription.end_date.strftime('%a %b %d %Y')}",
                category="payment",
                priority="high",
                correlation_key=subscription.subscription_id,
                data=_subscription_data(subscription),
                now=now,
            )

    count, total = db.session.query(
        func.count(Payment.payment_id),
        func.coalesce(func.sum(Payment.amount), 0),
    ).one()
    if count:
        for user in staff:
            created += emit(
                user.user_id,
                "pending_payments",
                "Payments summary",
                f"{count} payments recorded, totalling {total:.2f}",
                category="payment",
                priority="low",
                window=DAY,
                data={"count": count, "amount": float(total)},
                now=now,
            )

    db.session.commit()
    return created


def generate_seat_notifications(now: datetime | None = None) -> int:
    now = now or utc_now()
    staff = _staff()
    created = 0

    vacant = (
        Seat.query
        .join(Location, Seat.location_id == Location.location_id)
        .filter(Seat.status == "vacant", Location.is_active.is_(True))
        .all()
    )
    waiting = WaitingList.query.order_by(WaitingList.requested_date).all()

    if vacant and waiting:
        for user in staff:
            created += emit(
                user.user_id,
                "seat_became_vacant",
                "Seats available",
                f"{len(vacant)} seats vacant, {len(waiting)} members waiting",
                category="seat",
                priority="medium",
                window=DAY,
                data={"count": len(vacant), "waitingCount": len(waiting)},
                now=now,
            )

    vacant_by_location = Counter(seat.location_id for seat in vacant)
    for entry in waiting:
        member = entry.member
        if member is None or not member.user_id:
            continue
        available = vacant_by_location[entry.location_id] if entry.location_id else len(vacant)
        if not available:
            continue
        created += emit(
            member.user_id,
            "seat_available",
            "A seat is available",
            f"{available} seat(s) are free at your requested location. Contact the desk to book.",
            category="seat",
            priority="high",
            correlation_key=entry.waiting_id,
            window=WEEK,
            data={"memberId": member.member_id, "locationId": entry.location_id, "count": available},
            now=now,
        )

    threshold = current_app.config.get("CAPACITY_WARNING_THRESHOLD", 0.90)
    occupancy = (
        db.session.query(
            Location.location_id,
            Location.name,
            func.count(Seat.seat_id),
            func.sum(case((Seat.status == "occupied", 1), else_=0)),
        )
        .join(Seat, Seat.location_id == Location.location_id)
        .filter(Location.is_active.is_(True))
        .group_by(Location.location_id, Location.name)
        .all()
    )
    for location_id, location_name, total, occupied in occupancy:
        occupied = occupied or 0
        if total <= 0 or occupied / total < threshold:
            continue
        for user in staff:
            created += emit(
                user.user_id,
                "capacity_warning",
                "Location nearly full",
                f"{location_name} is at {occupied}/{total} seats occupied",
                category="seat",
                priority="high",
                correlation_key=location_id,
                window=DAY,
                data={"locationId": location_id, "locationName": location_name, "count": occupied},
                now=now,
            )

    db.session.commit()
    return created


def generate_grievance_notifications(now: datetime | None = None) -> int:
    now = now or utc_now()
    staff = _staff()
    created = 0

    recent = (
        Grievance.query
        .filter(Grievance.status == "Pending", Grievance.created_at >= now - DAY)
        .all()
    )
    for grievance in recent:
        notification_type, priority = GRIEVANCE_ALERTS.get(grievance.priority, ("new_grievance", "medium"))
        data = {
            "grievanceId": grievance.grievance_id,
            "grievanceTitle": grievance.title,
            "category": grievance.category,
            "locationId": grievance.location_id,
        }
        for user in staff:
            created += emit(
                user.user_id,
                notification_type,
                "New grievance" if notification_type == "new_grievance" else "High priority grievance",
                f"{grievance.title} ({grievance.category}) reported",
                category="grievance",
                priority=priority,
                correlation_key=grievance.grievance_id,
                data=data,
                now=now,
            )
        created += emit(
            grievance.reported_by_id,
            "grievance_submitted",
            "Grievance received",
            f"We received your grievance \"{grievance.title}\".",
            category="grievance",
            priority="low",
            correlation_key=grievance.grievance_id,
            data=data,
            now=now,
        )

    overdue_days = current_app.config.get("GRIEVANCE_OVERDUE_DAYS", 3)
    overdue = (
        Grievance.query
        .filter(Grievance.status == "Pending", Grievance.created_at < now - timedelta(days=overdue_days))
        .all()
    )
    for grievance in overdue:
        recipients = [user.user_id for user in staff]
        if grievance.reported_by_id not in recipients:
            recipients.append(grievance.reported_by_id)
        for user_id in recipients:
            created += emit(
                user_id,
                "grievance_unresolved_long",
                "Grievance pending too long",
                f"\"{grievance.title}\" has been pending for more than {overdue_days} days",
                category="grievance",
                priority="high",
                correlation_key=grievance.grievance_id,
                data={"grievanceId": grievance.grievance_id, "grievanceTitle": grievance.title},
                now=now,
            )

    db.session.commit()
    return created


def generate_inventory_notifications(now: datetime | None = None) -> int:
    now = now or utc_now()
    staff = _staff()
    created = 0

    broken = Inventory.query.filter(Inventory.status == "Broken").all()
    for item in broken:
        for user in staff:
            created += emit(
                user.user_id,
                "equipment_broken",
                "Equipment broken",
                f"{item.name} ({item.category}) is marked broken",
                category="inventory",
                priority="high",
                correlation_key=item.inventory_id,
                data={"inventoryId": item.inventory_id, "inventoryName": item.name, "locationId": item.location_id},
                now=now,
            )

    threshold = current_app.config.get("LOW_STOCK_THRESHOLD", 2)
    low = (
        Inventory.query
        .filter(Inventory.quantity <= threshold, Inventory.status != "Retired")
        .all()
    )
    for item in low:
        for user in staff:
            created += emit(
                user.user_id,
                "inventory_low",
                "Low inventory",
                f"Only {item.quantity} {item.name} left",
                category="inventory",
                priority="medium",
                correlation_key=item.inventory_id,
                data={"inventoryId": item.inventory_id, "inventoryName": item.name, "count": item.quantity},
                now=now,
            )

    db.session.commit()
    return created


def generate_member_notifications(now: datetime | None = None) -> int:
    # TODO: decide the trigger for welcome / new_member_registered before emitting anything here.
    return 0


def generate_all_notifications(now: datetime | None = None) -> dict[str, dict[str, object]]:
    """Run the sweep and every generator; failures are logged per generator."""
    now = now or utc_now()
    summary: dict[str, dict[str, object]] = {"created": {}, "errors": {}}

    try:
        sweep_expired(now)
    except Exception as exc:
        db.session.rollback()
        logger.exception("Expiry sweep failed before notification generation")
        summary["errors"]["sweep"] = str(exc)

    generators = (
        ("subscription", generate_subscription_notifications),
        ("payment", generate_payment_notifications),
        ("seat", generate_seat_notifications),
        ("grievance", generate_grievance_notifications),
        ("inventory", generate_inventory_notifications),
        ("member", generate_member_notifications),
    )
    for name, generator in generators:
        try:
            summary["created"][name] = generator(now)
        except Exception as exc:
            db.session.rollback()
            logger.exception("Notification generator %r failed", name)
            summary["created"][name] = 0
            summary["errors"][name] = str(exc)

    logger.info("Generated notifications: %s", summary["created"])
    return summary


def visible_to(user: User):
    """Filter for notifications addressed to the user or to their role."""
    return or_(
        Notification.user_id == user.user_id,
        and_(
            Notification.is_for_role.is_(True),
            Notification.target_role.in_([user.role, "All"]),
        ),
    )


def unread_for(user: User):
    """Filter for notifications the user has not read yet.

    Direct notifications carry their own read flag; role-targeted ones are
    unread until the user has a receipt for them.
    """
    receipt = exists().where(
        NotificationRead.notification_id == Notification.notification_id,
        NotificationRead.user_id == user.user_id,
    )
    return or_(
        and_(Notification.user_id == user.user_id, Notification.is_read.is_(False)),
        and_(
            Notification.is_for_role.is_(True),
            Notification.target_role.in_([user.role, "All"]),
            ~receipt,
        ),
    )


def receipts_for(user: User, notifications: list[Notification]) -> dict[int, NotificationRead]:
    ids = [n.notification_id for n in notifications if n.is_for_role]
    if not ids:
        return {}
    rows = NotificationRead.query.filter(
        NotificationRead.user_id == user.user_id,
        NotificationRead.notification_id.in_(ids),
    ).all()
    return {row.notification_id: row for row in rows}


def mark_read_for(notification: Notification, user: User) -> NotificationRead | None:
    """Mark a notification read for one user and return their receipt, if any.

    A role-targeted notification is shared, so reading it only records a
    receipt for this user and leaves the row untouched for everyone else.
    """
    if not notification.is_for_role:
        notification.mark_read()
        return None
    receipt = db.session.get(NotificationRead, (notification.notification_id, user.user_id))
    if receipt is None:
        receipt = NotificationRead(notification_id=notification.notification_id,
                                   user_id=user.user_id, read_at=utc_now())
        db.session.add(receipt)
    return receipt


def create_notifications(payload: dict) -> list[Notification]:
    """Create ad hoc notifications for users or for a whole role."""
    try:
        title = payload_text(payload, "title")
        message = payload_text(payload, "message")
    except ValueError as exc:
        raise NotificationError(str(exc)) from exc
    notification_type = payload.get("type") or "system_alert"
    priority = payload.get("priority") or "medium"
    category = payload.get("category") or "system"
    target_role = payload.get("targetRole") or payload.get("target_role")
    user_ids = payload.get("userIds") or payload.get("user_ids") or []
    single = payload.get("userId") or payload.get("user_id")
    if single is not None:
        user_ids = [single, *user_ids]

    if not title or not message:
        raise NotificationError("title and message are required")
    if notification_type not in NOTIFICATION_TYPES:
        raise NotificationError(f"unknown notification type: {notification_type}")
    if priority not in NOTIFICATION_PRIORITIES:
        raise NotificationError(f"priority must be one of: {', '.join(NOTIFICATION_PRIORITIES)}")
    if category not in NOTIFICATION_CATEGORIES:
        raise NotificationError(f"unknown category: {category}")
    if target_role and target_role not in ("Admin", "Manager", "Member", "All"):
        raise NotificationError("targetRole must be Admin, Manager, Member or All")
    if not target_role and not user_ids:
        raise NotificationError("userId, userIds or targetRole is required")

    common = {
        "notification_type": notification_type,
        "title": title,
        "message": message,
        "priority": priority,
        "category": category,
        "data": payload.get("data") or {},
    }

    created: list[Notification] = []
    if target_role:
        created.append(Notification(user_id=None, is_for_role=True, target_role=target_role, **common))

    for raw_id in dict.fromkeys(user_ids):
        try:
            user_id = int(raw_id)
        except (TypeError, ValueError) as exc:
            raise NotificationError(f"invalid user id: {raw_id!r}") from exc
        if db.session.get(User, user_id) is None:
            raise NotificationError(f"user {user_id} not found")
        created.append(Notification(user_id=user_id, **common))

    db.session.add_all(created)
    return created
