"""Tests for the notification endpoints."""
from __future__ import annotations

from datetime import timedelta

from conftest import _create_user
from readingroom.extensions import db
from readingroom.models import Notification, NotificationRead, utc_now


def _notify(user=None, role=None, category="system", created_at=None, **extra) -> Notification:
    notification = Notification(
        user_id=user.user_id if user else None,
        is_for_role=role is not None,
        target_role=role,
        notification_type="system_alert",
        title="Heads up",
        message="Something happened",
        category=category,
        created_at=created_at or utc_now(),
        **extra,
    )
    db.session.add(notification)
    db.session.commit()
    return notification


def test_generate_requires_admin(client, admin, manager, member, auth_headers) -> None:
    response = client.post("/api/notifications", json={"action": "generate"}, headers=auth_headers(manager))
    assert response.status_code == 403

    response = client.post("/api/notifications", json={"action": "generate"}, headers=auth_headers(member.user))
    assert response.status_code == 403

    response = client.post("/api/notifications", json={"action": "generate"}, headers=auth_headers(admin))
    assert response.status_code == 200
    body = response.get_json()
    assert set(body["created"]) == {"subscription", "payment", "seat", "grievance", "inventory", "member"}
    assert body["errors"] == {}


def test_create_for_users_and_role(client, admin, manager, member, auth_headers) -> None:
    response = client.post(
        "/api/notifications",
        json={
            "action": "create",
            "title": "Closed on Sunday",
            "message": "The hall is closed for cleaning.",
            "type": "system_alert",
            "userIds": [member.user_id],
            "targetRole": "Manager",
        },
        headers=auth_headers(admin),
    )

    assert response.status_code == 201
    assert response.get_json()["count"] == 2

    member_view = client.get("/api/notifications", headers=auth_headers(member.user)).get_json()
    assert [n["title"] for n in member_view["notifications"]] == ["Closed on Sunday"]

    manager_view = client.get("/api/notifications", headers=auth_headers(manager)).get_json()
    assert len(manager_view["notifications"]) == 1
    assert manager_view["notifications"][0]["target_role"] == "Manager"

    admin_view = client.get("/api/notifications", headers=auth_headers(admin)).get_json()
    assert admin_view["notifications"] == []


def test_create_validation(client, admin, auth_headers) -> None:
    response = client.post(
        "/api/notifications", json={"action": "create", "title": "No recipients", "message": "x"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 400

    response = client.post(
        "/api/notifications",
        json={"action": "create", "title": "t", "message": "m", "userId": 999},
        headers=auth_headers(admin),
    )
    assert response.status_code == 400

    response = client.post("/api/notifications", json={"action": "explode"}, headers=auth_headers(admin))
    assert response.status_code == 400


def test_list_filters_and_pagination(client, member, auth_headers) -> None:
    now = utc_now()
    for minutes in range(5):
        _notify(member.user, category="payment", created_at=now - timedelta(minutes=minutes))
    _notify(member.user, category="seat", is_read=True)

    body = client.get("/api/notifications?limit=2&skip=1", headers=auth_headers(member.user)).get_json()
    assert len(body["notifications"]) == 2
    assert body["pagination"] == {"skip": 1, "limit": 2, "total": 6}
    assert body["unread_count"] == 5

    body = client.get("/api/notifications?unread=true&category=seat", headers=auth_headers(member.user)).get_json()
    assert body["notifications"] == []

    response = client.get("/api/notifications?category=bogus", headers=auth_headers(member.user))
    assert response.status_code == 400


def test_mark_read_and_read_all(client, manager, member, auth_headers) -> None:
    own = _notify(member.user)
    shared = _notify(role="Member")
    foreign = _notify(manager)

    response = client.patch(f"/api/notifications/{own.notification_id}", headers=auth_headers(member.user))
    assert response.status_code == 200
    assert response.get_json()["notification"]["is_read"] is True

    response = client.patch(f"/api/notifications/{foreign.notification_id}", headers=auth_headers(member.user))
    assert response.status_code == 404

    response = client.put("/api/notifications/read-all", headers=auth_headers(member.user))
    assert response.get_json()["updated"] == 1
    assert db.session.get(Notification, foreign.notification_id).is_read is False
    assert db.session.get(NotificationRead, (shared.notification_id, member.user_id)) is not None

    body = client.get("/api/notifications", headers=auth_headers(member.user)).get_json()
    assert body["unread_count"] == 0
    assert all(n["is_read"] for n in body["notifications"])


def test_reading_role_notification_is_per_user(client, manager, auth_headers) -> None:
    other = _create_user("Second Manager", "manager2@example.com", "Manager")
    shared = _notify(role="Manager")

    response = client.patch(f"/api/notifications/{shared.notification_id}", headers=auth_headers(manager))
    assert response.status_code == 200
    assert response.get_json()["notification"]["is_read"] is True
    assert db.session.get(Notification, shared.notification_id).is_read is False

    body = client.get("/api/notifications?unread=true", headers=auth_headers(other)).get_json()
    assert body["unread_count"] == 1
    assert [n["id"] for n in body["notifications"]] == [shared.notification_id]
    assert body["notifications"][0]["is_read"] is False

    body = client.get("/api/notifications", headers=auth_headers(manager)).get_json()
    assert body["unread_count"] == 0
    assert body["notifications"][0]["is_read"] is True

    response = client.put("/api/notifications/read-all", headers=auth_headers(other))
    assert response.get_json()["updated"] == 1
    assert NotificationRead.query.count() == 2


def test_purge_old_notifications(client, admin, manager, auth_headers) -> None:
    _notify(manager, created_at=utc_now() - timedelta(days=45))
    old_shared = _notify(role="Manager", created_at=utc_now() - timedelta(days=45))
    db.session.add(NotificationRead(notification_id=old_shared.notification_id, user_id=manager.user_id))
    db.session.commit()
    recent = _notify(manager)

    response = client.delete("/api/notifications", headers=auth_headers(manager))
    assert response.status_code == 403

    response = client.delete("/api/notifications", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.get_json()["deleted"] == 2
    assert [n.notification_id for n in Notification.query.all()] == [recent.notification_id]
    assert NotificationRead.query.count() == 0

    response = client.delete("/api/notifications?olderThan=soon", headers=auth_headers(admin))
    assert response.status_code == 400
