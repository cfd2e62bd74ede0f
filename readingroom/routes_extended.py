"""Extended routes: notifications, grievances, inventory, expenses, fee types and users."""
from __future__ import annotations

from datetime import timedelta

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash

from .auth import can_access_location, require_roles, scope_to_locations
from .extensions import db
from .models import (EXPENSE_CATEGORIES, EXPENSE_METHODS, GRIEVANCE_CATEGORIES,
                     GRIEVANCE_PRIORITIES, INVENTORY_CATEGORIES, INVENTORY_STATUSES,
                     NOTIFICATION_CATEGORIES, USER_ROLES, Expense, FeeType, Grievance,
                     Inventory, Location, Notification, NotificationRead, User, utc_now)
from .services import audit
from .services.notifications import (NotificationError, create_notifications,
                                     generate_all_notifications, mark_read_for, receipts_for,
                                     unread_for, visible_to)
from .utils import parse_datetime, parse_optional_datetime, payload_text, payload_value

bp_ext = Blueprint("api_ext", __name__, url_prefix="/api")

GRIEVANCE_TRANSITIONS = {
    "Pending": {"In Progress", "Resolved", "Rejected"},
    "In Progress": {"Resolved", "Rejected"},
    "Resolved": set(),
    "Rejected": set(),
}

INVENTORY_TRANSITIONS = {
    "Working": {"Under Maintenance", "Broken", "Retired"},
    "Under Maintenance": {"Working", "Broken", "Retired"},
    "Broken": {"Under Maintenance", "Retired"},
    "Retired": set(),
}


def _forbidden_location():
    return jsonify({"error": "forbidden", "message": "location outside your assignment"}), 403


# ============================================================================
# Notifications
# ============================================================================

@bp_ext.get("/notifications")
@require_roles()
def list_notifications() -> tuple[dict[str, object], int]:
    """Get the caller's notifications, including ones addressed to their role.
    ---
    tags:
      - Notifications
    parameters:
      - name: unread
        in: query
        type: boolean
        default: false
      - name: category
        in: query
        type: string
      - name: limit
        in: query
        type: integer
        default: 20
        maximum: 100
      - name: skip
        in: query
        type: integer
        default: 0
    responses:
      200:
        description: Notifications, newest first, with pagination
      400:
        description: Invalid parameters
      500:
        description: Database error
    """
    try:
        limit = min(100, max(1, int(request.args.get("limit", 20))))
        skip = max(0, int(request.args.get("skip", 0)))
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_parameters", "message": "limit and skip must be integers"}), 400

    unread_only = request.args.get("unread", "false").lower() == "true"
    category = request.args.get("category")
    if category and category not in NOTIFICATION_CATEGORIES:
        return jsonify({"error": "invalid_parameters", "message": f"unknown category: {category}"}), 400

    try:
        user = g.current_user
        query = Notification.query.filter(visible_to(user))
        if unread_only:
            query = query.filter(unread_for(user))
        if category:
            query = query.filter(Notification.category == category)

        total = query.count()
        notifications = (
            query.order_by(Notification.created_at.desc(), Notification.notification_id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
        unread_count = Notification.query.filter(unread_for(user)).count()
        receipts = receipts_for(user, notifications)

        return jsonify({
            "notifications": [n.to_dict(receipts.get(n.notification_id)) for n in notifications],
            "pagination": {"skip": skip, "limit": limit, "total": total},
            "unread_count": unread_count,
        }), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch notifications", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.post("/notifications")
@require_roles("Admin")
def post_notifications() -> tuple[dict[str, object], int]:
    """Run the notification generator or create notifications by hand.
    ---
    tags:
      - Notifications
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            action:
              type: string
              enum: [generate, create]
            title:
              type: string
            message:
              type: string
            type:
              type: string
            priority:
              type: string
            category:
              type: string
            userId:
              type: integer
            userIds:
              type: array
              items:
                type: integer
            targetRole:
              type: string
    responses:
      200:
        description: Generator ran, per-generator counts returned
      201:
        description: Notifications created
      400:
        description: Invalid payload
      403:
        description: Caller is not an admin
    """
    payload = request.get_json(silent=True) or {}
    action = payload.get("action") or "create"

    if action == "generate":
        summary = generate_all_notifications()
        total = sum(summary["created"].values())
        current_app.logger.info("Notification generation by %s created %d", g.current_user.email, total)
        return jsonify({
            "message": f"Generated {total} notifications",
            "total": total,
            **summary,
        }), 200

    if action != "create":
        return jsonify({"error": "invalid_payload", "message": "action must be 'generate' or 'create'"}), 400

    try:
        created = create_notifications(payload)
        db.session.commit()
    except NotificationError as exc:
        db.session.rollback()
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create notifications", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"notifications": [n.to_dict() for n in created], "count": len(created)}), 201


@bp_ext.delete("/notifications")
@require_roles("Admin")
def purge_notifications() -> tuple[dict[str, object], int]:
    """Delete notifications older than ?olderThan= (days, or an ISO date)."""
    raw = request.args.get("olderThan")
    try:
        if raw is None or raw.strip().isdigit():
            days = int(raw) if raw is not None else current_app.config.get("NOTIFICATION_PURGE_DAYS", 30)
            cutoff = utc_now() - timedelta(days=days)
        else:
            cutoff = parse_datetime(raw)
    except ValueError:
        return (
            jsonify({"error": "invalid_parameters", "message": "olderThan must be a number of days or an ISO date"}),
            400,
        )

    try:
        stale = select(Notification.notification_id).where(Notification.created_at < cutoff)
        NotificationRead.query.filter(NotificationRead.notification_id.in_(stale)).delete(synchronize_session=False)
        deleted = Notification.query.filter(Notification.created_at < cutoff).delete(synchronize_session=False)
        audit.record("DELETE", "Notification", None,
                     f"Purged {deleted} notifications older than {cutoff.isoformat()}", g.current_user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to purge notifications", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"message": f"Deleted {deleted} notifications", "deleted": deleted}), 200


@bp_ext.patch("/notifications/<int:notification_id>")
@require_roles()
def mark_notification_read(notification_id: int) -> tuple[dict[str, object], int]:
    """Mark a single notification as read."""
    try:
        notification = Notification.query.filter(
            Notification.notification_id == notification_id,
            visible_to(g.current_user),
        ).first()
        if notification is None:
            return jsonify({"error": "not_found", "message": "notification not found"}), 404

        receipt = mark_read_for(notification, g.current_user)
        db.session.commit()
        return jsonify({"notification": notification.to_dict(receipt)}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to mark notification read", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.put("/notifications/read-all")
@require_roles()
def mark_all_notifications_read() -> tuple[dict[str, object], int]:
    try:
        notifications = Notification.query.filter(unread_for(g.current_user)).all()
        for notification in notifications:
            mark_read_for(notification, g.current_user)
        db.session.commit()
        return jsonify({"message": "All notifications marked as read", "updated": len(notifications)}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to mark all notifications read", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ============================================================================
# Grievances
# ============================================================================

@bp_ext.get("/grievances")
@require_roles()
def list_grievances() -> tuple[dict[str, object], int]:
    """Members see their own grievances, staff see those at their locations."""
    user = g.current_user
    try:
        query = Grievance.query
        if user.is_staff:
            query = scope_to_locations(query, Grievance.location_id, user)
        else:
            query = query.filter(Grievance.reported_by_id == user.user_id)

        status = request.args.get("status")
        if status:
            query = query.filter(Grievance.status == status)
        priority = request.args.get("priority")
        if priority:
            query = query.filter(Grievance.priority == priority)
        location_id = request.args.get("locationId", type=int)
        if location_id:
            query = query.filter(Grievance.location_id == location_id)

        grievances = query.order_by(Grievance.created_at.desc(), Grievance.grievance_id.desc()).all()
        return jsonify({"grievances": [item.to_dict() for item in grievances]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch grievances", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.post("/grievances")
@require_roles()
def create_grievance() -> tuple[dict[str, object], int]:
    """Report a grievance at a location.
    ---
    tags:
      - Grievances
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            title:
              type: string
            description:
              type: string
            category:
              type: string
            locationId:
              type: integer
            priority:
              type: string
              enum: [Low, Medium, High, Critical]
          required:
            - title
            - description
            - category
            - locationId
    responses:
      201:
        description: Grievance created with status Pending
      400:
        description: Invalid payload
      404:
        description: Location not found
    """
    payload = request.get_json(silent=True) or {}
    try:
        title = payload_text(payload, "title")
        description = payload_text(payload, "description")
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    category = payload.get("category")
    priority = payload.get("priority") or "Medium"
    location_id = payload_value(payload, "locationId", "location_id")

    if not title or not description or not category or location_id is None:
        return (
            jsonify({"error": "invalid_payload", "message": "title, description, category and locationId are required"}),
            400,
        )
    if category not in GRIEVANCE_CATEGORIES:
        return jsonify({"error": "invalid_payload", "message": f"unknown category: {category}"}), 400
    if priority not in GRIEVANCE_PRIORITIES:
        return jsonify({"error": "invalid_payload", "message": f"unknown priority: {priority}"}), 400

    try:
        location = db.session.get(Location, int(location_id))
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_payload", "message": "locationId must be an integer"}), 400
    if location is None:
        return jsonify({"error": "not_found", "message": "location not found"}), 404

    try:
        grievance = Grievance(
            title=title,
            description=description,
            category=category,
            priority=priority,
            location_id=location.location_id,
            reported_by_id=g.current_user.user_id,
        )
        db.session.add(grievance)
        db.session.flush()
        audit.record("CREATE", "Grievance", grievance.grievance_id,
                     f"Grievance \"{title}\" reported", g.current_user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create grievance", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"grievance": grievance.to_dict()}), 201


def _grievance_for(grievance_id: int):
    grievance = db.session.get(Grievance, grievance_id)
    if grievance is None:
        return None, (jsonify({"error": "not_found", "message": "grievance not found"}), 404)
    user = g.current_user
    if user.is_staff:
        if not can_access_location(user, grievance.location_id):
            return None, _forbidden_location()
    elif grievance.reported_by_id != user.user_id:
        return None, (jsonify({"error": "forbidden", "message": "not your grievance"}), 403)
    return grievance, None


@bp_ext.get("/grievances/<int:grievance_id>")
@require_roles()
def get_grievance(grievance_id: int) -> tuple[dict[str, object], int]:
    try:
        grievance, error = _grievance_for(grievance_id)
        if error:
            return error
        return jsonify({"grievance": grievance.to_dict()}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch grievance", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.put("/grievances/<int:grievance_id>")
@require_roles()
def update_grievance(grievance_id: int) -> tuple[dict[str, object], int]:
    """Update a grievance.

    Staff may move it along Pending -> In Progress -> Resolved/Rejected and
    change its priority; the reporter may only edit the text while Pending.
    """
    payload = request.get_json(silent=True) or {}
    user = g.current_user
    try:
        grievance, error = _grievance_for(grievance_id)
        if error:
            return error

        if not user.is_staff:
            if grievance.status != "Pending":
                return jsonify({"error": "conflict", "message": "grievance is already being handled"}), 409
            if any(key in payload for key in ("status", "priority", "resolution")):
                return jsonify({"error": "forbidden", "message": "only staff can change status"}), 403

        try:
            title = payload_text(payload, "title")
            description = payload_text(payload, "description")
        except ValueError as exc:
            return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
        if title:
            grievance.title = title
        if description:
            grievance.description = description

        priority = payload.get("priority")
        if priority:
            if priority not in GRIEVANCE_PRIORITIES:
                return jsonify({"error": "invalid_payload", "message": f"unknown priority: {priority}"}), 400
            grievance.priority = priority

        status = payload.get("status")
        if status and status != grievance.status:
            if status not in GRIEVANCE_TRANSITIONS.get(grievance.status, set()):
                return (
                    jsonify({"error": "invalid_transition",
                             "message": f"cannot move grievance from {grievance.status} to {status}"}),
                    400,
                )
            grievance.status = status
            if status in ("Resolved", "Rejected"):
                grievance.resolved_by_id = user.user_id
                grievance.resolved_at = utc_now()
        if payload.get("resolution") is not None:
            grievance.resolution = payload["resolution"]

        audit.record("UPDATE", "Grievance", grievance_id,
                     f"Grievance \"{grievance.title}\" is {grievance.status}", user.email)
        db.session.commit()
        return jsonify({"grievance": grievance.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update grievance", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.delete("/grievances/<int:grievance_id>")
@require_roles()
def delete_grievance(grievance_id: int) -> tuple[dict[str, object], int]:
    user = g.current_user
    try:
        grievance, error = _grievance_for(grievance_id)
        if error:
            return error
        if user.role != "Admin" and not (grievance.reported_by_id == user.user_id and grievance.status == "Pending"):
            return jsonify({"error": "forbidden", "message": "cannot delete this grievance"}), 403

        db.session.delete(grievance)
        audit.record("DELETE", "Grievance", grievance_id, f"Deleted grievance \"{grievance.title}\"", user.email)
        db.session.commit()
        return jsonify({"message": "Grievance deleted"}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete grievance", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ============================================================================
# Inventory
# ============================================================================

def _build_inventory(item: dict) -> Inventory:
    """Validate one inventory payload; raises ValueError with a readable message."""
    name = payload_text(item, "name")
    category = item.get("category")
    location_id = payload_value(item, "locationId", "location_id")
    status = item.get("status") or "Working"

    if not name or not category or location_id is None:
        raise ValueError("name, category and locationId are required")
    if category not in INVENTORY_CATEGORIES:
        raise ValueError(f"unknown category: {category}")
    if status not in INVENTORY_STATUSES:
        raise ValueError(f"unknown status: {status}")

    quantity = int(item.get("quantity", 1))
    if quantity < 0:
        raise ValueError("quantity must not be negative")

    return Inventory(
        name=name,
        category=category,
        location_id=int(location_id),
        quantity=quantity,
        amount=float(item.get("amount") or 0),
        status=status,
        purchase_date=parse_optional_datetime(payload_value(item, "purchaseDate", "purchase_date")),
        last_maintenance_date=parse_optional_datetime(
            payload_value(item, "lastMaintenanceDate", "last_maintenance_date")
        ),
        notes=item.get("notes"),
        serial_number=payload_value(item, "serialNumber", "serial_number"),
        brand=item.get("brand"),
        model=item.get("model"),
    )


@bp_ext.get("/inventory")
@require_roles("Admin", "Manager")
def list_inventory() -> tuple[dict[str, object], int]:
    try:
        query = scope_to_locations(Inventory.query, Inventory.location_id, g.current_user)
        location_id = request.args.get("locationId", type=int)
        if location_id:
            query = query.filter(Inventory.location_id == location_id)
        status = request.args.get("status")
        if status:
            query = query.filter(Inventory.status == status)
        items = query.order_by(Inventory.created_at.desc(), Inventory.inventory_id.desc()).all()
        return jsonify({"inventory": [item.to_dict() for item in items]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch inventory", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.post("/inventory")
@require_roles("Admin", "Manager")
def create_inventory() -> tuple[dict[str, object], int]:
    """Add one inventory item, or several when the body is a list.
    ---
    tags:
      - Inventory
    responses:
      201:
        description: Items created
      400:
        description: Invalid payload
      403:
        description: Location outside the manager's assignment
    """
    payload = request.get_json(silent=True)
    if not payload:
        return jsonify({"error": "invalid_payload", "message": "request body is required"}), 400
    entries = payload if isinstance(payload, list) else [payload]

    try:
        items = [_build_inventory(entry) for entry in entries]
    except (TypeError, ValueError, AttributeError) as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400

    for item in items:
        if db.session.get(Location, item.location_id) is None:
            return jsonify({"error": "not_found", "message": f"location {item.location_id} not found"}), 404
        if not can_access_location(g.current_user, item.location_id):
            return _forbidden_location()

    try:
        db.session.add_all(items)
        db.session.flush()
        for item in items:
            audit.record("CREATE", "Inventory", item.inventory_id, f"Added {item.quantity} x {item.name}",
                         g.current_user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create inventory", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"inventory": [item.to_dict() for item in items], "count": len(items)}), 201


@bp_ext.put("/inventory/<int:inventory_id>")
@require_roles("Admin", "Manager")
def update_inventory(inventory_id: int) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        item = db.session.get(Inventory, inventory_id)
        if item is None:
            return jsonify({"error": "not_found", "message": "inventory item not found"}), 404
        if not can_access_location(g.current_user, item.location_id):
            return _forbidden_location()

        status = payload.get("status")
        if status and status != item.status:
            if status not in INVENTORY_TRANSITIONS.get(item.status, set()):
                return (
                    jsonify({"error": "invalid_transition",
                             "message": f"cannot move item from {item.status} to {status}"}),
                    400,
                )
            item.status = status

        try:
            name = payload_text(payload, "name")
            if name:
                item.name = name
            if "quantity" in payload:
                item.quantity = int(payload["quantity"])
            if "amount" in payload:
                item.amount = float(payload["amount"])
            last_maintenance = payload_value(payload, "lastMaintenanceDate", "last_maintenance_date")
            if last_maintenance is not None:
                item.last_maintenance_date = parse_datetime(last_maintenance)
        except (TypeError, ValueError) as exc:
            return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
        for field in ("notes", "brand", "model"):
            if field in payload:
                setattr(item, field, payload[field])

        audit.record("UPDATE", "Inventory", inventory_id, f"Updated {item.name} ({item.status})",
                     g.current_user.email)
        db.session.commit()
        return jsonify({"inventory": item.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update inventory", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.delete("/inventory/<int:inventory_id>")
@require_roles("Admin")
def delete_inventory(inventory_id: int) -> tuple[dict[str, object], int]:
    try:
        item = db.session.get(Inventory, inventory_id)
        if item is None:
            return jsonify({"error": "not_found", "message": "inventory item not found"}), 404
        db.session.delete(item)
        audit.record("DELETE", "Inventory", inventory_id, f"Deleted {item.name}", g.current_user.email)
        db.session.commit()
        return jsonify({"message": "Inventory item deleted"}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete inventory", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ============================================================================
# Expenses
# ============================================================================

@bp_ext.get("/expenses")
@require_roles("Admin", "Manager")
def list_expenses() -> tuple[dict[str, object], int]:
    try:
        query = scope_to_locations(Expense.query, Expense.location_id, g.current_user)
        location_id = request.args.get("locationId", type=int)
        if location_id:
            query = query.filter(Expense.location_id == location_id)
        expenses = query.order_by(Expense.date.desc(), Expense.expense_id.desc()).all()
        total = sum(expense.amount for expense in expenses)
        return jsonify({"expenses": [e.to_dict() for e in expenses], "total": total}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch expenses", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.post("/expenses")
@require_roles("Admin", "Manager")
def create_expense() -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        description = payload_text(payload, "description")
        paid_to = payload_text(payload, "paidTo", "paid_to")
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    category = payload.get("category")
    method = payload.get("method")
    location_id = payload_value(payload, "locationId", "location_id")

    if not description or not paid_to or location_id is None or payload.get("amount") is None:
        return (
            jsonify({"error": "invalid_payload",
                     "message": "description, amount, paidTo and locationId are required"}),
            400,
        )
    if category not in EXPENSE_CATEGORIES:
        return jsonify({"error": "invalid_payload", "message": f"unknown category: {category}"}), 400
    if method not in EXPENSE_METHODS:
        return jsonify({"error": "invalid_payload", "message": f"unknown method: {method}"}), 400

    try:
        amount = float(payload["amount"])
        location_id = int(location_id)
        spent_on = parse_optional_datetime(payload.get("date")) or utc_now()
    except (TypeError, ValueError) as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    if not can_access_location(g.current_user, location_id):
        return _forbidden_location()

    try:
        expense = Expense(description=description, amount=amount, category=category, paid_to=paid_to,
                          method=method, date=spent_on, location_id=location_id)
        db.session.add(expense)
        db.session.flush()
        audit.record("CREATE", "Expense", expense.expense_id, f"Expense {description}: {amount:.2f}",
                     g.current_user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create expense", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"expense": expense.to_dict()}), 201


@bp_ext.put("/expenses/<int:expense_id>")
@require_roles("Admin", "Manager")
def update_expense(expense_id: int) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        expense = db.session.get(Expense, expense_id)
        if expense is None:
            return jsonify({"error": "not_found", "message": "expense not found"}), 404
        if not can_access_location(g.current_user, expense.location_id):
            return _forbidden_location()

        if payload.get("category") and payload["category"] not in EXPENSE_CATEGORIES:
            return jsonify({"error": "invalid_payload", "message": "unknown category"}), 400
        if payload.get("method") and payload["method"] not in EXPENSE_METHODS:
            return jsonify({"error": "invalid_payload", "message": "unknown method"}), 400

        try:
            if payload.get("amount") is not None:
                expense.amount = float(payload["amount"])
            if payload.get("date"):
                expense.date = parse_datetime(payload["date"])
            description = payload_text(payload, "description")
            paid_to = payload_text(payload, "paidTo", "paid_to")
        except (TypeError, ValueError) as exc:
            return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
        if description:
            expense.description = description
        if paid_to:
            expense.paid_to = paid_to
        for field in ("category", "method"):
            if payload.get(field):
                setattr(expense, field, payload[field])

        audit.record("UPDATE", "Expense", expense_id, f"Updated expense {expense.description}",
                     g.current_user.email)
        db.session.commit()
        return jsonify({"expense": expense.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update expense", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.delete("/expenses/<int:expense_id>")
@require_roles("Admin", "Manager")
def delete_expense(expense_id: int) -> tuple[dict[str, object], int]:
    try:
        expense = db.session.get(Expense, expense_id)
        if expense is None:
            return jsonify({"error": "not_found", "message": "expense not found"}), 404
        if not can_access_location(g.current_user, expense.location_id):
            return _forbidden_location()
        db.session.delete(expense)
        audit.record("DELETE", "Expense", expense_id, f"Deleted expense {expense.description}",
                     g.current_user.email)
        db.session.commit()
        return jsonify({"message": "Expense deleted"}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete expense", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ============================================================================
# Fee types
# ============================================================================

@bp_ext.get("/fees")
@require_roles()
def list_fees() -> tuple[dict[str, object], int]:
    try:
        fees = FeeType.query.order_by(FeeType.amount.asc()).all()
        return jsonify({"fees": [fee.to_dict() for fee in fees]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch fee types", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.post("/fees")
@require_roles("Admin")
def create_fee() -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        name = payload_text(payload, "name")
        duration = payload_text(payload, "duration")
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    if not name or not duration or payload.get("amount") is None:
        return jsonify({"error": "invalid_payload", "message": "name, amount and duration are required"}), 400
    try:
        amount = float(payload["amount"])
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_payload", "message": "amount must be a number"}), 400

    if FeeType.query.filter(func.lower(FeeType.name) == name.lower()).first():
        return jsonify({"error": "conflict", "message": "fee type already exists"}), 409

    try:
        fee = FeeType(name=name, amount=amount, duration=duration)
        db.session.add(fee)
        db.session.flush()
        audit.record("CREATE", "FeeType", fee.fee_type_id, f"Fee {name}: {amount:.2f} / {duration}",
                     g.current_user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create fee type", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"fee": fee.to_dict()}), 201


@bp_ext.put("/fees/<int:fee_type_id>")
@require_roles("Admin")
def update_fee(fee_type_id: int) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        fee = db.session.get(FeeType, fee_type_id)
        if fee is None:
            return jsonify({"error": "not_found", "message": "fee type not found"}), 404
        try:
            name = payload_text(payload, "name")
            duration = payload_text(payload, "duration")
        except ValueError as exc:
            return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
        if name:
            fee.name = name
        if duration:
            fee.duration = duration
        if payload.get("amount") is not None:
            try:
                fee.amount = float(payload["amount"])
            except (TypeError, ValueError):
                return jsonify({"error": "invalid_payload", "message": "amount must be a number"}), 400

        audit.record("UPDATE", "FeeType", fee_type_id, f"Updated fee {fee.name}", g.current_user.email)
        db.session.commit()
        return jsonify({"fee": fee.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update fee type", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.delete("/fees/<int:fee_type_id>")
@require_roles("Admin")
def delete_fee(fee_type_id: int) -> tuple[dict[str, object], int]:
    try:
        fee = db.session.get(FeeType, fee_type_id)
        if fee is None:
            return jsonify({"error": "not_found", "message": "fee type not found"}), 404
        db.session.delete(fee)
        audit.record("DELETE", "FeeType", fee_type_id, f"Deleted fee {fee.name}", g.current_user.email)
        db.session.commit()
        return jsonify({"message": "Fee type deleted"}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete fee type", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ============================================================================
# Users
# ============================================================================

@bp_ext.get("/users")
@require_roles("Admin")
def list_users() -> tuple[dict[str, object], int]:
    try:
        query = User.query
        role = request.args.get("role")
        if role:
            query = query.filter(User.role == role)
        users = query.order_by(User.user_id).all()
        return jsonify({"users": [user.to_dict() for user in users]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch users", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.post("/users")
@require_roles("Admin")
def create_user() -> tuple[dict[str, object], int]:
    """Create a staff or member login account.
    ---
    tags:
      - Users
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            name:
              type: string
            email:
              type: string
            password:
              type: string
            role:
              type: string
              enum: [Admin, Manager, Member]
            locationIds:
              type: array
              items:
                type: integer
          required:
            - name
            - email
            - password
            - role
    responses:
      201:
        description: User created
      400:
        description: Invalid payload
      409:
        description: Email already registered
    """
    payload = request.get_json(silent=True) or {}
    try:
        name = payload_text(payload, "name")
        email = payload_text(payload, "email").lower()
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    password = payload.get("password") or ""
    if not isinstance(password, str):
        return jsonify({"error": "invalid_payload", "message": "password must be a string"}), 400
    role = payload.get("role") or "Member"
    location_ids = payload_value(payload, "locationIds", "location_ids", default=[])

    if not name or not email or not password:
        return jsonify({"error": "invalid_payload", "message": "name, email and password are required"}), 400
    if role not in USER_ROLES:
        return jsonify({"error": "invalid_payload", "message": f"role must be one of: {', '.join(USER_ROLES)}"}), 400
    if User.query.filter(func.lower(User.email) == email).first():
        return jsonify({"error": "conflict", "message": "email address is already in use"}), 409

    try:
        locations = Location.query.filter(Location.location_id.in_([int(i) for i in location_ids])).all()
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_payload", "message": "locationIds must be integers"}), 400

    try:
        user = User(name=name, email=email, role=role, password_hash=generate_password_hash(password))
        user.locations = locations
        db.session.add(user)
        db.session.flush()
        audit.record("CREATE", "User", user.user_id, f"Created {role} account {email}", g.current_user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create user", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"user": user.to_dict()}), 201
