"""HTTP routes for the reading-room portal backend."""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import func, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload
from werkzeug.security import check_password_hash, generate_password_hash

from .auth import build_token, can_access_location, require_roles, scope_to_locations
from .extensions import db
from .models import (Grievance, Location, Member, Notification, NotificationRead, Payment, Seat,
                     Subscription, User, WaitingList, utc_now)
from .services import audit
from .services.subscriptions import (SubscriptionError, assign_seat, build_seat_request,
                                     end_subscription, resolve_member, sweep_expired)
from .utils import payload_text

bp_health = Blueprint("health", __name__)
bp = Blueprint("api", __name__, url_prefix="/api")


def register_routes(app) -> None:
    from .routes_extended import bp_ext

    app.register_blueprint(bp_health)
    app.register_blueprint(bp)
    app.register_blueprint(bp_ext)


def _location_arg() -> int | None:
    """Parse the optional ?locationId= filter; raises ValueError if malformed."""
    raw = request.args.get("locationId") or request.args.get("location_id")
    return int(raw) if raw else None


def _can_view_member(user: User, member: Member) -> bool:
    return user.is_staff or (member.user_id is not None and member.user_id == user.user_id)


@bp_health.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp_health.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


@bp.post("/auth/login")
def login() -> tuple[dict[str, object], int]:
    """Authenticate a user by email/password and return an access token.
    ---
    tags:
      - Authentication
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            email:
              type: string
            password:
              type: string
          required:
            - email
            - password
    responses:
      200:
        description: Login successful, returns access token
      400:
        description: Missing email or password
      401:
        description: Invalid credentials
    """
    payload = request.get_json(silent=True) or {}

    try:
        email = payload_text(payload, "email").lower()
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    password = payload.get("password") or ""

    if not email or not isinstance(password, str) or not password:
        return (
            jsonify({"error": "invalid_payload", "message": "email and password are required"}),
            400,
        )

    user = User.query.filter(func.lower(User.email) == email).first()
    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "unauthorized", "message": "invalid email or password"}), 401

    try:
        audit.record("LOGIN", "User", user.user_id, f"User {user.email} logged in", user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to record login", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"token": build_token(user), "user": user.to_dict()}), 200


# ============================================================================
# Locations
# ============================================================================

def _add_missing_seats(location: Location) -> int:
    existing = {
        number
        for (number,) in db.session.query(Seat.seat_number).filter(Seat.location_id == location.location_id)
    }
    missing = [n for n in range(1, location.total_seats + 1) if n not in existing]
    db.session.add_all(Seat(seat_number=n, location_id=location.location_id, status="vacant") for n in missing)
    return len(missing)


@bp.get("/locations")
def list_locations() -> tuple[dict[str, object], int]:
    """Return active locations, newest first."""
    try:
        locations = (
            Location.query.filter(Location.is_active.is_(True))
            .order_by(Location.created_at.desc(), Location.location_id.desc())
            .all()
        )
        return jsonify({"locations": [location.to_dict() for location in locations]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch locations", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.post("/locations")
@require_roles("Admin", "Manager")
def create_location() -> tuple[dict[str, object], int]:
    """Create a location and its seats numbered 1..total_seats.
    ---
    tags:
      - Locations
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            name:
              type: string
            address:
              type: string
            totalSeats:
              type: integer
          required:
            - name
            - address
            - totalSeats
    responses:
      201:
        description: Location created
      400:
        description: Invalid payload
      500:
        description: Database error
    """
    payload = request.get_json(silent=True) or {}
    try:
        name = payload_text(payload, "name")
        address = payload_text(payload, "address")
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    total_seats = payload.get("totalSeats", payload.get("total_seats"))

    if not name or not address or total_seats is None:
        return jsonify({"error": "invalid_payload", "message": "name, address and totalSeats are required"}), 400
    try:
        total_seats = int(total_seats)
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_payload", "message": "totalSeats must be an integer"}), 400
    if total_seats < 0:
        return jsonify({"error": "invalid_payload", "message": "totalSeats must not be negative"}), 400

    try:
        location = Location(name=name, address=address, total_seats=total_seats)
        db.session.add(location)
        db.session.flush()
        _add_missing_seats(location)
        audit.record("CREATE", "Location", location.location_id,
                     f"Created location {name} with {total_seats} seats", g.current_user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create location", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"location": location.to_dict()}), 201


@bp.put("/locations/<int:location_id>")
@require_roles("Admin", "Manager")
def update_location(location_id: int) -> tuple[dict[str, object], int]:
    """Update a location. Raising totalSeats adds the missing seats; lowering it never removes seats."""
    payload = request.get_json(silent=True) or {}
    try:
        name = payload_text(payload, "name")
        address = payload_text(payload, "address")
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400

    try:
        location = db.session.get(Location, location_id)
        if location is None:
            return jsonify({"error": "not_found", "message": "location not found"}), 404
        if not can_access_location(g.current_user, location_id):
            return jsonify({"error": "forbidden", "message": "location outside your assignment"}), 403

        if name:
            location.name = name
        if address:
            location.address = address
        if "isActive" in payload:
            location.is_active = bool(payload["isActive"])
        total_seats = payload.get("totalSeats", payload.get("total_seats"))
        if total_seats is not None:
            try:
                location.total_seats = int(total_seats)
            except (TypeError, ValueError):
                return jsonify({"error": "invalid_payload", "message": "totalSeats must be an integer"}), 400
            _add_missing_seats(location)

        audit.record("UPDATE", "Location", location_id, f"Updated location {location.name}", g.current_user.email)
        db.session.commit()
        return jsonify({"location": location.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update location", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.delete("/locations/<int:location_id>")
@require_roles("Admin")
def delete_location(location_id: int) -> tuple[dict[str, object], int]:
    """Soft-delete: the location is deactivated, its history is kept."""
    try:
        location = db.session.get(Location, location_id)
        if location is None:
            return jsonify({"error": "not_found", "message": "location not found"}), 404

        location.is_active = False
        audit.record("DELETE", "Location", location_id, f"Deactivated location {location.name}", g.current_user.email)
        db.session.commit()
        return jsonify({"message": "Location deactivated successfully"}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to deactivate location", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ============================================================================
# Seats & waiting list
# ============================================================================

@bp.get("/seats")
@require_roles("Admin", "Manager")
def list_seats() -> tuple[dict[str, object], int]:
    """List seats with their current occupant, after sweeping expired subscriptions.
    ---
    tags:
      - Seats
    parameters:
      - name: locationId
        in: query
        type: integer
    responses:
      200:
        description: Seats ordered by location and seat number
      400:
        description: Invalid locationId
      500:
        description: Database error
    """
    try:
        location_id = _location_arg()
        sweep_expired()

        query = Seat.query.options(joinedload(Seat.assigned_member), joinedload(Seat.subscription))
        query = scope_to_locations(query, Seat.location_id, g.current_user)
        if location_id is not None:
            query = query.filter(Seat.location_id == location_id)
        seats = query.order_by(Seat.location_id, Seat.seat_number).all()

        return jsonify({
            "seats": [seat.to_dict() for seat in seats],
            "vacant": sum(1 for seat in seats if seat.status == "vacant"),
            "occupied": sum(1 for seat in seats if seat.status == "occupied"),
        }), 200
    except ValueError:
        return jsonify({"error": "invalid_parameters", "message": "locationId must be an integer"}), 400
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to fetch seats", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.get("/waiting")
@require_roles("Admin", "Manager")
def list_waiting() -> tuple[dict[str, object], int]:
    """Return the waiting list, oldest request first."""
    try:
        location_id = _location_arg()
        query = WaitingList.query.options(joinedload(WaitingList.member))
        query = scope_to_locations(query, WaitingList.location_id, g.current_user)
        if location_id is not None:
            query = query.filter(WaitingList.location_id == location_id)
        entries = query.order_by(WaitingList.requested_date.asc(), WaitingList.waiting_id.asc()).all()
        return jsonify({"waiting": [entry.to_dict() for entry in entries]}), 200
    except ValueError:
        return jsonify({"error": "invalid_parameters", "message": "locationId must be an integer"}), 400
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch waiting list", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.delete("/waiting/<int:waiting_id>")
@require_roles("Admin", "Manager")
def delete_waiting(waiting_id: int) -> tuple[dict[str, object], int]:
    """Manually clear a waiting-list entry."""
    try:
        entry = db.session.get(WaitingList, waiting_id)
        if entry is None:
            return jsonify({"error": "not_found", "message": "waiting entry not found"}), 404
        if not can_access_location(g.current_user, entry.location_id):
            return jsonify({"error": "forbidden", "message": "location outside your assignment"}), 403

        db.session.delete(entry)
        audit.record("DELETE", "WaitingList", waiting_id, "Removed waiting-list entry", g.current_user.email)
        db.session.commit()
        return jsonify({"message": "Removed from waiting list"}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to remove waiting entry", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ============================================================================
# Members
# ============================================================================

def _next_member_code() -> str:
    highest = db.session.query(func.max(Member.member_id)).scalar() or 0
    return f"MEM{highest + 1:04d}"


@bp.get("/members")
@require_roles("Admin", "Manager")
def list_members() -> tuple[dict[str, object], int]:
    try:
        members = Member.query.order_by(Member.created_at.desc(), Member.member_id.desc()).all()
        return jsonify({"members": [member.to_dict() for member in members]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch members", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.post("/members")
@require_roles("Admin", "Manager")
def create_member() -> tuple[dict[str, object], int]:
    """Register a member; with a password a Member login account is created too.
    ---
    tags:
      - Members
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
            phone:
              type: string
            address:
              type: string
            examPrep:
              type: string
            password:
              type: string
          required:
            - name
            - email
            - phone
            - address
    responses:
      201:
        description: Member created
      400:
        description: Invalid payload
      409:
        description: A login account with that email already exists
    """
    payload = request.get_json(silent=True) or {}
    try:
        name = payload_text(payload, "name")
        email = payload_text(payload, "email").lower()
        phone = payload_text(payload, "phone")
        address = payload_text(payload, "address")
        exam_prep = payload_text(payload, "examPrep", "exam_prep") or None
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    password = payload.get("password") or ""
    if not isinstance(password, str):
        return jsonify({"error": "invalid_payload", "message": "password must be a string"}), 400

    if not name or not email or not phone or not address:
        return (
            jsonify({"error": "invalid_payload", "message": "name, email, phone and address are required"}),
            400,
        )

    if password and User.query.filter(func.lower(User.email) == email).first():
        return jsonify({"error": "conflict", "message": "email address is already in use"}), 409

    try:
        member = Member(
            member_code=_next_member_code(),
            name=name,
            email=email,
            phone=phone,
            address=address,
            exam_prep=exam_prep,
        )
        if password:
            account = User(name=name, email=email, role="Member",
                           password_hash=generate_password_hash(password))
            db.session.add(account)
            db.session.flush()
            member.user_id = account.user_id
            account.qr_code = member.member_code

        db.session.add(member)
        db.session.flush()
        audit.record("CREATE", "Member", member.member_id,
                     f"Registered member {member.member_code} {name}", g.current_user.email)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create member", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"member": member.to_dict()}), 201


@bp.get("/members/<member_ref>")
@require_roles()
def get_member(member_ref: str) -> tuple[dict[str, object], int]:
    """Fetch a member by id or member code; members may only fetch themselves."""
    try:
        member = resolve_member(member_ref)
        if member is None:
            return jsonify({"error": "not_found", "message": "member not found"}), 404
        if not _can_view_member(g.current_user, member):
            return jsonify({"error": "forbidden", "message": "not your member record"}), 403
        return jsonify({"member": member.to_dict()}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch member", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.put("/members/<int:member_id>")
@require_roles("Admin", "Manager")
def update_member(member_id: int) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    changes = {}
    try:
        for field, keys in (("name", ("name",)), ("email", ("email",)), ("phone", ("phone",)),
                            ("address", ("address",)), ("exam_prep", ("examPrep", "exam_prep"))):
            value = payload_text(payload, *keys)
            if value:
                changes[field] = value
    except ValueError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400

    try:
        member = db.session.get(Member, member_id)
        if member is None:
            return jsonify({"error": "not_found", "message": "member not found"}), 404

        for field, value in changes.items():
            setattr(member, field, value)

        audit.record("UPDATE", "Member", member_id, f"Updated member {member.name}", g.current_user.email)
        db.session.commit()
        return jsonify({"member": member.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update member", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.delete("/members/<int:member_id>")
@require_roles("Admin")
def delete_member(member_id: int) -> tuple[dict[str, object], int]:
    """Delete a member with no subscription history, and their login account.

    Grievances keep a reference to the account, so a member who reported or
    resolved one is refused like one with subscriptions. Notifications and
    read receipts addressed to the account go with it.
    """
    try:
        member = db.session.get(Member, member_id)
        if member is None:
            return jsonify({"error": "not_found", "message": "member not found"}), 404
        if Subscription.query.filter_by(member_id=member_id).first() is not None:
            return (
                jsonify({"error": "conflict", "message": "member has subscriptions and cannot be deleted"}),
                409,
            )

        account = member.user
        if account is not None and Grievance.query.filter(
            or_(Grievance.reported_by_id == account.user_id, Grievance.resolved_by_id == account.user_id)
        ).first() is not None:
            return (
                jsonify({"error": "conflict", "message": "member has grievances and cannot be deleted"}),
                409,
            )

        WaitingList.query.filter_by(member_id=member_id).delete()
        if account is not None:
            NotificationRead.query.filter_by(user_id=account.user_id).delete()
            Notification.query.filter_by(user_id=account.user_id).delete()
        db.session.delete(member)
        if account is not None:
            db.session.delete(account)
        audit.record("DELETE", "Member", member_id,
                     f"Deleted member {member.name} ({member.email})", g.current_user.email)
        db.session.commit()
        return jsonify({"message": "Member deleted"}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete member", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ============================================================================
# Subscriptions & payments
# ============================================================================

@bp.get("/subscriptions")
@require_roles("Admin", "Manager")
def list_subscriptions() -> tuple[dict[str, object], int]:
    """Sweep expired subscriptions, then list subscriptions with member, seat and payments.
    ---
    tags:
      - Subscriptions
    parameters:
      - name: locationId
        in: query
        type: integer
    responses:
      200:
        description: Subscriptions, newest first
      400:
        description: Invalid locationId
      500:
        description: Database error
    """
    try:
        location_id = _location_arg()
        sweep_expired()

        query = Subscription.query.options(
            joinedload(Subscription.member),
            joinedload(Subscription.seat),
            joinedload(Subscription.payments),
        )
        query = scope_to_locations(query, Subscription.location_id, g.current_user)
        if location_id is not None:
            query = query.filter(Subscription.location_id == location_id)
        subscriptions = query.order_by(Subscription.subscription_id.desc()).all()

        return jsonify({"subscriptions": [s.to_dict() for s in subscriptions]}), 200
    except ValueError:
        return jsonify({"error": "invalid_parameters", "message": "locationId must be an integer"}), 400
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to fetch subscriptions", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.post("/subscriptions")
@require_roles("Admin", "Manager")
def create_subscription() -> tuple[dict[str, object], int]:
    """Assign a seat to a member, or queue them when the seat is taken.
    ---
    tags:
      - Subscriptions
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            memberId:
              type: string
            locationId:
              type: integer
            seatNumber:
              type: integer
            startDate:
              type: string
              example: "2024-01-01"
            duration:
              type: string
              example: 30 days
            amount:
              type: number
            paymentMethod:
              type: string
              enum: [cash, UPI]
            upiCode:
              type: string
            dateTime:
              type: string
    responses:
      201:
        description: Subscription created and seat occupied
      200:
        description: Seat occupied, member added to the waiting list
      400:
        description: Invalid payload
      403:
        description: Location outside the manager's assignment
      404:
        description: Member or seat not found
      409:
        description: Seat was claimed by a concurrent request, retry
      500:
        description: Database error
    """
    payload = request.get_json(silent=True) or {}
    try:
        seat_request = build_seat_request(payload)
        if not can_access_location(g.current_user, seat_request.location_id):
            return jsonify({"error": "forbidden", "message": "location outside your assignment"}), 403

        sweep_expired()
        result = assign_seat(seat_request, performed_by=g.current_user.email)
    except SubscriptionError as exc:
        db.session.rollback()
        current_app.logger.warning("Subscription request rejected: %s", exc.message)
        return jsonify({"error": exc.error_code, "message": exc.message}), exc.status_code
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create subscription", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    if result.queued:
        return jsonify({
            "message": "Seat occupied, added to waiting list",
            "waiting": result.waiting.to_dict(),
        }), 200

    return jsonify({"subscription": result.subscription.to_dict()}), 201


@bp.put("/subscriptions/<int:subscription_id>")
@require_roles("Admin", "Manager")
def end_subscription_route(subscription_id: int) -> tuple[dict[str, object], int]:
    """End a subscription now; the freed seat goes to the oldest waiting request."""
    try:
        subscription = db.session.get(Subscription, subscription_id)
        if subscription is None:
            return jsonify({"error": "not_found", "message": "subscription not found"}), 404
        if not can_access_location(g.current_user, subscription.location_id):
            return jsonify({"error": "forbidden", "message": "location outside your assignment"}), 403

        promoted = end_subscription(subscription, performed_by=g.current_user.email)
    except SubscriptionError as exc:
        db.session.rollback()
        current_app.logger.warning("Could not end subscription %s: %s", subscription_id, exc.message)
        return jsonify({"error": exc.error_code, "message": exc.message}), exc.status_code
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to end subscription", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({
        "message": "Subscription ended",
        "promoted": promoted.to_dict() if promoted else None,
    }), 200


@bp.get("/subscriptions/member/<member_ref>")
@require_roles()
def list_member_subscriptions(member_ref: str) -> tuple[dict[str, object], int]:
    try:
        member = resolve_member(member_ref)
        if member is None:
            return jsonify({"error": "not_found", "message": "member not found"}), 404
        if not _can_view_member(g.current_user, member):
            return jsonify({"error": "forbidden", "message": "not your member record"}), 403

        sweep_expired()
        subscriptions = (
            Subscription.query.filter_by(member_id=member.member_id)
            .order_by(Subscription.start_date.desc())
            .all()
        )
        active = next((s for s in subscriptions if s.status == "active"), None)
        return jsonify({
            "member": member.to_dict_basic(),
            "subscriptions": [s.to_dict() for s in subscriptions],
            "active_subscription": active.to_dict() if active else None,
        }), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to fetch member subscriptions", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.get("/payments/recent")
@require_roles("Admin", "Manager")
def list_recent_payments() -> tuple[dict[str, object], int]:
    try:
        limit = min(100, max(1, int(request.args.get("limit", 20))))
        query = Payment.query.join(Subscription, Payment.subscription_id == Subscription.subscription_id)
        query = scope_to_locations(query, Subscription.location_id, g.current_user)
        payments = query.order_by(Payment.date_time.desc(), Payment.payment_id.desc()).limit(limit).all()

        return jsonify({
            "payments": [
                {
                    **payment.to_dict(),
                    "member": payment.subscription.member.to_dict_basic() if payment.subscription.member else None,
                    "seat_number": payment.subscription.seat.seat_number if payment.subscription.seat else None,
                }
                for payment in payments
            ],
        }), 200
    except (ValueError, TypeError):
        return jsonify({"error": "invalid_parameters"}), 400
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch recent payments", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.get("/payments/member/<member_ref>")
@require_roles()
def list_member_payments(member_ref: str) -> tuple[dict[str, object], int]:
    try:
        member = resolve_member(member_ref)
        if member is None:
            return jsonify({"error": "not_found", "message": "member not found"}), 404
        if not _can_view_member(g.current_user, member):
            return jsonify({"error": "forbidden", "message": "not your member record"}), 403

        payments = (
            Payment.query.join(Subscription, Payment.subscription_id == Subscription.subscription_id)
            .filter(Subscription.member_id == member.member_id)
            .order_by(Payment.date_time.desc())
            .all()
        )
        return jsonify({
            "member": member.to_dict_basic(),
            "payments": [payment.to_dict() for payment in payments],
            "total_paid": sum(payment.amount for payment in payments),
            "generated_at": utc_now().isoformat(),
        }), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch member payments", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
