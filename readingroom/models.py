"""Database models for the reading-room portal backend."""
from __future__ import annotations

from datetime import datetime, timezone

from .extensions import db


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime, matching stored values."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


USER_ROLES = ("Admin", "Manager", "Member")
STAFF_ROLES = ("Admin", "Manager")

NOTIFICATION_TYPES = (
    # Member: subscription & payments
    "subscription_expiry_reminder",
    "subscription_expiry_3days",
    "subscription_expired",
    "subscription_renewed",
    "payment_received",
    "payment_failed",
    "invoice_generated",
    # Member: seat & access
    "seat_assigned",
    "seat_changed",
    "seat_available",
    # Member: grievances
    "grievance_submitted",
    "grievance_status_update",
    "grievance_resolved",
    # Member: account
    "profile_updated",
    "password_changed",
    "account_suspended",
    "welcome",
    # Manager: member management
    "new_member_registered",
    "member_waiting_approval",
    "member_subscription_expiring",
    "member_subscription_expired",
    "member_renewed",
    "member_removed",
    # Manager: payments
    "pending_payments",
    "revenue_alert",
    # Manager: seats
    "seat_became_vacant",
    "waiting_list_alert",
    "capacity_warning",
    # Manager: grievances
    "new_grievance",
    "high_priority_grievance",
    "grievance_unresolved_long",
    # Manager: inventory
    "inventory_low",
    "equipment_broken",
    "maintenance_due",
    # Manager: reports
    "expense_alert",
    "monthly_report_ready",
    # Admin: system & security
    "system_error",
    "database_backup",
    "user_lockout",
    "suspicious_activity",
    # Admin: user management
    "new_admin_created",
    "manager_created",
    "role_changed",
    # Admin: settings
    "settings_changed",
    "subscription_plan_changed",
    # Admin: financial
    "daily_revenue",
    "monthly_revenue",
    "pending_payments_total",
    # Legacy
    "subscription_expiry",
    "payment_overdue",
    "system_alert",
)

NOTIFICATION_PRIORITIES = ("critical", "high", "medium", "low")

NOTIFICATION_CATEGORIES = (
    "subscription",
    "payment",
    "seat",
    "grievance",
    "member",
    "inventory",
    "system",
    "security",
    "report",
    "account",
    "settings",
)

GRIEVANCE_CATEGORIES = (
    "AC", "Fan", "Lights", "Furniture", "Washroom",
    "Internet", "Noise", "Cleanliness", "Safety", "Other",
)
GRIEVANCE_STATUSES = ("Pending", "In Progress", "Resolved", "Rejected")
GRIEVANCE_PRIORITIES = ("Low", "Medium", "High", "Critical")

INVENTORY_CATEGORIES = ("AC", "CCTV", "Fan", "Light", "Furniture", "Electronics", "Other")
INVENTORY_STATUSES = ("Working", "Under Maintenance", "Broken", "Retired")

EXPENSE_CATEGORIES = (
    "Equipment", "Maintenance", "Utilities", "Salaries",
    "Marketing", "Supplies", "Rent", "Other",
)
EXPENSE_METHODS = ("Cash", "UPI", "Bank Transfer", "Cheque")


def _enum(*values: str, name: str) -> db.Enum:
    return db.Enum(*values, name=name, native_enum=False, validate_strings=True)


# Locations a manager is restricted to; no rows means all locations.
user_locations = db.Table(
    "user_locations",
    db.Column("user_id", db.Integer, db.ForeignKey("users.user_id"), primary_key=True),
    db.Column("location_id", db.Integer, db.ForeignKey("locations.location_id"), primary_key=True),
)


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(_enum(*USER_ROLES, name="user_role"), nullable=False, server_default="Member")
    qr_code = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    locations = db.relationship("Location", secondary=user_locations, lazy="selectin")

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def location_ids(self) -> list[int]:
        return [location.location_id for location in self.locations]

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.user_id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
        }

    def to_dict(self) -> dict[str, object]:
        data = self.to_dict_basic()
        data["locations"] = [{"id": loc.location_id, "name": loc.name} for loc in self.locations]
        data["qr_code"] = self.qr_code
        data["created_at"] = _iso(self.created_at)
        return data


class Location(db.Model):
    __tablename__ = "locations"

    location_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    total_seats = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    seats = db.relationship("Seat", back_populates="location", lazy="dynamic")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.location_id,
            "name": self.name,
            "address": self.address,
            "total_seats": self.total_seats,
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
        }


class Member(db.Model):
    __tablename__ = "members"

    member_id = db.Column(db.Integer, primary_key=True)
    member_code = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    exam_prep = db.Column(db.String(150))
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    user = db.relationship("User")

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.member_id,
            "member_code": self.member_code,
            "name": self.name,
            "email": self.email,
        }

    def to_dict(self) -> dict[str, object]:
        data = self.to_dict_basic()
        data.update({
            "phone": self.phone,
            "address": self.address,
            "exam_prep": self.exam_prep,
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
        })
        return data


class Seat(db.Model):
    __tablename__ = "seats"
    __table_args__ = (
        db.UniqueConstraint("location_id", "seat_number", name="uq_seats_location_seat_number"),
    )

    seat_id = db.Column(db.Integer, primary_key=True)
    seat_number = db.Column(db.Integer, nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    status = db.Column(_enum("vacant", "occupied", name="seat_status"), nullable=False, default="vacant")
    assigned_member_id = db.Column(db.Integer, db.ForeignKey("members.member_id"), nullable=True)
    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.subscription_id", use_alter=True, name="fk_seats_subscription_id"),
        nullable=True,
    )
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    location = db.relationship("Location", back_populates="seats")
    assigned_member = db.relationship("Member")
    subscription = db.relationship("Subscription", foreign_keys=[subscription_id], post_update=True)

    def vacate(self) -> None:
        self.status = "vacant"
        self.assigned_member_id = None
        self.subscription_id = None

    def to_dict(self) -> dict[str, object]:
        subscription = self.subscription
        return {
            "id": self.seat_id,
            "seat_number": self.seat_number,
            "location_id": self.location_id,
            "status": self.status,
            "assigned_member": self.assigned_member.to_dict_basic() if self.assigned_member else None,
            "subscription": {
                "id": subscription.subscription_id,
                "end_date": _iso(subscription.end_date),
                "status": subscription.status,
            } if subscription else None,
        }


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    subscription_id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.member_id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    seat_id = db.Column(db.Integer, db.ForeignKey("seats.seat_id"), nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    duration = db.Column(db.String(50), nullable=False)  # e.g. "30 days", "2 months"
    total_amount = db.Column(db.Float, nullable=False)
    status = db.Column(_enum("active", "expired", name="subscription_status"), nullable=False, default="active")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    member = db.relationship("Member")
    location = db.relationship("Location")
    seat = db.relationship("Seat", foreign_keys=[seat_id])
    payments = db.relationship(
        "Payment",
        back_populates="subscription",
        order_by="Payment.payment_id",
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.subscription_id,
            "member": self.member.to_dict_basic() if self.member else None,
            "location_id": self.location_id,
            "seat": {"id": self.seat.seat_id, "seat_number": self.seat.seat_number} if self.seat else None,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "duration": self.duration,
            "total_amount": self.total_amount,
            "status": self.status,
            "payments": [payment.to_dict() for payment in self.payments],
        }


class Payment(db.Model):
    __tablename__ = "payments"

    payment_id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.subscription_id"), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    method = db.Column(_enum("cash", "UPI", name="payment_method"), nullable=False)
    upi_code = db.Column(db.String(100))  # only for UPI
    date_time = db.Column(db.DateTime, nullable=False)
    unique_code = db.Column(db.String(30), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    subscription = db.relationship("Subscription", back_populates="payments")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.payment_id,
            "subscription_id": self.subscription_id,
            "amount": self.amount,
            "method": self.method,
            "upi_code": self.upi_code,
            "date_time": _iso(self.date_time),
            "unique_code": self.unique_code,
        }


class WaitingList(db.Model):
    __tablename__ = "waiting_list"

    waiting_id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.member_id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=True)
    seat_number = db.Column(db.Integer)
    start_date = db.Column(db.DateTime, nullable=False)
    duration = db.Column(db.String(50), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    payment_method = db.Column(db.String(20), nullable=False)
    upi_code = db.Column(db.String(100))
    date_time = db.Column(db.DateTime, nullable=False)
    requested_date = db.Column(db.DateTime, nullable=False, default=utc_now)

    member = db.relationship("Member")
    location = db.relationship("Location")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.waiting_id,
            "member": self.member.to_dict_basic() if self.member else None,
            "location_id": self.location_id,
            "seat_number": self.seat_number,
            "start_date": _iso(self.start_date),
            "duration": self.duration,
            "amount": self.amount,
            "payment_method": self.payment_method,
            "requested_date": _iso(self.requested_date),
        }


class Notification(db.Model):
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index(
            "ix_notifications_dedup",
            "user_id",
            "notification_type",
            "correlation_key",
            "created_at",
        ),
        db.Index("ix_notifications_user_created", "user_id", "created_at"),
        db.Index("ix_notifications_role", "target_role", "is_for_role"),
    )

    notification_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    notification_type = db.Column(_enum(*NOTIFICATION_TYPES, name="notification_type"), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON, nullable=True, default=dict)
    # Identifies the fact this notification reports (subscription id, grievance id, ...)
    correlation_key = db.Column(db.String(64), nullable=True)
    priority = db.Column(_enum(*NOTIFICATION_PRIORITIES, name="notification_priority"), nullable=False, default="medium")
    category = db.Column(_enum(*NOTIFICATION_CATEGORIES, name="notification_category"), nullable=False, default="system")
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime)
    is_for_role = db.Column(db.Boolean, nullable=False, default=False)
    target_role = db.Column(_enum("Admin", "Manager", "Member", "All", name="notification_target_role"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    expires_at = db.Column(db.DateTime)

    user = db.relationship("User")

    def mark_read(self) -> None:
        if not self.is_read:
            self.is_read = True
            self.read_at = utc_now()

    def to_dict(self, receipt: "NotificationRead | None" = None) -> dict[str, object]:
        """Serialize for one viewer; role-targeted rows take their read state from ``receipt``."""
        is_read, read_at = self.is_read, self.read_at
        if self.is_for_role:
            is_read, read_at = receipt is not None, receipt.read_at if receipt else None
        return {
            "id": self.notification_id,
            "user_id": self.user_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "data": self.data or {},
            "priority": self.priority,
            "category": self.category,
            "is_read": bool(is_read),
            "read_at": _iso(read_at),
            "is_for_role": bool(self.is_for_role),
            "target_role": self.target_role,
            "created_at": _iso(self.created_at),
        }


class NotificationRead(db.Model):
    """Per-user read receipt for role-targeted notifications."""

    __tablename__ = "notification_reads"

    notification_id = db.Column(db.Integer, db.ForeignKey("notifications.notification_id"), primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), primary_key=True)
    read_at = db.Column(db.DateTime, nullable=False, default=utc_now)


class Grievance(db.Model):
    __tablename__ = "grievances"

    grievance_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(_enum(*GRIEVANCE_CATEGORIES, name="grievance_category"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    reported_by_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    status = db.Column(_enum(*GRIEVANCE_STATUSES, name="grievance_status"), nullable=False, default="Pending")
    priority = db.Column(_enum(*GRIEVANCE_PRIORITIES, name="grievance_priority"), nullable=False, default="Medium")
    resolution = db.Column(db.Text)
    resolved_by_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    location = db.relationship("Location")
    reported_by = db.relationship("User", foreign_keys=[reported_by_id])
    resolved_by = db.relationship("User", foreign_keys=[resolved_by_id])

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.grievance_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "location": {"id": self.location.location_id, "name": self.location.name} if self.location else None,
            "reported_by": self.reported_by.to_dict_basic() if self.reported_by else None,
            "status": self.status,
            "priority": self.priority,
            "resolution": self.resolution,
            "resolved_by": self.resolved_by.to_dict_basic() if self.resolved_by else None,
            "resolved_at": _iso(self.resolved_at),
            "created_at": _iso(self.created_at),
        }


class Inventory(db.Model):
    __tablename__ = "inventory"

    inventory_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    category = db.Column(_enum(*INVENTORY_CATEGORIES, name="inventory_category"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    amount = db.Column(db.Float, nullable=False, default=0)
    status = db.Column(_enum(*INVENTORY_STATUSES, name="inventory_status"), nullable=False, default="Working")
    purchase_date = db.Column(db.DateTime)
    last_maintenance_date = db.Column(db.DateTime)
    notes = db.Column(db.Text)
    serial_number = db.Column(db.String(100))
    brand = db.Column(db.String(100))
    model = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    location = db.relationship("Location")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.inventory_id,
            "name": self.name,
            "category": self.category,
            "location": {"id": self.location.location_id, "name": self.location.name} if self.location else None,
            "quantity": self.quantity,
            "amount": self.amount,
            "status": self.status,
            "purchase_date": _iso(self.purchase_date),
            "last_maintenance_date": _iso(self.last_maintenance_date),
            "notes": self.notes,
            "serial_number": self.serial_number,
            "brand": self.brand,
            "model": self.model,
        }


class Expense(db.Model):
    __tablename__ = "expenses"

    expense_id = db.Column(db.Integer, primary_key=True)
    description = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    category = db.Column(_enum(*EXPENSE_CATEGORIES, name="expense_category"), nullable=False)
    paid_to = db.Column(db.String(150), nullable=False)
    method = db.Column(_enum(*EXPENSE_METHODS, name="expense_method"), nullable=False)
    date = db.Column(db.DateTime, nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    location = db.relationship("Location")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.expense_id,
            "description": self.description,
            "amount": self.amount,
            "category": self.category,
            "paid_to": self.paid_to,
            "method": self.method,
            "date": _iso(self.date),
            "location_id": self.location_id,
        }


class FeeType(db.Model):
    __tablename__ = "fee_types"

    fee_type_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    amount = db.Column(db.Float, nullable=False)
    duration = db.Column(db.String(50), nullable=False)  # e.g. "30 days", "1 month"
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.fee_type_id,
            "name": self.name,
            "amount": self.amount,
            "duration": self.duration,
        }


class Log(db.Model):
    """Audit trail entry written alongside state-changing operations."""

    __tablename__ = "logs"

    log_id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(50), nullable=False)
    entity = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(50))
    details = db.Column(db.Text)
    performed_by = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.log_id,
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "details": self.details,
            "performed_by": self.performed_by,
            "created_at": _iso(self.created_at),
        }
