"""Default configuration, overridable through environment variables."""
from __future__ import annotations

import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///readingroom.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    AUTH_TOKEN_MAX_AGE = int(os.environ.get("AUTH_TOKEN_MAX_AGE", 86400))
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payment receipts: EVOLVE<year><month><sequence>
    PAYMENT_CODE_PREFIX = os.environ.get("PAYMENT_CODE_PREFIX", "EVOLVE")

    # Notification generator thresholds
    CAPACITY_WARNING_THRESHOLD = float(os.environ.get("CAPACITY_WARNING_THRESHOLD", 0.90))
    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", 2))
    GRIEVANCE_OVERDUE_DAYS = int(os.environ.get("GRIEVANCE_OVERDUE_DAYS", 3))
    EXPIRED_NOTIFICATION_LOOKBACK_DAYS = int(os.environ.get("EXPIRED_NOTIFICATION_LOOKBACK_DAYS", 30))
    NOTIFICATION_PURGE_DAYS = int(os.environ.get("NOTIFICATION_PURGE_DAYS", 30))
