#!/usr/bin/env python3
"""Initialize database tables and make sure an Admin account exists."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure the project root is on sys.path so ``readingroom`` can be imported when run directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from readingroom import create_app
from readingroom.extensions import db
from readingroom.models import User


def init_database(admin_email: str, admin_password: str) -> None:
    app = create_app()
    with app.app_context():
        db.create_all()
        print("Database tables initialized successfully")

        admin = User.query.filter_by(email=admin_email).first()
        if admin is None:
            admin = User(
                name="Administrator",
                email=admin_email,
                role="Admin",
                password_hash=generate_password_hash(admin_password),
            )
            db.session.add(admin)
            db.session.commit()
            print(f"Created admin account {admin_email}")
        else:
            print(f"Admin account {admin_email} already exists")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create tables and seed the default admin account.")
    parser.add_argument("--email", default="admin@readingroom.local")
    parser.add_argument("--password", default="admin123")
    args = parser.parse_args()
    init_database(args.email, args.password)
