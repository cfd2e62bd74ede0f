#!/usr/bin/env python3
"""Run the notification generator once; intended for cron."""
from __future__ import annotations

import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from readingroom import create_app
from readingroom.services.notifications import generate_all_notifications


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    with app.app_context():
        summary = generate_all_notifications()

    for name, count in summary["created"].items():
        print(f"{name}: {count}")
    for name, error in summary["errors"].items():
        print(f"{name} failed: {error}", file=sys.stderr)
    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
