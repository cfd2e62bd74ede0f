"""Development server entry point."""
from __future__ import annotations

import logging
import os

from readingroom import create_app


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    flask_app = create_app()
    debug_enabled = os.environ.get("FLASK_DEBUG", "0") in {"1", "true", "True"}

    if debug_enabled:
        # show what routes are actually mounted
        print("\n=== URL MAP ===")
        for rule in sorted(flask_app.url_map.iter_rules(), key=lambda r: r.rule):
            print(f"{','.join(sorted(rule.methods - {'HEAD', 'OPTIONS'})):<20} {rule.rule}")
        print("===============\n")

    flask_app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=debug_enabled)


if __name__ == "__main__":
    main()
