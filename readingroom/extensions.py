"""Flask extension singletons, bound to the app in ``create_app``."""
from __future__ import annotations

from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# The portal frontend is served from a different origin.
cors = CORS()
