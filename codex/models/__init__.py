"""
Codex Structure
SQLAlchemy database instance and shared model helpers.

All model modules import ``db`` from here:
    from codex.models import db
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None
