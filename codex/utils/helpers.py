"""Shared utility functions.

atomic:               transaction boundary for every mutating service call
parse_datetime_input: ISO datetime parsing for API inputs (raises ValueError)
parse_number:         numeric metadata from request bodies, collecting FieldErrors
parse_bool:           query-string / JSON truthiness
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from codex.core.exceptions import CodexError, ConflictError, FieldError, PersistenceError
from codex.models import db

logger = logging.getLogger(__name__)

_DEPTH_KEY = "codex_atomic_depth"


# ── Transaction helper ───────────────────────────────────────────────────────

@contextmanager
def atomic(session=None):
    """Run the enclosed block as one transaction.

    Only the outermost ``atomic`` commits; nested blocks join it, so a
    share-link submission and the object write it delegates to commit or
    roll back together.

    Usage::

        with atomic(self.session):
            ...  # add / flush / write_changelog
        # committed here

    Domain errors (``CodexError``) propagate unchanged after rollback.
    IntegrityError → ConflictError (409)
    other SQLAlchemyError → PersistenceError (500)
    """
    session = session or db.session
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except Exception as exc:
        if depth == 0:
            session.rollback()
        if isinstance(exc, CodexError) or not isinstance(exc, SQLAlchemyError):
            raise
        if isinstance(exc, IntegrityError):
            logger.warning("Integrity error in transaction: %s", exc.orig)
            raise ConflictError("Database", "Duplicate or constraint violation") from exc
        logger.exception("Database error in transaction")
        raise PersistenceError("Database error") from exc
    finally:
        session.info[_DEPTH_KEY] = depth


# ── Parsing ──────────────────────────────────────────────────────────────────

def parse_datetime_input(value, keep_offset=False):
    """Parse an ISO date/datetime string into an aware UTC datetime.

    Returns None for empty input, raises ValueError on bad input.
    Naive values are taken as UTC; a trailing ``Z`` is accepted.
    With ``keep_offset`` an explicit offset is preserved instead of being
    converted, so the caller sees the wall-clock value that was sent.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(
                "Invalid datetime format. Use ISO 8601 (YYYY-MM-DDTHH:MM:SS[+HH:MM])."
            ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if keep_offset:
        return parsed
    return parsed.astimezone(timezone.utc)


def parse_number(value, cast, field, errors, message="must be a number"):
    """Return ``cast(value)``, or None after appending a FieldError to ``errors``."""
    if value is None:
        return None
    if isinstance(value, bool):
        errors.append(FieldError(field, message, value))
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        errors.append(FieldError(field, message, value))
        return None


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
