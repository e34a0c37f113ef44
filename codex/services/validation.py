"""
Validation Pipeline

Interprets a Model's current Property definitions against a candidate
record. Rules are re-derived from the Property rows on every call; nothing
is cached across requests.

Per property, in order:
  1. presence       required + null/absent/empty → error, skip the rest
  2. coercion       dispatch on ``Property.type``
  3. bounds         number min/max (inclusive)
  4. pattern        string/markdown ruleset regex
  5. relationship   every referenced id is a live object of the related model
  6. uniqueness     string ``is_unique``; live-store check, only when 1-5 passed

Field errors are collected, never fail-fast. A malformed ruleset regex is a
ConfigurationError and aborts immediately.

Usage:
    pipeline = ValidationPipeline(db.session)
    result = pipeline.validate(model, {"title": "x"})
    record = result.raise_for_errors()
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time

from sqlalchemy import select

from codex.core.exceptions import (
    ConfigurationError,
    FieldError,
    UniqueConstraintError,
    ValidationFailedError,
)
from codex.models.data_object import DataObject
from codex.models.schema import Model, Property
from codex.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)

TRUTHY_TOKENS = frozenset({"true", "1", "yes"})
PATTERN_TYPES = ("string", "markdown")


class _Invalid(Exception):
    """Internal: a single coercion/check failure for one field."""

    def __init__(self, message: str, rejected_value=None):
        self.message = message
        self.rejected_value = rejected_value
        super().__init__(message)


@dataclass
class ValidationResult:
    record: dict = field(default_factory=dict)
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> dict:
        if self.errors:
            raise ValidationFailedError(self.errors)
        return self.record


def is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, tuple)) and not value:
        return True
    return False


def compile_ruleset_pattern(pattern: str, ruleset_name: str = ""):
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(
            f"Validation ruleset '{ruleset_name}' has an invalid regex: {exc}"
        ) from exc


# ── Type coercion ────────────────────────────────────────────────────────────

def _coerce_text(prop, value):
    if isinstance(value, (dict, list, tuple)):
        raise _Invalid("must be text", value)
    if isinstance(value, str):
        return value
    return str(value)


def _coerce_number(prop, value):
    if isinstance(value, bool):
        raise _Invalid("not a valid number", value)
    if isinstance(value, (int, float)):
        number = value
    else:
        text = str(value).strip()
        try:
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                raise _Invalid("not a valid number", value) from None
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        raise _Invalid("not a valid number", value)
    return number


def _coerce_boolean(prop, value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY_TOKENS


def _coerce_date(prop, value):
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError:
        pass
    try:
        return parse_datetime_input(text, keep_offset=True).date().isoformat()
    except ValueError:
        raise _Invalid("not a valid date", value) from None


def _coerce_datetime(prop, value):
    try:
        return parse_datetime_input(value).isoformat()
    except (ValueError, TypeError):
        raise _Invalid("not a valid datetime", value) from None


def _coerce_time(prop, value):
    if isinstance(value, time):
        return value.isoformat()
    try:
        return time.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise _Invalid("not a valid time", value) from None


def _coerce_rating(prop, value):
    if isinstance(value, bool):
        raise _Invalid("not a valid rating", value)
    if isinstance(value, int):
        rating = value
    elif isinstance(value, float) and value.is_integer():
        rating = int(value)
    else:
        text = str(value).strip()
        try:
            rating = int(text)
        except ValueError:
            try:
                parsed = float(text)
            except ValueError:
                raise _Invalid("not a valid rating", value) from None
            if not parsed.is_integer():
                raise _Invalid("not a valid rating", value)
            rating = int(parsed)
    low = 1 if prop.required else 0
    if not low <= rating <= 5:
        raise _Invalid(f"rating must be between {low} and 5", value)
    return rating


def _coerce_relationship(prop, value):
    if prop.relationship_type == "many":
        items = value if isinstance(value, (list, tuple)) else [value]
        ids = []
        for item in items:
            if is_empty(item):
                continue
            if isinstance(item, (dict, list, tuple, bool)):
                raise _Invalid("must be a list of object ids", value)
            if str(item) not in ids:
                ids.append(str(item))
        return ids
    if isinstance(value, (dict, list, tuple, bool)):
        raise _Invalid("must be a single object id", value)
    return str(value)


_COERCERS = {
    "string": _coerce_text,
    "markdown": _coerce_text,
    "image": _coerce_text,
    "number": _coerce_number,
    "boolean": _coerce_boolean,
    "date": _coerce_date,
    "datetime": _coerce_datetime,
    "time": _coerce_time,
    "rating": _coerce_rating,
    "relationship": _coerce_relationship,
}


def coerce_value(prop: Property, value):
    """Coerce a non-empty value for ``prop``; raises ValidationFailedError."""
    try:
        return _COERCERS[prop.type](prop, value)
    except _Invalid as exc:
        raise ValidationFailedError.single(prop.name, exc.message, exc.rejected_value) from None


class ValidationPipeline:
    """Schema-metadata interpreter. One instance per unit of work."""

    def __init__(self, session):
        self.session = session

    # ── Public API ────────────────────────────────────────────────────

    def validate(
        self,
        model: Model,
        candidate: dict,
        existing: dict | None = None,
        *,
        object_id: str | None = None,
        check_unique: bool = True,
    ) -> ValidationResult:
        """
        Validate ``candidate`` against ``model``'s properties.

        With ``existing`` None every property is checked (create). Otherwise
        only the properties present in ``candidate`` are checked (update),
        and ``object_id`` is excluded from the uniqueness scan.

        The returned record holds coerced values for the checked properties
        only; empty non-required values coerce to None.
        """
        result = ValidationResult()
        for prop in model.properties:
            if existing is not None and prop.name not in candidate:
                continue
            value = candidate.get(prop.name)
            try:
                coerced = self._check_property(prop, value)
            except _Invalid as exc:
                result.errors.append(FieldError(prop.name, exc.message, exc.rejected_value))
                continue
            if prop.name not in candidate and is_empty(coerced):
                continue
            result.record[prop.name] = coerced

        if result.errors:
            logger.debug("Validation failed for model=%s fields=%s",
                         model.id, [e.field for e in result.errors])
            return result

        if check_unique:
            self.check_uniqueness(model, result.record, object_id=object_id)
        return result

    def check_uniqueness(self, model: Model, record: dict, *, object_id: str | None = None):
        """
        Raise UniqueConstraintError if any ``is_unique`` string value in
        ``record`` collides with another live object of ``model``.

        Must run inside the write transaction; the model row is locked
        (SELECT ... FOR UPDATE where the engine supports it) so concurrent
        writers to the same model serialise on the check.
        """
        unique_props = [
            p for p in model.properties
            if p.type == "string" and p.is_unique and not is_empty(record.get(p.name))
        ]
        if not unique_props:
            return

        self.session.execute(
            select(Model.id).where(Model.id == model.id).with_for_update()
        ).first()

        query = select(DataObject.id, DataObject.data).where(
            DataObject.model_id == model.id,
            DataObject.is_deleted.is_(False),
        )
        if object_id is not None:
            query = query.where(DataObject.id != object_id)

        wanted = {p.name: record[p.name] for p in unique_props}
        for other_id, data in self.session.execute(query):
            data = data or {}
            for name, value in wanted.items():
                if data.get(name) == value:
                    logger.info("Unique constraint hit model=%s field=%s other=%s",
                                model.id, name, other_id)
                    raise UniqueConstraintError(name, value)

    # ── Per-property steps ────────────────────────────────────────────

    def _check_property(self, prop: Property, value):
        # 1. presence
        if is_empty(value):
            if prop.required:
                raise _Invalid("Field is required", value)
            return [] if prop.type == "relationship" and prop.relationship_type == "many" else None

        # 2. coercion
        coercer = _COERCERS.get(prop.type)
        if coercer is None:
            raise ConfigurationError(f"Property '{prop.name}' has unknown type '{prop.type}'")
        coerced = coercer(prop, value)

        # 3. bounds
        if prop.type == "number":
            if prop.min_value is not None and coerced < prop.min_value:
                raise _Invalid(f"must be at least {_fmt_bound(prop.min_value)}", value)
            if prop.max_value is not None and coerced > prop.max_value:
                raise _Invalid(f"must be at most {_fmt_bound(prop.max_value)}", value)

        # 4. pattern
        if prop.type in PATTERN_TYPES and prop.validation_ruleset is not None:
            ruleset = prop.validation_ruleset
            regex = compile_ruleset_pattern(ruleset.regex_pattern, ruleset.name)
            if not regex.search(coerced):
                raise _Invalid(f"does not match the '{ruleset.name}' format", value)

        # 5. relationship integrity
        if prop.type == "relationship":
            ids = coerced if isinstance(coerced, list) else [coerced]
            if prop.relationship_type == "many" and not ids and prop.required:
                raise _Invalid("Field is required", value)
            missing = self._missing_related(prop.related_model_id, ids)
            if missing:
                raise _Invalid(
                    "references missing or deleted object(s): " + ", ".join(missing),
                    value,
                )

        return coerced

    def _missing_related(self, related_model_id: str | None, ids: list[str]) -> list[str]:
        if not ids:
            return []
        if related_model_id is None:
            return list(ids)
        found = set(
            self.session.execute(
                select(DataObject.id).where(
                    DataObject.id.in_(ids),
                    DataObject.model_id == related_model_id,
                    DataObject.is_deleted.is_(False),
                )
            ).scalars()
        )
        return [i for i in ids if i not in found]


def _fmt_bound(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
