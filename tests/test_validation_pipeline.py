"""
Validation pipeline tests.

Covers:
  - presence (required / empty / absent)
  - coercion per property type
  - number bounds, ruleset patterns, relationship integrity
  - uniqueness against live objects only
  - error collection (all fields, not fail-fast)
"""

import pytest

from codex.core.exceptions import (
    ConfigurationError,
    UniqueConstraintError,
    ValidationFailedError,
)
from codex.models.schema import ValidationRuleset
from codex.services.object_store import ObjectStore
from codex.services.schema_registry import SchemaRegistry
from codex.services.validation import ValidationPipeline, coerce_value, is_empty


def _fields(result):
    return {e.field: e.message for e in result.errors}


# ═══════════════════════════════════════════════════════════════════════════════
# A: Presence and coercion
# ═══════════════════════════════════════════════════════════════════════════════


class TestPresence:

    def test_required_missing_is_error(self, session, make_model):
        model = make_model("Person", [{"name": "name", "type": "string", "required": True}])
        result = ValidationPipeline(session).validate(model, {})
        assert not result.ok
        assert _fields(result) == {"name": "Field is required"}

    def test_required_blank_string_is_error(self, session, make_model):
        model = make_model("Person", [{"name": "name", "type": "string", "required": True}])
        result = ValidationPipeline(session).validate(model, {"name": "   "})
        assert "name" in _fields(result)

    def test_optional_empty_is_skipped(self, session, make_model):
        model = make_model("Person", [{"name": "nickname", "type": "string"}])
        result = ValidationPipeline(session).validate(model, {})
        assert result.ok
        assert result.record == {}

    def test_collects_every_error(self, session, make_model):
        model = make_model("Person", [
            {"name": "name", "type": "string", "required": True},
            {"name": "age", "type": "number"},
            {"name": "born", "type": "date"},
        ])
        result = ValidationPipeline(session).validate(model, {"age": "old", "born": "yesterday"})
        assert set(_fields(result)) == {"name", "age", "born"}

    def test_raise_for_errors_carries_details(self, session, make_model):
        model = make_model("Person", [{"name": "name", "type": "string", "required": True}])
        with pytest.raises(ValidationFailedError) as exc:
            ValidationPipeline(session).validate(model, {}).raise_for_errors()
        assert exc.value.details[0]["field"] == "name"

    def test_update_mode_checks_only_present_keys(self, session, make_model):
        model = make_model("Person", [
            {"name": "name", "type": "string", "required": True},
            {"name": "age", "type": "number"},
        ])
        result = ValidationPipeline(session).validate(
            model, {"age": "42"}, existing={"name": "Ada"},
        )
        assert result.ok
        assert result.record == {"age": 42}


class TestCoercion:

    @pytest.mark.parametrize("raw,expected", [
        ("42", 42), ("3.5", 3.5), (7, 7), (" 10 ", 10),
    ])
    def test_number(self, session, make_model, raw, expected):
        model = make_model("N", [{"name": "n", "type": "number"}])
        result = ValidationPipeline(session).validate(model, {"n": raw})
        assert result.record["n"] == expected

    @pytest.mark.parametrize("raw", ["abc", True, "nan"])
    def test_number_rejects(self, session, make_model, raw):
        model = make_model("N", [{"name": "n", "type": "number"}])
        result = ValidationPipeline(session).validate(model, {"n": raw})
        assert _fields(result)["n"] == "not a valid number"

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("yes", True), ("no", False),
        ("false", False), ("whatever", False), (True, True),
    ])
    def test_boolean_truthy_tokens(self, session, make_model, raw, expected):
        model = make_model("B", [{"name": "b", "type": "boolean"}])
        result = ValidationPipeline(session).validate(model, {"b": raw})
        assert result.record["b"] is expected

    def test_date_normalised(self, session, make_model):
        model = make_model("D", [{"name": "d", "type": "date"}])
        result = ValidationPipeline(session).validate(model, {"d": "2026-03-01T10:00:00Z"})
        assert result.record["d"] == "2026-03-01"

    def test_date_keeps_calendar_day_of_offset_input(self, session, make_model):
        model = make_model("D", [{"name": "on", "type": "date"}])
        obj = ObjectStore(session).create(model.id, {"on": "2024-01-01T23:30:00-05:00"})
        assert obj.data["on"] == "2024-01-01"

    def test_datetime_normalised_to_utc(self, session, make_model):
        model = make_model("D", [{"name": "at", "type": "datetime"}])
        result = ValidationPipeline(session).validate(model, {"at": "2026-03-01T12:00:00+02:00"})
        assert result.record["at"] == "2026-03-01T10:00:00+00:00"

    def test_time(self, session, make_model):
        model = make_model("T", [{"name": "t", "type": "time"}])
        ok = ValidationPipeline(session).validate(model, {"t": "09:30"})
        assert ok.record["t"] == "09:30:00"
        bad = ValidationPipeline(session).validate(model, {"t": "25:99"})
        assert "t" in _fields(bad)

    def test_rating_bounds_depend_on_required(self, session, make_model):
        model = make_model("R", [
            {"name": "optional", "type": "rating"},
            {"name": "mandatory", "type": "rating", "required": True},
        ])
        result = ValidationPipeline(session).validate(model, {"optional": 0, "mandatory": 0})
        assert set(_fields(result)) == {"mandatory"}
        result = ValidationPipeline(session).validate(model, {"optional": "6", "mandatory": 5})
        assert set(_fields(result)) == {"optional"}

    @pytest.mark.parametrize("raw,expected", [(4.0, 4), ("4.0", 4), (" 3 ", 3)])
    def test_rating_integral_forms(self, session, make_model, raw, expected):
        model = make_model("R", [{"name": "r", "type": "rating"}])
        result = ValidationPipeline(session).validate(model, {"r": raw})
        assert result.record["r"] == expected

    @pytest.mark.parametrize("raw", [4.5, "4.5", "four"])
    def test_rating_rejects_fractions(self, session, make_model, raw):
        model = make_model("R", [{"name": "r", "type": "rating"}])
        result = ValidationPipeline(session).validate(model, {"r": raw})
        assert _fields(result)["r"] == "not a valid rating"

    def test_string_rejects_structures(self, session, make_model):
        model = make_model("S", [{"name": "s", "type": "string"}])
        result = ValidationPipeline(session).validate(model, {"s": {"a": 1}})
        assert _fields(result)["s"] == "must be text"

    def test_coerce_value_raises_single(self, session, make_model):
        model = make_model("N", [{"name": "n", "type": "number"}])
        with pytest.raises(ValidationFailedError) as exc:
            coerce_value(model.properties[0], "x")
        assert exc.value.errors[0].field == "n"

    def test_is_empty(self):
        assert is_empty(None)
        assert is_empty("  ")
        assert is_empty([])
        assert not is_empty(0)
        assert not is_empty(False)


# ═══════════════════════════════════════════════════════════════════════════════
# B: Bounds, patterns, relationships
# ═══════════════════════════════════════════════════════════════════════════════


class TestBoundsAndPatterns:

    def test_min_max_inclusive(self, session, make_model):
        model = make_model("Q", [
            {"name": "qty", "type": "number", "min_value": 1, "max_value": 10},
        ])
        pipeline = ValidationPipeline(session)
        assert pipeline.validate(model, {"qty": 1}).ok
        assert pipeline.validate(model, {"qty": 10}).ok
        assert _fields(pipeline.validate(model, {"qty": 0}))["qty"] == "must be at least 1"
        assert _fields(pipeline.validate(model, {"qty": 11}))["qty"] == "must be at most 10"

    def test_ruleset_pattern(self, session, make_model):
        ruleset = SchemaRegistry(session).create_ruleset(
            {"name": "Email", "regex_pattern": r"^[^@\s]+@[^@\s]+\.[a-z]+$"},
        )
        model = make_model("Contact", [
            {"name": "email", "type": "string", "validation_ruleset_id": ruleset.id},
        ])
        pipeline = ValidationPipeline(session)
        assert pipeline.validate(model, {"email": "a@b.io"}).ok
        result = pipeline.validate(model, {"email": "not-an-email"})
        assert _fields(result)["email"] == "does not match the 'Email' format"

    def test_malformed_ruleset_is_configuration_error(self, session, make_model):
        ruleset = SchemaRegistry(session).create_ruleset({"name": "Code", "regex_pattern": "^[A-Z]+$"})
        model = make_model("Item", [
            {"name": "code", "type": "string", "validation_ruleset_id": ruleset.id},
        ])
        # Bypass registry checks to simulate a corrupted row.
        session.get(ValidationRuleset, ruleset.id).regex_pattern = "(["
        session.flush()
        with pytest.raises(ConfigurationError):
            ValidationPipeline(session).validate(model, {"code": "ABC"})


class TestRelationships:

    def test_one_must_reference_live_object(self, session, make_model):
        company = make_model("Company", [{"name": "name", "type": "string"}])
        person = make_model("Employee", [{
            "name": "employer", "type": "relationship",
            "relationship_type": "one", "related_model_id": company.id,
        }])
        acme = ObjectStore(session).create(company.id, {"name": "Acme"})
        pipeline = ValidationPipeline(session)

        assert pipeline.validate(person, {"employer": acme.id}).ok
        assert "employer" in _fields(pipeline.validate(person, {"employer": "missing-id"}))

        ObjectStore(session).soft_delete(acme.id)
        assert "employer" in _fields(pipeline.validate(person, {"employer": acme.id}))

    def test_many_dedupes_and_checks_each(self, session, make_model):
        tag = make_model("Tag", [{"name": "label", "type": "string"}])
        post = make_model("Post", [{
            "name": "tags", "type": "relationship",
            "relationship_type": "many", "related_model_id": tag.id,
        }])
        store = ObjectStore(session)
        a = store.create(tag.id, {"label": "a"})
        b = store.create(tag.id, {"label": "b"})
        pipeline = ValidationPipeline(session)

        result = pipeline.validate(post, {"tags": [a.id, b.id, a.id]})
        assert result.record["tags"] == [a.id, b.id]
        result = pipeline.validate(post, {"tags": [a.id, "ghost"]})
        assert "ghost" in _fields(result)["tags"]

    def test_object_of_other_model_is_rejected(self, session, make_model):
        company = make_model("Company", [{"name": "name", "type": "string"}])
        other = make_model("Other", [{"name": "name", "type": "string"}])
        person = make_model("Employee", [{
            "name": "employer", "type": "relationship", "related_model_id": company.id,
        }])
        stranger = ObjectStore(session).create(other.id, {"name": "x"})
        result = ValidationPipeline(session).validate(person, {"employer": stranger.id})
        assert "employer" in _fields(result)


# ═══════════════════════════════════════════════════════════════════════════════
# C: Uniqueness
# ═══════════════════════════════════════════════════════════════════════════════


class TestUniqueness:

    def test_duplicate_live_value_rejected(self, session, make_model):
        model = make_model("User", [{"name": "email", "type": "string", "is_unique": True}])
        ObjectStore(session).create(model.id, {"email": "a@x.io"})
        with pytest.raises(UniqueConstraintError) as exc:
            ValidationPipeline(session).validate(model, {"email": "a@x.io"})
        assert exc.value.field == "email"

    def test_soft_deleted_do_not_count(self, session, make_model):
        model = make_model("User", [{"name": "email", "type": "string", "is_unique": True}])
        store = ObjectStore(session)
        first = store.create(model.id, {"email": "a@x.io"})
        store.soft_delete(first.id)
        assert ValidationPipeline(session).validate(model, {"email": "a@x.io"}).ok

    def test_own_object_excluded(self, session, make_model):
        model = make_model("User", [{"name": "email", "type": "string", "is_unique": True}])
        obj = ObjectStore(session).create(model.id, {"email": "a@x.io"})
        result = ValidationPipeline(session).validate(
            model, {"email": "a@x.io"}, existing=obj.data, object_id=obj.id,
        )
        assert result.ok

    def test_uniqueness_skipped_when_field_errors(self, session, make_model):
        model = make_model("User", [
            {"name": "email", "type": "string", "is_unique": True},
            {"name": "age", "type": "number"},
        ])
        ObjectStore(session).create(model.id, {"email": "a@x.io"})
        result = ValidationPipeline(session).validate(model, {"email": "a@x.io", "age": "x"})
        assert set(_fields(result)) == {"age"}
