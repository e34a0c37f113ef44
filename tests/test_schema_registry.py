"""
Schema registry tests (~25 tests)

Covers:
  - upsert_model create / full property replace / structural changelog
  - type-scoped auxiliary field stripping, default value checks
  - workflow assignment recompute
  - delete_model cascade, archive and referencing-model refusal
  - model groups and validation rulesets
"""

import pytest

from codex.core.exceptions import ConflictError, NotFoundError, ValidationFailedError
from codex.models.changelog import ChangelogEntry, StructuralChangelogEntry
from codex.models.data_object import DataObject
from codex.models.schema import Model, Property
from codex.models.sharing import SharedObjectLink
from codex.services.object_store import ObjectStore
from codex.services.schema_registry import SchemaRegistry
from codex.services.sharing_gateway import SharingGateway


def _structural(entity_type, action=None):
    query = StructuralChangelogEntry.query.filter_by(entity_type=entity_type)
    if action:
        query = query.filter_by(action=action)
    return query.all()


# ═══════════════════════════════════════════════════════════════════════════════
# A: Models
# ═══════════════════════════════════════════════════════════════════════════════


class TestUpsertModel:

    def test_create_model_with_properties(self, session):
        model = SchemaRegistry(session).upsert_model(
            {"name": "Task", "description": "Work items"},
            [
                {"name": "title", "type": "string", "required": True},
                {"name": "estimate", "type": "number", "min_value": 0},
            ],
            actor_id="admin",
        )
        assert model.id is not None
        assert [p.name for p in model.properties] == ["title", "estimate"]
        assert model.properties[0].required is True
        entries = _structural("Model", "CREATE")
        assert len(entries) == 1
        assert entries[0].user_id == "admin"
        assert entries[0].entity_name == "Task"

    def test_client_supplied_id_kept(self, session):
        model = SchemaRegistry(session).upsert_model({"id": "model-fixed-id", "name": "Fixed"}, [])
        assert model.id == "model-fixed-id"

    def test_name_required(self, session):
        with pytest.raises(ValidationFailedError) as exc:
            SchemaRegistry(session).upsert_model({"name": " "}, [])
        assert exc.value.errors[0].field == "name"

    def test_duplicate_name_conflict(self, session, make_model):
        make_model("Task")
        with pytest.raises(ConflictError):
            SchemaRegistry(session).upsert_model({"name": "Task"}, [])

    def test_duplicate_property_names_rejected(self, session):
        with pytest.raises(ValidationFailedError) as exc:
            SchemaRegistry(session).upsert_model({"name": "Dup"}, [
                {"name": "a", "type": "string"},
                {"name": "a", "type": "number"},
            ])
        assert exc.value.errors[0].field == "properties[1].name"

    def test_unknown_type_rejected(self, session):
        with pytest.raises(ValidationFailedError) as exc:
            SchemaRegistry(session).upsert_model({"name": "Bad"}, [{"name": "x", "type": "blob"}])
        assert exc.value.errors[0].field == "properties[0].type"

    def test_auxiliary_fields_stripped_for_foreign_types(self, session, make_model):
        model = make_model("Mixed", [
            {"name": "title", "type": "string", "min_value": 3, "is_unique": True, "unit": "kg"},
            {"name": "weight", "type": "number", "is_unique": True, "unit": "kg", "precision": 2},
            {"name": "due", "type": "date", "auto_set_on_create": True, "max_value": 9},
        ])
        title, weight, due = model.properties
        assert title.min_value is None and title.unit is None and title.is_unique is True
        assert weight.is_unique is False and weight.unit == "kg" and weight.precision == 2
        assert due.auto_set_on_create is True and due.max_value is None

    def test_ruleset_only_kept_on_text_types(self, session, make_model):
        ruleset = SchemaRegistry(session).create_ruleset({"name": "Digits", "regex_pattern": r"^\d+$"})
        model = make_model("Scoped", [
            {"name": "code", "type": "string", "validation_ruleset_id": ruleset.id},
            {"name": "body", "type": "markdown", "validation_ruleset_id": ruleset.id},
            {"name": "score", "type": "number", "validation_ruleset_id": ruleset.id},
            {"name": "stars", "type": "rating", "validation_ruleset_id": ruleset.id},
        ])
        assert [p.validation_ruleset_id for p in model.properties] == [
            ruleset.id, ruleset.id, None, None,
        ]

    def test_non_numeric_metadata_rejected_per_field(self, session):
        with pytest.raises(ValidationFailedError) as exc:
            SchemaRegistry(session).upsert_model({"name": "Q"}, [
                {"name": "amount", "type": "number", "min_value": "abc", "max_value": "10"},
                {"name": "rank", "type": "number", "order_index": "first"},
            ])
        assert {e.field for e in exc.value.errors} == {
            "properties[0].min_value", "properties[1].order_index",
        }
        assert Model.query.count() == 0

    def test_min_greater_than_max_rejected(self, session):
        with pytest.raises(ValidationFailedError):
            SchemaRegistry(session).upsert_model({"name": "Q"}, [
                {"name": "q", "type": "number", "min_value": 5, "max_value": 1},
            ])

    def test_invalid_default_value_rejected(self, session):
        with pytest.raises(ValidationFailedError) as exc:
            SchemaRegistry(session).upsert_model({"name": "D"}, [
                {"name": "count", "type": "number", "default_value": "many"},
            ])
        assert exc.value.errors[0].field == "properties[0].default_value"

    def test_relationship_needs_existing_model(self, session):
        with pytest.raises(ValidationFailedError) as exc:
            SchemaRegistry(session).upsert_model({"name": "Orphan"}, [
                {"name": "parent", "type": "relationship", "related_model_id": "nope"},
            ])
        assert exc.value.errors[0].field == "properties[0].related_model_id"

    def test_self_relationship_allowed_with_client_id(self, session):
        model = SchemaRegistry(session).upsert_model({"id": "node-model", "name": "Node"}, [
            {"name": "parent", "type": "relationship", "related_model_id": "node-model"},
        ])
        assert model.properties[0].related_model_id == "node-model"
        assert model.properties[0].relationship_type == "one"

    def test_full_replace_removes_unlisted_properties(self, session, make_model):
        model = make_model("Task", [
            {"name": "title", "type": "string"},
            {"name": "notes", "type": "markdown"},
        ])
        updated = SchemaRegistry(session).upsert_model(
            {"name": "Task"}, [{"name": "title", "type": "string", "required": True}],
            model_id=model.id, actor_id="admin",
        )
        assert [p.name for p in updated.properties] == ["title"]
        assert Property.query.filter_by(model_id=model.id).count() == 1

        update = _structural("Model", "UPDATE")[0]
        fields = {c["field"] for c in update.changes}
        assert "properties" in fields

    def test_display_property_names_filtered(self, session, make_model):
        model = make_model("Person", [{"name": "first", "type": "string"}],
                           display_property_names=["first", "ghost"])
        assert model.display_property_names == ["first"]

    def test_update_missing_model_not_found(self, session):
        with pytest.raises(NotFoundError):
            SchemaRegistry(session).upsert_model({"name": "X"}, [], model_id="missing")

    def test_assigning_workflow_recomputes_states(self, session, make_model, task_workflow):
        model = make_model("Task", [{"name": "title", "type": "string"}])
        obj = ObjectStore(session).create(model.id, {"title": "a"})
        assert obj.current_state_id is None

        SchemaRegistry(session).upsert_model(
            {"name": "Task", "workflow_id": task_workflow.id},
            [{"name": "title", "type": "string"}], model_id=model.id,
        )
        assert session.get(DataObject, obj.id).current_state_id == task_workflow.initial_state.id

        SchemaRegistry(session).upsert_model(
            {"name": "Task"}, [{"name": "title", "type": "string"}], model_id=model.id,
        )
        assert session.get(DataObject, obj.id).current_state_id is None


class TestDeleteModel:

    def test_delete_cascades_objects_changelog_and_links(self, session, make_model):
        model = make_model("Lead", [{"name": "name", "type": "string"}])
        obj = ObjectStore(session).create(model.id, {"name": "x"}, actor_id="u1")
        SharingGateway(session).create_link(
            {"link_type": "view", "model_id": model.id, "data_object_id": obj.id}, actor_id="u1",
        )

        result = SchemaRegistry(session).delete_model(model.id, actor_id="admin")
        session.expire_all()

        assert result == {"deleted": model.id, "object_count": 1, "archived": True}
        assert session.get(Model, model.id) is None
        assert DataObject.query.count() == 0
        assert ChangelogEntry.query.count() == 0
        assert SharedObjectLink.query.count() == 0
        assert Property.query.count() == 0

    def test_archive_kept_in_structural_changelog(self, session, make_model):
        model = make_model("Lead", [{"name": "name", "type": "string"}])
        obj_id = ObjectStore(session).create(model.id, {"name": "x"}).id
        SchemaRegistry(session).delete_model(model.id)

        entry = _structural("Model", "DELETE")[0]
        archived = entry.changes["archivedObjects"]
        assert archived[0]["id"] == obj_id
        assert archived[0]["data"] == {"name": "x"}
        assert archived[0]["changelog"][0]["change_type"] == "CREATE"

    def test_archive_disabled(self, session, make_model):
        model = make_model("Lead", [{"name": "name", "type": "string"}])
        ObjectStore(session).create(model.id, {"name": "x"})
        result = SchemaRegistry(session, archive_on_delete=False).delete_model(model.id)
        assert result["archived"] is False
        entry = _structural("Model", "DELETE")[0]
        assert "archivedObjects" not in entry.changes
        assert entry.changes["objectCount"] == 1

    def test_referenced_model_cannot_be_deleted(self, session, make_model):
        company = make_model("Company")
        make_model("Employee", [
            {"name": "employer", "type": "relationship", "related_model_id": company.id},
        ])
        with pytest.raises(ConflictError):
            SchemaRegistry(session).delete_model(company.id)


# ═══════════════════════════════════════════════════════════════════════════════
# B: Groups and rulesets
# ═══════════════════════════════════════════════════════════════════════════════


class TestGroups:

    def test_create_and_filter_models(self, session, make_model):
        registry = SchemaRegistry(session)
        group = registry.create_group({"name": "CRM"})
        make_model("Lead", group_id=group.id)
        make_model("Invoice")
        assert [m.name for m in registry.list_models(group_id=group.id)] == ["Lead"]

    def test_unknown_group_rejected(self, session):
        with pytest.raises(ValidationFailedError):
            SchemaRegistry(session).upsert_model({"name": "Lead", "group_id": "nope"}, [])

    def test_delete_group_detaches_models(self, session, make_model):
        registry = SchemaRegistry(session)
        group = registry.create_group({"name": "CRM"})
        model = make_model("Lead", group_id=group.id)
        registry.delete_group(group.id)
        assert session.get(Model, model.id).group_id is None

    def test_duplicate_group_conflict(self, session):
        registry = SchemaRegistry(session)
        registry.create_group({"name": "CRM"})
        with pytest.raises(ConflictError):
            registry.create_group({"name": "CRM"})


class TestRulesets:

    def test_invalid_regex_rejected(self, session):
        with pytest.raises(ValidationFailedError) as exc:
            SchemaRegistry(session).create_ruleset({"name": "Broken", "regex_pattern": "(["})
        assert exc.value.errors[0].field == "regex_pattern"

    def test_update_ruleset_writes_diff(self, session):
        registry = SchemaRegistry(session)
        ruleset = registry.create_ruleset({"name": "Code", "regex_pattern": "^[A-Z]+$"})
        registry.update_ruleset(ruleset.id, {"name": "Code", "regex_pattern": "^[A-Z0-9]+$"},
                                actor_id="admin")
        update = _structural("ValidationRuleset", "UPDATE")[0]
        assert update.changes == [
            {"field": "regex_pattern", "oldValue": "^[A-Z]+$", "newValue": "^[A-Z0-9]+$"},
        ]

    def test_ruleset_in_use_cannot_be_deleted(self, session, make_model):
        registry = SchemaRegistry(session)
        ruleset = registry.create_ruleset({"name": "Code", "regex_pattern": "^[A-Z]+$"})
        make_model("Item", [{"name": "code", "type": "string", "validation_ruleset_id": ruleset.id}])
        with pytest.raises(ConflictError):
            registry.delete_ruleset(ruleset.id)

    def test_delete_unused_ruleset(self, session):
        registry = SchemaRegistry(session)
        ruleset = registry.create_ruleset({"name": "Code", "regex_pattern": "^[A-Z]+$"})
        registry.delete_ruleset(ruleset.id)
        with pytest.raises(NotFoundError):
            registry.get_ruleset(ruleset.id)
