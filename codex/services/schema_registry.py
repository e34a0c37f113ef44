"""
Schema Registry

Stores Model / Property definitions, model groups and validation rulesets.

Structural rules:
  - upsert_model fully replaces the Property set (delete-all, reinsert);
    the before/after diff is kept only for the structural changelog.
  - Property auxiliary fields that do not belong to the property's type
    are stripped before storage.
  - Changing (or clearing) a model's workflow recomputes the state of
    every object of that model in the same transaction.
  - Every mutation writes a StructuralChangelogEntry.

Usage:
    registry = SchemaRegistry(db.session)
    model = registry.upsert_model({"name": "Task"}, [{"name": "title", "type": "string"}])
"""

import logging

from sqlalchemy import select

from codex.core.exceptions import (
    ConfigurationError,
    ConflictError,
    FieldError,
    NotFoundError,
    ValidationFailedError,
)
from codex.models.changelog import (
    ChangelogEntry,
    StructuralAction,
    write_structural_change,
)
from codex.models.data_object import DataObject
from codex.models.schema import (
    PROPERTY_TYPES,
    RELATIONSHIP_TYPES,
    TYPE_SCOPED_FIELDS,
    Model,
    ModelGroup,
    Property,
    ValidationRuleset,
)
from codex.models.workflow import Workflow
from codex.services.validation import coerce_value, compile_ruleset_pattern
from codex.services.workflow_engine import WorkflowEngine
from codex.utils.helpers import atomic, parse_number

logger = logging.getLogger(__name__)

_BOOL_FIELDS = ("required", "is_unique", "auto_set_on_create", "auto_set_on_update")
_FLOAT_FIELDS = ("min_value", "max_value")
_DIFF_FIELDS = ("name", "description", "display_property_names", "group_id", "workflow_id")


def _diff(before: dict, after: dict, fields) -> list[dict]:
    return [
        {"field": f, "oldValue": before.get(f), "newValue": after.get(f)}
        for f in fields
        if before.get(f) != after.get(f)
    ]


def _property_signature(prop: dict) -> dict:
    return {k: v for k, v in prop.items() if k not in ("id", "model_id")}


class SchemaRegistry:
    """Model, Property, ModelGroup and ValidationRuleset definitions."""

    def __init__(self, session, *, workflow_engine: WorkflowEngine | None = None,
                 archive_on_delete: bool = True):
        self.session = session
        self.workflow_engine = workflow_engine or WorkflowEngine(session)
        self.archive_on_delete = archive_on_delete

    # ═════════════════════════════════════════════════════════════════
    # Models
    # ═════════════════════════════════════════════════════════════════

    def get_model(self, model_id: str) -> Model:
        model = self.session.get(Model, model_id)
        if model is None:
            raise NotFoundError("Model", model_id)
        return model

    def list_models(self, group_id: str | None = None) -> list[Model]:
        query = select(Model).order_by(Model.name)
        if group_id:
            query = query.where(Model.group_id == group_id)
        return list(self.session.execute(query).scalars())

    def upsert_model(self, data: dict, properties: list[dict], *,
                     model_id: str | None = None,
                     actor_id: str | None = None) -> Model:
        """
        Create (``model_id`` None) or structurally replace a model.

        ``data``: ``{id?, name, description?, display_property_names?,
        group_id?, workflow_id?}``. ``properties`` is the complete new
        property list; anything not listed is removed.
        """
        target_id = model_id or data.get("id")
        name = (data.get("name") or "").strip()
        errors = []
        if not name:
            errors.append(FieldError("name", "Model name is required", data.get("name")))
        group_id = data.get("group_id") or None
        if group_id and self.session.get(ModelGroup, group_id) is None:
            errors.append(FieldError("group_id", "Model group not found", group_id))
        workflow_id = data.get("workflow_id") or None
        if workflow_id and self.session.get(Workflow, workflow_id) is None:
            errors.append(FieldError("workflow_id", "Workflow not found", workflow_id))

        normalized, prop_errors = self._normalize_properties(properties or [], target_id)
        errors.extend(prop_errors)
        if errors:
            raise ValidationFailedError(errors)

        prop_names = [p["name"] for p in normalized]
        display = [n for n in (data.get("display_property_names") or []) if n in prop_names]

        with atomic(self.session):
            model = self.get_model(model_id) if model_id else None
            clash = self.session.execute(select(Model.id).where(Model.name == name)).scalar()
            if clash and (model is None or clash != model.id):
                raise ConflictError("Model", f"Model named '{name}' already exists")

            before = model.to_dict() if model else None
            old_workflow_id = model.workflow_id if model else None
            if model is None:
                model = Model(id=target_id) if target_id else Model()
                self.session.add(model)

            model.name = name
            model.description = data.get("description")
            model.display_property_names = display
            model.group_id = group_id
            model.workflow_id = workflow_id
            self.session.flush()

            model.properties.clear()
            self.session.flush()
            for cols in normalized:
                model.properties.append(Property(**cols))
            self.session.flush()

            if before is not None and old_workflow_id != workflow_id:
                self.session.expire(model, ["workflow"])
                self.workflow_engine.recompute_states_for_model(model)

            after = model.to_dict()
            if before is None:
                write_structural_change(
                    entity_type="Model", entity_id=model.id, entity_name=model.name,
                    action=StructuralAction.CREATE, changes=after,
                    actor_id=actor_id, session=self.session,
                )
            else:
                changes = _diff(before, after, _DIFF_FIELDS)
                old_props = [_property_signature(p) for p in before["properties"]]
                new_props = [_property_signature(p) for p in after["properties"]]
                if old_props != new_props:
                    changes.append({"field": "properties", "oldValue": old_props, "newValue": new_props})
                write_structural_change(
                    entity_type="Model", entity_id=model.id, entity_name=model.name,
                    action=StructuralAction.UPDATE, changes=changes,
                    actor_id=actor_id, session=self.session,
                )

        logger.info("Model %s %s with %d properties", model.id,
                    "created" if before is None else "updated", len(normalized),
                    extra={"model_id": model.id, "actor_id": actor_id})
        return model

    def delete_model(self, model_id: str, *, actor_id: str | None = None) -> dict:
        """
        Delete a model; its properties, objects, changelog rows and share
        links go with it through the FK cascade. With ``archive_on_delete``
        the structural DELETE entry keeps every object and its changelog.
        """
        with atomic(self.session):
            model = self.get_model(model_id)
            referencing = self.session.execute(
                select(Model.name)
                .join(Property, Property.model_id == Model.id)
                .where(Property.related_model_id == model.id, Model.id != model.id)
                .distinct()
            ).scalars().all()
            if referencing:
                raise ConflictError(
                    "Model",
                    f"Model '{model.name}' is referenced by relationship properties of: "
                    + ", ".join(referencing),
                )

            objects = self.session.execute(
                select(DataObject).where(DataObject.model_id == model.id)
            ).scalars().all()
            changes = {"model": model.to_dict(), "objectCount": len(objects)}
            if self.archive_on_delete:
                changes["archivedObjects"] = [self._archive_object(o) for o in objects]

            write_structural_change(
                entity_type="Model", entity_id=model.id, entity_name=model.name,
                action=StructuralAction.DELETE, changes=changes,
                actor_id=actor_id, session=self.session,
            )
            self.session.delete(model)

        logger.info("Model %s deleted (%d objects, archived=%s)", model_id, len(objects),
                    self.archive_on_delete, extra={"model_id": model_id, "actor_id": actor_id})
        return {"deleted": model_id, "object_count": len(objects),
                "archived": self.archive_on_delete}

    # ═════════════════════════════════════════════════════════════════
    # Model groups
    # ═════════════════════════════════════════════════════════════════

    def list_groups(self) -> list[ModelGroup]:
        return list(self.session.execute(select(ModelGroup).order_by(ModelGroup.name)).scalars())

    def create_group(self, data: dict, *, actor_id: str | None = None) -> ModelGroup:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationFailedError.single("name", "Group name is required", data.get("name"))
        with atomic(self.session):
            if self.session.execute(select(ModelGroup.id).where(ModelGroup.name == name)).scalar():
                raise ConflictError("ModelGroup", f"Model group named '{name}' already exists")
            group = ModelGroup(name=name, description=data.get("description"))
            self.session.add(group)
            self.session.flush()
            write_structural_change(
                entity_type="ModelGroup", entity_id=group.id, entity_name=name,
                action=StructuralAction.CREATE, changes=group.to_dict(),
                actor_id=actor_id, session=self.session,
            )
        return group

    def delete_group(self, group_id: str, *, actor_id: str | None = None) -> None:
        with atomic(self.session):
            group = self.session.get(ModelGroup, group_id)
            if group is None:
                raise NotFoundError("ModelGroup", group_id)
            for model in self.session.execute(
                select(Model).where(Model.group_id == group.id)
            ).scalars():
                model.group_id = None
            write_structural_change(
                entity_type="ModelGroup", entity_id=group.id, entity_name=group.name,
                action=StructuralAction.DELETE, changes=group.to_dict(),
                actor_id=actor_id, session=self.session,
            )
            self.session.delete(group)

    # ═════════════════════════════════════════════════════════════════
    # Validation rulesets
    # ═════════════════════════════════════════════════════════════════

    def list_rulesets(self) -> list[ValidationRuleset]:
        return list(self.session.execute(
            select(ValidationRuleset).order_by(ValidationRuleset.name)
        ).scalars())

    def get_ruleset(self, ruleset_id: str) -> ValidationRuleset:
        ruleset = self.session.get(ValidationRuleset, ruleset_id)
        if ruleset is None:
            raise NotFoundError("ValidationRuleset", ruleset_id)
        return ruleset

    def create_ruleset(self, data: dict, *, actor_id: str | None = None) -> ValidationRuleset:
        name, pattern = self._check_ruleset_input(data)
        with atomic(self.session):
            self._ensure_ruleset_name_free(name)
            ruleset = ValidationRuleset(
                name=name, regex_pattern=pattern, description=data.get("description"),
            )
            self.session.add(ruleset)
            self.session.flush()
            write_structural_change(
                entity_type="ValidationRuleset", entity_id=ruleset.id, entity_name=name,
                action=StructuralAction.CREATE, changes=ruleset.to_dict(),
                actor_id=actor_id, session=self.session,
            )
        logger.info("Validation ruleset %s created", ruleset.id, extra={"actor_id": actor_id})
        return ruleset

    def update_ruleset(self, ruleset_id: str, data: dict, *,
                       actor_id: str | None = None) -> ValidationRuleset:
        name, pattern = self._check_ruleset_input(data)
        with atomic(self.session):
            ruleset = self.get_ruleset(ruleset_id)
            self._ensure_ruleset_name_free(name, exclude_id=ruleset.id)
            before = ruleset.to_dict()
            ruleset.name = name
            ruleset.regex_pattern = pattern
            ruleset.description = data.get("description")
            self.session.flush()
            write_structural_change(
                entity_type="ValidationRuleset", entity_id=ruleset.id, entity_name=name,
                action=StructuralAction.UPDATE,
                changes=_diff(before, ruleset.to_dict(), ("name", "regex_pattern", "description")),
                actor_id=actor_id, session=self.session,
            )
        return ruleset

    def delete_ruleset(self, ruleset_id: str, *, actor_id: str | None = None) -> None:
        with atomic(self.session):
            ruleset = self.get_ruleset(ruleset_id)
            in_use = self.session.execute(
                select(Property.name).where(Property.validation_ruleset_id == ruleset.id)
            ).scalars().all()
            if in_use:
                raise ConflictError(
                    "ValidationRuleset",
                    f"Ruleset '{ruleset.name}' is used by {len(in_use)} property(ies)",
                )
            write_structural_change(
                entity_type="ValidationRuleset", entity_id=ruleset.id, entity_name=ruleset.name,
                action=StructuralAction.DELETE, changes=ruleset.to_dict(),
                actor_id=actor_id, session=self.session,
            )
            self.session.delete(ruleset)

    # ── Internals ─────────────────────────────────────────────────────

    @staticmethod
    def _check_ruleset_input(data: dict) -> tuple[str, str]:
        name = (data.get("name") or "").strip()
        pattern = data.get("regex_pattern") or ""
        errors = []
        if not name:
            errors.append(FieldError("name", "Ruleset name is required", data.get("name")))
        if not pattern:
            errors.append(FieldError("regex_pattern", "Regex pattern is required", pattern))
        else:
            try:
                compile_ruleset_pattern(pattern, name)
            except ConfigurationError as exc:
                errors.append(FieldError("regex_pattern", str(exc), pattern))
        if errors:
            raise ValidationFailedError(errors)
        return name, pattern

    def _ensure_ruleset_name_free(self, name: str, exclude_id: str | None = None) -> None:
        clash = self.session.execute(
            select(ValidationRuleset.id).where(ValidationRuleset.name == name)
        ).scalar()
        if clash and clash != exclude_id:
            raise ConflictError("ValidationRuleset", f"Ruleset named '{name}' already exists")

    def _normalize_properties(self, items: list[dict],
                              model_id: str | None) -> tuple[list[dict], list[FieldError]]:
        normalized, errors, seen = [], [], set()
        for index, item in enumerate(items):
            label = f"properties[{index}]"
            name = (item.get("name") or "").strip()
            ptype = item.get("type")
            if not name:
                errors.append(FieldError(f"{label}.name", "Property name is required", item.get("name")))
                continue
            if name in seen:
                errors.append(FieldError(f"{label}.name", "Property names must be unique", name))
                continue
            seen.add(name)
            if ptype not in PROPERTY_TYPES:
                errors.append(FieldError(f"{label}.type", "Unknown property type", ptype))
                continue

            numeric_errors = []
            order_index = parse_number(item.get("order_index"), int, f"{label}.order_index",
                                       numeric_errors, "must be an integer")
            cols = {
                "name": name,
                "type": ptype,
                "order_index": index if order_index is None else order_index,
                "default_value": None,
            }
            for key in _BOOL_FIELDS:
                cols[key] = bool(item.get(key, False))
            for key in _FLOAT_FIELDS:
                cols[key] = parse_number(item.get(key), float, f"{label}.{key}", numeric_errors)
            cols["precision"] = parse_number(item.get("precision"), int, f"{label}.precision",
                                             numeric_errors, "must be an integer")
            if numeric_errors:
                errors.extend(numeric_errors)
                continue
            cols["unit"] = item.get("unit") or None
            cols["relationship_type"] = item.get("relationship_type") or None
            cols["related_model_id"] = item.get("related_model_id") or None
            cols["validation_ruleset_id"] = item.get("validation_ruleset_id") or None

            # Strip auxiliary fields foreign to this type.
            for key, allowed in TYPE_SCOPED_FIELDS.items():
                if ptype not in allowed:
                    cols[key] = False if key in _BOOL_FIELDS else None

            if ptype == "relationship":
                cols["relationship_type"] = cols["relationship_type"] or "one"
                if cols["relationship_type"] not in RELATIONSHIP_TYPES:
                    errors.append(FieldError(
                        f"{label}.relationship_type", "Must be 'one' or 'many'", cols["relationship_type"],
                    ))
                related = cols["related_model_id"]
                if not related:
                    errors.append(FieldError(
                        f"{label}.related_model_id", "Relationship properties need a related model", None,
                    ))
                elif related != model_id and self.session.get(Model, related) is None:
                    errors.append(FieldError(f"{label}.related_model_id", "Related model not found", related))

            if (cols["min_value"] is not None and cols["max_value"] is not None
                    and cols["min_value"] > cols["max_value"]):
                errors.append(FieldError(f"{label}.min_value", "min_value exceeds max_value",
                                         cols["min_value"]))

            ruleset_id = cols["validation_ruleset_id"]
            if ruleset_id and self.session.get(ValidationRuleset, ruleset_id) is None:
                errors.append(FieldError(f"{label}.validation_ruleset_id", "Ruleset not found", ruleset_id))

            default = item.get("default_value")
            if default not in (None, "") and ptype != "relationship":
                try:
                    coerce_value(Property(**cols), default)
                except ValidationFailedError as exc:
                    errors.append(FieldError(f"{label}.default_value", exc.errors[0].message, default))
                else:
                    cols["default_value"] = str(default)

            normalized.append(cols)
        return normalized, errors

    def _archive_object(self, obj: DataObject) -> dict:
        entries = self.session.execute(
            select(ChangelogEntry)
            .where(ChangelogEntry.data_object_id == obj.id)
            .order_by(ChangelogEntry.changed_at)
        ).scalars()
        return {
            "id": obj.id,
            "data": dict(obj.data or {}),
            "current_state_id": obj.current_state_id,
            "owner_id": obj.owner_id,
            "is_deleted": bool(obj.is_deleted),
            "changelog": [e.to_dict() for e in entries],
        }
