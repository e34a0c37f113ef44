"""
Object Store

CRUD over DataObjects. Every write runs the Validation Pipeline, applies
workflow rules and appends its ChangelogEntry inside one transaction
(``atomic``): either the record mutation and its changelog row both
commit, or neither does.

Record handling:
  - keys that are not properties of the model are dropped
  - create: absent properties receive their ``default_value``;
    ``auto_set_on_create`` date/datetime properties are stamped
  - update: ``auto_set_on_update`` properties are stamped whenever
    something else changed
  - stamped values are left out of CREATE payloads and UPDATE diffs
  - reserved update keys: ``current_state_id`` (workflow engine) and
    ``owner_id`` (synthetic ``__owner__`` field)

Usage:
    store = ObjectStore(db.session)
    obj = store.create(model_id, {"title": "Fix login"}, actor_id="u-1")
    store.update(model_id, obj.id, {"title": "Fix SSO login"}, actor_id="u-1")
    store.batch_update(model_id, [a.id, b.id], "priority", "high", actor_id="u-1")
    store.dependencies(obj.id)   # {"incoming": [...], "outgoing": [...]}
"""

import logging
from datetime import datetime

from sqlalchemy import select

from codex.core.exceptions import (
    FieldError,
    InvalidWorkflowTransitionError,
    NotFoundError,
    UniqueConstraintError,
    ValidationFailedError,
)
from codex.models import _utcnow
from codex.models.changelog import (
    OWNER_FIELD,
    WORKFLOW_STATE_FIELD,
    ChangeType,
    PropertyChange,
    create_payload,
    delete_payload,
    restore_payload,
    update_payload,
    write_changelog,
)
from codex.models.data_object import DataObject
from codex.models.schema import Model, Property
from codex.services.schema_registry import SchemaRegistry
from codex.services.validation import ValidationPipeline
from codex.services.workflow_engine import WorkflowEngine
from codex.utils.helpers import atomic

logger = logging.getLogger(__name__)

STATE_KEY = "current_state_id"
OWNER_KEY = "owner_id"
RESERVED_KEYS = (STATE_KEY, OWNER_KEY)


def stamp_value(prop, now: datetime) -> str:
    return now.date().isoformat() if prop.type == "date" else now.isoformat()


def auto_stamp(model: Model, record: dict, now: datetime, *, on_create: bool) -> set[str]:
    """Stamp auto-set date/datetime properties into ``record``. Returns stamped names."""
    stamped = set()
    for prop in model.properties:
        if prop.type not in ("date", "datetime"):
            continue
        if (on_create and prop.auto_set_on_create) or (not on_create and prop.auto_set_on_update):
            record[prop.name] = stamp_value(prop, now)
            stamped.add(prop.name)
    return stamped


def _stamped_on_update(prop) -> bool:
    return prop.type in ("date", "datetime") and prop.auto_set_on_update


def _referenced_ids(value) -> list[str]:
    if value in (None, ""):
        return []
    return [str(v) for v in value] if isinstance(value, (list, tuple)) else [str(value)]


def display_label(obj: DataObject, model: Model) -> str:
    """Human label built from the model's display properties, falling back to the id."""
    data = obj.data or {}
    parts = [str(data[name]) for name in model.display_property_names or []
             if data.get(name) not in (None, "", [])]
    return " - ".join(parts) or obj.id


def _relation(obj: DataObject, model: Model, via: str) -> dict:
    return {
        "object_id": obj.id,
        "display_value": display_label(obj, model),
        "model_id": model.id,
        "model_name": model.name,
        "via_property_name": via,
    }


class ObjectStore:
    """DataObject persistence with validation, workflow and changelog."""

    def __init__(self, session, *, registry: SchemaRegistry | None = None,
                 pipeline: ValidationPipeline | None = None,
                 workflow_engine: WorkflowEngine | None = None):
        self.session = session
        self.workflow_engine = workflow_engine or WorkflowEngine(session)
        self.registry = registry or SchemaRegistry(session, workflow_engine=self.workflow_engine)
        self.pipeline = pipeline or ValidationPipeline(session)

    # ── Reads ─────────────────────────────────────────────────────────

    def get_by_id(self, object_id: str, *, include_deleted: bool = False) -> DataObject:
        obj = self.session.get(DataObject, object_id)
        if obj is None or (obj.is_deleted and not include_deleted):
            raise NotFoundError("DataObject", object_id)
        return obj

    def list_by_model(self, model_id: str, *, include_deleted: bool = False) -> list[DataObject]:
        self.registry.get_model(model_id)
        query = select(DataObject).where(DataObject.model_id == model_id)
        if not include_deleted:
            query = query.where(DataObject.is_deleted.is_(False))
        query = query.order_by(DataObject.created_at, DataObject.id)
        return list(self.session.execute(query).scalars())

    # ── Dependencies ──────────────────────────────────────────────────

    def dependencies(self, object_id: str) -> dict:
        """
        Live objects linked to ``object_id`` through relationship properties.

        ``incoming``: objects whose relationship value points at this one.
        ``outgoing``: live objects this one points at.
        """
        obj = self.get_by_id(object_id)
        model = self.registry.get_model(obj.model_id)

        incoming = []
        referencing = self.session.execute(
            select(Property).where(
                Property.type == "relationship",
                Property.related_model_id == obj.model_id,
            ).order_by(Property.model_id, Property.order_index)
        ).scalars().all()
        for prop in referencing:
            candidates = self.session.execute(
                select(DataObject).where(
                    DataObject.model_id == prop.model_id,
                    DataObject.is_deleted.is_(False),
                ).order_by(DataObject.created_at, DataObject.id)
            ).scalars()
            for other in candidates:
                if object_id in _referenced_ids((other.data or {}).get(prop.name)):
                    incoming.append(_relation(other, prop.model, prop.name))

        outgoing = []
        for prop in model.properties:
            if prop.type != "relationship":
                continue
            for related_id in _referenced_ids((obj.data or {}).get(prop.name)):
                related = self.session.get(DataObject, related_id)
                if related is None or related.is_deleted or related.model_id != prop.related_model_id:
                    continue
                outgoing.append(_relation(related, related.model, prop.name))

        return {"incoming": incoming, "outgoing": outgoing}

    def batch_dependencies(self, object_ids: list[str]) -> dict:
        """``dependencies`` for several objects; unknown or deleted ids are reported back."""
        found, not_found = {}, []
        for object_id in dict.fromkeys(object_ids or []):
            try:
                found[object_id] = self.dependencies(object_id)
            except NotFoundError:
                not_found.append(object_id)
        return {"dependencies": found, "not_found": not_found}

    # ── Writes ────────────────────────────────────────────────────────

    def create(self, model_id: str, record: dict, actor_id: str | None = None, *,
               owner_id: str | None = None) -> DataObject:
        """
        Validate and insert a new object in the model's initial workflow
        state. ``owner_id`` defaults to the actor.
        """
        with atomic(self.session):
            model = self.registry.get_model(model_id)
            candidate = self._known_fields(model, record)
            for prop in model.properties:
                if prop.name not in candidate and prop.default_value not in (None, ""):
                    candidate[prop.name] = prop.default_value
            now = _utcnow()
            stamped = auto_stamp(model, candidate, now, on_create=True)

            data = self.pipeline.validate(model, candidate).raise_for_errors()

            obj = DataObject(
                model_id=model.id,
                data=data,
                current_state_id=self.workflow_engine.initial_state_id(model),
                owner_id=owner_id if owner_id is not None else actor_id,
                created_at=now,
                updated_at=now,
            )
            self.session.add(obj)
            self.session.flush()

            initial = {k: v for k, v in data.items() if k not in stamped}
            entry = write_changelog(
                data_object_id=obj.id, model_id=model.id, change_type=ChangeType.CREATE,
                changes=create_payload(initial), actor_id=actor_id, session=self.session,
            )

        logger.info("Created object %s in model %s", obj.id, model_id,
                    extra={"object_id": obj.id, "model_id": model_id,
                           "actor_id": actor_id, "change_type": entry.change_type})
        return obj

    def update(self, model_id: str | None, object_id: str, partial: dict,
               actor_id: str | None = None) -> DataObject:
        """
        Merge ``partial`` into a live object.

        Only touched properties are re-validated (uniqueness included).
        ``current_state_id`` goes through the workflow engine. An update
        that changes nothing writes no changelog entry.
        """
        partial = dict(partial or {})
        with atomic(self.session):
            obj = self._get_live_for_update(object_id)
            if model_id is not None and obj.model_id != model_id:
                raise NotFoundError("DataObject", object_id)
            model = self.registry.get_model(obj.model_id)

            candidate = {
                k: v for k, v in self._known_fields(model, partial).items()
                if not _stamped_on_update(model.property_by_name(k))
            }
            result = self.pipeline.validate(
                model, candidate, existing=obj.data or {}, object_id=obj.id,
            )
            coerced = result.raise_for_errors()

            new_data = dict(obj.data or {})
            changes = []
            for name, value in coerced.items():
                old = new_data.get(name)
                if old != value:
                    changes.append(PropertyChange(name, old, value))
                    new_data[name] = value

            if STATE_KEY in partial:
                state_change = self.workflow_engine.apply_state_change(obj, model, partial[STATE_KEY])
                if state_change is not None:
                    changes.append(state_change)

            if OWNER_KEY in partial and partial[OWNER_KEY] != obj.owner_id:
                changes.append(PropertyChange(OWNER_FIELD, obj.owner_id, partial[OWNER_KEY]))
                obj.owner_id = partial[OWNER_KEY]

            if not changes:
                logger.debug("Update of object %s changed nothing", object_id)
                return obj

            now = _utcnow()
            auto_stamp(model, new_data, now, on_create=False)
            obj.data = new_data
            obj.updated_at = now
            self.session.flush()

            write_changelog(
                data_object_id=obj.id, model_id=model.id, change_type=ChangeType.UPDATE,
                changes=update_payload(changes), actor_id=actor_id, session=self.session,
            )

        logger.info("Updated object %s (%d change(s))", object_id, len(changes),
                    extra={"object_id": object_id, "model_id": obj.model_id,
                           "actor_id": actor_id, "change_type": ChangeType.UPDATE.value})
        return obj

    def batch_update(self, model_id: str, object_ids: list[str], property_name: str,
                     value, actor_id: str | None = None) -> dict:
        """
        Set one property on several objects of a model in a single transaction.

        ``property_name`` may be ``__workflowState__`` to move every object
        to the state id in ``value``; each move must be a valid transition.
        Every object goes through ``update``, so each one that changes gets
        its own UPDATE entry. Any failure rolls the whole batch back and the
        per-object errors are raised together.
        """
        ids = list(dict.fromkeys(object_ids or []))
        if not ids:
            raise ValidationFailedError.single("ids", "At least one object id is required", object_ids)
        with atomic(self.session):
            model = self.registry.get_model(model_id)
            if property_name == WORKFLOW_STATE_FIELD:
                if model.workflow_id is None:
                    raise ValidationFailedError.single(
                        "property_name", f"Model '{model.name}' has no workflow", property_name,
                    )
                key = STATE_KEY
            elif model.property_by_name(property_name) is not None:
                key = property_name
            else:
                raise ValidationFailedError.single("property_name", "Unknown property", property_name)

            errors = []
            for object_id in ids:
                try:
                    self.update(model_id, object_id, {key: value}, actor_id=actor_id)
                except ValidationFailedError as exc:
                    errors.extend(
                        FieldError(f"{object_id}.{e.field}", e.message, e.rejected_value)
                        for e in exc.errors
                    )
                except (NotFoundError, UniqueConstraintError, InvalidWorkflowTransitionError) as exc:
                    errors.append(FieldError(object_id, str(exc), value))
            if errors:
                raise ValidationFailedError(errors, message="Batch update failed; no changes were applied")

        logger.info("Batch update of '%s' in model %s: %d object(s)", property_name, model_id, len(ids),
                    extra={"model_id": model_id, "actor_id": actor_id})
        return {"updated": ids}

    def soft_delete(self, object_id: str, actor_id: str | None = None) -> DataObject:
        """Move a live object to the recycle bin; DELETE entry keeps a full snapshot."""
        with atomic(self.session):
            obj = self._get_live_for_update(object_id)
            self._soft_delete(obj, actor_id)
        logger.info("Soft-deleted object %s", object_id,
                    extra={"object_id": object_id, "actor_id": actor_id,
                           "change_type": ChangeType.DELETE.value})
        return obj

    def batch_soft_delete(self, model_id: str, object_ids: list[str],
                          actor_id: str | None = None) -> dict:
        """Soft-delete several objects of one model in a single transaction."""
        deleted, not_found = [], []
        with atomic(self.session):
            self.registry.get_model(model_id)
            for object_id in dict.fromkeys(object_ids or []):
                obj = self.session.get(DataObject, object_id)
                if obj is None or obj.is_deleted or obj.model_id != model_id:
                    not_found.append(object_id)
                    continue
                self._soft_delete(obj, actor_id)
                deleted.append(object_id)
        logger.info("Batch soft-delete in model %s: %d deleted, %d not found",
                    model_id, len(deleted), len(not_found),
                    extra={"model_id": model_id, "actor_id": actor_id})
        return {"deleted": deleted, "not_found": not_found}

    def restore(self, object_id: str, actor_id: str | None = None) -> DataObject:
        """Bring an object back from the recycle bin (uniqueness re-checked)."""
        with atomic(self.session):
            obj = self.session.get(DataObject, object_id)
            if obj is None or not obj.is_deleted:
                raise NotFoundError("Deleted DataObject", object_id)
            model = self.registry.get_model(obj.model_id)
            self.pipeline.check_uniqueness(model, obj.data or {}, object_id=obj.id)
            obj.restore()
            self.session.flush()
            write_changelog(
                data_object_id=obj.id, model_id=obj.model_id, change_type=ChangeType.RESTORE,
                changes=restore_payload(_utcnow()), actor_id=actor_id, session=self.session,
            )
        logger.info("Restored object %s", object_id,
                    extra={"object_id": object_id, "actor_id": actor_id,
                           "change_type": ChangeType.RESTORE.value})
        return obj

    def hard_delete(self, object_id: str, actor_id: str | None = None) -> None:
        """Physically remove an object; its changelog rows go with it (FK cascade)."""
        with atomic(self.session):
            obj = self.session.get(DataObject, object_id)
            if obj is None:
                raise NotFoundError("DataObject", object_id)
            model_id = obj.model_id
            self.session.delete(obj)
        logger.info("Hard-deleted object %s", object_id,
                    extra={"object_id": object_id, "model_id": model_id, "actor_id": actor_id})

    # ── Internals ─────────────────────────────────────────────────────

    def _soft_delete(self, obj: DataObject, actor_id: str | None) -> None:
        snapshot = obj.snapshot()
        obj.soft_delete()
        self.session.flush()
        write_changelog(
            data_object_id=obj.id, model_id=obj.model_id, change_type=ChangeType.DELETE,
            changes=delete_payload(snapshot), actor_id=actor_id, session=self.session,
        )

    def _get_live_for_update(self, object_id: str) -> DataObject:
        obj = self.session.execute(
            select(DataObject).where(DataObject.id == object_id).with_for_update(of=DataObject)
        ).scalar_one_or_none()
        if obj is None or obj.is_deleted:
            raise NotFoundError("DataObject", object_id)
        return obj

    @staticmethod
    def _known_fields(model: Model, record: dict | None) -> dict:
        names = {p.name for p in model.properties}
        return {k: v for k, v in (record or {}).items() if k in names}
