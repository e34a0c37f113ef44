"""
Changelog & Revert

Reads the append-only changelog streams and computes/applies the inverse
of a past DataObject mutation.

Revert dispatch on the target entry's change type:
  CREATE    → rejected (``create_not_revertible``); soft-delete instead
  UPDATE    → each diffed field goes back to its old value, re-validated
              against the current schema; ``__workflowState__`` and
              ``__owner__`` are routed to the object's columns
  DELETE    → object rebuilt from the entry's snapshot and made live
  RESTORE   → object soft-deleted again
  REVERT_*  → rejected (``revert_of_revert``)

Each revert is itself an auditable mutation (REVERT_* entry, diff taken
against the object right before the revert). An empty diff is a no-op
that writes nothing.
"""

import logging
import math

from sqlalchemy import func, select

from codex.core.exceptions import (
    FieldError,
    NotFoundError,
    RevertNotAllowedError,
    ValidationFailedError,
)
from codex.models import _utcnow
from codex.models.changelog import (
    OWNER_FIELD,
    WORKFLOW_STATE_FIELD,
    ChangeType,
    ChangelogEntry,
    PropertyChange,
    StructuralChangelogEntry,
    revert_payload,
    write_changelog,
)
from codex.models.data_object import DataObject
from codex.services.object_store import ObjectStore, auto_stamp
from codex.utils.helpers import atomic

logger = logging.getLogger(__name__)

DATA_OBJECT_ENTITY = "DataObject"
STRUCTURAL_ENTITY_TYPES = ("Model", "Workflow", "ValidationRuleset", "ModelGroup")

_MISSING = object()


class ChangelogService:
    """Changelog queries and revert."""

    def __init__(self, session, *, store: ObjectStore | None = None):
        self.session = session
        self.store = store or ObjectStore(session)
        self.pipeline = self.store.pipeline
        self.workflow_engine = self.store.workflow_engine

    # ── Queries ───────────────────────────────────────────────────────

    def list_for_object(self, object_id: str) -> list[ChangelogEntry]:
        """All entries of one object (deleted objects included), newest first."""
        self.store.get_by_id(object_id, include_deleted=True)
        return list(self.session.execute(
            select(ChangelogEntry)
            .where(ChangelogEntry.data_object_id == object_id)
            .order_by(ChangelogEntry.changed_at.desc(), ChangelogEntry.id)
        ).scalars())

    def list_changelog(self, *, entity_type: str = DATA_OBJECT_ENTITY,
                       entity_id: str | None = None, user_id: str | None = None,
                       model_id: str | None = None, date_from=None, date_to=None,
                       page: int = 1, per_page: int = 50) -> dict:
        """
        Paginated changelog across objects (``entity_type="DataObject"``)
        or structural entities (Model, Workflow, ValidationRuleset, ModelGroup).
        """
        if entity_type == DATA_OBJECT_ENTITY:
            cls, ts = ChangelogEntry, ChangelogEntry.changed_at
            filters = []
            if entity_id:
                filters.append(ChangelogEntry.data_object_id == entity_id)
            if user_id:
                filters.append(ChangelogEntry.changed_by_user_id == user_id)
            if model_id:
                filters.append(ChangelogEntry.model_id == model_id)
        elif entity_type in STRUCTURAL_ENTITY_TYPES:
            cls, ts = StructuralChangelogEntry, StructuralChangelogEntry.timestamp
            filters = [StructuralChangelogEntry.entity_type == entity_type]
            if entity_id:
                filters.append(StructuralChangelogEntry.entity_id == entity_id)
            if user_id:
                filters.append(StructuralChangelogEntry.user_id == user_id)
            if model_id and entity_type == "Model":
                filters.append(StructuralChangelogEntry.entity_id == model_id)
        else:
            raise ValidationFailedError([FieldError(
                "entity_type", "Unknown entity type", entity_type,
            )])

        if date_from is not None:
            filters.append(ts >= date_from)
        if date_to is not None:
            filters.append(ts <= date_to)

        page = max(int(page or 1), 1)
        per_page = max(int(per_page or 1), 1)
        total = self.session.execute(
            select(func.count()).select_from(cls).where(*filters)
        ).scalar_one()
        items = self.session.execute(
            select(cls).where(*filters)
            .order_by(ts.desc(), cls.id)
            .limit(per_page).offset((page - 1) * per_page)
        ).scalars().all()
        return {
            "items": [i.to_dict() for i in items],
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": math.ceil(total / per_page) if total else 0,
        }

    # ── Revert ────────────────────────────────────────────────────────

    def revert(self, object_id: str, entry_id: str,
               actor_id: str | None = None) -> tuple[DataObject, ChangelogEntry | None]:
        """
        Apply the inverse of changelog entry ``entry_id`` to ``object_id``.

        Returns ``(object, new_entry)``; ``new_entry`` is None when the
        object was already in the target state.
        """
        with atomic(self.session):
            entry = self.session.get(ChangelogEntry, entry_id)
            if entry is None or entry.data_object_id != object_id:
                raise NotFoundError("ChangelogEntry", entry_id)
            try:
                change_type = ChangeType(entry.change_type)
            except ValueError:
                raise RevertNotAllowedError(
                    RevertNotAllowedError.UNKNOWN_CHANGE_TYPE,
                    f"Unknown change type '{entry.change_type}'",
                ) from None
            if change_type.is_revert:
                raise RevertNotAllowedError(
                    RevertNotAllowedError.REVERT_OF_REVERT,
                    "Revert entries cannot be reverted",
                )
            if change_type is ChangeType.CREATE:
                raise RevertNotAllowedError(
                    RevertNotAllowedError.CREATE_NOT_REVERTIBLE,
                    "CREATE entries cannot be reverted; delete the object instead",
                )

            obj = self.session.execute(
                select(DataObject).where(DataObject.id == object_id).with_for_update(of=DataObject)
            ).scalar_one_or_none()
            if obj is None:
                raise NotFoundError("DataObject", object_id)
            model = self.store.registry.get_model(obj.model_id)

            if change_type is ChangeType.UPDATE:
                new_entry = self._revert_update(obj, model, entry, actor_id)
            elif change_type is ChangeType.DELETE:
                new_entry = self._revert_delete(obj, model, entry, actor_id)
            else:
                new_entry = self._revert_restore(obj, entry, actor_id)

        if new_entry is None:
            logger.info("Revert of %s on object %s was a no-op", entry_id, object_id,
                        extra={"object_id": object_id, "actor_id": actor_id})
        else:
            logger.info("Reverted %s entry %s on object %s", change_type.value, entry_id, object_id,
                        extra={"object_id": object_id, "actor_id": actor_id,
                               "change_type": new_entry.change_type})
        return obj, new_entry

    def _revert_update(self, obj, model, entry, actor_id):
        if obj.is_deleted:
            raise NotFoundError("DataObject", obj.id)

        candidate, state_target, owner_target = {}, _MISSING, _MISSING
        for change in entry.modified_properties:
            if change.property_name == WORKFLOW_STATE_FIELD:
                state_target = change.old_value
            elif change.property_name == OWNER_FIELD:
                owner_target = change.old_value
            elif model.property_by_name(change.property_name) is not None:
                candidate[change.property_name] = change.old_value
            else:
                logger.debug("Skipping revert of removed property %s", change.property_name)

        coerced = self.pipeline.validate(
            model, candidate, existing=obj.data or {}, object_id=obj.id,
        ).raise_for_errors()

        new_data = dict(obj.data or {})
        changes = []
        for name in candidate:
            value = coerced.get(name)
            current = new_data.get(name)
            if current == value:
                continue
            changes.append(PropertyChange(name, current, value))
            if value is None:
                new_data.pop(name, None)
            else:
                new_data[name] = value

        if state_target is not _MISSING:
            state_change = self.workflow_engine.restore_state(obj, model, state_target)
            if state_change is not None:
                changes.append(state_change)

        if owner_target is not _MISSING and owner_target != obj.owner_id:
            changes.append(PropertyChange(OWNER_FIELD, obj.owner_id, owner_target))
            obj.owner_id = owner_target

        if not changes:
            return None

        now = _utcnow()
        auto_stamp(model, new_data, now, on_create=False)
        obj.data = new_data
        obj.updated_at = now
        self.session.flush()
        return write_changelog(
            data_object_id=obj.id, model_id=obj.model_id,
            change_type=ChangeType.REVERT_UPDATE,
            changes=revert_payload(ChangeType.REVERT_UPDATE, entry.id, changes),
            actor_id=actor_id, session=self.session,
        )

    def _revert_delete(self, obj, model, entry, actor_id):
        snapshot = (entry.changes or {}).get("snapshot") or {}
        known = {p.name for p in model.properties}
        data = {k: v for k, v in (snapshot.get("data") or {}).items() if k in known}

        state_id = snapshot.get("current_state_id")
        if not self.workflow_engine.is_valid_state(model, state_id):
            state_id = self.workflow_engine.initial_state_id(model)
        owner_id = snapshot.get("owner_id")

        current = obj.data or {}
        changes = [
            PropertyChange(name, current.get(name), data.get(name))
            for name in sorted(set(current) | set(data))
            if current.get(name) != data.get(name)
        ]
        if state_id != obj.current_state_id:
            changes.append(PropertyChange(
                WORKFLOW_STATE_FIELD, obj.current_state_id, state_id,
                old_label=self.workflow_engine.state_name(obj.current_state_id),
                new_label=self.workflow_engine.state_name(state_id),
            ))
        if owner_id != obj.owner_id:
            changes.append(PropertyChange(OWNER_FIELD, obj.owner_id, owner_id))

        if not changes and not obj.is_deleted:
            return None

        self.pipeline.check_uniqueness(model, data, object_id=obj.id)
        obj.data = data
        obj.current_state_id = state_id
        obj.owner_id = owner_id
        obj.restore()
        obj.updated_at = _utcnow()
        self.session.flush()
        return write_changelog(
            data_object_id=obj.id, model_id=obj.model_id,
            change_type=ChangeType.REVERT_DELETE,
            changes=revert_payload(ChangeType.REVERT_DELETE, entry.id, changes),
            actor_id=actor_id, session=self.session,
        )

    def _revert_restore(self, obj, entry, actor_id):
        if obj.is_deleted:
            return None
        snapshot = obj.snapshot()
        obj.soft_delete()
        self.session.flush()
        return write_changelog(
            data_object_id=obj.id, model_id=obj.model_id,
            change_type=ChangeType.REVERT_RESTORE,
            changes=revert_payload(ChangeType.REVERT_RESTORE, entry.id, [], snapshot=snapshot),
            actor_id=actor_id, session=self.session,
        )
