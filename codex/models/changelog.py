"""
Codex Structure
Changelog domain models: append-only audit of data and structure.

Models:
    - ChangelogEntry: one mutation of one DataObject. ``changes`` is a
      payload tagged by change type so the mutation can be reversed.
    - StructuralChangelogEntry: informational record of schema changes
      (models, workflows, rulesets, groups). Never reverted.

Payload shapes (``changes``):
    CREATE          {"type", "initialData"}
    UPDATE          {"type", "modifiedProperties": [PropertyChange...]}
    DELETE          {"type", "snapshot": {"data", "current_state_id", "owner_id"}}
    RESTORE         {"type", "status": "restored", "timestamp"}
    REVERT_*        {"type", "revertedFromChangelogEntryId", "modifiedProperties"}
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from codex.models import _iso, _utcnow, _uuid, db

__all__ = [
    "ChangeType",
    "StructuralAction",
    "PropertyChange",
    "WORKFLOW_STATE_FIELD",
    "OWNER_FIELD",
    "ChangelogEntry",
    "StructuralChangelogEntry",
    "create_payload",
    "update_payload",
    "delete_payload",
    "restore_payload",
    "revert_payload",
    "write_changelog",
    "write_structural_change",
]

# Synthetic property names routed to DataObject columns instead of ``data``.
WORKFLOW_STATE_FIELD = "__workflowState__"
OWNER_FIELD = "__owner__"


class ChangeType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"
    REVERT_UPDATE = "REVERT_UPDATE"
    REVERT_DELETE = "REVERT_DELETE"
    REVERT_RESTORE = "REVERT_RESTORE"

    @property
    def is_revert(self) -> bool:
        return self.value.startswith("REVERT_")


class StructuralAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class PropertyChange:
    """One field-level diff inside an UPDATE-style payload."""

    property_name: str
    old_value: Any = None
    new_value: Any = None
    old_label: str | None = None
    new_label: str | None = None

    def to_payload(self) -> dict:
        item = {
            "propertyName": self.property_name,
            "oldValue": self.old_value,
            "newValue": self.new_value,
        }
        if self.old_label is not None or self.new_label is not None:
            item["oldLabel"] = self.old_label
            item["newLabel"] = self.new_label
        return item

    @classmethod
    def from_payload(cls, item: dict) -> "PropertyChange":
        return cls(
            property_name=item["propertyName"],
            old_value=item.get("oldValue"),
            new_value=item.get("newValue"),
            old_label=item.get("oldLabel"),
            new_label=item.get("newLabel"),
        )


# ── Payload builders ─────────────────────────────────────────────────────────

def create_payload(initial_data: dict) -> dict:
    return {"type": ChangeType.CREATE.value, "initialData": dict(initial_data)}


def update_payload(changes: list[PropertyChange]) -> dict:
    return {
        "type": ChangeType.UPDATE.value,
        "modifiedProperties": [c.to_payload() for c in changes],
    }


def delete_payload(snapshot: dict) -> dict:
    return {"type": ChangeType.DELETE.value, "snapshot": snapshot}


def restore_payload(timestamp) -> dict:
    return {
        "type": ChangeType.RESTORE.value,
        "status": "restored",
        "timestamp": _iso(timestamp),
    }


def revert_payload(change_type: ChangeType, source_entry_id: str,
                   changes: list[PropertyChange], snapshot: dict | None = None) -> dict:
    payload = {
        "type": change_type.value,
        "revertedFromChangelogEntryId": source_entry_id,
        "modifiedProperties": [c.to_payload() for c in changes],
    }
    if snapshot is not None:
        payload["snapshot"] = snapshot
    return payload


# ── Models ───────────────────────────────────────────────────────────────────

class ChangelogEntry(db.Model):
    """
    Immutable audit record for one DataObject mutation.

    Rows are only ever removed by the FK cascade when the object (or its
    model) is hard-deleted.
    """

    __tablename__ = "data_object_changelog"
    __table_args__ = (
        db.Index("idx_chl_object_ts", "data_object_id", "changed_at"),
        db.Index("idx_chl_model", "model_id"),
        db.Index("idx_chl_user", "changed_by_user_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    data_object_id = db.Column(
        db.String(36),
        db.ForeignKey("data_objects.id", ondelete="CASCADE"),
        nullable=False,
    )
    model_id = db.Column(
        db.String(36),
        db.ForeignKey("models.id", ondelete="CASCADE"),
        nullable=False,
    )
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    changed_by_user_id = db.Column(
        db.String(64), nullable=True,
        comment="Null for anonymous share-link submissions",
    )
    change_type = db.Column(db.String(20), nullable=False)
    changes = db.Column(db.JSON, nullable=False, default=dict)

    @property
    def modified_properties(self) -> list[PropertyChange]:
        items = (self.changes or {}).get("modifiedProperties") or []
        return [PropertyChange.from_payload(i) for i in items]

    def to_dict(self):
        return {
            "id": self.id,
            "data_object_id": self.data_object_id,
            "model_id": self.model_id,
            "changed_at": _iso(self.changed_at),
            "changed_by_user_id": self.changed_by_user_id,
            "change_type": self.change_type,
            "changes": self.changes or {},
        }

    def __repr__(self):
        return f"<ChangelogEntry {self.id}: {self.change_type} on {self.data_object_id}>"


class StructuralChangelogEntry(db.Model):
    __tablename__ = "structural_changelog"
    __table_args__ = (
        db.Index("idx_schl_entity", "entity_type", "entity_id"),
        db.Index("idx_schl_ts", "timestamp"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="Model | Workflow | ValidationRuleset | ModelGroup",
    )
    entity_id = db.Column(db.String(36), nullable=False)
    entity_name = db.Column(db.String(200), nullable=True)
    action = db.Column(db.String(10), nullable=False)
    changes = db.Column(db.JSON, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "action": self.action,
            "changes": self.changes,
        }

    def __repr__(self):
        return f"<StructuralChangelogEntry {self.action} {self.entity_type}/{self.entity_id}>"


# ── Convenience writers ──────────────────────────────────────────────────────

def write_changelog(
    *,
    data_object_id: str,
    model_id: str,
    change_type: ChangeType,
    changes: dict,
    actor_id: str | None = None,
    session=None,
) -> ChangelogEntry:
    """
    Append a single changelog row.  Uses ``flush`` so callers keep
    transaction control.
    """
    entry = ChangelogEntry(
        data_object_id=data_object_id,
        model_id=model_id,
        change_type=change_type.value,
        changes=changes,
        changed_by_user_id=actor_id,
    )
    session = session or db.session
    session.add(entry)
    session.flush()
    return entry


def write_structural_change(
    *,
    entity_type: str,
    entity_id: str,
    action: StructuralAction,
    entity_name: str | None = None,
    changes=None,
    actor_id: str | None = None,
    session=None,
) -> StructuralChangelogEntry:
    """Append a structural changelog row (flush only, caller commits)."""
    entry = StructuralChangelogEntry(
        entity_type=entity_type,
        entity_id=str(entity_id),
        entity_name=entity_name,
        action=action.value,
        changes=changes,
        user_id=actor_id,
    )
    session = session or db.session
    session.add(entry)
    session.flush()
    return entry
