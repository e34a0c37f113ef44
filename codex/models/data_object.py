"""
Codex Structure
DataObject: one instance of a user-defined Model.

``data`` is schema-free at the storage layer (JSON map of property name to
value) and schema-checked at write time by the validation pipeline.
"""

from codex.models import _iso, _utcnow, _uuid, db
from codex.models.soft_delete import SoftDeleteMixin

__all__ = ["DataObject"]


class DataObject(SoftDeleteMixin, db.Model):
    __tablename__ = "data_objects"
    __table_args__ = (
        db.Index("idx_do_model_deleted", "model_id", "is_deleted"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    model_id = db.Column(
        db.String(36),
        db.ForeignKey("models.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    data = db.Column(db.JSON, nullable=False, default=dict)
    current_state_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_states.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    owner_id = db.Column(db.String(64), nullable=True, index=True, comment="Actor id from the auth layer")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    model = db.relationship(
        "Model",
        backref=db.backref("data_objects", passive_deletes="all", lazy="dynamic"),
    )
    current_state = db.relationship("WorkflowState", lazy="joined")

    def snapshot(self) -> dict:
        """Full copy of the mutable parts, as stored in DELETE changelog entries."""
        return {
            "data": dict(self.data or {}),
            "current_state_id": self.current_state_id,
            "owner_id": self.owner_id,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "model_id": self.model_id,
            "data": dict(self.data or {}),
            "current_state_id": self.current_state_id,
            "current_state_name": self.current_state.name if self.current_state else None,
            "owner_id": self.owner_id,
            "is_deleted": bool(self.is_deleted),
            "deleted_at": _iso(self.deleted_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<DataObject {self.id} model={self.model_id}>"
