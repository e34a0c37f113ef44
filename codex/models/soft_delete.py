"""
Soft Delete Mixin ("recycle bin").

Adds ``is_deleted`` / ``deleted_at`` columns.
Records carrying this mixin are flagged as deleted rather than
physically removed until an explicit hard delete.

Usage:
    class MyModel(SoftDeleteMixin, db.Model):
        ...

    obj.soft_delete()          # caller owns the commit
    obj.restore()
"""

from codex.models import _utcnow, db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.is_deleted = True
        self.deleted_at = _utcnow()

    def restore(self):
        """Restore a soft-deleted record."""
        self.is_deleted = False
        self.deleted_at = None
