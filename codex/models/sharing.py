"""
Codex Structure
SharedObjectLink: capability token for one unauthenticated action.
"""

from datetime import timezone

from codex.models import _iso, _utcnow, _uuid, db

__all__ = ["LINK_TYPES", "SharedObjectLink"]

LINK_TYPES = ("view", "create", "update")


class SharedObjectLink(db.Model):
    """
    Anyone holding the id may perform exactly the action ``link_type``
    authorises, until ``expires_at`` or, when ``expires_on_submit`` is set,
    the first successful submission.
    """

    __tablename__ = "shared_object_links"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    link_type = db.Column(db.String(10), nullable=False, comment="view | create | update")
    model_id = db.Column(
        db.String(36),
        db.ForeignKey("models.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    data_object_id = db.Column(
        db.String(36),
        db.ForeignKey("data_objects.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    created_by_user_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_on_submit = db.Column(db.Boolean, nullable=False, default=False)

    def is_expired(self, now=None) -> bool:
        if self.expires_at is None:
            return False
        now = now or _utcnow()
        expires_at = self.expires_at
        # SQLite hands back naive datetimes
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < now

    def to_dict(self):
        return {
            "id": self.id,
            "link_type": self.link_type,
            "model_id": self.model_id,
            "data_object_id": self.data_object_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "expires_on_submit": self.expires_on_submit,
        }

    def __repr__(self):
        return f"<SharedObjectLink {self.id} {self.link_type}>"
