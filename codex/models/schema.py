"""
Codex Structure
Schema domain models: user-defined record types and their fields.

Models:
    - ModelGroup: optional folder for models.
    - Model: a user-defined record type.
    - Property: a typed field definition on a Model.
    - ValidationRuleset: named reusable regular expression.
"""

from codex.models import _iso, _utcnow, _uuid, db

__all__ = [
    "PROPERTY_TYPES",
    "RELATIONSHIP_TYPES",
    "ModelGroup",
    "Model",
    "Property",
    "ValidationRuleset",
]


# ── Constants ────────────────────────────────────────────────────────────────

PROPERTY_TYPES = (
    "string", "number", "boolean", "date", "datetime",
    "time", "markdown", "image", "rating", "relationship",
)

RELATIONSHIP_TYPES = ("one", "many")

# Auxiliary property fields and the types allowed to carry them.
# Fields not listed here (name, type, required, order, default) apply to all types.
TYPE_SCOPED_FIELDS = {
    "is_unique": {"string"},
    "min_value": {"number"},
    "max_value": {"number"},
    "precision": {"number"},
    "unit": {"number"},
    "relationship_type": {"relationship"},
    "related_model_id": {"relationship"},
    "auto_set_on_create": {"date", "datetime"},
    "auto_set_on_update": {"date", "datetime"},
    "validation_ruleset_id": {"string", "markdown"},
}


class ModelGroup(db.Model):
    """Named folder used to organise models."""

    __tablename__ = "model_groups"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ModelGroup {self.name}>"


class Model(db.Model):
    """
    User-defined record type.

    Owns an ordered list of Properties (full replace on structural update)
    and, optionally, references a Workflow whose states every DataObject of
    this model must respect.
    """

    __tablename__ = "models"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    display_property_names = db.Column(
        db.JSON, default=list,
        comment="Ordered property names used to render a human label",
    )
    group_id = db.Column(
        db.String(36),
        db.ForeignKey("model_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("workflows.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    properties = db.relationship(
        "Property",
        back_populates="model",
        cascade="all, delete-orphan",
        order_by="Property.order_index",
        foreign_keys="Property.model_id",
        lazy="select",
    )
    group = db.relationship("ModelGroup", lazy="joined")
    workflow = db.relationship("Workflow", lazy="select")

    def property_by_name(self, name):
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def to_dict(self, include_properties=True):
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "display_property_names": list(self.display_property_names or []),
            "group_id": self.group_id,
            "workflow_id": self.workflow_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_properties:
            result["properties"] = [p.to_dict() for p in self.properties]
        return result

    def __repr__(self):
        return f"<Model {self.name}>"


class Property(db.Model):
    """Typed field definition on a Model."""

    __tablename__ = "properties"
    __table_args__ = (
        db.UniqueConstraint("model_id", "name", name="uq_property_model_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    model_id = db.Column(
        db.String(36),
        db.ForeignKey("models.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    type = db.Column(
        db.String(20), nullable=False,
        comment="string | number | boolean | date | datetime | time | markdown | image | rating | relationship",
    )
    required = db.Column(db.Boolean, nullable=False, default=False)
    is_unique = db.Column(db.Boolean, nullable=False, default=False)

    # number
    min_value = db.Column(db.Float, nullable=True)
    max_value = db.Column(db.Float, nullable=True)
    precision = db.Column(db.Integer, nullable=True)
    unit = db.Column(db.String(50), nullable=True)

    # relationship
    relationship_type = db.Column(db.String(10), nullable=True, comment="one | many")
    related_model_id = db.Column(
        db.String(36),
        db.ForeignKey("models.id", ondelete="SET NULL"),
        nullable=True,
    )

    # date / datetime
    auto_set_on_create = db.Column(db.Boolean, nullable=False, default=False)
    auto_set_on_update = db.Column(db.Boolean, nullable=False, default=False)

    default_value = db.Column(db.Text, nullable=True)
    validation_ruleset_id = db.Column(
        db.String(36),
        db.ForeignKey("validation_rulesets.id", ondelete="SET NULL"),
        nullable=True,
    )
    order_index = db.Column(db.Integer, nullable=False, default=0)

    model = db.relationship("Model", back_populates="properties", foreign_keys=[model_id])
    validation_ruleset = db.relationship("ValidationRuleset", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "model_id": self.model_id,
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "is_unique": self.is_unique,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "precision": self.precision,
            "unit": self.unit,
            "relationship_type": self.relationship_type,
            "related_model_id": self.related_model_id,
            "auto_set_on_create": self.auto_set_on_create,
            "auto_set_on_update": self.auto_set_on_update,
            "default_value": self.default_value,
            "validation_ruleset_id": self.validation_ruleset_id,
            "order_index": self.order_index,
        }

    def __repr__(self):
        return f"<Property {self.name}:{self.type}>"


class ValidationRuleset(db.Model):
    """Named regular expression applied to string/markdown properties."""

    __tablename__ = "validation_rulesets"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    regex_pattern = db.Column(db.Text, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "regex_pattern": self.regex_pattern,
        }

    def __repr__(self):
        return f"<ValidationRuleset {self.name}>"
