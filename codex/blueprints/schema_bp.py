"""
Schema Registry API

Blueprint: schema_bp
Prefix: /api/v1

Endpoints:
  Models:
    GET/POST        /models                       -- List (?group_id=) / create
    GET/PUT/DELETE  /models/<mid>                 -- Read / structural replace / delete

  Model groups:
    GET/POST        /model-groups
    DELETE          /model-groups/<gid>

  Validation rulesets:
    GET/POST        /validation-rulesets
    GET/PUT/DELETE  /validation-rulesets/<rid>

Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from codex.blueprints import actor_id, json_body
from codex.models import db
from codex.services.schema_registry import SchemaRegistry
from codex.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

schema_bp = Blueprint("schema", __name__, url_prefix="/api/v1")
register_error_handlers(schema_bp)


def _registry() -> SchemaRegistry:
    return SchemaRegistry(
        db.session,
        archive_on_delete=current_app.config.get("ARCHIVE_OBJECTS_ON_MODEL_DELETE", True),
    )


# ═════════════════════════════════════════════════════════════════════════
# Models
# ═════════════════════════════════════════════════════════════════════════


@schema_bp.route("/models", methods=["GET"])
def list_models():
    models = _registry().list_models(group_id=request.args.get("group_id"))
    return jsonify([m.to_dict() for m in models])


@schema_bp.route("/models", methods=["POST"])
def create_model():
    data = json_body()
    properties = data.get("properties") or []
    if not isinstance(properties, list):
        return api_error(E.VALIDATION_INVALID, "properties must be a list")
    model = _registry().upsert_model(data, properties, actor_id=actor_id())
    return jsonify(model.to_dict()), 201


@schema_bp.route("/models/<mid>", methods=["GET"])
def get_model(mid):
    return jsonify(_registry().get_model(mid).to_dict())


@schema_bp.route("/models/<mid>", methods=["PUT"])
def update_model(mid):
    data = json_body()
    properties = data.get("properties")
    if not isinstance(properties, list):
        return api_error(E.VALIDATION_REQUIRED, "properties (full list) is required")
    model = _registry().upsert_model(data, properties, model_id=mid, actor_id=actor_id())
    return jsonify(model.to_dict())


@schema_bp.route("/models/<mid>", methods=["DELETE"])
def delete_model(mid):
    return jsonify(_registry().delete_model(mid, actor_id=actor_id()))


# ═════════════════════════════════════════════════════════════════════════
# Model groups
# ═════════════════════════════════════════════════════════════════════════


@schema_bp.route("/model-groups", methods=["GET"])
def list_groups():
    return jsonify([g.to_dict() for g in _registry().list_groups()])


@schema_bp.route("/model-groups", methods=["POST"])
def create_group():
    group = _registry().create_group(json_body(), actor_id=actor_id())
    return jsonify(group.to_dict()), 201


@schema_bp.route("/model-groups/<gid>", methods=["DELETE"])
def delete_group(gid):
    _registry().delete_group(gid, actor_id=actor_id())
    return jsonify({"deleted": gid})


# ═════════════════════════════════════════════════════════════════════════
# Validation rulesets
# ═════════════════════════════════════════════════════════════════════════


@schema_bp.route("/validation-rulesets", methods=["GET"])
def list_rulesets():
    return jsonify([r.to_dict() for r in _registry().list_rulesets()])


@schema_bp.route("/validation-rulesets", methods=["POST"])
def create_ruleset():
    ruleset = _registry().create_ruleset(json_body(), actor_id=actor_id())
    return jsonify(ruleset.to_dict()), 201


@schema_bp.route("/validation-rulesets/<rid>", methods=["GET"])
def get_ruleset(rid):
    return jsonify(_registry().get_ruleset(rid).to_dict())


@schema_bp.route("/validation-rulesets/<rid>", methods=["PUT"])
def update_ruleset(rid):
    ruleset = _registry().update_ruleset(rid, json_body(), actor_id=actor_id())
    return jsonify(ruleset.to_dict())


@schema_bp.route("/validation-rulesets/<rid>", methods=["DELETE"])
def delete_ruleset(rid):
    _registry().delete_ruleset(rid, actor_id=actor_id())
    return jsonify({"deleted": rid})
