"""
Object Store API

Blueprint: objects_bp
Prefix: /api/v1

Endpoints:
  GET/POST        /models/<mid>/objects                  -- List (?include_deleted=) / create
  POST            /models/<mid>/objects/batch-delete     -- Soft-delete many {"ids": [...]}
  POST            /models/<mid>/objects/batch-update     -- Set one property on many objects
  GET/PUT/DELETE  /objects/<oid>                         -- Read / update / delete (?hard=true)
  POST            /objects/<oid>/restore                 -- Restore from recycle bin
  GET             /objects/<oid>/dependencies            -- Incoming / outgoing relationship links
  POST            /objects/batch-dependencies            -- Dependencies of many {"ids": [...]}
  GET             /objects/<oid>/changelog               -- Object history, newest first
  POST            /objects/<oid>/changelog/<eid>/revert  -- Revert one changelog entry

A ``current_state_id`` key in the PUT body is a workflow transition.
Batch update takes ``{"ids", "property_name", "value"}``; a ``property_name`` of
``__workflowState__`` moves every object to the state id in ``value``.
"""

import logging

from flask import Blueprint, jsonify, request

from codex.blueprints import actor_id, json_body
from codex.models import db
from codex.services.changelog_service import ChangelogService
from codex.services.object_store import ObjectStore
from codex.utils.errors import E, api_error, register_error_handlers
from codex.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

objects_bp = Blueprint("objects", __name__, url_prefix="/api/v1")
register_error_handlers(objects_bp)


@objects_bp.route("/models/<mid>/objects", methods=["GET"])
def list_objects(mid):
    include_deleted = parse_bool(request.args.get("include_deleted"))
    objects = ObjectStore(db.session).list_by_model(mid, include_deleted=include_deleted)
    return jsonify([o.to_dict() for o in objects])


@objects_bp.route("/models/<mid>/objects", methods=["POST"])
def create_object(mid):
    obj = ObjectStore(db.session).create(mid, json_body(), actor_id=actor_id())
    return jsonify(obj.to_dict()), 201


@objects_bp.route("/models/<mid>/objects/batch-delete", methods=["POST"])
def batch_delete_objects(mid):
    ids = json_body().get("ids")
    if not isinstance(ids, list) or not ids:
        return api_error(E.VALIDATION_REQUIRED, "ids (non-empty list) is required")
    return jsonify(ObjectStore(db.session).batch_soft_delete(mid, ids, actor_id=actor_id()))


@objects_bp.route("/models/<mid>/objects/batch-update", methods=["POST"])
def batch_update_objects(mid):
    data = json_body()
    ids = data.get("ids")
    if not isinstance(ids, list) or not ids:
        return api_error(E.VALIDATION_REQUIRED, "ids (non-empty list) is required")
    property_name = data.get("property_name")
    if not property_name:
        return api_error(E.VALIDATION_REQUIRED, "property_name is required")
    result = ObjectStore(db.session).batch_update(
        mid, ids, property_name, data.get("value"), actor_id=actor_id(),
    )
    return jsonify(result)


@objects_bp.route("/objects/batch-dependencies", methods=["POST"])
def batch_object_dependencies():
    ids = json_body().get("ids")
    if not isinstance(ids, list) or not ids:
        return api_error(E.VALIDATION_REQUIRED, "ids (non-empty list) is required")
    return jsonify(ObjectStore(db.session).batch_dependencies(ids))


@objects_bp.route("/objects/<oid>", methods=["GET"])
def get_object(oid):
    include_deleted = parse_bool(request.args.get("include_deleted"))
    return jsonify(ObjectStore(db.session).get_by_id(oid, include_deleted=include_deleted).to_dict())


@objects_bp.route("/objects/<oid>", methods=["PUT"])
def update_object(oid):
    obj = ObjectStore(db.session).update(None, oid, json_body(), actor_id=actor_id())
    return jsonify(obj.to_dict())


@objects_bp.route("/objects/<oid>", methods=["DELETE"])
def delete_object(oid):
    store = ObjectStore(db.session)
    if parse_bool(request.args.get("hard")):
        store.hard_delete(oid, actor_id=actor_id())
        return jsonify({"deleted": oid, "hard": True})
    store.soft_delete(oid, actor_id=actor_id())
    return jsonify({"deleted": oid, "hard": False})


@objects_bp.route("/objects/<oid>/dependencies", methods=["GET"])
def object_dependencies(oid):
    return jsonify(ObjectStore(db.session).dependencies(oid))


@objects_bp.route("/objects/<oid>/restore", methods=["POST"])
def restore_object(oid):
    return jsonify(ObjectStore(db.session).restore(oid, actor_id=actor_id()).to_dict())


@objects_bp.route("/objects/<oid>/changelog", methods=["GET"])
def object_changelog(oid):
    entries = ChangelogService(db.session).list_for_object(oid)
    return jsonify([e.to_dict() for e in entries])


@objects_bp.route("/objects/<oid>/changelog/<eid>/revert", methods=["POST"])
def revert_object(oid, eid):
    obj, entry = ChangelogService(db.session).revert(oid, eid, actor_id=actor_id())
    return jsonify({
        "object": obj.to_dict(),
        "changelog_entry": entry.to_dict() if entry else None,
        "no_op": entry is None,
    })
