"""
Workflow API

Blueprint: workflow_bp
Prefix: /api/v1

Endpoints:
  GET/POST        /workflows          -- List / create
  GET/PUT/DELETE  /workflows/<wid>    -- Read / replace definition / delete

Body: {"name", "description"?, "states": [{"id"?, "name", "is_initial",
       "successor_state_names": [...], ...}]}
"""

import logging

from flask import Blueprint, jsonify

from codex.blueprints import actor_id, json_body
from codex.models import db
from codex.services.workflow_engine import WorkflowEngine
from codex.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


def _states(data: dict):
    states = data.get("states", [])
    if not isinstance(states, list) or not all(isinstance(s, dict) for s in states):
        return None
    return states


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    return jsonify([w.to_dict() for w in WorkflowEngine(db.session).list_workflows()])


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    data = json_body()
    states = _states(data)
    if states is None:
        return api_error(E.VALIDATION_INVALID, "states must be a list of objects")
    workflow = WorkflowEngine(db.session).upsert_workflow(data, states, actor_id=actor_id())
    return jsonify(workflow.to_dict()), 201


@workflow_bp.route("/workflows/<wid>", methods=["GET"])
def get_workflow(wid):
    return jsonify(WorkflowEngine(db.session).get_workflow(wid).to_dict())


@workflow_bp.route("/workflows/<wid>", methods=["PUT"])
def update_workflow(wid):
    data = json_body()
    states = _states(data)
    if states is None:
        return api_error(E.VALIDATION_INVALID, "states must be a list of objects")
    workflow = WorkflowEngine(db.session).upsert_workflow(
        data, states, workflow_id=wid, actor_id=actor_id(),
    )
    return jsonify(workflow.to_dict())


@workflow_bp.route("/workflows/<wid>", methods=["DELETE"])
def delete_workflow(wid):
    WorkflowEngine(db.session).delete_workflow(wid, actor_id=actor_id())
    return jsonify({"deleted": wid})
