"""
Changelog API

Blueprint: changelog_bp
Prefix: /api/v1

Endpoints:
  GET /changelog   -- Paginated changelog
      ?entity_type=DataObject|Model|Workflow|ValidationRuleset|ModelGroup
      &entity_id=&user_id=&model_id=&date_from=&date_to=&page=&per_page=
"""

import logging

from flask import Blueprint, jsonify, request

from codex.blueprints import page_args
from codex.models import db
from codex.services.changelog_service import DATA_OBJECT_ENTITY, ChangelogService
from codex.utils.errors import E, api_error, register_error_handlers
from codex.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)

changelog_bp = Blueprint("changelog", __name__, url_prefix="/api/v1")
register_error_handlers(changelog_bp)


@changelog_bp.route("/changelog", methods=["GET"])
def list_changelog():
    try:
        date_from = parse_datetime_input(request.args.get("date_from"))
        date_to = parse_datetime_input(request.args.get("date_to"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))
    page, per_page = page_args()
    result = ChangelogService(db.session).list_changelog(
        entity_type=request.args.get("entity_type") or DATA_OBJECT_ENTITY,
        entity_id=request.args.get("entity_id"),
        user_id=request.args.get("user_id"),
        model_id=request.args.get("model_id"),
        date_from=date_from,
        date_to=date_to,
        page=page,
        per_page=per_page,
    )
    return jsonify(result)
