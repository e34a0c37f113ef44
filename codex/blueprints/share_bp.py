"""
Sharing API

Blueprints:
  share_bp          /api/v1/share-links            (authenticated callers)
    GET    /share-links?model_id=|data_object_id=  -- List links
    POST   /share-links                            -- Create link
    DELETE /share-links/<lid>                      -- Delete link

  public_share_bp   /api/v1/public/share           (anonymous callers)
    GET    /public/share/<lid>                     -- Resolve link for rendering
    POST   /public/share/<lid>/submit              -- Submit form data

Anonymous callers never learn whether a link is missing, expired or of
the wrong type: all three answer the same 404. Only field-level
validation detail is returned, so the submitter can fix their input.
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from codex.blueprints import actor_id, json_body
from codex.core.exceptions import (
    LinkExpiredError,
    LinkTypeMismatchError,
    NotFoundError,
    UniqueConstraintError,
    ValidationFailedError,
)
from codex.models import _iso, db
from codex.services.sharing_gateway import SharingGateway
from codex.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

share_bp = Blueprint("share_links", __name__, url_prefix="/api/v1")
register_error_handlers(share_bp)

public_share_bp = Blueprint("public_share", __name__, url_prefix="/api/v1/public/share")

_UNAVAILABLE = "This share link is not available"


# ── Public error handlers ─────────────────────────────────────────────────────


@public_share_bp.errorhandler(NotFoundError)
@public_share_bp.errorhandler(LinkExpiredError)
@public_share_bp.errorhandler(LinkTypeMismatchError)
def _handle_unavailable(error):
    logger.warning("Public share request refused: %s", error,
                   extra={"link_id": (request.view_args or {}).get("lid")})
    return api_error(E.NOT_FOUND, _UNAVAILABLE)


@public_share_bp.errorhandler(ValidationFailedError)
def _handle_validation(error: ValidationFailedError):
    return api_error(E.VALIDATION_FAILED, "Submission is invalid", details=error.details)


@public_share_bp.errorhandler(UniqueConstraintError)
def _handle_unique(error: UniqueConstraintError):
    return api_error(
        E.CONFLICT_UNIQUE, f"Value for '{error.field}' must be unique",
        details={"field": error.field},
    )


@public_share_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Public share request failed endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Submission failed")


# ═════════════════════════════════════════════════════════════════════════
# Link management
# ═════════════════════════════════════════════════════════════════════════


@share_bp.route("/share-links", methods=["GET"])
def list_links():
    links = SharingGateway(db.session).list_links(
        model_id=request.args.get("model_id"),
        object_id=request.args.get("data_object_id"),
    )
    return jsonify([link.to_dict() for link in links])


@share_bp.route("/share-links", methods=["POST"])
def create_link():
    link = SharingGateway(db.session).create_link(json_body(), actor_id=actor_id())
    return jsonify(link.to_dict()), 201


@share_bp.route("/share-links/<lid>", methods=["DELETE"])
def delete_link(lid):
    SharingGateway(db.session).delete_link(lid, actor_id=actor_id())
    return jsonify({"deleted": lid})


# ═════════════════════════════════════════════════════════════════════════
# Public (capability token) path
# ═════════════════════════════════════════════════════════════════════════


@public_share_bp.route("/<lid>", methods=["GET"])
def resolve_link(lid):
    resolved = SharingGateway(db.session).resolve(lid)
    link, model, obj = resolved["link"], resolved["model"], resolved["object"]
    return jsonify({
        "link": {
            "id": link.id,
            "link_type": link.link_type,
            "expires_at": _iso(link.expires_at),
            "expires_on_submit": link.expires_on_submit,
        },
        "model": model.to_dict(),
        "object": obj.to_dict() if obj else None,
    })


@public_share_bp.route("/<lid>/submit", methods=["POST"])
def submit_link(lid):
    body = json_body()
    form_data = body.get("form_data", body)
    if not isinstance(form_data, dict):
        return api_error(E.VALIDATION_INVALID, "form_data must be an object")
    obj = SharingGateway(db.session).submit(lid, form_data)
    return jsonify({"id": obj.id, "model_id": obj.model_id}), 200
