"""
Resource ledger and history routes.

Blueprint: resources_bp
Prefix: /api

Endpoints:
    POST /resources                      — {userId} → ledger entries
    POST /resources/monitor              — legacy alias of /resources
    GET  /<provider>/resources/<userId>  — legacy, filtered by provider
    POST /resources/delete               — {userId, resourceId}
    POST /deployments                    — {userId, limit?} → history
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from cloudforge.core.errors import CloudForgeError, ValidationError
from cloudforge.core.models.credentials import SUPPORTED_PROVIDERS
from cloudforge.ui.web.helpers import error_response, json_body, orchestrator, user_id_from

resources_bp = Blueprint("resources", __name__)


@resources_bp.route("/resources", methods=["POST"])
@resources_bp.route("/resources/monitor", methods=["POST"])
def list_resources():  # type: ignore[no-untyped-def]
    """List a user's recorded resources."""
    data = json_body()
    try:
        records = orchestrator().list_resources(user_id_from(data))
    except CloudForgeError as e:
        return error_response(e)
    return jsonify({"success": True, "resources": [r.to_dict() for r in records]})


@resources_bp.route("/<provider>/resources/<user_id>")
def list_provider_resources(provider: str, user_id: str):  # type: ignore[no-untyped-def]
    """List a user's resources for one provider (legacy path)."""
    if provider not in SUPPORTED_PROVIDERS:
        return error_response(ValidationError(f"Unknown provider: {provider}"))
    try:
        records = orchestrator().list_resources(user_id)
    except CloudForgeError as e:
        return error_response(e)
    return jsonify({
        "success": True,
        "resources": [
            r.to_dict() for r in records
            if r.details.get("provider", provider) == provider
        ],
    })


@resources_bp.route("/resources/delete", methods=["POST"])
def delete_resource():  # type: ignore[no-untyped-def]
    """Remove a resource from the ledger."""
    data = json_body()
    try:
        removed = orchestrator().delete_resource(
            user_id_from(data), str(data.get("resourceId") or ""),
        )
    except CloudForgeError as e:
        return error_response(e)
    return jsonify({"success": True, "resource": removed.to_dict()})


@resources_bp.route("/deployments", methods=["POST"])
def deployment_history():  # type: ignore[no-untyped-def]
    """Deployment history for a user, newest last."""
    data = json_body()
    limit = data.get("limit", request.args.get("limit"))
    try:
        n = int(limit) if limit not in (None, "") else None
    except (TypeError, ValueError):
        return error_response(ValidationError("limit must be an integer"))
    try:
        entries = orchestrator().history(user_id_from(data), n)
    except CloudForgeError as e:
        return error_response(e)
    return jsonify({
        "success": True,
        "deployments": [entry.model_dump(mode="json") for entry in entries],
    })
