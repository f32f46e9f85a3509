"""
Deploy routes — compile and run a selection.

Blueprint: deploy_bp
Prefix: /api

Endpoints:
    POST /<provider>/deploy   — stream progress events (concatenated JSON)
    POST /<provider>/render   — preview main.tf (never the secrets)

Request body (both)::

    {"resources": {"vpc": true, "subnet": true},
     "config":    {"vpcCidr": "10.0.0.0/16", ...},
     "auth":      {"userId": "u-123"},
     "deploymentId": "optional"}

The deploy response body is a sequence of JSON objects with no
delimiter between them, ending with exactly one ``success`` or
``error`` object.  Authentication, validation and conflict errors are
returned as ordinary JSON errors (401 / 400 / 409) before streaming
starts.
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, jsonify

from cloudforge.core.errors import CloudForgeError
from cloudforge.core.services.event_stream import encode_event
from cloudforge.ui.web.helpers import error_response, json_body, orchestrator, user_id_from

logger = logging.getLogger(__name__)

deploy_bp = Blueprint("deploy", __name__)


@deploy_bp.route("/<provider>/deploy", methods=["POST"])
def deploy(provider: str):  # type: ignore[no-untyped-def]
    """Start a deployment and stream its events."""
    data = json_body()
    try:
        handle = orchestrator().deploy(
            user_id_from(data),
            provider,
            data.get("resources"),
            data.get("config"),
            deployment_id=data.get("deploymentId") or None,
        )
    except CloudForgeError as e:
        return error_response(e)

    stream = handle.events

    def generate():  # type: ignore[no-untyped-def]
        delivered = False
        try:
            for event in stream:
                yield encode_event(event)
                delivered = event.is_terminal
        finally:
            if not delivered:
                # Client went away; the deployment keeps running
                logger.warning("Client disconnected from deployment %s", handle.deployment_id)
                stream.detach()

    response = Response(generate(), mimetype="application/json")
    response.headers["X-Deployment-Id"] = handle.deployment_id
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@deploy_bp.route("/<provider>/render", methods=["POST"])
def render(provider: str):  # type: ignore[no-untyped-def]
    """Render the Terraform configuration without running it."""
    data = json_body()
    try:
        compiled = orchestrator().render(
            user_id_from(data), provider, data.get("resources"), data.get("config"),
        )
    except CloudForgeError as e:
        return error_response(e)

    return jsonify({
        "success": True,
        "provider": compiled.provider,
        "config": compiled.config_text,
        "resources": [
            {"address": r.address, "type": r.type, "name": r.name}
            for r in compiled.resources
        ],
    })
