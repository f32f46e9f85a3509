"""
Shared helpers for the route blueprints.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import current_app, jsonify, request

from cloudforge.core.errors import CloudForgeError, ValidationError
from cloudforge.core.services.deploy_ops import DeploymentOrchestrator

logger = logging.getLogger(__name__)


def orchestrator() -> DeploymentOrchestrator:
    return current_app.extensions["cloudforge"]


def json_body() -> dict[str, Any]:
    data = request.get_json(silent=True) or {}
    return data if isinstance(data, dict) else {}


def user_id_from(data: dict[str, Any]) -> str:
    """Pull the user id from ``userId`` or ``auth.userId``."""
    auth = data.get("auth")
    if isinstance(auth, dict) and auth.get("userId"):
        return str(auth["userId"])
    return str(data.get("userId") or "")


def error_response(e: CloudForgeError):  # type: ignore[no-untyped-def]
    """JSON body + status code for a domain error."""
    body: dict[str, Any] = {
        "success": False,
        "error": str(e),
        "kind": type(e).__name__,
    }
    if isinstance(e, ValidationError):
        body["problems"] = e.problems
    if e.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.path, e)
    else:
        logger.info("%s %s rejected (%d): %s", request.method, request.path, e.status_code, e)
    return jsonify(body), e.status_code
