"""
Service routes — health.

Blueprint: api_bp
Prefix: (none)

Endpoints:
    GET  /health    — liveness, timestamp, terraform CLI availability
"""

from __future__ import annotations

from datetime import UTC, datetime

from flask import Blueprint, current_app, jsonify

from cloudforge import __version__
from cloudforge.core.services.tf_supervisor import terraform_available
from cloudforge.ui.web.helpers import orchestrator

api_bp = Blueprint("api", __name__)


@api_bp.route("/health")
def health():  # type: ignore[no-untyped-def]
    """Health check."""
    return jsonify({
        "status": "OK",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
        "terraform": terraform_available(current_app.config["TERRAFORM_BINARY"]),
        "active_deployments": len(orchestrator().active()),
    })
