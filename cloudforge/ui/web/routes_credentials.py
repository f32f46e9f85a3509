"""
Credential routes — called by the login screens.

Blueprint: credentials_bp
Prefix: /api

Endpoints:
    POST /credentials              — {userId, credentials: {provider, ...}}
    POST /<provider>/credentials   — legacy: {userId, credentials: {...}}
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify

from cloudforge.core.errors import CloudForgeError, ValidationError
from cloudforge.core.models.credentials import SUPPORTED_PROVIDERS
from cloudforge.ui.web.helpers import error_response, json_body, orchestrator, user_id_from

logger = logging.getLogger(__name__)

credentials_bp = Blueprint("credentials", __name__)


def _store(provider: str | None):  # type: ignore[no-untyped-def]
    data = json_body()
    try:
        credentials = data.get("credentials")
        if not isinstance(credentials, dict):
            raise ValidationError("credentials object is required")
        if provider is not None:
            credentials = {**credentials, "provider": provider}
        stored = orchestrator().put_credentials(user_id_from(data), credentials)
    except CloudForgeError as e:
        return error_response(e)
    return jsonify({"success": True, "provider": stored})


@credentials_bp.route("/credentials", methods=["POST"])
def put_credentials():  # type: ignore[no-untyped-def]
    """Store provider credentials for a user."""
    return _store(None)


@credentials_bp.route("/<provider>/credentials", methods=["POST"])
def put_provider_credentials(provider: str):  # type: ignore[no-untyped-def]
    """Store credentials for one provider (legacy path)."""
    if provider not in SUPPORTED_PROVIDERS:
        return error_response(ValidationError(f"Unknown provider: {provider}"))
    return _store(provider)
