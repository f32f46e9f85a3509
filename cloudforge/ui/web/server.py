"""
Web server — Flask app factory.

Creates the Flask application that exposes the orchestrator over HTTP
for the dashboard.  The orchestrator is built once per app and kept in
``app.extensions["cloudforge"]``; routes reach it through
:func:`cloudforge.ui.web.helpers.orchestrator`.
"""

from __future__ import annotations

import logging

from flask import Flask

from cloudforge.core.config.settings import Settings
from cloudforge.core.services.deploy_ops import DeploymentOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    orchestrator: DeploymentOrchestrator | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        settings: Runtime settings (defaults if None).
        orchestrator: Pre-built orchestrator; built from ``settings``
            when None.

    Returns:
        Configured Flask application.
    """
    settings = settings or Settings()
    app = Flask(__name__)

    app.config["TERRAFORM_BINARY"] = list(settings.terraform_binary)
    app.config["MAX_CONTENT_LENGTH"] = 1 * 1024 * 1024  # 1 MB request limit
    app.extensions["cloudforge"] = orchestrator or build_orchestrator(settings)

    # Register blueprints
    from cloudforge.ui.web.routes_api import api_bp
    from cloudforge.ui.web.routes_credentials import credentials_bp
    from cloudforge.ui.web.routes_deploy import deploy_bp
    from cloudforge.ui.web.routes_resources import resources_bp

    app.register_blueprint(api_bp)
    app.register_blueprint(credentials_bp, url_prefix="/api")
    app.register_blueprint(deploy_bp, url_prefix="/api")
    app.register_blueprint(resources_bp, url_prefix="/api")

    @app.after_request
    def _cors(response):  # type: ignore[no-untyped-def]
        # The dashboard is served from its own origin
        response.headers.setdefault("Access-Control-Allow-Origin", "*")
        response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
        return response

    logger.info("CloudForge app created (terraform=%s)", " ".join(settings.terraform_binary))
    return app


def run_server(
    app: Flask,
    host: str = "127.0.0.1",
    port: int = 8000,
    debug: bool = False,
) -> None:
    """Run the Flask development server (threaded, for streaming)."""
    logger.info("Starting CloudForge on %s:%d", host, port)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
