"""ABOUTME: Flask application factory with configuration, blueprints, and error handling
ABOUTME: Creates the JSON API app for admin two-factor management"""

from flask import Flask, Response, jsonify
from flask.typing import ResponseReturnValue
from flask_login import current_user
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

import choma_admin.logging
from choma_admin import config
from choma_admin.entrypoints.extensions import init_extensions
from choma_admin.service_layer.two_factor_service import TwoFactorManager


def create_app(config_name: str = "", manager: TwoFactorManager | None = None) -> Flask:
    """
    Flask application factory.

    Args:
        config_name: Configuration name (development, testing, production)
        manager: Pre-built TwoFactorManager, otherwise one is built from configuration on first use

    Returns:
        Configured Flask application instance
    """
    choma_admin.logging.logging_setup(config.get_log_level())

    app = Flask(__name__)

    # Load configuration
    flask_config = config.get_config(config_name)
    app.config.from_object(flask_config)

    # Trust 1 layer of proxy (the admin backend's reverse proxy), so remote_addr is the admin's address
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore[method-assign]

    init_extensions(app, manager)
    register_blueprints(app)
    register_error_handlers(app)
    register_after_request_handlers(app)

    app.logger.info("Choma admin 2FA service startup")

    return app


def register_blueprints(app: Flask) -> None:
    """Register application blueprints."""
    from .blueprints.health import health_bp
    from .blueprints.two_factor import two_factor_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(two_factor_bp, url_prefix="/api/admin/2fa")


def register_error_handlers(app: Flask) -> None:
    """Register JSON error handlers for HTTP errors."""

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException) -> ResponseReturnValue:
        return jsonify({"success": False, "error": error.description, "code": error.name.lower().replace(" ", "_")}), (
            error.code or 500
        )

    @app.errorhandler(500)
    def internal_error(error: Exception) -> ResponseReturnValue:
        app.logger.error(f"Server Error: {error}")
        return jsonify({"success": False, "error": "Internal server error", "code": "internal_error"}), 500


def register_after_request_handlers(app: Flask) -> None:
    """Register after request handlers."""

    @app.after_request
    def add_no_cache_headers(response: Response) -> Response:
        """Responses may carry secrets and backup codes, so nothing is cached for a signed-in admin."""
        if current_user.is_authenticated:
            response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
            response.headers["Pragma"] = "no-cache"
            response.headers["Expires"] = "0"

        return response
