"""ABOUTME: Flask extensions initialization and configuration
ABOUTME: Sets up Flask-Login for admins signed in by the admin backend, and the TwoFactorManager the API uses"""

from flask import Flask, current_app, jsonify
from flask.typing import ResponseReturnValue
from flask_login import LoginManager, UserMixin

from choma_admin import bootstrap
from choma_admin.adapters.database import create_session_factory
from choma_admin.service_layer.two_factor_service import TwoFactorManager

TWO_FACTOR_MANAGER_KEY = "two_factor_manager"

# Initialize extensions
login_manager = LoginManager()


class AdminPrincipal(UserMixin):
    """The signed-in administrator, as far as this service needs to know."""

    def __init__(self, account_id: str, display_name: str):
        self.id = account_id
        self.display_name = display_name

    @property
    def account_id(self) -> str:
        return str(self.id)


def init_extensions(app: Flask, manager: TwoFactorManager | None = None) -> None:
    """Initialize Flask extensions with app instance."""
    login_manager.init_app(app)
    if manager is not None:
        app.extensions[TWO_FACTOR_MANAGER_KEY] = manager


def get_two_factor_manager() -> TwoFactorManager:
    """The app's manager, built from configuration on first use unless one was supplied."""
    manager = current_app.extensions.get(TWO_FACTOR_MANAGER_KEY)
    if manager is None:
        manager = bootstrap.bootstrap_two_factor(
            session_factory=create_session_factory(current_app.config["DB_URI"]),
            policy=current_app.config["TWO_FACTOR"],
        )
        current_app.extensions[TWO_FACTOR_MANAGER_KEY] = manager
    assert isinstance(manager, TwoFactorManager)
    return manager


@login_manager.user_loader
def load_user(user_id: str) -> AdminPrincipal | None:
    """Load the admin from the identity service for Flask-Login."""
    if not user_id:
        return None
    display_name = get_two_factor_manager().identity.get_account_display_name(user_id)
    if display_name is None:
        return None
    return AdminPrincipal(user_id, display_name)


@login_manager.unauthorized_handler
def unauthorized() -> ResponseReturnValue:
    return jsonify({"success": False, "error": "Authentication required", "code": "unauthenticated"}), 401
