import pytest
from flask.testing import FlaskClient

from choma_admin.entrypoints.flask_app import create_app
from tests.data import ADMIN_ID


@pytest.fixture
def app(manager, clear_env_vars):
    """Create test Flask application around the fake-backed manager."""
    clear_env_vars("AUDIT_DISPATCH")
    app = create_app("testing", manager=manager)
    return app


@pytest.fixture
def client(app) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def logged_in_client(client) -> FlaskClient:
    """A client whose session carries the admin signed in by the admin backend."""
    with client.session_transaction() as session:
        session["_user_id"] = ADMIN_ID
        session["_fresh"] = True
    return client
