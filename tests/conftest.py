"""ABOUTME: Pytest configuration and fixtures for choma-admin tests
ABOUTME: Provides environment, database, CLI and two-factor manager fixtures for unit, integration, and e2e tests"""

import base64
import os
import secrets

import pytest
from click.testing import CliRunner
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from choma_admin.adapters import database, orm
from choma_admin.config import FlaskTestConfig, TwoFactorCfg, get_config
from choma_admin.service_layer.audit_service import DirectAuditRecorder
from choma_admin.service_layer.two_factor_service import RequestInfo, TwoFactorManager
from tests.data import (
    ADMIN_EMAIL,
    ADMIN_ID,
    ADMIN_PASSWORD,
    SECOND_ADMIN_EMAIL,
    SECOND_ADMIN_ID,
    SECOND_ADMIN_PASSWORD,
)
from tests.fakes import FakeAdminIdentity, FakeUnitOfWork, RecordingNotificationBridge


@pytest.fixture(scope="session")
def test_config():
    """Provide test configuration for the entire test session."""
    # Ensure we're using test configuration
    os.environ["FLASK_ENV"] = "testing"
    return FlaskTestConfig()


@pytest.fixture(scope="function")
def config():
    """Provide configuration for individual test functions."""
    return get_config()


@pytest.fixture(autouse=True)
def set_test_env():
    """Automatically set test environment for all tests."""
    original_env = os.environ.get("FLASK_ENV")
    os.environ["FLASK_ENV"] = "testing"
    yield
    if original_env is not None:
        os.environ["FLASK_ENV"] = original_env
    else:
        os.environ.pop("FLASK_ENV", None)


@pytest.fixture
def clear_env_vars():
    """Fixture to temporarily remove environment variables for testing."""
    original_vars = {}

    def _clear_env_vars(*args):
        for key in args:
            original_vars[key] = os.environ.get(key)
            os.environ.pop(key, None)

    yield _clear_env_vars

    # Restore original environment variables
    for key, value in original_vars.items():
        if value is not None:
            os.environ[key] = value


@pytest.fixture
def temp_env_vars():
    """Fixture to temporarily set environment variables for testing."""
    original_vars = {}

    def _set_env_vars(**kwargs):
        for key, value in kwargs.items():
            if key not in original_vars:
                original_vars[key] = os.environ.get(key)
            os.environ[key] = value

    yield _set_env_vars

    # Restore original environment variables
    for key, value in original_vars.items():
        if value is not None:
            os.environ[key] = value
        else:
            os.environ.pop(key, None)


@pytest.fixture(autouse=True)
def totp_encryption_key(temp_env_vars):
    """Every test gets its own master key for TOTP secret encryption."""
    test_key = base64.b64encode(secrets.token_bytes(32)).decode()
    temp_env_vars(TOTP_ENCRYPTION_KEY=test_key)
    return test_key


@pytest.fixture
def mappers():
    database.start_mappers()
    yield
    database.clear_mappers()


@pytest.fixture
def in_memory_sqlite_db():
    engine = create_engine("sqlite:///:memory:")
    return engine


@pytest.fixture
def sqlite_session_factory(in_memory_sqlite_db):
    orm.metadata.create_all(in_memory_sqlite_db)
    database.start_mappers()

    yield sessionmaker(bind=in_memory_sqlite_db, expire_on_commit=False)

    database.clear_mappers()
    orm.metadata.drop_all(in_memory_sqlite_db)


@pytest.fixture
def file_sqlite_session_factory(tmp_path):
    """SQLite on disk, so that two sessions really hold separate connections."""
    engine = create_engine(f"sqlite:///{tmp_path / 'choma_admin.db'}")
    orm.metadata.create_all(engine)
    database.start_mappers()

    yield sessionmaker(bind=engine, expire_on_commit=False)

    database.clear_mappers()
    orm.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def cli_with_session_factory(sqlite_session_factory):
    """Fixture that provides a Click runner with test session factory in context."""

    def _invoke_cli_with_context(cli_command, args, **kwargs):
        """Helper to invoke CLI commands with test session factory in context."""
        runner = CliRunner()

        # Create context object with our test session factory
        ctx_obj = {"session_factory": sqlite_session_factory}

        # Invoke with the context object
        return runner.invoke(cli_command, args, obj=ctx_obj, **kwargs)

    return _invoke_cli_with_context


# two-factor manager wired to fakes


@pytest.fixture
def uow():
    return FakeUnitOfWork()


@pytest.fixture
def identity():
    return FakeAdminIdentity({
        ADMIN_ID: (ADMIN_EMAIL, ADMIN_PASSWORD),
        SECOND_ADMIN_ID: (SECOND_ADMIN_EMAIL, SECOND_ADMIN_PASSWORD),
    })


@pytest.fixture
def notifier():
    return RecordingNotificationBridge()


@pytest.fixture
def policy():
    return TwoFactorCfg()


@pytest.fixture
def request_info():
    return RequestInfo(ip_address="10.0.0.1", user_agent="Mozilla/5.0 (pytest)")


@pytest.fixture
def manager(uow, identity, notifier, policy):
    return TwoFactorManager(
        uow_factory=lambda: uow,
        identity=identity,
        audit_recorder=DirectAuditRecorder(lambda: uow),
        notifier=notifier,
        policy=policy,
    )
