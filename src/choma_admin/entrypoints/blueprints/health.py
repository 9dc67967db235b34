"""ABOUTME: Health check endpoint for monitoring service status
ABOUTME: Reports database, celery, and version status as JSON"""

from flask import Blueprint, jsonify
from flask.typing import ResponseReturnValue

from choma_admin import config
from choma_admin.entrypoints.extensions import get_two_factor_manager

health_bp = Blueprint("health", __name__)


def check_database() -> tuple[bool, int | str]:
    """
    Check database connectivity and return the number of 2FA records.

    Returns:
        Tuple of (success: bool, record_count: int | "UNKNOWN")
    """
    try:
        with get_two_factor_manager().uow_factory() as uow:
            record_count = uow.two_factor_accounts.count()
        return True, record_count
    except Exception:
        return False, "UNKNOWN"


def check_celery_worker() -> bool:
    """
    Check if celery worker is running.

    Returns:
        True if at least one worker is active, False otherwise
    """
    from choma_admin.entrypoints.celery.app import app as celery_app

    try:
        active_workers = celery_app.control.inspect().active()
        # None if no workers respond, or a dict of workers
        return active_workers is not None and len(active_workers) > 0
    except Exception:
        return False


@health_bp.route("/health")
def health_check() -> ResponseReturnValue:
    """
    Health check endpoint returning JSON with system status.

    The celery worker is only required when audit entries are dispatched through it.
    HTTP status 200 if everything is healthy, 500 if any check fails.
    """
    db_ok, record_count = check_database()
    celery_needed = config.get_audit_dispatch() == "celery"
    celery_ok = check_celery_worker() if celery_needed else True

    response_data = {
        "database_ok": db_ok,
        "two_factor_records": record_count,
        "celery_worker_running": celery_ok if celery_needed else None,
        "version": config.get_version(),
    }
    return jsonify(response_data), 200 if db_ok and celery_ok else 500
