"""ABOUTME: Celery tasks that persist audit entries and deliver security alerts off the request path
ABOUTME: Also provides the recorder and notifier that enqueue those tasks"""

from typing import Any

import structlog
from celery import Task
from celery.signals import setup_logging
from sqlalchemy.orm import sessionmaker

import choma_admin.logging
from choma_admin import config
from choma_admin.adapters.notifications import NotificationBridge, SecurityEvent
from choma_admin.bootstrap import bootstrap, build_notifier
from choma_admin.domain.two_factor_audit import TwoFactorAuditLog
from choma_admin.entrypoints.celery.app import app
from choma_admin.service_layer.audit_service import AuditRecorder, store_audit_entry
from choma_admin.service_layer.exceptions import InfrastructureError

logger = structlog.get_logger(__name__)


@setup_logging.connect
def config_loggers(*args: Any, **kwargs: Any) -> None:
    choma_admin.logging.logging_setup(config.get_log_level())


@app.task(
    bind=True,
    acks_late=True,
    autoretry_for=(InfrastructureError,),
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=None,
)
def record_audit_entry(self: Task, entry_data: dict[str, Any], session_factory: sessionmaker | None = None) -> bool:
    """Persist one audit entry. Safe to run more than once for the same entry.

    Returns:
        True if the entry was written, False if it had already been stored
    """
    entry = TwoFactorAuditLog.from_dict(entry_data)
    written = store_audit_entry(bootstrap(session_factory=session_factory), entry)
    if not written:
        logger.info("audit_entry_duplicate", entry_id=str(entry.id), account_id=entry.account_id)
    return written


class NotificationNotDelivered(Exception):
    pass


@app.task(
    bind=True,
    acks_late=True,
    autoretry_for=(NotificationNotDelivered,),
    retry_backoff=True,
    max_retries=5,
)
def send_security_notification(
    self: Task, event_data: dict[str, Any], notifier: NotificationBridge | None = None
) -> bool:
    event = SecurityEvent.from_dict(event_data)
    if not (notifier or build_notifier()).notify(event):
        raise NotificationNotDelivered(event.subject)
    return True


class CeleryAuditRecorder(AuditRecorder):
    """Hands entries to the worker. The entry's timestamp was fixed when the decision was made."""

    def record(self, entry: TwoFactorAuditLog) -> None:
        record_audit_entry.delay(entry.to_dict())


class CeleryNotificationBridge(NotificationBridge):
    def notify(self, event: SecurityEvent) -> bool:
        send_security_notification.delay(event.to_dict())
        return True
