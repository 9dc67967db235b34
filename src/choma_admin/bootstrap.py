from collections.abc import Callable

from sqlalchemy.orm import sessionmaker

from choma_admin import config
from choma_admin.adapters import database
from choma_admin.adapters.identity import AdminIdentity, HttpAdminIdentity
from choma_admin.adapters.notifications import LoggingNotificationBridge, NotificationBridge, SMTPNotificationBridge
from choma_admin.service_layer import unit_of_work
from choma_admin.service_layer.audit_service import AuditRecorder, DirectAuditRecorder
from choma_admin.service_layer.two_factor_service import TwoFactorManager


def bootstrap(
    start_orm: bool = True,
    uow: unit_of_work.AbstractUnitOfWork | None = None,
    session_factory: sessionmaker | None = None,
) -> unit_of_work.AbstractUnitOfWork:
    if start_orm:
        database.start_mappers()

    if session_factory is None:
        session_factory = database.create_session_factory(config.get_db_uri())

    if uow is None:
        uow = unit_of_work.SqlAlchemyUnitOfWork(session_factory)

    return uow


def build_notifier() -> NotificationBridge:
    """The bridge that actually delivers alerts, chosen by NOTIFICATION_BACKEND."""
    if config.get_notification_backend() == "smtp":
        email_cfg = config.EmailCfg.from_env()
        return SMTPNotificationBridge(
            host=email_cfg.host,
            port=email_cfg.port,
            recipients=email_cfg.security_recipients,
            from_address=email_cfg.from_address,
            username=email_cfg.username,
            password=email_cfg.password,
            use_tls=email_cfg.use_tls,
            from_name=email_cfg.from_name,
        )
    return LoggingNotificationBridge()


def bootstrap_two_factor(
    start_orm: bool = True,
    session_factory: sessionmaker | None = None,
    uow_factory: Callable[[], unit_of_work.AbstractUnitOfWork] | None = None,
    identity: AdminIdentity | None = None,
    audit_recorder: AuditRecorder | None = None,
    notifier: NotificationBridge | None = None,
    policy: config.TwoFactorCfg | None = None,
) -> TwoFactorManager:
    """Wire a TwoFactorManager from configuration, with any collaborator overridable."""
    if start_orm:
        database.start_mappers()

    if uow_factory is None:
        if session_factory is None:
            session_factory = database.create_session_factory(config.get_db_uri())
        factory = session_factory

        def uow_factory() -> unit_of_work.AbstractUnitOfWork:
            return unit_of_work.SqlAlchemyUnitOfWork(factory)

    if identity is None:
        identity = HttpAdminIdentity(config.get_admin_identity_url(), config.get_admin_identity_timeout())

    dispatch = config.get_audit_dispatch()
    if audit_recorder is None:
        if dispatch == "celery":
            from choma_admin.entrypoints.celery.tasks import CeleryAuditRecorder

            audit_recorder = CeleryAuditRecorder()
        else:
            audit_recorder = DirectAuditRecorder(uow_factory)

    if notifier is None:
        if dispatch == "celery":
            from choma_admin.entrypoints.celery.tasks import CeleryNotificationBridge

            notifier = CeleryNotificationBridge()
        else:
            notifier = build_notifier()

    return TwoFactorManager(
        uow_factory=uow_factory,
        identity=identity,
        audit_recorder=audit_recorder,
        notifier=notifier,
        policy=policy or config.TwoFactorCfg.from_env(),
    )
