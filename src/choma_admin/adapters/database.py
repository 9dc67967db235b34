"""ABOUTME: Database connection setup and imperative mapping for the two-factor service
ABOUTME: Configures SQLAlchemy sessions and maps plain domain objects to tables"""

from sqlalchemy import create_engine
from sqlalchemy.orm import clear_mappers as sqla_clear_mappers
from sqlalchemy.orm import composite, relationship, sessionmaker

from choma_admin.adapters import orm
from choma_admin.config import bool_environ_get, get_db_uri
from choma_admin.domain import backup_codes, lockout, trusted_devices, two_factor, two_factor_audit, value_objects


class DatabaseError(Exception):
    """Base exception for database-related errors."""

    pass


def create_session_factory(database_url: str = "", echo: bool = False) -> sessionmaker:
    """Create a SQLAlchemy session factory with proper configuration."""
    database_url = database_url or get_db_uri()
    echo = bool_environ_get("DB_ECHO") or echo
    extra_args: dict[str, int | bool] = {}
    if database_url.startswith("postgresql://"):
        extra_args = {
            "pool_pre_ping": True,  # Verify connections before use
            "pool_recycle": 3600,  # Recycle connections after 1 hour
            "pool_size": 10,
            "max_overflow": 20,
        }
    engine = create_engine(database_url, echo=echo, **extra_args)

    return sessionmaker(bind=engine, expire_on_commit=False)


# Track if mappers have been started
_mappers_started = False


def start_mappers() -> None:
    """Start imperative mapping between domain objects and database tables.

    This function must be called before using any domain objects with SQLAlchemy.
    The mapping is done imperatively to keep domain objects independent of SQLAlchemy.
    """
    global _mappers_started

    if _mappers_started:
        return

    try:
        accounts = orm.two_factor_accounts
        orm.mapper_registry.map_imperatively(
            two_factor.TwoFactorAccount,
            accounts,
            properties={
                "lockout": composite(
                    lockout.LockoutState,
                    accounts.c.failed_attempts,
                    accounts.c.max_attempts,
                    accounts.c.locked_until,
                    accounts.c.last_failed_attempt,
                ),
                "settings": composite(
                    value_objects.TwoFactorSettings,
                    accounts.c.require_for_login,
                    accounts.c.require_for_sensitive_actions,
                    accounts.c.device_remember_hours,
                ),
                "recovery": composite(
                    value_objects.RecoveryInfo,
                    accounts.c.emergency_contact,
                    accounts.c.last_recovery_attempt,
                    accounts.c.recovery_attempts,
                ),
                "backup_codes": relationship(
                    backup_codes.BackupCode,
                    order_by=orm.two_factor_backup_codes.c.position,
                    cascade="all, delete-orphan",
                    lazy="selectin",
                ),
                "trusted_devices": relationship(
                    trusted_devices.TrustedDevice,
                    order_by=orm.two_factor_trusted_devices.c.created_at,
                    cascade="all, delete-orphan",
                    lazy="selectin",
                ),
            },
            version_id_col=accounts.c.version,
        )

        orm.mapper_registry.map_imperatively(backup_codes.BackupCode, orm.two_factor_backup_codes)
        orm.mapper_registry.map_imperatively(trusted_devices.TrustedDevice, orm.two_factor_trusted_devices)
        orm.mapper_registry.map_imperatively(two_factor_audit.TwoFactorAuditLog, orm.two_factor_audit_logs)

        _mappers_started = True

    except Exception as e:  # pragma: no cover
        raise DatabaseError(f"Failed to start mappers: {e}") from e


def clear_mappers() -> None:
    sqla_clear_mappers()

    global _mappers_started
    _mappers_started = False
