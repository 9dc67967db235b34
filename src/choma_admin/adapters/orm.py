"""ABOUTME: SQLAlchemy table definitions for the admin two-factor service
ABOUTME: Defines the 2FA record, backup code, trusted device and audit log tables with their indexes"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.engine.interfaces import Dialect
from sqlalchemy.orm import registry

from choma_admin.domain.lockout import DEFAULT_MAX_VERIFICATION_ATTEMPTS
from choma_admin.domain.value_objects import (
    DEFAULT_DEVICE_REMEMBER_HOURS,
    AuditAction,
    RiskLevel,
    VerificationMethod,
)


def aware_utcnow() -> datetime:  # pragma: no cover
    return datetime.now(UTC)


class EnumAsString(TypeDecorator):
    """Custom type for storing Python Enums as strings."""

    impl = String
    cache_ok = True

    def __init__(self, enum_class: type[Enum], *args: Any, **kwargs: Any) -> None:
        self.enum_class = enum_class
        super().__init__(*args, **kwargs)

    def process_bind_param(self, value: Any, dialect: Dialect) -> str | None:
        if value is None:
            return value
        return value.value if hasattr(value, "value") else str(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return value
        return self.enum_class(value)


class TZAwareDatetime(TypeDecorator):
    """Timestamps stored with time zone; naive values read back (SQLite) are taken as UTC."""

    impl = TIMESTAMP
    cache_ok = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("timezone", True)
        super().__init__(*args, **kwargs)

    def process_bind_param(self, value: Any, dialect: Dialect) -> datetime | None:
        if isinstance(value, datetime) and value.tzinfo is not None and dialect.name == "sqlite":
            # SQLite has no time zone support, keep everything in UTC
            return value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Dialect) -> datetime | None:
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class CrossDatabaseUUID(TypeDecorator):
    """UUID column: native on PostgreSQL, CHAR(36) elsewhere."""

    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PostgresUUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        return value if dialect.name == "postgresql" else str(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> uuid.UUID | None:
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# Create a registry for imperative mapping
mapper_registry = registry()
metadata = mapper_registry.metadata

# One row per administrator, never deleted
two_factor_accounts = Table(
    "two_factor_accounts",
    metadata,
    Column("id", CrossDatabaseUUID(), primary_key=True, default=uuid.uuid4),
    # reference to the admin in the external identity store
    Column("account_id", String(64), nullable=False, unique=True),
    Column("totp_secret_encrypted", Text, nullable=True),
    Column("is_enabled", Boolean, nullable=False, default=False),
    Column("setup_date", TZAwareDatetime(), nullable=True),
    Column("last_verified", TZAwareDatetime(), nullable=True),
    Column("backup_codes_generated_at", TZAwareDatetime(), nullable=True),
    # lockout guard
    Column("failed_attempts", Integer, nullable=False, default=0),
    Column("max_attempts", Integer, nullable=False, default=DEFAULT_MAX_VERIFICATION_ATTEMPTS),
    Column("locked_until", TZAwareDatetime(), nullable=True),
    Column("last_failed_attempt", TZAwareDatetime(), nullable=True),
    # settings
    Column("require_for_login", Boolean, nullable=False, default=True),
    Column("require_for_sensitive_actions", Boolean, nullable=False, default=True),
    Column("device_remember_hours", Integer, nullable=False, default=DEFAULT_DEVICE_REMEMBER_HOURS),
    # recovery info
    Column("emergency_contact", String(255), nullable=True),
    Column("last_recovery_attempt", TZAwareDatetime(), nullable=True),
    Column("recovery_attempts", Integer, nullable=False, default=0),
    Column("created_at", TZAwareDatetime(), nullable=False, default=aware_utcnow),
    Column("updated_at", TZAwareDatetime(), nullable=False, default=aware_utcnow),
    # bumped by every domain mutation so child-only changes still UPDATE this row
    Column("revision", Integer, nullable=False, default=0),
    # optimistic concurrency, checked on every UPDATE of the row
    Column("version", Integer, nullable=False),
)

two_factor_backup_codes = Table(
    "two_factor_backup_codes",
    metadata,
    Column("id", CrossDatabaseUUID(), primary_key=True, default=uuid.uuid4),
    Column(
        "two_factor_account_id",
        CrossDatabaseUUID(),
        ForeignKey("two_factor_accounts.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("code_hash", String(255), nullable=False),
    Column("position", Integer, nullable=False, default=0),
    Column("used_at", TZAwareDatetime(), nullable=True),
    Column("created_at", TZAwareDatetime(), nullable=False, default=aware_utcnow),
)

two_factor_trusted_devices = Table(
    "two_factor_trusted_devices",
    metadata,
    Column("id", CrossDatabaseUUID(), primary_key=True, default=uuid.uuid4),
    Column(
        "two_factor_account_id",
        CrossDatabaseUUID(),
        ForeignKey("two_factor_accounts.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("device_id", String(64), nullable=False),
    Column("name", String(255), nullable=False, default=""),
    Column("ip_address", String(64), nullable=False, default=""),
    Column("user_agent", String(512), nullable=False, default=""),
    Column("created_at", TZAwareDatetime(), nullable=False, default=aware_utcnow),
    Column("last_used", TZAwareDatetime(), nullable=False, default=aware_utcnow),
    Column("expires_at", TZAwareDatetime(), nullable=False),
    UniqueConstraint("two_factor_account_id", "device_id", name="uq_trusted_devices_account_device"),
)

# Append-only; retention is handled outside the application
two_factor_audit_logs = Table(
    "two_factor_audit_logs",
    metadata,
    Column("id", CrossDatabaseUUID(), primary_key=True, default=uuid.uuid4),
    Column("account_id", String(64), nullable=False),
    Column("action", EnumAsString(AuditAction, 50), nullable=False),
    Column("success", Boolean, nullable=False, default=True),
    Column("failure_reason", String(255), nullable=True),
    Column("verification_method", EnumAsString(VerificationMethod, 50), nullable=True),
    Column("risk_level", EnumAsString(RiskLevel, 20), nullable=False),
    Column("ip_address", String(64), nullable=False, default=""),
    Column("user_agent", String(512), nullable=False, default=""),
    Column("details", JSON, nullable=True),
    Column("created_at", TZAwareDatetime(), nullable=False, default=aware_utcnow),
)

Index("ix_backup_codes_account", two_factor_backup_codes.c.two_factor_account_id)
Index("ix_trusted_devices_account", two_factor_trusted_devices.c.two_factor_account_id)
Index("ix_audit_logs_account_created", two_factor_audit_logs.c.account_id, two_factor_audit_logs.c.created_at)
Index("ix_audit_logs_action_created", two_factor_audit_logs.c.action, two_factor_audit_logs.c.created_at)
Index("ix_audit_logs_risk_created", two_factor_audit_logs.c.risk_level, two_factor_audit_logs.c.created_at)
Index("ix_audit_logs_ip_address", two_factor_audit_logs.c.ip_address)
