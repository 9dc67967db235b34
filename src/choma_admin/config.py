"""ABOUTME: Configuration management for the Choma admin two-factor service
ABOUTME: Loads environment variables and provides configuration objects for different environments"""

import base64
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from importlib import metadata

from dotenv import load_dotenv

load_dotenv()


class InvalidConfig(Exception):
    """Error for when the config is not valid"""


SQLITE_DB_URI = "sqlite:///:memory:"


def to_bool(value: str | None, context_str: str = "") -> bool:
    """
    Convert string to boolean. Valid options (after stripping whitespace and making lower-case)
    - False: "false", "no", "off", "0", None, ""
    - True: "true", "yes", "on", "1"

    The `context_str` is there for the error message, to help find the issue.
    """
    if value is None:
        return False
    value = value.lower().strip()
    if value in ("false", "no", "off", "0", ""):
        return False
    if value in ("true", "yes", "on", "1"):
        return True
    raise ValueError(
        f"Cannot convert '{context_str}{value}' to boolean. Valid values are: true/false, 1/0, yes/no, on/off (case-insensitive)"
    )


def bool_environ_get(key: str, default: str = "") -> bool:
    return to_bool(os.environ.get(key, default), context_str=f"{key}=")


def _int_environ_get(key: str, default: int) -> int:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise InvalidConfig(f"{key} must be an integer, got '{raw}'") from error


def is_development() -> bool:
    return os.environ.get("FLASK_ENV", "development").lower().strip() == "development"


def get_log_level() -> int:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper().strip()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


@dataclass(slots=True, kw_only=True)
class PostgresCfg:
    user: str
    password: str
    host: str
    port: int
    db_name: str

    def to_url(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db_name}"

    @classmethod
    def from_env(cls, default_db_name: str = "choma_admin", user: str = "choma") -> "PostgresCfg":
        host = os.environ.get("DB_HOST", "localhost")
        default_port = 54321 if host == "localhost" else 5432
        return PostgresCfg(
            user=user,
            password=os.environ.get("DB_PASSWORD", "abc123"),
            host=host,
            port=int(os.environ.get("DB_PORT", default_port)),
            db_name=os.environ.get("DB_NAME", default_db_name),
        )


def get_db_uri() -> str:
    return os.environ.get("DB_URI", PostgresCfg.from_env().to_url())


def get_statement_timeout_ms() -> int | None:
    timeout = _int_environ_get("DB_STATEMENT_TIMEOUT_MS", 0)
    return timeout or None


@dataclass(slots=True, kw_only=True)
class RedisCfg:
    host: str
    port: int
    db: str = ""

    def to_url(self) -> str:
        if self.db:
            return f"redis://{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> "RedisCfg":
        host = os.environ.get("REDIS_HOST", "localhost")
        default_port = 63791 if host == "localhost" else 6379
        port = int(os.environ.get("REDIS_PORT", default_port))
        return RedisCfg(host=host, port=port)


@dataclass(slots=True, kw_only=True)
class EmailCfg:
    host: str
    port: int
    from_address: str
    from_name: str = "Choma Security"
    username: str = ""
    password: str = ""
    use_tls: bool = False
    security_recipients: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "EmailCfg":
        host = os.environ.get("EMAIL_HOST", "localhost")
        port = 11025 if host == "localhost" else 1025
        recipients = [r.strip() for r in os.environ.get("SECURITY_ALERT_RECIPIENTS", "").split(",") if r.strip()]
        return EmailCfg(
            host=host,
            port=_int_environ_get("EMAIL_PORT", port),
            from_address=os.environ.get("EMAIL_FROM", "security@choma.local"),
            from_name=os.environ.get("SMTP_FROM_NAME", "Choma Security"),
            username=os.environ.get("SMTP_USERNAME", ""),
            password=os.environ.get("SMTP_PASSWORD", ""),
            use_tls=bool_environ_get("SMTP_USE_TLS"),
            security_recipients=recipients,
        )


@dataclass(slots=True, kw_only=True)
class TwoFactorCfg:
    """Policy constants for enrollment, verification, lockout and anomaly detection."""

    issuer: str = "Choma"
    totp_window: int = 2
    backup_code_count: int = 10
    max_verification_attempts: int = 5
    lockout_minutes: int = 15
    suspicious_failure_threshold: int = 3
    notify_failure_threshold: int = 3

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    @classmethod
    def from_env(cls) -> "TwoFactorCfg":
        return TwoFactorCfg(
            issuer=os.environ.get("TWO_FACTOR_ISSUER", "Choma"),
            totp_window=_int_environ_get("TWO_FACTOR_TOTP_WINDOW", 2),
            backup_code_count=_int_environ_get("TWO_FACTOR_BACKUP_CODE_COUNT", 10),
            max_verification_attempts=_int_environ_get("TWO_FACTOR_MAX_ATTEMPTS", 5),
            lockout_minutes=_int_environ_get("TWO_FACTOR_LOCKOUT_MINUTES", 15),
            suspicious_failure_threshold=_int_environ_get("TWO_FACTOR_SUSPICIOUS_FAILURES", 3),
            notify_failure_threshold=_int_environ_get("TWO_FACTOR_NOTIFY_FAILURES", 3),
        )


def get_totp_encryption_key() -> bytes:
    """Master key used to derive the per-account keys that encrypt TOTP secrets."""
    raw_key = os.environ.get("TOTP_ENCRYPTION_KEY", "")
    if not raw_key:
        raise ValueError("TOTP_ENCRYPTION_KEY environment variable must be set")
    try:
        key = base64.b64decode(raw_key, validate=True)
    except ValueError as error:
        raise ValueError("TOTP_ENCRYPTION_KEY must be base64 encoded") from error
    if len(key) != 32:
        raise ValueError("TOTP_ENCRYPTION_KEY must decode to 32 bytes")
    return key


def get_audit_dispatch() -> str:
    dispatch = os.environ.get("AUDIT_DISPATCH", "direct").lower().strip()
    if dispatch not in ("direct", "celery"):
        raise InvalidConfig(f"AUDIT_DISPATCH must be 'direct' or 'celery', got '{dispatch}'")
    return dispatch


def get_notification_backend() -> str:
    backend = os.environ.get("NOTIFICATION_BACKEND", "log").lower().strip()
    if backend not in ("log", "smtp"):
        raise InvalidConfig(f"NOTIFICATION_BACKEND must be 'log' or 'smtp', got '{backend}'")
    return backend


def get_admin_identity_url() -> str:
    return os.environ.get("ADMIN_IDENTITY_URL", "http://localhost:5000/api/internal/admins")


def get_admin_identity_timeout() -> float:
    return float(os.environ.get("ADMIN_IDENTITY_TIMEOUT", "5"))


class FlaskBaseConfig:
    """Base configuration class that loads from environment variables."""

    TESTING = False
    JSON_SORT_KEYS = False

    def __init__(self) -> None:
        self.DB_URI = get_db_uri()
        self.SECRET_KEY: str = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
        self.FLASK_ENV: str = os.environ.get("FLASK_ENV", "development")
        self.DEBUG: bool = bool_environ_get("DEBUG", "False")
        self.SESSION_COOKIE_SECURE: bool = bool_environ_get("SESSION_COOKIE_SECURE", "False")
        self.SESSION_COOKIE_HTTPONLY = True
        self.TWO_FACTOR = TwoFactorCfg.from_env()


class FlaskTestConfig(FlaskBaseConfig):
    """Test configuration that uses SQLite in-memory database."""

    TESTING = True

    def __init__(self) -> None:
        super().__init__()
        self.DB_URI = SQLITE_DB_URI
        self.SECRET_KEY = "test-secret-key-aockgn298zx081238"  # noqa: S105
        self.FLASK_ENV = "testing"


class FlaskProductionConfig(FlaskBaseConfig):
    """Production configuration with stricter defaults."""

    def __init__(self) -> None:
        super().__init__()
        self.FLASK_ENV = "production"
        self.SESSION_COOKIE_SECURE = True

        # Ensure production has proper secret key
        if self.SECRET_KEY == "dev-secret-key-change-in-production":  # noqa: S105
            raise InvalidConfig("SECRET_KEY must be set in production")


def get_config(config_name: str = "") -> FlaskBaseConfig:
    """Return the appropriate configuration based on FLASK_ENV or config_name."""
    env = config_name.strip() or os.environ.get("FLASK_ENV", "development")
    env = env.lower().strip()

    config_classes: dict[str, type[FlaskBaseConfig]] = {
        "development": FlaskBaseConfig,
        "testing": FlaskTestConfig,
        "production": FlaskProductionConfig,
    }

    # Fall back to development if unknown config
    config_cls = config_classes.get(env, FlaskBaseConfig)
    return config_cls()


def get_version() -> str:
    try:
        return metadata.version("choma-admin")
    except metadata.PackageNotFoundError:
        return "UNKNOWN"
