import logging.config
from collections.abc import MutableMapping
from typing import Any

import structlog

from choma_admin import config

# keys whose values must never reach a log line
SENSITIVE_KEYS = frozenset({
    "secret",
    "totp_secret",
    "code",
    "token",
    "current_token",
    "backup_code",
    "backup_codes",
    "password",
    "admin_password",
})
REDACTED = "[redacted]"


def redact_secrets(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Structlog processor masking TOTP secrets, codes and passwords passed as log fields."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


timestamper = structlog.processors.TimeStamper(fmt="iso")
# Stdlib records (adapters, flask, celery) get the same level, timestamp and redaction as structlog ones
foreign_pre_chain = [structlog.stdlib.add_log_level, timestamper, redact_secrets]


def _dict_config(handler_name: str) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": structlog.dev.ConsoleRenderer(colors=False),
                "foreign_pre_chain": foreign_pre_chain,
            },
            "json": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": structlog.processors.JSONRenderer(),
                "foreign_pre_chain": foreign_pre_chain,
            },
        },
        "handlers": {
            "default": {"level": "INFO", "class": "logging.StreamHandler", "formatter": "json"},
            "dev_console": {"level": "DEBUG", "class": "logging.StreamHandler", "formatter": "console"},
        },
        "loggers": {
            "": {"handlers": [handler_name], "level": "INFO", "propagate": True},
        },
    }


# human readable output while developing, JSON lines everywhere else
logging.config.dictConfig(_dict_config("dev_console" if config.is_development() else "default"))

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        timestamper,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


def logging_setup(log_level: int = logging.INFO) -> None:
    for handler_name in ("default", "dev_console"):
        handler = logging.getHandlerByName(handler_name)
        if handler is not None:
            handler.setLevel(log_level)

    logging.getLogger().setLevel(log_level)

    if config.bool_environ_get("DB_ECHO"):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)


def bind_request_context(account_id: str, ip_address: str) -> None:
    """Attach the acting account to every log line for the rest of this context."""
    structlog.contextvars.bind_contextvars(account_id=account_id, ip_address=ip_address)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
