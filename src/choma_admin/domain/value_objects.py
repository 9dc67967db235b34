"""ABOUTME: Value objects and enums for the admin two-factor domain
ABOUTME: Defines audit actions, risk levels, verification methods and per-account settings"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

MIN_DEVICE_REMEMBER_HOURS = 1
MAX_DEVICE_REMEMBER_HOURS = 720
DEFAULT_DEVICE_REMEMBER_HOURS = 168


class AuditAction(Enum):
    SETUP = "setup"
    VERIFY_SUCCESS = "verify_success"
    VERIFY_FAILURE = "verify_failure"
    DISABLE = "disable"
    EMERGENCY_DISABLE = "emergency_disable"
    BACKUP_CODE_USED = "backup_code_used"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    DEVICE_TRUSTED = "device_trusted"
    DEVICE_REMOVED = "device_removed"
    SETTINGS_CHANGED = "settings_changed"
    RECOVERY_ATTEMPT = "recovery_attempt"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def is_elevated(self) -> bool:
        return self in (RiskLevel.HIGH, RiskLevel.CRITICAL)


class VerificationMethod(Enum):
    TOTP = "totp"
    BACKUP_CODE = "backup_code"
    TRUSTED_DEVICE = "trusted_device"


@dataclass(frozen=True)
class TwoFactorSettings:
    """The three recognised per-account options, with their defaults."""

    require_for_login: bool = True
    require_for_sensitive_actions: bool = True
    device_remember_hours: int = DEFAULT_DEVICE_REMEMBER_HOURS

    def merged(self, changes: dict[str, Any]) -> "TwoFactorSettings":
        """Return a copy with `changes` applied, validating every field.

        Raises:
            ValueError: for unknown keys or values of the wrong type/range
        """
        unknown = set(changes) - {"require_for_login", "require_for_sensitive_actions", "device_remember_hours"}
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")

        for flag in ("require_for_login", "require_for_sensitive_actions"):
            if flag in changes and not isinstance(changes[flag], bool):
                raise ValueError(f"{flag} must be true or false")

        if "device_remember_hours" in changes:
            hours = changes["device_remember_hours"]
            # bool is a subclass of int, so exclude it explicitly
            if isinstance(hours, bool) or not isinstance(hours, int):
                raise ValueError("device_remember_hours must be a whole number of hours")
            if not MIN_DEVICE_REMEMBER_HOURS <= hours <= MAX_DEVICE_REMEMBER_HOURS:
                raise ValueError(
                    f"device_remember_hours must be between {MIN_DEVICE_REMEMBER_HOURS} "
                    f"and {MAX_DEVICE_REMEMBER_HOURS}"
                )

        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "require_for_login": self.require_for_login,
            "require_for_sensitive_actions": self.require_for_sensitive_actions,
            "device_remember_hours": self.device_remember_hours,
        }


@dataclass(frozen=True)
class RecoveryInfo:
    emergency_contact: str | None = None
    last_recovery_attempt: datetime | None = None
    recovery_attempts: int = 0
