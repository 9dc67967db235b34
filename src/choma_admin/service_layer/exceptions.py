"""ABOUTME: Custom exceptions for service layer operations
ABOUTME: Distinct, machine-checkable error categories for the 2FA lifecycle plus retryable infrastructure errors"""

from datetime import datetime


class ChomaAdminError(Exception):
    """Base exception for all our custom errors."""

    code = "error"


class ServiceLayerError(ChomaAdminError):
    """Base exception for all two-factor domain errors."""


# Precondition errors: rejected before any secret is touched


class PreconditionError(ServiceLayerError):
    """The account's 2FA state does not allow this operation."""

    code = "precondition_failed"


class TwoFactorAlreadyEnabled(PreconditionError):
    code = "already_enabled"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or "2FA is already enabled for this account")


class TwoFactorNotEnabled(PreconditionError):
    code = "not_enabled"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or "2FA is not enabled")


class NoPendingSetup(PreconditionError):
    code = "no_pending_setup"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or "2FA setup not found. Please start setup again.")


class InvalidSettings(PreconditionError):
    code = "invalid_settings"


class InvalidRequest(PreconditionError):
    code = "invalid_request"


class MissingField(PreconditionError):
    code = "missing_field"

    def __init__(self, field_name: str) -> None:
        super().__init__(f"{field_name} is required")
        self.field_name = field_name


# Authentication errors: deliberately generic


class AuthenticationError(ServiceLayerError):
    code = "invalid"


class InvalidCode(AuthenticationError):
    """Raised when a TOTP code does not verify."""

    code = "invalid_code"

    def __init__(self, attempts_remaining: int | None = None) -> None:
        super().__init__("Invalid verification code")
        self.attempts_remaining = attempts_remaining


class InvalidBackupCode(AuthenticationError):
    """Raised when a backup code matches nothing unused."""

    code = "invalid_backup_code"

    def __init__(self, attempts_remaining: int | None = None) -> None:
        super().__init__("Invalid or already used backup code")
        self.attempts_remaining = attempts_remaining


class InvalidPassword(AuthenticationError):
    code = "invalid_password"

    def __init__(self) -> None:
        super().__init__("Invalid password")


class AccountLocked(ServiceLayerError):
    """Raised while the lockout window is active, whatever code was submitted."""

    code = "locked"

    def __init__(self, locked_until: datetime) -> None:
        super().__init__(
            f"Account temporarily locked due to failed attempts. Try again after {locked_until.isoformat()}"
        )
        self.locked_until = locked_until


class NotFoundError(ServiceLayerError):
    """General error to indicate something cannot be found in a repository"""

    code = "not_found"


class AccountNotFound(NotFoundError):
    """The admin account is unknown to the identity service"""

    def __init__(self, account_id: str = "") -> None:
        super().__init__(f"Admin account '{account_id}' not found" if account_id else "Admin account not found")
        self.account_id = account_id


class TrustedDeviceNotFound(NotFoundError):
    def __init__(self, device_id: str = "") -> None:
        super().__init__(f"Trusted device '{device_id}' not found" if device_id else "Trusted device not found")
        self.device_id = device_id


# Infrastructure errors: retryable by the caller, never counted as a failed attempt


class InfrastructureError(ChomaAdminError):
    code = "infrastructure_error"
    retryable = True


class PersistenceError(InfrastructureError):
    code = "persistence_error"


class ConcurrentUpdateError(PersistenceError):
    """Another request changed the same 2FA record first."""

    code = "concurrent_update"


class IdentityServiceError(InfrastructureError):
    code = "identity_service_error"
