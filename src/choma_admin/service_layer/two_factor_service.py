"""ABOUTME: Two-factor authentication orchestration service
ABOUTME: TwoFactorManager runs enrollment, verification, disable, device, settings and recovery flows"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from cryptography.fernet import InvalidToken

from choma_admin.adapters.identity import AdminIdentity
from choma_admin.adapters.notifications import NotificationBridge, SecurityEvent
from choma_admin.config import TwoFactorCfg
from choma_admin.domain.lockout import LockoutState
from choma_admin.domain.trusted_devices import TrustedDevice
from choma_admin.domain.two_factor import TwoFactorAccount
from choma_admin.domain.two_factor_audit import TwoFactorAuditLog
from choma_admin.domain.value_objects import AuditAction, RiskLevel, TwoFactorSettings, VerificationMethod
from choma_admin.service_layer import audit_service, totp_service
from choma_admin.service_layer.audit_service import AuditRecorder
from choma_admin.service_layer.exceptions import (
    AccountLocked,
    AccountNotFound,
    InfrastructureError,
    InvalidBackupCode,
    InvalidCode,
    InvalidPassword,
    InvalidSettings,
    MissingField,
    NoPendingSetup,
    ServiceLayerError,
    TrustedDeviceNotFound,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
)
from choma_admin.service_layer.unit_of_work import AbstractUnitOfWork

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RequestInfo:
    """Where a request came from, recorded on every audit entry."""

    ip_address: str = ""
    user_agent: str = ""


@dataclass(frozen=True)
class SetupDetails:
    secret: str
    provisioning_uri: str
    issuer: str
    account_label: str


@dataclass(frozen=True)
class VerificationResult:
    method: VerificationMethod
    trusted_device_id: str | None = None
    backup_codes_remaining: int | None = None


@dataclass(frozen=True)
class RecoveryRequest:
    request_id: str
    contact_info: str
    attempt_number: int


def should_notify(entry: TwoFactorAuditLog, notify_failure_threshold: int = 3) -> bool:
    """Every critical event, plus the high-risk events a human should look at."""
    if entry.risk_level == RiskLevel.CRITICAL:
        return True
    if entry.risk_level != RiskLevel.HIGH:
        return False
    if entry.action in (AuditAction.EMERGENCY_DISABLE, AuditAction.RECOVERY_ATTEMPT):
        return True
    if entry.action == AuditAction.VERIFY_FAILURE:
        if entry.details.get("lockout_engaged"):
            return True
        return entry.details.get("failed_attempts", 0) >= notify_failure_threshold
    return False


class TwoFactorManager:
    """Owns the per-admin 2FA state machine.

    Every state-changing operation runs inside one unit of work holding the
    account row for update, so concurrent requests for the same admin are
    serialised. The outcome is committed first; only then is the audit entry
    handed to the recorder and, for risky events, the notifier. Domain errors
    are raised after the commit so lockout counters survive the failure.
    """

    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        identity: AdminIdentity,
        audit_recorder: AuditRecorder,
        notifier: NotificationBridge,
        policy: TwoFactorCfg | None = None,
    ):
        self.uow_factory = uow_factory
        self.identity = identity
        self.audit_recorder = audit_recorder
        self.notifier = notifier
        self.policy = policy or TwoFactorCfg()

    # helpers

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    def _new_account(self, account_id: str, now: datetime) -> TwoFactorAccount:
        return TwoFactorAccount(
            account_id=account_id,
            lockout=LockoutState(max_attempts=self.policy.max_verification_attempts),
            created_at=now,
        )

    def _secret(self, account: TwoFactorAccount) -> str:
        if not account.totp_secret_encrypted:
            raise NoPendingSetup()
        try:
            return totp_service.decrypt_totp_secret(account.totp_secret_encrypted, account.account_id)
        except InvalidToken as e:
            logger.error("totp_secret_undecryptable", account_id=account.account_id)
            raise InfrastructureError("The stored 2FA secret could not be decrypted") from e

    def _check_current_code(self, account: TwoFactorAccount, code: str, now: datetime) -> ServiceLayerError | None:
        """Validate a live TOTP code for a management operation, through the lockout guard."""
        if account.is_locked(now):
            return AccountLocked(account.lockout.locked_until)
        if totp_service.verify_totp_code(self._secret(account), code, self.policy.totp_window):
            account.record_successful_verification(now)
            return None
        account.record_failed_attempt(now, self.policy.lockout_duration)
        return InvalidCode(account.lockout.attempts_remaining(now))

    def _record(
        self,
        account_id: str,
        action: AuditAction,
        request: RequestInfo,
        now: datetime,
        error: ServiceLayerError | None = None,
        method: VerificationMethod | None = None,
        risk_level: RiskLevel | None = None,
        details: dict[str, Any] | None = None,
    ) -> TwoFactorAuditLog:
        """Audit an outcome that has already been committed, then notify if warranted.

        Neither step may change the outcome, so failures are only logged.
        """
        entry = TwoFactorAuditLog(
            account_id=account_id,
            action=action,
            success=error is None,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            failure_reason=error.code if error is not None else None,
            verification_method=method,
            risk_level=risk_level,
            details=details,
            created_at=now,
        )
        try:
            self.audit_recorder.record(entry)
        except Exception:
            logger.exception("audit_record_failed", account_id=account_id, action=action.value, entry_id=str(entry.id))

        if should_notify(entry, self.policy.notify_failure_threshold):
            event = SecurityEvent(
                account_id=account_id,
                action=action,
                success=entry.success,
                risk_level=entry.risk_level,
                details=entry.details,
            )
            try:
                self.notifier.notify(event)
            except Exception:
                logger.exception("security_notification_failed", account_id=account_id, action=action.value)
        return entry

    def _conclude(
        self,
        account_id: str,
        action: AuditAction,
        request: RequestInfo,
        now: datetime,
        error: ServiceLayerError | None = None,
        **audit_kwargs: Any,
    ) -> None:
        self._record(account_id, action, request, now, error=error, **audit_kwargs)
        if error is not None:
            raise error

    # status

    def get_status(self, account_id: str) -> dict[str, Any]:
        now = self._now()
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_by_account_id(account_id)
            if account is None:
                return {
                    "is_enabled": False,
                    "has_pending_setup": False,
                    "setup_date": None,
                    "last_verified": None,
                    "backup_codes_remaining": 0,
                    "trusted_devices_count": 0,
                    "is_locked": False,
                    "locked_until": None,
                    "settings": TwoFactorSettings().to_dict(),
                }
            locked = account.is_locked(now)
            return {
                "is_enabled": account.is_enabled,
                "has_pending_setup": account.has_pending_setup,
                "setup_date": account.setup_date,
                "last_verified": account.last_verified,
                "backup_codes_remaining": account.backup_codes_remaining if account.is_enabled else 0,
                "trusted_devices_count": len(account.active_trusted_devices(now)),
                "is_locked": locked,
                "locked_until": account.lockout.locked_until if locked else None,
                "settings": account.settings.to_dict(),
            }

    # enrollment

    def initialize_setup(self, account_id: str, request: RequestInfo) -> SetupDetails:
        """Store a fresh secret on a disabled record and return it for enrollment.

        Restarting setup before it is verified replaces the pending secret.
        """
        now = self._now()
        account_label = self.identity.get_account_display_name(account_id)
        if account_label is None:
            not_found = AccountNotFound(account_id)
            self._record(account_id, AuditAction.SETUP, request, now, error=not_found, details={"stage": "initialize"})
            raise not_found

        secret = totp_service.generate_totp_secret()
        error: ServiceLayerError | None = None
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None:
                account = self._new_account(account_id, now)
                uow.two_factor_accounts.add(account)
            if account.is_enabled:
                error = TwoFactorAlreadyEnabled()
            else:
                account.begin_setup(totp_service.encrypt_totp_secret(secret, account_id), now)

        self._conclude(account_id, AuditAction.SETUP, request, now, error, details={"stage": "initialize"})
        logger.info("two_factor_setup_initialized", account_id=account_id)
        return SetupDetails(
            secret=secret,
            provisioning_uri=totp_service.provisioning_uri(secret, account_label, self.policy.issuer),
            issuer=self.policy.issuer,
            account_label=account_label,
        )

    def verify_setup(self, account_id: str, code: str, request: RequestInfo) -> list[str]:
        """Enable 2FA once the admin proves their authenticator works.

        Returns:
            The plaintext backup codes, shown exactly once
        """
        now = self._now()
        error: ServiceLayerError | None = None
        backup_codes: list[str] = []
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is not None and account.is_enabled:
                error = TwoFactorAlreadyEnabled()
            elif account is None or not account.has_pending_setup:
                error = NoPendingSetup()
            elif not totp_service.verify_totp_code(self._secret(account), code, self.policy.totp_window):
                # a bad setup code changes nothing, the admin simply tries again
                error = InvalidCode()
            else:
                account.enable(now)
                backup_codes = totp_service.issue_backup_codes(account, now, self.policy.backup_code_count)

        self._conclude(
            account_id,
            AuditAction.SETUP,
            request,
            now,
            error,
            method=VerificationMethod.TOTP,
            details={"stage": "verify", "backup_codes_generated": len(backup_codes)},
        )
        logger.info("two_factor_enabled", account_id=account_id)
        return backup_codes

    # verification

    def _verify(
        self,
        account_id: str,
        code: str,
        request: RequestInfo,
        method: VerificationMethod,
        trust_device: bool,
    ) -> VerificationResult:
        now = self._now()
        error: ServiceLayerError | None = None
        details: dict[str, Any] = {}
        device: TrustedDevice | None = None
        remaining_codes: int | None = None

        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None or not account.is_enabled:
                error = TwoFactorNotEnabled()
            elif account.is_locked(now):
                # rejected without looking at the code or counting the attempt
                error = AccountLocked(account.lockout.locked_until)
                details["locked_until"] = account.lockout.locked_until.isoformat()
            else:
                if method == VerificationMethod.BACKUP_CODE:
                    verified = totp_service.consume_backup_code(account, code, now)
                else:
                    verified = totp_service.verify_totp_code(self._secret(account), code, self.policy.totp_window)

                if verified:
                    account.record_successful_verification(now)
                    if trust_device:
                        device = account.add_trusted_device(request.ip_address, request.user_agent, now)
                        details.update(new_device=True, trusted_device_id=device.device_id)
                    if method == VerificationMethod.BACKUP_CODE:
                        remaining_codes = account.backup_codes_remaining
                        details["backup_codes_remaining"] = remaining_codes
                else:
                    account.record_failed_attempt(now, self.policy.lockout_duration)
                    attempts_remaining = account.lockout.attempts_remaining(now)
                    details.update(failed_attempts=account.lockout.failed_attempts, attempts_remaining=attempts_remaining)
                    if method == VerificationMethod.BACKUP_CODE:
                        error = InvalidBackupCode(attempts_remaining)
                    else:
                        error = InvalidCode(attempts_remaining)
                    if account.is_locked(now):
                        details.update(lockout_engaged=True, locked_until=account.lockout.locked_until.isoformat())
                        logger.warning("account_locked", account_id=account_id, locked_until=account.lockout.locked_until)

        if error is not None:
            logger.info("two_factor_verify_failed", account_id=account_id, method=method.value, reason=error.code)
            action = AuditAction.VERIFY_FAILURE
        elif method == VerificationMethod.BACKUP_CODE:
            action = AuditAction.BACKUP_CODE_USED
        else:
            action = AuditAction.VERIFY_SUCCESS

        self._conclude(account_id, action, request, now, error, method=method, details=details)
        return VerificationResult(
            method=method,
            trusted_device_id=device.device_id if device else None,
            backup_codes_remaining=remaining_codes,
        )

    def verify(self, account_id: str, code: str, request: RequestInfo, trust_device: bool = False) -> VerificationResult:
        return self._verify(account_id, code, request, VerificationMethod.TOTP, trust_device)

    def verify_backup_code(
        self, account_id: str, code: str, request: RequestInfo, trust_device: bool = False
    ) -> VerificationResult:
        """Verify with a single-use backup code instead of the authenticator.

        Failures count against the same lockout counter as TOTP codes.
        """
        return self._verify(account_id, code, request, VerificationMethod.BACKUP_CODE, trust_device)

    # disable

    def disable(self, account_id: str, password: str, code: str, request: RequestInfo) -> None:
        """Turn 2FA off. Needs the account password and a live TOTP code."""
        now = self._now()
        error: ServiceLayerError | None = None
        password_ok = self.identity.verify_password(account_id, password)
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None or not account.is_enabled:
                error = TwoFactorNotEnabled()
            elif not password_ok:
                error = InvalidPassword()
            else:
                error = self._check_current_code(account, code, now)
                if error is None:
                    account.disable(now)

        self._conclude(account_id, AuditAction.DISABLE, request, now, error, method=VerificationMethod.TOTP)
        logger.info("two_factor_disabled", account_id=account_id)

    def emergency_disable(self, account_id: str, password: str, reason: str, request: RequestInfo) -> None:
        """Turn 2FA off without a code, for admins locked out of their authenticator.

        Always audited as critical and always reported to the notifier.
        """
        if not (reason or "").strip():
            raise MissingField("reason")

        now = self._now()
        error: ServiceLayerError | None = None
        password_ok = self.identity.verify_password(account_id, password)
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None or not account.is_enabled:
                error = TwoFactorNotEnabled()
            elif not password_ok:
                error = InvalidPassword()
            else:
                account.disable(now)

        self._conclude(
            account_id,
            AuditAction.EMERGENCY_DISABLE,
            request,
            now,
            error,
            risk_level=RiskLevel.CRITICAL,
            details={"reason": reason.strip()},
        )
        logger.warning("two_factor_emergency_disabled", account_id=account_id)

    # backup codes

    def get_backup_codes_info(self, account_id: str) -> dict[str, Any]:
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_by_account_id(account_id)
            if account is None or not account.is_enabled:
                raise TwoFactorNotEnabled()
            total = len(account.backup_codes)
            remaining = account.backup_codes_remaining
            return {
                "total": total,
                "remaining": remaining,
                "used": total - remaining,
                "last_generated": account.backup_codes_generated_at,
            }

    def regenerate_backup_codes(self, account_id: str, code: str, request: RequestInfo) -> list[str]:
        """Invalidate every existing backup code and issue a fresh batch."""
        now = self._now()
        error: ServiceLayerError | None = None
        backup_codes: list[str] = []
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None or not account.is_enabled:
                error = TwoFactorNotEnabled()
            else:
                error = self._check_current_code(account, code, now)
                if error is None:
                    backup_codes = totp_service.issue_backup_codes(account, now, self.policy.backup_code_count)

        self._conclude(
            account_id,
            AuditAction.BACKUP_CODES_REGENERATED,
            request,
            now,
            error,
            method=VerificationMethod.TOTP,
            details={"backup_codes_generated": len(backup_codes)},
        )
        return backup_codes

    # trusted devices

    def list_trusted_devices(self, account_id: str) -> list[TrustedDevice]:
        now = self._now()
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_by_account_id(account_id)
            if account is None:
                return []
            return account.active_trusted_devices(now)

    def trust_device(self, account_id: str, code: str, request: RequestInfo, name: str | None = None) -> str:
        now = self._now()
        outcome: TrustedDevice | ServiceLayerError
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None or not account.is_enabled:
                outcome = TwoFactorNotEnabled()
            else:
                error = self._check_current_code(account, code, now)
                if error is not None:
                    outcome = error
                else:
                    outcome = account.add_trusted_device(request.ip_address, request.user_agent, now, name=name)

        if isinstance(outcome, ServiceLayerError):
            self._record(
                account_id, AuditAction.DEVICE_TRUSTED, request, now, error=outcome, method=VerificationMethod.TOTP
            )
            raise outcome

        self._record(
            account_id,
            AuditAction.DEVICE_TRUSTED,
            request,
            now,
            method=VerificationMethod.TOTP,
            details={"device_id": outcome.device_id, "device_name": outcome.name},
        )
        return outcome.device_id

    def remove_trusted_device(self, account_id: str, device_id: str, code: str, request: RequestInfo) -> None:
        now = self._now()
        error: ServiceLayerError | None = None
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None or not account.is_enabled:
                error = TwoFactorNotEnabled()
            else:
                error = self._check_current_code(account, code, now)
                if error is None and not account.remove_trusted_device(device_id, now):
                    error = TrustedDeviceNotFound(device_id)

        self._conclude(
            account_id,
            AuditAction.DEVICE_REMOVED,
            request,
            now,
            error,
            method=VerificationMethod.TOTP,
            details={"device_id": device_id},
        )

    def is_device_trusted(self, account_id: str, device_id: str, request: RequestInfo) -> bool:
        """Whether `device_id` may skip a live challenge right now.

        A hit is audited as a successful verification by trusted device.
        """
        now = self._now()
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            device = account.find_trusted_device(device_id, now) if account is not None else None

        if device is None:
            return False
        self._record(
            account_id,
            AuditAction.VERIFY_SUCCESS,
            request,
            now,
            method=VerificationMethod.TRUSTED_DEVICE,
            details={"device_id": device_id},
        )
        return True

    # settings

    def get_settings(self, account_id: str) -> TwoFactorSettings:
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_by_account_id(account_id)
            if account is None or not account.is_enabled:
                return TwoFactorSettings()
            return account.settings

    def update_settings(
        self, account_id: str, code: str, changes: dict[str, Any], request: RequestInfo
    ) -> TwoFactorSettings:
        """Apply validated setting changes. Existing trusted devices keep their expiry."""
        now = self._now()
        outcome: TwoFactorSettings | ServiceLayerError
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None or not account.is_enabled:
                outcome = TwoFactorNotEnabled()
            else:
                try:
                    settings = account.settings.merged(changes)
                except ValueError as e:
                    outcome = InvalidSettings(str(e))
                else:
                    error = self._check_current_code(account, code, now)
                    if error is not None:
                        outcome = error
                    else:
                        account.update_settings(settings, now)
                        outcome = settings

        self._record(
            account_id,
            AuditAction.SETTINGS_CHANGED,
            request,
            now,
            error=outcome if isinstance(outcome, ServiceLayerError) else None,
            method=VerificationMethod.TOTP,
            details={"changes": changes},
        )
        if isinstance(outcome, ServiceLayerError):
            raise outcome
        return outcome

    # recovery

    def request_recovery(self, account_id: str, contact_info: str, reason: str, request: RequestInfo) -> RecoveryRequest:
        """Record a plea for help from an admin with no device and no backup codes.

        Nothing is disabled here; the high-risk audit entry and alert are for a
        human operator to act on.
        """
        if not (contact_info or "").strip():
            raise MissingField("contact_info")
        if not (reason or "").strip():
            raise MissingField("reason")

        now = self._now()
        error: ServiceLayerError | None = None
        attempt_number = 0
        with self.uow_factory() as uow:
            account = uow.two_factor_accounts.get_for_update(account_id)
            if account is None or not account.is_enabled:
                error = TwoFactorNotEnabled()
            else:
                attempt_number = account.record_recovery_request(contact_info.strip(), now)

        request_id = f"2FA-REC-{int(now.timestamp() * 1000)}"
        self._conclude(
            account_id,
            AuditAction.RECOVERY_ATTEMPT,
            request,
            now,
            error,
            risk_level=RiskLevel.HIGH,
            details={
                "request_id": request_id,
                "contact_info": contact_info.strip(),
                "reason": reason.strip(),
                "recovery_attempts": attempt_number,
            },
        )
        logger.warning("two_factor_recovery_requested", account_id=account_id, request_id=request_id)
        return RecoveryRequest(request_id=request_id, contact_info=contact_info.strip(), attempt_number=attempt_number)

    # audit queries

    def get_audit_log(self, account_id: str, **filters: Any) -> audit_service.AuditLogPage:
        return audit_service.get_audit_log(self.uow_factory(), account_id, **filters)

    def get_audit_summary(self, account_id: str, days: int = 30) -> list[audit_service.ActionSummary]:
        return audit_service.get_audit_summary(self.uow_factory(), account_id, days=days)

    def get_suspicious_activity(self, account_id: str, hours: int = 24) -> audit_service.SuspiciousActivityReport:
        return audit_service.get_suspicious_activity(
            self.uow_factory(), account_id, hours=hours, failure_threshold=self.policy.suspicious_failure_threshold
        )
