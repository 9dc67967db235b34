"""ABOUTME: Unit tests for the TwoFactorManager orchestration service
ABOUTME: Exercises every 2FA flow against fakes, including lockout timing, auditing and alerting"""

import base64
from datetime import UTC, datetime, timedelta

import pyotp
import pytest

from choma_admin.domain.two_factor_audit import TwoFactorAuditLog
from choma_admin.domain.value_objects import AuditAction, RiskLevel, VerificationMethod
from choma_admin.service_layer.exceptions import (
    AccountLocked,
    AccountNotFound,
    IdentityServiceError,
    InfrastructureError,
    InvalidBackupCode,
    InvalidCode,
    InvalidPassword,
    InvalidSettings,
    MissingField,
    NoPendingSetup,
    TrustedDeviceNotFound,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
)
from choma_admin.service_layer.two_factor_service import RequestInfo, TwoFactorManager, should_notify
from tests.data import ADMIN_EMAIL, ADMIN_ID, ADMIN_PASSWORD
from tests.fakes import InMemoryAuditRecorder, RecordingNotificationBridge
from tests.totp_helpers import current_code, enroll, wrong_code

START = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


def _audit(uow, action: AuditAction | None = None) -> list[TwoFactorAuditLog]:
    entries = sorted(uow.audit_logs.all(), key=lambda entry: entry.created_at)
    return [entry for entry in entries if action is None or entry.action == action]


def _account(uow, account_id: str = ADMIN_ID):
    return uow.two_factor_accounts.get_by_account_id(account_id)


@pytest.fixture
def frozen(time_machine):
    time_machine.move_to(START, tick=False)
    return time_machine


@pytest.fixture
def enrolled(manager, request_info):
    """An admin with 2FA switched on: (secret, backup codes)."""
    return enroll(manager, ADMIN_ID, request_info)


class TestStatus:
    def test_status_without_record(self, manager):
        status = manager.get_status(ADMIN_ID)

        assert status["is_enabled"] is False
        assert status["has_pending_setup"] is False
        assert status["backup_codes_remaining"] == 0
        assert status["settings"]["device_remember_hours"] == 168

    def test_status_when_enabled(self, manager, enrolled):
        status = manager.get_status(ADMIN_ID)

        assert status["is_enabled"] is True
        assert status["backup_codes_remaining"] == 10
        assert status["trusted_devices_count"] == 0
        assert status["is_locked"] is False
        assert status["locked_until"] is None
        assert status["setup_date"] is not None


class TestInitializeSetup:
    def test_returns_secret_and_provisioning_uri(self, manager, uow, request_info):
        details = manager.initialize_setup(ADMIN_ID, request_info)

        assert details.issuer == "Choma"
        assert details.account_label == ADMIN_EMAIL
        assert pyotp.parse_uri(details.provisioning_uri).secret == details.secret
        account = _account(uow)
        assert account.has_pending_setup
        assert not account.is_enabled
        # stored encrypted, never in plaintext
        assert details.secret not in account.totp_secret_encrypted

    def test_audits_setup_initialize(self, manager, uow, request_info):
        manager.initialize_setup(ADMIN_ID, request_info)

        [entry] = _audit(uow)
        assert entry.action == AuditAction.SETUP
        assert entry.success
        assert entry.details == {"stage": "initialize"}
        assert entry.ip_address == "10.0.0.1"
        assert entry.user_agent == "Mozilla/5.0 (pytest)"

    def test_restart_replaces_pending_secret(self, manager, uow, request_info):
        first = manager.initialize_setup(ADMIN_ID, request_info)
        second = manager.initialize_setup(ADMIN_ID, request_info)

        assert first.secret != second.secret
        assert len(list(uow.two_factor_accounts.all())) == 1
        with pytest.raises(InvalidCode):
            manager.verify_setup(ADMIN_ID, current_code(first.secret), request_info)
        assert manager.verify_setup(ADMIN_ID, current_code(second.secret), request_info)

    def test_unknown_account(self, manager, uow, request_info):
        with pytest.raises(AccountNotFound):
            manager.initialize_setup("ghost", request_info)

        assert _account(uow, "ghost") is None
        [entry] = _audit(uow)
        assert not entry.success
        assert entry.failure_reason == "not_found"

    def test_refused_when_already_enabled(self, manager, uow, enrolled, request_info):
        secret_before = _account(uow).totp_secret_encrypted

        with pytest.raises(TwoFactorAlreadyEnabled):
            manager.initialize_setup(ADMIN_ID, request_info)

        assert _account(uow).totp_secret_encrypted == secret_before


class TestVerifySetup:
    def test_enables_and_returns_ten_backup_codes(self, manager, uow, request_info):
        details = manager.initialize_setup(ADMIN_ID, request_info)

        codes = manager.verify_setup(ADMIN_ID, current_code(details.secret), request_info)

        assert len(codes) == 10
        assert len(set(codes)) == 10
        account = _account(uow)
        assert account.is_enabled
        assert account.backup_codes_remaining == 10
        # only hashes are kept
        assert not {code.code_hash for code in account.backup_codes} & set(codes)
        entry = _audit(uow)[-1]
        assert entry.action == AuditAction.SETUP
        assert entry.details == {"stage": "verify", "backup_codes_generated": 10}

    def test_wrong_code_changes_nothing(self, manager, uow, request_info):
        details = manager.initialize_setup(ADMIN_ID, request_info)

        with pytest.raises(InvalidCode):
            manager.verify_setup(ADMIN_ID, wrong_code(details.secret), request_info)

        account = _account(uow)
        assert account.has_pending_setup
        assert account.lockout.failed_attempts == 0
        assert not _audit(uow)[-1].success

    def test_without_pending_setup(self, manager, request_info):
        with pytest.raises(NoPendingSetup):
            manager.verify_setup(ADMIN_ID, "123456", request_info)

    def test_refused_when_already_enabled(self, manager, enrolled, request_info):
        secret, _ = enrolled

        with pytest.raises(TwoFactorAlreadyEnabled):
            manager.verify_setup(ADMIN_ID, current_code(secret), request_info)

    def test_undecryptable_secret_is_an_infrastructure_error(self, manager, request_info, temp_env_vars):
        details = manager.initialize_setup(ADMIN_ID, request_info)
        temp_env_vars(TOTP_ENCRYPTION_KEY=base64.b64encode(b"k" * 32).decode())

        with pytest.raises(InfrastructureError):
            manager.verify_setup(ADMIN_ID, current_code(details.secret), request_info)


class TestVerify:
    def test_valid_code(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        result = manager.verify(ADMIN_ID, current_code(secret), request_info)

        assert result.method == VerificationMethod.TOTP
        assert result.trusted_device_id is None
        entry = _audit(uow)[-1]
        assert entry.action == AuditAction.VERIFY_SUCCESS
        assert entry.verification_method == VerificationMethod.TOTP
        assert entry.risk_level == RiskLevel.LOW

    def test_not_enabled(self, manager, request_info):
        with pytest.raises(TwoFactorNotEnabled):
            manager.verify(ADMIN_ID, "123456", request_info)

    def test_wrong_code_reports_attempts_remaining(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        with pytest.raises(InvalidCode) as excinfo:
            manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        assert excinfo.value.attempts_remaining == 4
        assert _account(uow).lockout.failed_attempts == 1
        entry = _audit(uow)[-1]
        assert entry.action == AuditAction.VERIFY_FAILURE
        assert entry.failure_reason == "invalid_code"
        assert entry.risk_level == RiskLevel.HIGH
        assert entry.details["failed_attempts"] == 1

    def test_success_resets_failure_counter(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled
        for _ in range(3):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        manager.verify(ADMIN_ID, current_code(secret), request_info)

        assert _account(uow).lockout.failed_attempts == 0

    def test_trust_device_on_success(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        result = manager.verify(ADMIN_ID, current_code(secret), request_info, trust_device=True)

        [device] = manager.list_trusted_devices(ADMIN_ID)
        assert result.trusted_device_id == device.device_id
        assert device.ip_address == "10.0.0.1"
        entry = _audit(uow)[-1]
        assert entry.details["new_device"] is True
        assert entry.risk_level == RiskLevel.LOW


class TestLockout:
    def test_five_failures_lock_for_fifteen_minutes(self, manager, uow, notifier, request_info, frozen):
        secret, _ = enroll(manager, ADMIN_ID, request_info)
        bad = wrong_code(secret)

        for expected_remaining in (4, 3, 2, 1):
            with pytest.raises(InvalidCode) as excinfo:
                manager.verify(ADMIN_ID, bad, request_info)
            assert excinfo.value.attempts_remaining == expected_remaining

        with pytest.raises(InvalidCode) as excinfo:
            manager.verify(ADMIN_ID, bad, request_info)
        assert excinfo.value.attempts_remaining == 0

        account = _account(uow)
        assert account.lockout.locked_until == START + timedelta(minutes=15)
        last = _audit(uow, AuditAction.VERIFY_FAILURE)[-1]
        assert last.details["lockout_engaged"] is True

    def test_locked_account_rejects_even_valid_code_without_counting(
        self, manager, uow, request_info, frozen
    ):
        secret, _ = enroll(manager, ADMIN_ID, request_info)
        for _ in range(5):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        frozen.move_to(START + timedelta(minutes=14, seconds=59), tick=False)
        with pytest.raises(AccountLocked) as excinfo:
            manager.verify(ADMIN_ID, current_code(secret), request_info)

        assert excinfo.value.locked_until == START + timedelta(minutes=15)
        assert _account(uow).lockout.failed_attempts == 5
        assert _audit(uow)[-1].failure_reason == "locked"

    def test_lock_lapses_after_fifteen_minutes(self, manager, uow, request_info, frozen):
        secret, _ = enroll(manager, ADMIN_ID, request_info)
        for _ in range(5):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        frozen.move_to(START + timedelta(minutes=15), tick=False)
        manager.verify(ADMIN_ID, current_code(secret), request_info)

        account = _account(uow)
        assert account.lockout.failed_attempts == 0
        assert account.lockout.locked_until is None

    def test_failure_after_lapse_starts_new_round(self, manager, request_info, frozen):
        secret, _ = enroll(manager, ADMIN_ID, request_info)
        for _ in range(5):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        frozen.move_to(START + timedelta(minutes=16), tick=False)
        with pytest.raises(InvalidCode) as excinfo:
            manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        assert excinfo.value.attempts_remaining == 4

    def test_backup_code_failures_share_the_counter(self, manager, uow, enrolled, request_info):
        secret, backup_codes = enrolled
        for _ in range(3):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), request_info)
        for _ in range(2):
            with pytest.raises(InvalidBackupCode):
                manager.verify_backup_code(ADMIN_ID, "ZZZZ-ZZZZ", request_info)

        with pytest.raises(AccountLocked):
            manager.verify_backup_code(ADMIN_ID, backup_codes[0], request_info)

        # the locked attempt did not spend the code
        assert _account(uow).backup_codes_remaining == 10

    def test_management_operations_are_rejected_while_locked(self, manager, enrolled, request_info):
        secret, _ = enrolled
        for _ in range(5):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        with pytest.raises(AccountLocked):
            manager.regenerate_backup_codes(ADMIN_ID, current_code(secret), request_info)
        with pytest.raises(AccountLocked):
            manager.disable(ADMIN_ID, ADMIN_PASSWORD, current_code(secret), request_info)

    def test_custom_policy(self, uow, identity, notifier, policy, request_info):
        policy.max_verification_attempts = 2
        policy.lockout_minutes = 1
        manager = TwoFactorManager(lambda: uow, identity, InMemoryAuditRecorder(), notifier, policy)
        secret, _ = enroll(manager, ADMIN_ID, request_info)

        for _ in range(2):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        account = _account(uow)
        assert account.lockout.max_attempts == 2
        assert account.lockout.locked_until - account.lockout.last_failed_attempt == timedelta(minutes=1)


class TestBackupCodeVerification:
    def test_backup_code_is_single_use(self, manager, uow, enrolled, request_info):
        _, backup_codes = enrolled

        result = manager.verify_backup_code(ADMIN_ID, backup_codes[3].lower(), request_info)

        assert result.method == VerificationMethod.BACKUP_CODE
        assert result.backup_codes_remaining == 9
        entry = _audit(uow)[-1]
        assert entry.action == AuditAction.BACKUP_CODE_USED
        assert entry.details["backup_codes_remaining"] == 9

        with pytest.raises(InvalidBackupCode):
            manager.verify_backup_code(ADMIN_ID, backup_codes[3], request_info)
        failure = _audit(uow)[-1]
        assert failure.action == AuditAction.VERIFY_FAILURE
        assert failure.verification_method == VerificationMethod.BACKUP_CODE

    def test_backup_code_resets_counter(self, manager, uow, enrolled, request_info):
        secret, backup_codes = enrolled
        with pytest.raises(InvalidCode):
            manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        manager.verify_backup_code(ADMIN_ID, backup_codes[0], request_info)

        assert _account(uow).lockout.failed_attempts == 0

    def test_backup_code_can_trust_device(self, manager, enrolled, request_info):
        _, backup_codes = enrolled

        result = manager.verify_backup_code(ADMIN_ID, backup_codes[0], request_info, trust_device=True)

        assert result.trusted_device_id is not None
        assert manager.is_device_trusted(ADMIN_ID, result.trusted_device_id, request_info)


class TestBackupCodeManagement:
    def test_info(self, manager, enrolled, request_info):
        _, backup_codes = enrolled
        manager.verify_backup_code(ADMIN_ID, backup_codes[0], request_info)

        info = manager.get_backup_codes_info(ADMIN_ID)

        assert info["total"] == 10
        assert info["remaining"] == 9
        assert info["used"] == 1
        assert info["last_generated"] is not None

    def test_info_requires_enabled(self, manager):
        with pytest.raises(TwoFactorNotEnabled):
            manager.get_backup_codes_info(ADMIN_ID)

    def test_regenerate_invalidates_old_codes(self, manager, uow, enrolled, request_info):
        secret, old_codes = enrolled

        new_codes = manager.regenerate_backup_codes(ADMIN_ID, current_code(secret), request_info)

        assert len(new_codes) == 10
        assert not set(new_codes) & set(old_codes)
        with pytest.raises(InvalidBackupCode):
            manager.verify_backup_code(ADMIN_ID, old_codes[0], request_info)
        manager.verify_backup_code(ADMIN_ID, new_codes[0], request_info)
        assert _audit(uow, AuditAction.BACKUP_CODES_REGENERATED)[-1].success

    def test_regenerate_with_wrong_code_counts_failure(self, manager, uow, enrolled, request_info):
        secret, old_codes = enrolled

        with pytest.raises(InvalidCode):
            manager.regenerate_backup_codes(ADMIN_ID, wrong_code(secret), request_info)

        assert _account(uow).lockout.failed_attempts == 1
        manager.verify_backup_code(ADMIN_ID, old_codes[0], request_info)


class TestDisable:
    def test_disable_clears_everything(self, manager, uow, notifier, enrolled, request_info):
        secret, _ = enrolled
        manager.verify(ADMIN_ID, current_code(secret), request_info, trust_device=True)

        manager.disable(ADMIN_ID, ADMIN_PASSWORD, current_code(secret), request_info)

        account = _account(uow)
        assert not account.is_enabled
        assert account.totp_secret_encrypted is None
        assert account.backup_codes == []
        assert manager.list_trusted_devices(ADMIN_ID) == []
        entry = _audit(uow)[-1]
        assert entry.action == AuditAction.DISABLE
        assert entry.risk_level == RiskLevel.CRITICAL
        assert [event.action for event in notifier.events] == [AuditAction.DISABLE]

    def test_wrong_password(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        with pytest.raises(InvalidPassword):
            manager.disable(ADMIN_ID, "not-it", current_code(secret), request_info)

        assert _account(uow).is_enabled
        assert _account(uow).lockout.failed_attempts == 0

    def test_wrong_code_counts_toward_lockout(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        with pytest.raises(InvalidCode):
            manager.disable(ADMIN_ID, ADMIN_PASSWORD, wrong_code(secret), request_info)

        assert _account(uow).is_enabled
        assert _account(uow).lockout.failed_attempts == 1

    def test_not_enabled(self, manager, request_info):
        with pytest.raises(TwoFactorNotEnabled):
            manager.disable(ADMIN_ID, ADMIN_PASSWORD, "123456", request_info)

    def test_identity_outage_is_retryable(self, manager, uow, identity, enrolled, request_info):
        secret, _ = enrolled
        identity.unavailable = True

        with pytest.raises(IdentityServiceError) as excinfo:
            manager.disable(ADMIN_ID, ADMIN_PASSWORD, current_code(secret), request_info)

        assert excinfo.value.retryable
        assert _account(uow).is_enabled
        assert _account(uow).lockout.failed_attempts == 0

    def test_can_enroll_again_after_disable(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled
        manager.disable(ADMIN_ID, ADMIN_PASSWORD, current_code(secret), request_info)

        new_secret, codes = enroll(manager, ADMIN_ID, request_info)

        assert new_secret != secret
        assert len(codes) == 10
        assert len(list(uow.two_factor_accounts.all())) == 1


class TestEmergencyDisable:
    def test_disables_with_password_and_reason(self, manager, uow, notifier, enrolled, request_info):
        manager.emergency_disable(ADMIN_ID, ADMIN_PASSWORD, "  lost my phone  ", request_info)

        assert not _account(uow).is_enabled
        entry = _audit(uow)[-1]
        assert entry.action == AuditAction.EMERGENCY_DISABLE
        assert entry.risk_level == RiskLevel.CRITICAL
        assert entry.details == {"reason": "lost my phone"}
        [event] = notifier.events
        assert event.action == AuditAction.EMERGENCY_DISABLE
        assert event.risk_level == RiskLevel.CRITICAL

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_reason_required(self, manager, uow, enrolled, request_info, reason):
        with pytest.raises(MissingField) as excinfo:
            manager.emergency_disable(ADMIN_ID, ADMIN_PASSWORD, reason, request_info)

        assert excinfo.value.field_name == "reason"
        assert _account(uow).is_enabled

    def test_wrong_password(self, manager, uow, notifier, enrolled, request_info):
        with pytest.raises(InvalidPassword):
            manager.emergency_disable(ADMIN_ID, "wrong", "lost my phone", request_info)

        assert _account(uow).is_enabled
        # failed emergency attempts are still reported
        assert len(notifier.events) == 1
        assert not notifier.events[0].success


class TestTrustedDevices:
    def test_trust_list_remove(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        device_id = manager.trust_device(ADMIN_ID, current_code(secret), request_info, name="Office laptop")

        [device] = manager.list_trusted_devices(ADMIN_ID)
        assert device.device_id == device_id
        assert device.name == "Office laptop"
        assert _audit(uow, AuditAction.DEVICE_TRUSTED)[-1].details["device_name"] == "Office laptop"

        manager.remove_trusted_device(ADMIN_ID, device_id, current_code(secret), request_info)

        assert manager.list_trusted_devices(ADMIN_ID) == []
        assert _audit(uow, AuditAction.DEVICE_REMOVED)[-1].success

    def test_remove_unknown_device(self, manager, enrolled, request_info):
        secret, _ = enrolled

        with pytest.raises(TrustedDeviceNotFound):
            manager.remove_trusted_device(ADMIN_ID, "missing", current_code(secret), request_info)

    def test_trust_requires_valid_code(self, manager, enrolled, request_info):
        secret, _ = enrolled

        with pytest.raises(InvalidCode):
            manager.trust_device(ADMIN_ID, wrong_code(secret), request_info)

        assert manager.list_trusted_devices(ADMIN_ID) == []

    def test_failed_trust_is_audited_without_device(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        with pytest.raises(InvalidCode):
            manager.trust_device(ADMIN_ID, wrong_code(secret), request_info)

        [entry] = _audit(uow, AuditAction.DEVICE_TRUSTED)
        assert not entry.success
        assert entry.failure_reason == "invalid_code"
        assert entry.details == {}

    def test_is_device_trusted_audits_hit(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled
        device_id = manager.trust_device(ADMIN_ID, current_code(secret), request_info)

        assert manager.is_device_trusted(ADMIN_ID, device_id, request_info)
        assert not manager.is_device_trusted(ADMIN_ID, "unknown", request_info)

        [entry] = _audit(uow, AuditAction.VERIFY_SUCCESS)
        assert entry.verification_method == VerificationMethod.TRUSTED_DEVICE
        assert entry.details == {"device_id": device_id}

    def test_device_expires_after_remember_hours(self, manager, request_info, frozen):
        secret, _ = enroll(manager, ADMIN_ID, request_info)
        device_id = manager.trust_device(ADMIN_ID, current_code(secret), request_info)

        frozen.move_to(START + timedelta(hours=167, minutes=59), tick=False)
        assert manager.is_device_trusted(ADMIN_ID, device_id, request_info)

        frozen.move_to(START + timedelta(hours=168), tick=False)
        assert not manager.is_device_trusted(ADMIN_ID, device_id, request_info)
        assert manager.list_trusted_devices(ADMIN_ID) == []

    def test_no_devices_without_record(self, manager, request_info):
        assert manager.list_trusted_devices(ADMIN_ID) == []
        assert not manager.is_device_trusted(ADMIN_ID, "any", request_info)


class TestSettings:
    def test_defaults_when_not_enabled(self, manager):
        assert manager.get_settings(ADMIN_ID).device_remember_hours == 168

    def test_update_settings(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        settings = manager.update_settings(
            ADMIN_ID, current_code(secret), {"device_remember_hours": 24, "require_for_login": False}, request_info
        )

        assert settings.device_remember_hours == 24
        assert manager.get_settings(ADMIN_ID) == settings
        assert _audit(uow, AuditAction.SETTINGS_CHANGED)[-1].details == {
            "changes": {"device_remember_hours": 24, "require_for_login": False}
        }

    def test_new_remember_hours_apply_to_new_devices_only(self, manager, enrolled, request_info):
        secret, _ = enrolled
        old_id = manager.trust_device(ADMIN_ID, current_code(secret), RequestInfo("10.0.0.1", "old browser"))
        manager.update_settings(ADMIN_ID, current_code(secret), {"device_remember_hours": 1}, request_info)
        new_id = manager.trust_device(ADMIN_ID, current_code(secret), RequestInfo("10.0.0.2", "new browser"))

        devices = {device.device_id: device for device in manager.list_trusted_devices(ADMIN_ID)}

        assert devices[old_id].expires_at - devices[old_id].created_at == timedelta(hours=168)
        assert devices[new_id].expires_at - devices[new_id].created_at == timedelta(hours=1)

    def test_wrong_code_keeps_settings_and_counts_failure(self, manager, uow, enrolled, request_info):
        secret, _ = enrolled

        with pytest.raises(InvalidCode):
            manager.update_settings(ADMIN_ID, wrong_code(secret), {"device_remember_hours": 24}, request_info)

        assert manager.get_settings(ADMIN_ID).device_remember_hours == 168
        assert _account(uow).lockout.failed_attempts == 1
        assert _audit(uow, AuditAction.SETTINGS_CHANGED)[-1].failure_reason == "invalid_code"

    @pytest.mark.parametrize(
        "changes",
        [{"device_remember_hours": 0}, {"device_remember_hours": 721}, {"colour": "blue"}, {"require_for_login": 1}],
    )
    def test_invalid_settings_rejected_before_code_check(self, manager, uow, enrolled, request_info, changes):
        secret, _ = enrolled

        with pytest.raises(InvalidSettings):
            manager.update_settings(ADMIN_ID, wrong_code(secret), changes, request_info)

        assert _account(uow).lockout.failed_attempts == 0
        assert manager.get_settings(ADMIN_ID).device_remember_hours == 168

    def test_update_requires_enabled(self, manager, request_info):
        with pytest.raises(TwoFactorNotEnabled):
            manager.update_settings(ADMIN_ID, "123456", {"device_remember_hours": 24}, request_info)


class TestRecovery:
    def test_request_recovery(self, frozen, manager, uow, notifier, enrolled, request_info):
        recovery = manager.request_recovery(ADMIN_ID, " +254700000000 ", "Phone stolen", request_info)

        assert recovery.request_id == f"2FA-REC-{int(START.timestamp() * 1000)}"
        assert recovery.contact_info == "+254700000000"
        assert recovery.attempt_number == 1
        assert _account(uow).is_enabled
        entry = _audit(uow)[-1]
        assert entry.action == AuditAction.RECOVERY_ATTEMPT
        assert entry.risk_level == RiskLevel.HIGH
        assert entry.details["request_id"] == recovery.request_id
        assert notifier.events[-1].action == AuditAction.RECOVERY_ATTEMPT

    def test_attempts_accumulate(self, manager, enrolled, request_info):
        manager.request_recovery(ADMIN_ID, "ops@choma.test", "first", request_info)

        assert manager.request_recovery(ADMIN_ID, "ops@choma.test", "second", request_info).attempt_number == 2

    @pytest.mark.parametrize("contact_info,reason,field_name", [("", "why", "contact_info"), ("me", " ", "reason")])
    def test_fields_required(self, manager, enrolled, request_info, contact_info, reason, field_name):
        with pytest.raises(MissingField) as excinfo:
            manager.request_recovery(ADMIN_ID, contact_info, reason, request_info)

        assert excinfo.value.field_name == field_name

    def test_requires_enabled(self, manager, request_info):
        with pytest.raises(TwoFactorNotEnabled):
            manager.request_recovery(ADMIN_ID, "me", "why", request_info)


class TestSideEffectFailures:
    def test_audit_failure_does_not_change_outcome(self, uow, identity, notifier, policy, request_info):
        manager = TwoFactorManager(lambda: uow, identity, InMemoryAuditRecorder(fail=True), notifier, policy)
        secret, _ = enroll(manager, ADMIN_ID, request_info)

        manager.verify(ADMIN_ID, current_code(secret), request_info)
        with pytest.raises(InvalidCode):
            manager.verify(ADMIN_ID, wrong_code(secret), request_info)

        assert _account(uow).lockout.failed_attempts == 1

    def test_notifier_failure_does_not_change_outcome(self, uow, identity, policy, request_info):
        recorder = InMemoryAuditRecorder()
        manager = TwoFactorManager(lambda: uow, identity, recorder, RecordingNotificationBridge(fail=True), policy)
        secret, _ = enroll(manager, ADMIN_ID, request_info)

        manager.disable(ADMIN_ID, ADMIN_PASSWORD, current_code(secret), request_info)

        assert not _account(uow).is_enabled
        assert recorder.entries[-1].action == AuditAction.DISABLE


class TestNotificationPolicy:
    def test_only_repeated_failures_are_reported(self, manager, notifier, enrolled, request_info):
        secret, _ = enrolled

        for _ in range(2):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), request_info)
        assert notifier.events == []

        with pytest.raises(InvalidCode):
            manager.verify(ADMIN_ID, wrong_code(secret), request_info)
        [event] = notifier.events
        assert event.action == AuditAction.VERIFY_FAILURE
        assert event.details["failed_attempts"] == 3

    def test_routine_events_are_not_reported(self, manager, notifier, enrolled, request_info):
        secret, backup_codes = enrolled
        manager.verify(ADMIN_ID, current_code(secret), request_info)
        manager.verify_backup_code(ADMIN_ID, backup_codes[0], request_info)

        assert notifier.events == []

    @pytest.mark.parametrize(
        "action,success,risk_level,details,expected",
        [
            (AuditAction.SETUP, True, RiskLevel.CRITICAL, None, True),
            (AuditAction.EMERGENCY_DISABLE, True, RiskLevel.HIGH, None, True),
            (AuditAction.RECOVERY_ATTEMPT, True, RiskLevel.HIGH, None, True),
            (AuditAction.VERIFY_FAILURE, False, RiskLevel.HIGH, {"failed_attempts": 1}, False),
            (AuditAction.VERIFY_FAILURE, False, RiskLevel.HIGH, {"failed_attempts": 3}, True),
            (AuditAction.VERIFY_FAILURE, False, RiskLevel.HIGH, {"lockout_engaged": True}, True),
            (AuditAction.BACKUP_CODE_USED, True, RiskLevel.HIGH, None, False),
            (AuditAction.DISABLE, True, RiskLevel.MEDIUM, None, False),
        ],
    )
    def test_should_notify(self, action, success, risk_level, details, expected):
        entry = TwoFactorAuditLog(
            account_id=ADMIN_ID, action=action, success=success, risk_level=risk_level, details=details
        )

        assert should_notify(entry) is expected


class TestAuditQueries:
    def test_audit_log_is_newest_first(self, manager, enrolled, request_info, time_machine):
        secret, _ = enrolled
        time_machine.move_to(datetime.now(UTC) + timedelta(minutes=1), tick=False)
        manager.verify(ADMIN_ID, current_code(secret), request_info)

        page = manager.get_audit_log(ADMIN_ID)

        assert page.total_logs == 3
        assert page.entries[0].action == AuditAction.VERIFY_SUCCESS

    def test_summary_and_suspicious(self, manager, enrolled, request_info):
        secret, _ = enrolled
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            with pytest.raises(InvalidCode):
                manager.verify(ADMIN_ID, wrong_code(secret), RequestInfo(ip, "ua"))

        summary = {item.action: item for item in manager.get_audit_summary(ADMIN_ID, days=1)}
        report = manager.get_suspicious_activity(ADMIN_ID, hours=1)

        assert summary[AuditAction.VERIFY_FAILURE].failure_count == 3
        assert report.is_suspicious
        assert report.failure_count == 3
        assert report.distinct_ip_addresses == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
