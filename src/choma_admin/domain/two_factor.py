"""ABOUTME: TwoFactorAccount aggregate holding one administrator's complete 2FA state
ABOUTME: Owns the secret, backup codes, trusted devices, lockout counters, settings and recovery info"""

import uuid
from datetime import UTC, datetime, timedelta

from .backup_codes import BackupCode
from .lockout import LOCKOUT_DURATION, LockoutState
from .trusted_devices import TrustedDevice
from .value_objects import RecoveryInfo, TwoFactorSettings


class TwoFactorAccount:
    """Per-administrator two-factor record.

    The record is created (disabled) on first setup and never deleted.
    Disabling clears the secret, backup codes and trusted devices but keeps
    the row so the audit trail stays attached to something.
    """

    def __init__(
        self,
        account_id: str,
        totp_secret_encrypted: str | None = None,
        is_enabled: bool = False,
        setup_date: datetime | None = None,
        last_verified: datetime | None = None,
        lockout: LockoutState | None = None,
        settings: TwoFactorSettings | None = None,
        recovery: RecoveryInfo | None = None,
        two_factor_account_id: uuid.UUID | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ):
        if not account_id:
            raise ValueError("account_id is required")

        self.id = two_factor_account_id or uuid.uuid4()
        self.account_id = account_id
        self.totp_secret_encrypted = totp_secret_encrypted
        self.is_enabled = is_enabled
        self.setup_date = setup_date
        self.last_verified = last_verified
        self.backup_codes_generated_at: datetime | None = None
        self.backup_codes: list[BackupCode] = []
        self.trusted_devices: list[TrustedDevice] = []
        self.lockout = lockout or LockoutState()
        self.settings = settings or TwoFactorSettings()
        self.recovery = recovery or RecoveryInfo()
        self.created_at = created_at or datetime.now(UTC)
        self.updated_at = updated_at or self.created_at
        self.revision = 0

    @property
    def has_pending_setup(self) -> bool:
        return not self.is_enabled and bool(self.totp_secret_encrypted)

    @property
    def backup_codes_remaining(self) -> int:
        return len(self.unused_backup_codes())

    def unused_backup_codes(self) -> list[BackupCode]:
        return [code for code in self.backup_codes if not code.is_used()]

    def is_locked(self, now: datetime) -> bool:
        return self.lockout.is_locked(now)

    def touch(self, now: datetime) -> None:
        """Mark the record as modified and drop devices whose trust has run out.

        The revision always moves, so the row is rewritten even when only child
        rows changed and `now` equals the stored `updated_at`.
        """
        self.prune_expired_devices(now)
        self.updated_at = now
        self.revision += 1

    # setup / enable / disable

    def begin_setup(self, totp_secret_encrypted: str, now: datetime) -> None:
        if self.is_enabled:
            raise ValueError("2FA is already enabled")
        self.totp_secret_encrypted = totp_secret_encrypted
        self.touch(now)

    def enable(self, now: datetime) -> None:
        if not self.has_pending_setup:
            raise ValueError("There is no pending 2FA setup to enable")
        self.is_enabled = True
        self.setup_date = now
        self.last_verified = now
        self.lockout = self.lockout.register_success()
        self.touch(now)

    def disable(self, now: datetime) -> None:
        self.is_enabled = False
        self.totp_secret_encrypted = None
        self.backup_codes = []
        self.backup_codes_generated_at = None
        self.trusted_devices = []
        self.lockout = self.lockout.register_success()
        self.touch(now)

    # lockout transitions

    def record_failed_attempt(self, now: datetime, lockout_duration: timedelta = LOCKOUT_DURATION) -> None:
        self.lockout = self.lockout.register_failure(now, lockout_duration)
        self.touch(now)

    def record_successful_verification(self, now: datetime) -> None:
        self.lockout = self.lockout.register_success()
        self.last_verified = now
        self.touch(now)

    # backup codes

    def replace_backup_codes(self, code_hashes: list[str], now: datetime) -> None:
        self.backup_codes = [
            BackupCode(code_hash=code_hash, position=position, created_at=now)
            for position, code_hash in enumerate(code_hashes)
        ]
        self.backup_codes_generated_at = now
        self.touch(now)

    # trusted devices

    def add_trusted_device(
        self, ip_address: str, user_agent: str, now: datetime, name: str | None = None
    ) -> TrustedDevice:
        # a device re-trusted from the same browser replaces its old entry
        self.trusted_devices = [
            device for device in self.trusted_devices if not device.matches_fingerprint(ip_address, user_agent)
        ]
        device = TrustedDevice(
            name=name or f"Device-{int(now.timestamp() * 1000)}",
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            last_used=now,
            expires_at=now + timedelta(hours=self.settings.device_remember_hours),
        )
        self.trusted_devices.append(device)
        self.touch(now)
        return device

    def remove_trusted_device(self, device_id: str, now: datetime) -> bool:
        remaining = [device for device in self.trusted_devices if device.device_id != device_id]
        if len(remaining) == len(self.trusted_devices):
            return False
        self.trusted_devices = remaining
        self.touch(now)
        return True

    def active_trusted_devices(self, now: datetime) -> list[TrustedDevice]:
        if not self.is_enabled:
            return []
        return [device for device in self.trusted_devices if device.is_active(now)]

    def find_trusted_device(self, device_id: str, now: datetime) -> TrustedDevice | None:
        """Look up an active trusted device, recording that it was used."""
        for device in self.active_trusted_devices(now):
            if device.device_id == device_id:
                device.last_used = now
                self.touch(now)
                return device
        return None

    def prune_expired_devices(self, now: datetime) -> None:
        if any(not device.is_active(now) for device in self.trusted_devices):
            self.trusted_devices = [device for device in self.trusted_devices if device.is_active(now)]

    # settings / recovery

    def update_settings(self, settings: TwoFactorSettings, now: datetime) -> None:
        self.settings = settings
        self.touch(now)

    def record_recovery_request(self, contact_info: str, now: datetime) -> int:
        self.recovery = RecoveryInfo(
            emergency_contact=contact_info,
            last_recovery_attempt=now,
            recovery_attempts=self.recovery.recovery_attempts + 1,
        )
        self.touch(now)
        return self.recovery.recovery_attempts

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TwoFactorAccount):  # pragma: no cover
            return False
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)
