"""ABOUTME: Lockout guard state machine for failed two-factor verification attempts
ABOUTME: Immutable per-account counters with the single is_locked predicate derived from locked_until"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

DEFAULT_MAX_VERIFICATION_ATTEMPTS = 5
LOCKOUT_DURATION = timedelta(minutes=15)


@dataclass(frozen=True)
class LockoutState:
    """Failed-attempt counters for one account.

    There is no stored "locked" flag. An account is locked while `locked_until`
    lies in the future and open again as soon as that instant has passed.
    New states are produced by the transition methods; nothing mutates a state
    in place.
    """

    failed_attempts: int = 0
    max_attempts: int = DEFAULT_MAX_VERIFICATION_ATTEMPTS
    locked_until: datetime | None = None
    last_failed_attempt: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def lock_expired(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until <= now

    def attempts_remaining(self, now: datetime) -> int:
        if self.is_locked(now):
            return 0
        if self.lock_expired(now):
            return self.max_attempts
        return max(self.max_attempts - self.failed_attempts, 0)

    def register_failure(self, now: datetime, lockout_duration: timedelta = LOCKOUT_DURATION) -> "LockoutState":
        """Count a failed attempt, locking the account once the maximum is reached.

        Must not be called while locked: a locked account rejects attempts
        without counting them.
        """
        if self.is_locked(now):
            raise ValueError("Cannot register a failure while the account is locked")

        # a lock that has run out starts a fresh round of attempts
        previous = 0 if self.lock_expired(now) else self.failed_attempts
        failed = min(previous + 1, self.max_attempts)
        locked_until = now + lockout_duration if failed >= self.max_attempts else None
        return replace(self, failed_attempts=failed, locked_until=locked_until, last_failed_attempt=now)

    def register_success(self) -> "LockoutState":
        return replace(self, failed_attempts=0, locked_until=None)
