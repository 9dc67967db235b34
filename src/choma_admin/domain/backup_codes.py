"""ABOUTME: BackupCode domain model for single-use two-factor recovery codes
ABOUTME: Stores only the salted hash of each code plus its usage timestamp"""

import uuid
from datetime import UTC, datetime


class BackupCode:
    """One member of a batch of backup codes, usable exactly once."""

    def __init__(
        self,
        code_hash: str,
        position: int = 0,
        backup_code_id: uuid.UUID | None = None,
        used_at: datetime | None = None,
        created_at: datetime | None = None,
    ):
        self.id = backup_code_id or uuid.uuid4()
        self.code_hash = code_hash
        self.position = position
        self.used_at = used_at
        self.created_at = created_at or datetime.now(UTC)

    def is_used(self) -> bool:
        return self.used_at is not None

    def mark_as_used(self, now: datetime | None = None) -> None:
        if self.used_at is not None:
            raise ValueError("Backup code has already been used")
        self.used_at = now or datetime.now(UTC)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BackupCode):  # pragma: no cover
            return False
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)
