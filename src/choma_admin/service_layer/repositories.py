"""ABOUTME: Abstract repository interfaces for domain objects
ABOUTME: Defines repository contracts to abstract database operations from business logic"""

from __future__ import annotations

import abc
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from choma_admin.domain.two_factor import TwoFactorAccount
from choma_admin.domain.two_factor_audit import TwoFactorAuditLog
from choma_admin.domain.value_objects import AuditAction


class AbstractRepository(abc.ABC):
    """Base repository interface providing common operations."""

    @abc.abstractmethod
    def add(self, item: Any) -> None:
        """Add an item to the repository."""
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, item_id: uuid.UUID) -> Any | None:
        """Get an item by its ID."""
        raise NotImplementedError

    @abc.abstractmethod
    def all(self) -> Iterable[Any]:
        """List all items in the repository."""
        raise NotImplementedError


class TwoFactorAccountRepository(AbstractRepository):
    """Repository interface for TwoFactorAccount aggregates."""

    @abc.abstractmethod
    def get_by_account_id(self, account_id: str) -> TwoFactorAccount | None:
        """Get the 2FA record of an administrator."""
        raise NotImplementedError

    @abc.abstractmethod
    def get_for_update(self, account_id: str) -> TwoFactorAccount | None:
        """Get the 2FA record of an administrator, serialising concurrent writers on it."""
        raise NotImplementedError

    @abc.abstractmethod
    def count(self) -> int:
        """Number of 2FA records, enabled or not."""
        raise NotImplementedError


class TwoFactorAuditLogRepository(AbstractRepository):
    """Repository interface for TwoFactorAuditLog entries. There is no update or delete."""

    @abc.abstractmethod
    def list_for_account(
        self,
        account_id: str,
        action: AuditAction | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TwoFactorAuditLog], int]:
        """Newest-first page of an account's entries plus the total matching count."""
        raise NotImplementedError

    @abc.abstractmethod
    def list_since(self, since: datetime, account_id: str | None = None) -> Iterable[TwoFactorAuditLog]:
        """All entries created at or after `since`, optionally for a single account."""
        raise NotImplementedError
