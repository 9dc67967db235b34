"""ABOUTME: SQLAlchemy implementations of repository interfaces
ABOUTME: Provides concrete database operations using SQLAlchemy sessions"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from choma_admin.adapters import orm
from choma_admin.domain.two_factor import TwoFactorAccount
from choma_admin.domain.two_factor_audit import TwoFactorAuditLog
from choma_admin.domain.value_objects import AuditAction
from choma_admin.service_layer.repositories import TwoFactorAccountRepository, TwoFactorAuditLogRepository


class SqlAlchemyRepository:
    """Base SQLAlchemy repository with common functionality."""

    def __init__(self, session: Session) -> None:
        self.session = session


class SqlAlchemyTwoFactorAccountRepository(SqlAlchemyRepository, TwoFactorAccountRepository):
    """SQLAlchemy implementation of TwoFactorAccountRepository."""

    def add(self, item: TwoFactorAccount) -> None:
        self.session.add(item)

    def get(self, item_id: uuid.UUID) -> TwoFactorAccount | None:
        return self.session.query(TwoFactorAccount).filter_by(id=item_id).first()

    def all(self) -> Iterable[TwoFactorAccount]:
        return self.session.query(TwoFactorAccount).all()

    def get_by_account_id(self, account_id: str) -> TwoFactorAccount | None:
        return self.session.query(TwoFactorAccount).filter(orm.two_factor_accounts.c.account_id == account_id).first()

    def get_for_update(self, account_id: str) -> TwoFactorAccount | None:
        """Row lock on PostgreSQL; SQLite ignores FOR UPDATE and relies on the version column."""
        stmt = (
            select(TwoFactorAccount)
            .where(orm.two_factor_accounts.c.account_id == account_id)
            .with_for_update(of=orm.two_factor_accounts)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalars().first()

    def count(self) -> int:
        return self.session.execute(select(func.count()).select_from(orm.two_factor_accounts)).scalar_one()


class SqlAlchemyTwoFactorAuditLogRepository(SqlAlchemyRepository, TwoFactorAuditLogRepository):
    """SQLAlchemy implementation of TwoFactorAuditLogRepository."""

    def add(self, item: TwoFactorAuditLog) -> None:
        self.session.add(item)

    def get(self, item_id: uuid.UUID) -> TwoFactorAuditLog | None:
        return self.session.query(TwoFactorAuditLog).filter_by(id=item_id).first()

    def all(self) -> Iterable[TwoFactorAuditLog]:
        return self.session.query(TwoFactorAuditLog).order_by(orm.two_factor_audit_logs.c.created_at.desc()).all()

    def list_for_account(
        self,
        account_id: str,
        action: AuditAction | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TwoFactorAuditLog], int]:
        logs = orm.two_factor_audit_logs
        filters = [logs.c.account_id == account_id]
        if action is not None:
            filters.append(logs.c.action == action)
        if start is not None:
            filters.append(logs.c.created_at >= start)
        if end is not None:
            filters.append(logs.c.created_at <= end)

        total = self.session.execute(select(func.count()).select_from(logs).where(*filters)).scalar_one()
        entries = (
            self.session.query(TwoFactorAuditLog)
            .filter(*filters)
            .order_by(logs.c.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return entries, total

    def list_since(self, since: datetime, account_id: str | None = None) -> Iterable[TwoFactorAuditLog]:
        logs = orm.two_factor_audit_logs
        query = self.session.query(TwoFactorAuditLog).filter(logs.c.created_at >= since)
        if account_id is not None:
            query = query.filter(logs.c.account_id == account_id)
        return query.order_by(logs.c.created_at.desc()).all()
