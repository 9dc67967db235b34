"""ABOUTME: Unit of Work pattern implementation for transaction management
ABOUTME: Coordinates repository operations within database transactions and translates storage failures"""

from __future__ import annotations

import abc
from types import TracebackType

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from choma_admin.adapters.database import create_session_factory
from choma_admin.adapters.sql_repository import (
    SqlAlchemyTwoFactorAccountRepository,
    SqlAlchemyTwoFactorAuditLogRepository,
)
from choma_admin.config import get_statement_timeout_ms
from choma_admin.service_layer.exceptions import ConcurrentUpdateError, PersistenceError
from choma_admin.service_layer.repositories import TwoFactorAccountRepository, TwoFactorAuditLogRepository


class AbstractUnitOfWork(abc.ABC):
    """Abstract Unit of Work interface."""

    two_factor_accounts: TwoFactorAccountRepository
    audit_logs: TwoFactorAuditLogRepository

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None:
        """Commit the current transaction."""
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self) -> None:
        """Rollback the current transaction."""
        raise NotImplementedError


_default_session_factory: sessionmaker | None = None


def default_session_factory() -> sessionmaker:
    global _default_session_factory
    if _default_session_factory is None:
        _default_session_factory = create_session_factory()
    return _default_session_factory


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """SQLAlchemy implementation of Unit of Work pattern.

    Storage failures surface as PersistenceError, and a version conflict on a
    2FA record as ConcurrentUpdateError, so callers never see SQLAlchemy types.
    """

    def __init__(self, session_factory: sessionmaker | None = None, statement_timeout_ms: int | None = None) -> None:
        self.session_factory = session_factory or default_session_factory()
        self.statement_timeout_ms = statement_timeout_ms if statement_timeout_ms is not None else get_statement_timeout_ms()
        self._session: Session | None = None

    @property
    def session(self) -> Session:
        if self._session is None:
            self._session = self.session_factory()
        assert isinstance(self._session, Session)
        return self._session

    def __enter__(self) -> SqlAlchemyUnitOfWork:
        try:
            if self.statement_timeout_ms and self.session.get_bind().dialect.name == "postgresql":
                # SET LOCAL only lasts for the current transaction
                self.session.execute(text(f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}"))
        except SQLAlchemyError as e:
            self.session.close()
            self._session = None
            raise PersistenceError(f"Could not open database transaction: {e}") from e

        # Initialize repositories with the session
        self.two_factor_accounts = SqlAlchemyTwoFactorAccountRepository(self.session)
        self.audit_logs = SqlAlchemyTwoFactorAuditLogRepository(self.session)

        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        try:
            if exc_type is not None:
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()
            self._session = None

    def commit(self) -> None:
        """Commit the current transaction."""
        try:
            self.session.commit()
        except StaleDataError as e:
            self.session.rollback()
            raise ConcurrentUpdateError("The 2FA record was changed by another request, please retry") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not save changes: {e}") from e

    def rollback(self) -> None:
        """Rollback the current transaction."""
        self.session.rollback()

    def flush(self) -> None:
        """Flush pending changes to the database without committing."""
        try:
            self.session.flush()
        except StaleDataError as e:
            raise ConcurrentUpdateError("The 2FA record was changed by another request, please retry") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not save changes: {e}") from e
