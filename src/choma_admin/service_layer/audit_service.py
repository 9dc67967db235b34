"""ABOUTME: Audit trail recording and reporting for two-factor events
ABOUTME: Audit recorders plus paginated log, per-action summary, suspicious activity and system metrics queries"""

import math
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from choma_admin.domain.two_factor_audit import TwoFactorAuditLog
from choma_admin.domain.value_objects import AuditAction, RiskLevel
from choma_admin.service_layer.unit_of_work import AbstractUnitOfWork

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100
VERIFICATION_ACTIONS = (AuditAction.VERIFY_SUCCESS, AuditAction.VERIFY_FAILURE, AuditAction.BACKUP_CODE_USED)
SENSITIVE_ACTIONS = (AuditAction.DISABLE, AuditAction.EMERGENCY_DISABLE, AuditAction.RECOVERY_ATTEMPT)


class AuditRecorder(ABC):
    """Hands audit entries over for durable storage."""

    @abstractmethod
    def record(self, entry: TwoFactorAuditLog) -> None:
        raise NotImplementedError


def store_audit_entry(uow: AbstractUnitOfWork, entry: TwoFactorAuditLog) -> bool:
    """Insert an entry unless one with the same id is already stored.

    Returns:
        True if the entry was written, False if it was a duplicate delivery
    """
    with uow:
        if uow.audit_logs.get(entry.id) is not None:
            return False
        uow.audit_logs.add(entry)
        uow.commit()
    return True


class DirectAuditRecorder(AuditRecorder):
    """Writes each entry synchronously in its own transaction."""

    def __init__(self, uow_factory: Callable[[], AbstractUnitOfWork]):
        self.uow_factory = uow_factory

    def record(self, entry: TwoFactorAuditLog) -> None:
        store_audit_entry(self.uow_factory(), entry)


# queries


@dataclass
class AuditLogPage:
    entries: list[TwoFactorAuditLog]
    current_page: int
    total_pages: int
    total_logs: int
    has_next: bool
    has_prev: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "logs": [entry.to_dict() for entry in self.entries],
            "pagination": {
                "current_page": self.current_page,
                "total_pages": self.total_pages,
                "total_logs": self.total_logs,
                "has_next": self.has_next,
                "has_prev": self.has_prev,
            },
        }


@dataclass
class ActionSummary:
    action: AuditAction
    count: int = 0
    success_count: int = 0
    failure_count: int = 0
    high_risk_count: int = 0
    last_occurrence: datetime | None = None

    @property
    def success_rate(self) -> float:
        if not self.count:
            return 0.0
        return round(self.success_count / self.count * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "count": self.count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "high_risk_count": self.high_risk_count,
            "last_occurrence": self.last_occurrence.isoformat() if self.last_occurrence else None,
        }


@dataclass
class SuspiciousActivityReport:
    account_id: str
    hours: int
    is_suspicious: bool
    failure_count: int
    distinct_ip_addresses: list[str]
    reasons: list[str] = field(default_factory=list)
    entries: list[TwoFactorAuditLog] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "hours": self.hours,
            "is_suspicious": self.is_suspicious,
            "failure_count": self.failure_count,
            "distinct_ip_addresses": self.distinct_ip_addresses,
            "reasons": self.reasons,
            "activities": [entry.to_dict() for entry in self.entries],
        }


def get_audit_log(
    uow: AbstractUnitOfWork,
    account_id: str,
    action: AuditAction | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 50,
) -> AuditLogPage:
    """Newest-first page of an account's audit trail."""
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    with uow:
        entries, total = uow.audit_logs.list_for_account(
            account_id, action=action, start=start, end=end, limit=limit, offset=(page - 1) * limit
        )
    total_pages = math.ceil(total / limit) if total else 0
    return AuditLogPage(
        entries=list(entries),
        current_page=page,
        total_pages=total_pages,
        total_logs=total,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


def summarise_entries(entries: Iterable[TwoFactorAuditLog]) -> list[ActionSummary]:
    summaries: dict[AuditAction, ActionSummary] = {}
    for entry in entries:
        summary = summaries.setdefault(entry.action, ActionSummary(action=entry.action))
        summary.count += 1
        if entry.success:
            summary.success_count += 1
        else:
            summary.failure_count += 1
        if entry.risk_level.is_elevated:
            summary.high_risk_count += 1
        if summary.last_occurrence is None or entry.created_at > summary.last_occurrence:
            summary.last_occurrence = entry.created_at
    return sorted(summaries.values(), key=lambda s: s.count, reverse=True)


def get_audit_summary(uow: AbstractUnitOfWork, account_id: str, days: int = 30) -> list[ActionSummary]:
    """Per-action counts over the trailing `days`, most frequent first."""
    since = datetime.now(UTC) - timedelta(days=days)
    with uow:
        entries = list(uow.audit_logs.list_since(since, account_id=account_id))
    return summarise_entries(entries)


def is_noteworthy(entry: TwoFactorAuditLog) -> bool:
    return not entry.success or entry.risk_level.is_elevated or entry.action in SENSITIVE_ACTIONS


def get_suspicious_activity(
    uow: AbstractUnitOfWork, account_id: str, hours: int = 24, failure_threshold: int = 3
) -> SuspiciousActivityReport:
    """Flag repeated verification failures or verification from several IP addresses.

    The report lists every failed, high/critical risk or sensitive entry in the
    window, whether or not the account is flagged.
    """
    since = datetime.now(UTC) - timedelta(hours=hours)
    with uow:
        entries = list(uow.audit_logs.list_since(since, account_id=account_id))

    failure_count = sum(1 for entry in entries if entry.action == AuditAction.VERIFY_FAILURE)
    ip_addresses = sorted({
        entry.ip_address for entry in entries if entry.action in VERIFICATION_ACTIONS and entry.ip_address
    })

    reasons = []
    if failure_count >= failure_threshold:
        reasons.append(f"{failure_count} failed verification attempts in the last {hours} hours")
    if len(ip_addresses) > 1:
        reasons.append(f"Verification attempts from {len(ip_addresses)} different IP addresses")

    if reasons:
        logger.warning("suspicious_2fa_activity", account_id=account_id, reasons=reasons)

    return SuspiciousActivityReport(
        account_id=account_id,
        hours=hours,
        is_suspicious=bool(reasons),
        failure_count=failure_count,
        distinct_ip_addresses=ip_addresses,
        reasons=reasons,
        entries=[entry for entry in entries if is_noteworthy(entry)],
    )


def get_system_metrics(uow: AbstractUnitOfWork, days: int = 30) -> dict[str, Any]:
    """Totals across every account, for operators rather than individual admins."""
    since = datetime.now(UTC) - timedelta(days=days)
    with uow:
        entries = list(uow.audit_logs.list_since(since))

    total = len(entries)
    successful = sum(1 for entry in entries if entry.success)
    actions = Counter(entry.action.value for entry in entries)
    risks = Counter(entry.risk_level.value for entry in entries)
    return {
        "days": days,
        "total_events": total,
        "successful_events": successful,
        "failed_events": total - successful,
        "success_rate": round(successful / total * 100, 2) if total else 0.0,
        "unique_accounts": len({entry.account_id for entry in entries}),
        "action_breakdown": dict(actions.most_common()),
        "risk_breakdown": {level.value: risks.get(level.value, 0) for level in RiskLevel},
    }


def get_enrollment_stats(uow: AbstractUnitOfWork) -> dict[str, Any]:
    with uow:
        accounts = list(uow.two_factor_accounts.all())
    enabled = sum(1 for account in accounts if account.is_enabled)
    return {
        "total_records": len(accounts),
        "enabled": enabled,
        "pending_setup": sum(1 for account in accounts if account.has_pending_setup),
        "enabled_percentage": round(enabled / len(accounts) * 100, 2) if accounts else 0.0,
    }
