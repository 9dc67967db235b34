"""ABOUTME: TwoFactorAuditLog domain model for the append-only 2FA security trail
ABOUTME: Contains the audit entry entity and the risk scoring used to classify events"""

import uuid
from datetime import UTC, datetime
from typing import Any

from .value_objects import AuditAction, RiskLevel, VerificationMethod

ACTION_RISK_SCORES = {
    AuditAction.SETUP: 0,
    AuditAction.DISABLE: 80,
    AuditAction.VERIFY_SUCCESS: 0,
    AuditAction.VERIFY_FAILURE: 20,
    AuditAction.BACKUP_CODE_USED: 30,
    AuditAction.BACKUP_CODES_REGENERATED: 10,
    AuditAction.DEVICE_TRUSTED: 10,
    AuditAction.DEVICE_REMOVED: 5,
    AuditAction.EMERGENCY_DISABLE: 100,
    AuditAction.SETTINGS_CHANGED: 15,
    AuditAction.RECOVERY_ATTEMPT: 60,
}
FAILURE_RISK_SCORE = 40
NEW_DEVICE_RISK_SCORE = 20


def calculate_risk_score(action: AuditAction, success: bool, details: dict[str, Any] | None = None) -> int:
    score = ACTION_RISK_SCORES.get(action, 0)
    if not success:
        score += FAILURE_RISK_SCORE
    if details and details.get("new_device"):
        score += NEW_DEVICE_RISK_SCORE
    return min(score, 100)


def risk_level_for_score(score: int) -> RiskLevel:
    if score >= 80:
        return RiskLevel.CRITICAL
    if score >= 60:
        return RiskLevel.HIGH
    if score >= 30:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class TwoFactorAuditLog:
    """One immutable audit entry. Entries are only ever added, never updated."""

    def __init__(
        self,
        account_id: str,
        action: AuditAction,
        success: bool = True,
        ip_address: str = "",
        user_agent: str = "",
        failure_reason: str | None = None,
        verification_method: VerificationMethod | None = None,
        risk_level: RiskLevel | None = None,
        details: dict[str, Any] | None = None,
        audit_log_id: uuid.UUID | None = None,
        created_at: datetime | None = None,
    ):
        self.id = audit_log_id or uuid.uuid4()
        self.account_id = account_id
        self.action = action
        self.success = success
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.failure_reason = failure_reason
        self.verification_method = verification_method
        self.details = details or {}
        self.risk_level = risk_level or risk_level_for_score(calculate_risk_score(action, success, self.details))
        self.created_at = created_at or datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "account_id": self.account_id,
            "action": self.action.value,
            "success": self.success,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "failure_reason": self.failure_reason,
            "verification_method": self.verification_method.value if self.verification_method else None,
            "risk_level": self.risk_level.value,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TwoFactorAuditLog":
        method = data.get("verification_method")
        return cls(
            account_id=data["account_id"],
            action=AuditAction(data["action"]),
            success=data["success"],
            ip_address=data.get("ip_address", ""),
            user_agent=data.get("user_agent", ""),
            failure_reason=data.get("failure_reason"),
            verification_method=VerificationMethod(method) if method else None,
            risk_level=RiskLevel(data["risk_level"]),
            details=data.get("details") or {},
            audit_log_id=uuid.UUID(data["id"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TwoFactorAuditLog):  # pragma: no cover
            return False
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)
