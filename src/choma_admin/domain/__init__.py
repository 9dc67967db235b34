"""Domain models for the Choma admin two-factor service."""

from .two_factor import TwoFactorAccount
from .two_factor_audit import TwoFactorAuditLog

__all__ = ["TwoFactorAccount", "TwoFactorAuditLog"]
