"""ABOUTME: TrustedDevice domain model for devices exempted from live 2FA challenges
ABOUTME: A device is active only until its expiry timestamp"""

import uuid
from datetime import UTC, datetime


def generate_device_id() -> str:
    return uuid.uuid4().hex


class TrustedDevice:
    """A client that may skip verification until `expires_at`."""

    def __init__(
        self,
        name: str,
        expires_at: datetime,
        ip_address: str = "",
        user_agent: str = "",
        device_id: str | None = None,
        trusted_device_id: uuid.UUID | None = None,
        created_at: datetime | None = None,
        last_used: datetime | None = None,
    ):
        self.id = trusted_device_id or uuid.uuid4()
        self.device_id = device_id or generate_device_id()
        self.name = name
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.created_at = created_at or datetime.now(UTC)
        self.last_used = last_used or self.created_at
        self.expires_at = expires_at

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now

    def matches_fingerprint(self, ip_address: str, user_agent: str) -> bool:
        return self.ip_address == ip_address and self.user_agent == user_agent

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
            "last_used": self.last_used.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TrustedDevice):  # pragma: no cover
            return False
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)
