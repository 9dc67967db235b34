"""ABOUTME: Client for the external admin identity service
ABOUTME: Password checks and display names for administrators, over HTTP with requests"""

import logging
from abc import ABC, abstractmethod
from urllib.parse import quote

import requests

from choma_admin.service_layer.exceptions import IdentityServiceError

logger = logging.getLogger(__name__)


class AdminIdentity(ABC):
    """Who an administrator is. Passwords and sessions live behind this interface."""

    @abstractmethod
    def verify_password(self, account_id: str, password: str) -> bool:
        """True only if the password is correct for an existing account."""
        pass

    @abstractmethod
    def get_account_display_name(self, account_id: str) -> str | None:
        """Label (usually the e-mail) shown in authenticator apps, or None for an unknown account."""
        pass


class HttpAdminIdentity(AdminIdentity):
    """Talks to the admin backend's internal identity endpoints.

    GET  <base_url>/<account_id>                   -> {"email": ..., "name": ...}
    POST <base_url>/<account_id>/verify-password   -> {"valid": true|false}
    """

    def __init__(self, base_url: str, timeout: float = 5.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _account_url(self, account_id: str) -> str:
        return f"{self.base_url}/{quote(account_id, safe='')}"

    def verify_password(self, account_id: str, password: str) -> bool:
        try:
            resp = self.session.post(
                f"{self._account_url(account_id)}/verify-password",
                json={"password": password},
                timeout=self.timeout,
            )
            if resp.status_code == 404:
                return False
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"Identity service password check failed: {exc}")
            raise IdentityServiceError("Unable to verify the password right now. Please try again.") from exc
        return bool(data.get("valid"))

    def get_account_display_name(self, account_id: str) -> str | None:
        try:
            resp = self.session.get(self._account_url(account_id), timeout=self.timeout)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"Identity service lookup failed: {exc}")
            raise IdentityServiceError("Unable to look up the admin account right now. Please try again.") from exc
        return data.get("email") or data.get("name") or account_id
