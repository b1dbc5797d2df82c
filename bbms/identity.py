"""
Clients for the identity service: token verification and access auditing.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

import requests

from bbms.errors import (
    INVALID_TOKEN,
    AuditLogFailure,
    AuthorizationError,
)

logger = logging.getLogger(__name__)

ACCESS_LEVELS = {
    "basic": 1,
    "standard": 2,
    "elevated": 3,
    "admin": 4,
}

MONITORING_ACCESS = "monitoring_access"


def has_access_level(current: Optional[str], required: str) -> bool:
    return ACCESS_LEVELS.get(current or "", 0) >= ACCESS_LEVELS.get(required, 0)


@dataclass(frozen=True)
class AuthorizationGrant:
    user_id: str
    access_level: Optional[str]
    name: Optional[str] = None


def parse_bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    return token or None


class IdentityClient(Protocol):
    def verify(self, token: str) -> AuthorizationGrant:
        ...


class InMemoryIdentityClient:
    """Token table for development and tests. Unknown tokens are invalid."""

    def __init__(self):
        self.tokens: Dict[str, AuthorizationGrant] = {}

    def add_token(self, token: str, user_id: str, access_level: str = "basic", name: str | None = None) -> None:
        self.tokens[token] = AuthorizationGrant(user_id=user_id, access_level=access_level, name=name)

    def revoke(self, token: str) -> None:
        self.tokens.pop(token, None)

    def verify(self, token: str) -> AuthorizationGrant:
        grant = self.tokens.get(token)
        if grant is None:
            raise AuthorizationError(INVALID_TOKEN, "Invalid or expired token")
        return grant

    def reset(self) -> None:
        self.tokens.clear()


@dataclass
class HttpIdentityClient:
    """Verifies bearer tokens against ``GET /api/auth/me`` on every call."""

    base_url: str
    timeout: float = 10.0
    session: Optional[requests.Session] = field(default=None, repr=False)

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        if self.session is None:
            self.session = requests.Session()

    def verify(self, token: str) -> AuthorizationGrant:
        try:
            response = self.session.get(
                f"{self.base_url}/api/auth/me",
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Token verification failed: %s", exc)
            raise AuthorizationError(INVALID_TOKEN, "Token verification failed") from exc

        if response.status_code == 401:
            raise AuthorizationError(INVALID_TOKEN, "Invalid or expired token")
        if response.status_code != 200:
            logger.error(
                "Token verification returned HTTP %s: %s",
                response.status_code,
                response.text[:512],
            )
            raise AuthorizationError(INVALID_TOKEN, "Token verification failed")

        try:
            user = (response.json() or {}).get("user") or {}
        except ValueError as exc:
            raise AuthorizationError(INVALID_TOKEN, "Token verification failed") from exc
        if not user.get("id"):
            raise AuthorizationError(INVALID_TOKEN, "Identity service returned no user")
        return AuthorizationGrant(
            user_id=str(user["id"]),
            access_level=user.get("accessLevel"),
            name=user.get("name"),
        )


@dataclass(frozen=True)
class AccessEvent:
    device_id: str
    user_id: str
    action: str = MONITORING_ACCESS

    def as_dict(self) -> dict:
        return {"deviceId": self.device_id, "userId": self.user_id, "action": self.action}


class AuditLog(Protocol):
    def record(self, event: AccessEvent, token: Optional[str] = None) -> None:
        ...


class InMemoryAuditLog:
    def __init__(self):
        self.events: List[AccessEvent] = []

    def record(self, event: AccessEvent, token: Optional[str] = None) -> None:
        self.events.append(event)

    def reset(self) -> None:
        self.events.clear()


@dataclass
class HttpAuditLog:
    """
    Posts access events to the identity service from a small thread pool.

    ``record`` returns immediately; delivery failures only reach the log.
    """

    base_url: str
    timeout: float = 10.0
    max_workers: int = 2
    session: Optional[requests.Session] = field(default=None, repr=False)

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        if self.session is None:
            self.session = requests.Session()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="audit"
        )

    def _post(self, event: AccessEvent, token: Optional[str]) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = self.session.post(
                f"{self.base_url}/api/audit/monitoring-access",
                json=event.as_dict(),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise AuditLogFailure(f"Audit post failed: {exc}") from exc
        if response.status_code >= 400:
            raise AuditLogFailure(
                f"Audit post returned HTTP {response.status_code}: {response.text[:256]}"
            )

    def _report(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("Failed to log monitoring access: %s", exc)

    def record(self, event: AccessEvent, token: Optional[str] = None) -> None:
        future = self._executor.submit(self._post, event, token)
        future.add_done_callback(self._report)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
