"""
In-memory registry of authorized realtime subscriptions.

Mutations happen under a lock and replace the per-device tuple instead of
editing it, so ``subscribers()`` hands publishers an immutable snapshot
without ever blocking on a subscribe or teardown in progress.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Set, Tuple

from bbms.errors import (
    INSUFFICIENT_ACCESS_LEVEL,
    MISSING_TOKEN,
    AuthorizationError,
)
from bbms.identity import (
    AccessEvent,
    AuditLog,
    IdentityClient,
    has_access_level,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionRequest:
    connection_id: str
    device_id: str
    token: Optional[str]


@dataclass(frozen=True)
class Subscription:
    connection_id: str
    device_id: str
    user_id: str


class ChannelRegistry:
    def __init__(
        self,
        identity: IdentityClient,
        audit: AuditLog,
        *,
        min_access_level: str = "basic",
        device_access_levels: Optional[Mapping[str, str]] = None,
    ):
        self.identity = identity
        self.audit = audit
        self.min_access_level = min_access_level
        self.device_access_levels = dict(device_access_levels or {})
        self._lock = threading.Lock()
        self._by_device: Dict[str, Tuple[Subscription, ...]] = {}
        self._by_connection: Dict[str, Set[str]] = {}

    def required_level(self, device_id: str) -> str:
        return self.device_access_levels.get(device_id, self.min_access_level)

    def authorize(self, request: SubscriptionRequest) -> Subscription:
        """
        Verify the request's token with the identity service and admit it.

        The grant is looked up on every call. Raises AuthorizationError
        without touching the registry when the token is missing, invalid,
        or lacks the device's access level.
        """
        if not request.token:
            raise AuthorizationError(MISSING_TOKEN, "Access token required")

        grant = self.identity.verify(request.token)
        required = self.required_level(request.device_id)
        if not has_access_level(grant.access_level, required):
            raise AuthorizationError(
                INSUFFICIENT_ACCESS_LEVEL,
                f"Access level {grant.access_level or 'none'} is below {required}",
            )

        subscription = Subscription(
            connection_id=request.connection_id,
            device_id=request.device_id,
            user_id=grant.user_id,
        )
        self._add(subscription)
        logger.info(
            "Connection %s subscribed to device %s as user %s",
            request.connection_id,
            request.device_id,
            grant.user_id,
        )

        try:
            self.audit.record(
                AccessEvent(device_id=request.device_id, user_id=grant.user_id),
                token=request.token,
            )
        except Exception as exc:
            logger.warning(
                "Failed to log monitoring access for %s on %s: %s",
                grant.user_id,
                request.device_id,
                exc,
            )
        return subscription

    def _add(self, subscription: Subscription) -> None:
        with self._lock:
            current = self._by_device.get(subscription.device_id, ())
            kept = tuple(
                s for s in current if s.connection_id != subscription.connection_id
            )
            self._by_device[subscription.device_id] = kept + (subscription,)
            self._by_connection.setdefault(subscription.connection_id, set()).add(
                subscription.device_id
            )

    def _drop(self, connection_id: str, device_id: str) -> None:
        current = self._by_device.get(device_id, ())
        kept = tuple(s for s in current if s.connection_id != connection_id)
        if kept:
            self._by_device[device_id] = kept
        else:
            self._by_device.pop(device_id, None)

    def unsubscribe(self, connection_id: str, device_id: str) -> bool:
        with self._lock:
            devices = self._by_connection.get(connection_id)
            if not devices or device_id not in devices:
                return False
            devices.discard(device_id)
            if not devices:
                self._by_connection.pop(connection_id, None)
            self._drop(connection_id, device_id)
        return True

    def remove_connection(self, connection_id: str) -> int:
        """Drop every subscription held by a connection. Returns how many."""
        with self._lock:
            devices = self._by_connection.pop(connection_id, set())
            for device_id in devices:
                self._drop(connection_id, device_id)
        if devices:
            logger.info(
                "Removed %d subscriptions for connection %s", len(devices), connection_id
            )
        return len(devices)

    def subscribers(self, device_id: str) -> Tuple[Subscription, ...]:
        return self._by_device.get(device_id, ())

    def devices_for(self, connection_id: str) -> Set[str]:
        with self._lock:
            return set(self._by_connection.get(connection_id, ()))

    def reset(self) -> None:
        with self._lock:
            self._by_device.clear()
            self._by_connection.clear()
