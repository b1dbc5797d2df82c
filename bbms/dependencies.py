"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from bbms.broadcaster import Broadcaster
from bbms.config import get_settings
from bbms.identity import (
    AuditLog,
    HttpAuditLog,
    HttpIdentityClient,
    IdentityClient,
    InMemoryAuditLog,
    InMemoryIdentityClient,
)
from bbms.ledger import DocumentStore, InMemoryDocumentStore, RubidexDocumentStore
from bbms.monitor import TemperatureMonitor, build_config
from bbms.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from bbms.registry import ChannelRegistry

_document_store: DocumentStore | None = None
_identity_client: IdentityClient | None = None
_audit_log: AuditLog | None = None
_queue_client: JobQueue | None = None
_registry: ChannelRegistry | None = None
_broadcaster: Broadcaster | None = None
_monitor: TemperatureMonitor | None = None


def get_document_store() -> DocumentStore:
    global _document_store
    if _document_store is not None:
        return _document_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.rubidex_api_url:
        _document_store = InMemoryDocumentStore()
    else:
        _document_store = RubidexDocumentStore(
            base_url=settings.rubidex_api_url,
            api_key=settings.rubidex_api_key or "",
            clearance=settings.rubidex_clearance,
            timeout=settings.ledger_timeout_seconds,
        )
    return _document_store


def get_identity_client() -> IdentityClient:
    global _identity_client
    if _identity_client is not None:
        return _identity_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.auth_service_url:
        _identity_client = InMemoryIdentityClient()
    else:
        _identity_client = HttpIdentityClient(
            base_url=settings.auth_service_url,
            timeout=settings.identity_timeout_seconds,
        )
    return _identity_client


def get_audit_log() -> AuditLog:
    global _audit_log
    if _audit_log is not None:
        return _audit_log

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.auth_service_url:
        _audit_log = InMemoryAuditLog()
    else:
        _audit_log = HttpAuditLog(
            base_url=settings.auth_service_url,
            timeout=settings.identity_timeout_seconds,
        )
    return _audit_log


def get_queue_client() -> JobQueue:
    """
    Return a singleton queue client for dispatching ledger appends to workers.
    """
    global _queue_client
    if _queue_client is not None:
        return _queue_client

    settings = get_settings()
    if settings.redis_url:
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_registry() -> ChannelRegistry:
    """
    Return the process-wide channel registry. It lives only in memory and
    starts empty on every restart.
    """
    global _registry
    if _registry is not None:
        return _registry

    settings = get_settings()
    _registry = ChannelRegistry(
        get_identity_client(),
        get_audit_log(),
        min_access_level=settings.monitoring_min_access_level,
        device_access_levels=settings.device_access_levels,
    )
    return _registry


def get_broadcaster() -> Broadcaster:
    global _broadcaster
    if _broadcaster is not None:
        return _broadcaster

    settings = get_settings()
    _broadcaster = Broadcaster(
        get_registry(), max_queue_size=settings.observer_queue_size
    )
    return _broadcaster


def get_monitor() -> TemperatureMonitor:
    global _monitor
    if _monitor is not None:
        return _monitor

    _monitor = TemperatureMonitor(
        get_document_store(),
        get_broadcaster(),
        get_queue_client(),
        build_config(get_settings()),
    )
    return _monitor


def reset_dependencies() -> None:
    """Forget every singleton (useful in tests)."""
    global _document_store, _identity_client, _audit_log, _queue_client
    global _registry, _broadcaster, _monitor
    _document_store = None
    _identity_client = None
    _audit_log = None
    _queue_client = None
    _registry = None
    _broadcaster = None
    _monitor = None
