"""
HTTP routes for the monitoring backend API.

These are thin: reads go through the reconciler, writes go straight to the
ledger. Nothing here pushes to realtime subscribers; new readings reach them
when a reconciliation pass re-observes the ledger.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from bbms.alerts import AlertRecord, severity_for
from bbms.config import Settings, get_settings
from bbms.dependencies import (
    get_document_store,
    get_identity_client,
    get_monitor,
)
from bbms.errors import MISSING_TOKEN, AuthorizationError, NotFound
from bbms.identity import AuthorizationGrant, IdentityClient, parse_bearer
from bbms.ledger import DocumentStore, format_timestamp
from bbms.monitor import TemperatureMonitor
from bbms.reconcile import (
    TEMPERATURE_SENSOR,
    DeviceReading,
    device_documents,
    device_history,
    reconcile,
)
from bbms.schemas import (
    AlertPayload,
    AlertWriteResponse,
    ConnectionTestResponse,
    CurrentTemperature,
    DeviceDocumentsResponse,
    DeviceResponse,
    DocumentListResponse,
    HistoryPoint,
    ReadingWriteResponse,
    TemperatureReadingPayload,
)

logger = logging.getLogger(__name__)

TIME_RANGES = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


def require_grant(
    authorization: Optional[str] = Header(None),
    identity: IdentityClient = Depends(get_identity_client),
) -> AuthorizationGrant:
    """Verify the caller's bearer token with the identity service."""
    token = parse_bearer(authorization)
    if not token:
        raise AuthorizationError(MISSING_TOKEN, "Access token required")
    return identity.verify(token)


router = APIRouter(dependencies=[Depends(require_grant)])


def device_status(temperature: float) -> str:
    if temperature > 45:
        return "Critical"
    if temperature > 35:
        return "Warning"
    if temperature > 0:
        return "Online"
    return "Offline"


def _to_device(reading: DeviceReading) -> DeviceResponse:
    return DeviceResponse(
        id=reading.device_id,
        name=reading.name or f"Temperature Sensor {reading.device_id}",
        location=reading.location or "Unknown Location",
        status=device_status(reading.temperature),
        value=reading.temperature,
        lastUpdated=format_timestamp(reading.observed_at),
    )


@router.get("/devices", response_model=list[DeviceResponse])
def list_devices(monitor: TemperatureMonitor = Depends(get_monitor)):
    readings = monitor.run_pass()
    devices = [_to_device(reading) for reading in readings.values()]
    logger.info("Returning %d devices", len(devices))
    return devices


@router.get("/devices/{device_id}", response_model=DeviceResponse)
def get_device(device_id: str, monitor: TemperatureMonitor = Depends(get_monitor)):
    documents = device_documents(monitor.snapshot(), device_id)
    reading = reconcile(
        documents, include_untyped=monitor.config.include_untyped
    ).get(device_id)
    if reading is None:
        raise NotFound(f"Device {device_id} not found")
    return _to_device(reading)


@router.get("/devices/{device_id}/history", response_model=list[HistoryPoint])
def get_device_history(
    device_id: str,
    time_range: str = Query("hour", alias="timeRange"),
    monitor: TemperatureMonitor = Depends(get_monitor),
):
    window = TIME_RANGES.get(time_range, TIME_RANGES["hour"])
    since = datetime.now(timezone.utc) - window
    readings = device_history(
        monitor.snapshot(),
        device_id,
        since=since,
        include_untyped=monitor.config.include_untyped,
    )
    return [
        HistoryPoint(
            id=reading.document_id,
            timestamp=format_timestamp(reading.observed_at),
            value=reading.temperature,
        )
        for reading in readings
    ]


@router.get("/temperature/current", response_model=list[CurrentTemperature])
def current_temperatures(monitor: TemperatureMonitor = Depends(get_monitor)):
    readings = monitor.run_pass()
    return [
        CurrentTemperature(
            deviceId=reading.device_id,
            temperature=reading.temperature,
            timestamp=format_timestamp(reading.observed_at),
            location=reading.location,
            name=reading.name,
        )
        for reading in readings.values()
    ]


@router.post("/temperature/reading", response_model=ReadingWriteResponse)
def write_temperature_reading(
    payload: TemperatureReadingPayload,
    store: DocumentStore = Depends(get_document_store),
    settings: Settings = Depends(get_settings),
):
    logger.info(
        "Receiving temperature reading: %s°C from device %s",
        payload.temperature,
        payload.deviceId,
    )
    fields = {
        "coreid": payload.deviceId,
        "name": payload.deviceName or "Temperature Reading",
        "data": str(payload.temperature),
        "published_at": format_timestamp(datetime.now(timezone.utc)),
        "ttl": payload.ttl,
        "location": payload.location,
        "device_type": TEMPERATURE_SENSOR,
        "alert_limit": payload.alertLimit,
        "timestamp": int(time.time() * 1000),
    }
    fields = {key: value for key, value in fields.items() if value is not None}
    document = store.append(settings.rubidex_collection_id, fields)
    return ReadingWriteResponse(
        success=True,
        message="Temperature reading saved to ledger",
        data=document.as_dict(),
    )


@router.post("/temperature/alert", response_model=AlertWriteResponse)
def write_temperature_alert(
    payload: AlertPayload,
    store: DocumentStore = Depends(get_document_store),
    settings: Settings = Depends(get_settings),
):
    logger.info(
        "Recording alert for device %s: %s°C vs limit %s°C",
        payload.deviceId,
        payload.temperature,
        payload.limit,
    )
    severity = payload.severity or severity_for(
        payload.temperature, payload.limit, settings.critical_margin
    )
    record = AlertRecord(
        device_id=payload.deviceId,
        severity=severity,
        message=payload.message
        or payload.title
        or (
            f"Temperature {payload.temperature:.1f}°C exceeds limit "
            f"{payload.limit:.1f}°C on device {payload.deviceId}"
        ),
        limit=payload.limit,
        current_value=payload.temperature,
        resolved=payload.resolved,
        timestamp=int(time.time() * 1000),
        device_name=payload.deviceName,
    )
    document = store.append(settings.alert_collection_id, record.to_fields())
    return AlertWriteResponse(
        success=True,
        message="Alert saved to ledger",
        documentId=document.id or None,
    )


@router.get("/documents/all", response_model=DocumentListResponse)
def list_documents(monitor: TemperatureMonitor = Depends(get_monitor)):
    documents = monitor.snapshot()
    dated = [doc for doc in documents if doc.effective_time is not None]
    latest = max(dated, key=lambda doc: doc.effective_time) if dated else None
    return DocumentListResponse(
        result=[doc.as_dict() for doc in documents],
        latestDocument=latest.as_dict() if latest else None,
    )


@router.get("/documents/device/{device_id}", response_model=DeviceDocumentsResponse)
def list_device_documents(
    device_id: str, monitor: TemperatureMonitor = Depends(get_monitor)
):
    documents = device_documents(monitor.snapshot(), device_id)
    return DeviceDocumentsResponse(
        deviceId=device_id,
        documents=[doc.as_dict() for doc in documents],
        count=len(documents),
    )


@router.get("/documents/test", response_model=ConnectionTestResponse)
def check_ledger_connection(
    store: DocumentStore = Depends(get_document_store),
    settings: Settings = Depends(get_settings),
):
    count = store.ping(settings.rubidex_collection_id)
    return ConnectionTestResponse(
        status="success",
        message="Ledger connection test successful",
        documentsCount=count,
        timestamp=format_timestamp(datetime.now(timezone.utc)),
    )
