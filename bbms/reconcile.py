"""
Fold the unordered ledger log into current per-device state.

Reconciliation is a pure function over one snapshot of documents: the same
snapshot always yields the same map, so passes can run concurrently and be
repeated freely.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from bbms.errors import LedgerError, MalformedDocument, ReconciliationUnavailable
from bbms.ledger import DocumentStore, LedgerDocument, format_timestamp

logger = logging.getLogger(__name__)

TEMPERATURE_SENSOR = "temperature_sensor"

# Sorts before any real timestamp so undated documents never win a group.
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_LEADING_NUMBER = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


@dataclass(frozen=True)
class DeviceReading:
    device_id: str
    temperature: float
    location: Optional[str]
    name: Optional[str]
    observed_at: datetime
    alert_limit: Optional[float] = None
    document_id: Optional[str] = None

    def as_message(self) -> dict:
        return {
            "event": "temperature_update",
            "deviceId": self.device_id,
            "temperature": self.temperature,
            "timestamp": format_timestamp(self.observed_at),
            "location": self.location,
            "name": self.name,
        }


def parse_temperature(value: Any) -> float:
    """
    Parse a reading's ``data`` field.

    Leading numeric text is honored ("72.5°C" -> 72.5); anything else,
    including NaN and infinities, reads as 0.0.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _LEADING_NUMBER.match(str(value)) if value is not None else None
        if not match:
            return 0.0
        number = float(match.group(0))
    return number if math.isfinite(number) else 0.0


def _parse_limit(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        limit = float(value)
    except (TypeError, ValueError):
        return None
    return limit if math.isfinite(limit) else None


def is_temperature_document(document: LedgerDocument, include_untyped: bool = False) -> bool:
    device_type = document.fields.get("device_type")
    if device_type is None or device_type == "":
        return include_untyped
    return device_type == TEMPERATURE_SENSOR


def to_reading(document: LedgerDocument) -> DeviceReading:
    fields = document.fields
    device_id = fields.get("coreid")
    if device_id is None or device_id == "":
        raise MalformedDocument(
            "Temperature document has no coreid", document_id=document.id
        )
    location = fields.get("location")
    name = fields.get("name")
    return DeviceReading(
        device_id=str(device_id),
        temperature=parse_temperature(fields.get("data")),
        location=str(location) if location is not None else None,
        name=str(name) if name is not None else None,
        observed_at=document.effective_time or _EPOCH,
        alert_limit=_parse_limit(fields.get("alert_limit")),
        document_id=document.id or None,
    )


def _temperature_readings(
    documents: Iterable[LedgerDocument], include_untyped: bool
) -> Iterable[DeviceReading]:
    for document in documents:
        if not is_temperature_document(document, include_untyped):
            continue
        try:
            yield to_reading(document)
        except MalformedDocument as exc:
            logger.warning("Skipping document %s: %s", exc.document_id, exc.message)


def reconcile(
    documents: Sequence[LedgerDocument], *, include_untyped: bool = False
) -> Dict[str, DeviceReading]:
    """
    Derive the current reading per device from a document snapshot.

    The latest effective time wins. Among identical timestamps the document
    seen later in iteration order wins, so ties depend on the store's order.
    """
    current: Dict[str, DeviceReading] = {}
    for reading in _temperature_readings(documents, include_untyped):
        existing = current.get(reading.device_id)
        if existing is None or reading.observed_at >= existing.observed_at:
            current[reading.device_id] = reading
    return current


def device_documents(
    documents: Sequence[LedgerDocument], device_id: str
) -> List[LedgerDocument]:
    return [doc for doc in documents if str(doc.fields.get("coreid")) == device_id]


def device_history(
    documents: Sequence[LedgerDocument],
    device_id: str,
    *,
    since: Optional[datetime] = None,
    include_untyped: bool = False,
) -> List[DeviceReading]:
    """All readings for a device at or after ``since``, oldest first."""
    readings = [
        reading
        for reading in _temperature_readings(
            device_documents(documents, device_id), include_untyped
        )
        if since is None or reading.observed_at >= since
    ]
    readings.sort(key=lambda reading: reading.observed_at)
    return readings


def load_snapshot(store: DocumentStore, collection_id: str) -> List[LedgerDocument]:
    """Fetch one consistent snapshot for a pass."""
    try:
        return store.fetch_all(collection_id)
    except LedgerError as exc:
        logger.error("Snapshot fetch for %s failed: %s", collection_id, exc.message)
        raise ReconciliationUnavailable(
            f"Could not fetch collection {collection_id}", cause=exc
        ) from exc
