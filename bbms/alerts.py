"""
Threshold alerts derived from reconciled readings.

Per device an alert moves Normal -> Triggered -> Resolved -> Normal. The
evaluator keeps no state of its own: the previous state is rebuilt from the
ledger's alert records (plus whatever this process emitted but has not
re-observed yet).
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bbms.errors import MalformedDocument
from bbms.ledger import LedgerDocument, format_timestamp
from bbms.reconcile import DeviceReading

logger = logging.getLogger(__name__)

ALERT_DOCUMENT_TYPE = "alert"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"
DEFAULT_CRITICAL_MARGIN = 10.0


class TransitionKind(str, enum.Enum):
    NONE = "none"
    TRIGGERED = "triggered"
    RESOLVED = "resolved"


def _to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


@dataclass(frozen=True)
class AlertRecord:
    device_id: str
    severity: str
    message: str
    limit: float
    current_value: float
    resolved: bool
    timestamp: int
    resolves: Optional[int] = None
    device_name: Optional[str] = None
    document_id: Optional[str] = None

    def to_fields(self) -> Dict[str, Any]:
        """Ledger fields for appending this record."""
        fields: Dict[str, Any] = {
            "coreid": self.device_id,
            "device_type": ALERT_DOCUMENT_TYPE,
            "date": format_timestamp(
                datetime.fromtimestamp(self.timestamp / 1000.0, tz=timezone.utc)
            ),
            "event": self.message,
            "issuer": self.device_name or self.device_id,
            "severity": self.severity,
            "limit": self.limit,
            "current_value": self.current_value,
            "resolved": self.resolved,
            "timestamp": self.timestamp,
        }
        if self.resolves is not None:
            fields["resolves"] = self.resolves
        return fields

    @classmethod
    def from_document(cls, document: LedgerDocument) -> "AlertRecord":
        fields = document.fields
        device_id = fields.get("coreid")
        if not device_id:
            raise MalformedDocument("Alert document has no coreid", document_id=document.id)

        timestamp = _as_int(fields.get("timestamp"))
        if timestamp is None and document.effective_time is not None:
            timestamp = _to_millis(document.effective_time)
        if timestamp is None:
            raise MalformedDocument("Alert document has no timestamp", document_id=document.id)

        return cls(
            device_id=str(device_id),
            severity=str(fields.get("severity") or fields.get("alert_severity") or SEVERITY_HIGH),
            message=str(fields.get("event") or fields.get("message") or ""),
            limit=_as_float(fields.get("limit")),
            current_value=_as_float(fields.get("current_value")),
            resolved=_as_bool(fields.get("resolved")),
            timestamp=timestamp,
            resolves=_as_int(fields.get("resolves")),
            device_name=fields.get("issuer"),
            document_id=document.id or None,
        )

    def as_message(self) -> dict:
        return {
            "event": "temperature_alert_resolved" if self.resolved else "temperature_alert",
            "deviceId": self.device_id,
            "severity": self.severity,
            "message": self.message,
            "limit": self.limit,
            "currentValue": self.current_value,
            "resolved": self.resolved,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class AlertTransition:
    kind: TransitionKind
    device_id: str
    record: Optional[AlertRecord] = None

    @property
    def emitted(self) -> bool:
        return self.kind is not TransitionKind.NONE

    def as_message(self) -> dict:
        if self.record is None:
            return {"event": "temperature_alert_none", "deviceId": self.device_id}
        return self.record.as_message()


def _as_float(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def severity_for(
    temperature: float, limit: float, critical_margin: float = DEFAULT_CRITICAL_MARGIN
) -> str:
    return SEVERITY_CRITICAL if temperature >= limit + critical_margin else SEVERITY_HIGH


def evaluate(
    reading: DeviceReading,
    limit: float,
    previous: Optional[AlertRecord],
    *,
    critical_margin: float = DEFAULT_CRITICAL_MARGIN,
) -> AlertTransition:
    """
    Decide the alert transition for a device's current reading.

    ``previous`` is the device's latest alert record (resolved or not), or
    None. Repeated over-limit readings while an alert is active produce no
    transition, and a reading that is not newer than the active alert never
    changes it.
    """
    active = previous if previous is not None and not previous.resolved else None
    observed = _to_millis(reading.observed_at)
    name = reading.name or reading.device_id
    location = reading.location or "unknown location"

    if active is None:
        if reading.temperature <= limit:
            return AlertTransition(TransitionKind.NONE, reading.device_id)
        if previous is not None and observed <= previous.timestamp:
            return AlertTransition(TransitionKind.NONE, reading.device_id)
        record = AlertRecord(
            device_id=reading.device_id,
            severity=severity_for(reading.temperature, limit, critical_margin),
            message=(
                f"High temperature alert triggered on device {name} "
                f"({reading.device_id}) in {location}. "
                f"Current: {reading.temperature:.1f}°C, Limit: {limit:.1f}°C"
            ),
            limit=limit,
            current_value=reading.temperature,
            resolved=False,
            timestamp=observed,
            device_name=reading.name,
        )
        return AlertTransition(TransitionKind.TRIGGERED, reading.device_id, record)

    if reading.temperature > limit or observed <= active.timestamp:
        return AlertTransition(TransitionKind.NONE, reading.device_id)

    record = AlertRecord(
        device_id=reading.device_id,
        severity=active.severity,
        message=(
            f"Temperature alert resolved on device {name} ({reading.device_id}). "
            f"Current: {reading.temperature:.1f}°C, Limit: {limit:.1f}°C"
        ),
        limit=limit,
        current_value=reading.temperature,
        resolved=True,
        timestamp=max(observed, active.timestamp + 1),
        resolves=active.timestamp,
        device_name=reading.name or active.device_name,
    )
    return AlertTransition(TransitionKind.RESOLVED, reading.device_id, record)


def alert_records(documents: Iterable[LedgerDocument]) -> List[AlertRecord]:
    records: List[AlertRecord] = []
    for document in documents:
        if document.fields.get("device_type") != ALERT_DOCUMENT_TYPE:
            continue
        try:
            records.append(AlertRecord.from_document(document))
        except MalformedDocument as exc:
            logger.warning("Skipping alert document %s: %s", exc.document_id, exc.message)
    return records


def _closes(resolution: AlertRecord, triggered: AlertRecord) -> bool:
    if resolution.resolves is not None:
        return resolution.resolves == triggered.timestamp
    return resolution.timestamp > triggered.timestamp


def latest_alerts(documents: Iterable[LedgerDocument]) -> Dict[str, AlertRecord]:
    """
    Rebuild each device's latest alert record from the ledger.

    The newest unresolved record stays active unless a resolution record
    closes exactly that record. A resolution that only matches an older
    trigger does not close a newer one, and a resolution sharing the
    trigger's timestamp without referencing it leaves the alert active.
    """
    by_device: Dict[str, List[AlertRecord]] = {}
    for record in alert_records(documents):
        by_device.setdefault(record.device_id, []).append(record)

    latest: Dict[str, AlertRecord] = {}
    for device_id, records in by_device.items():
        triggered: Optional[AlertRecord] = None
        for record in records:
            if not record.resolved and (
                triggered is None or record.timestamp >= triggered.timestamp
            ):
                triggered = record

        resolutions = [record for record in records if record.resolved]
        if triggered is None:
            if resolutions:
                latest[device_id] = max(resolutions, key=lambda r: r.timestamp)
            continue

        closing = [record for record in resolutions if _closes(record, triggered)]
        latest[device_id] = (
            max(closing, key=lambda r: r.timestamp) if closing else triggered
        )
    return latest


def newest(first: Optional[AlertRecord], second: Optional[AlertRecord]) -> Optional[AlertRecord]:
    """Pick the more recent of two records for the same device (second wins ties)."""
    if first is None:
        return second
    if second is None:
        return first
    return first if first.timestamp > second.timestamp else second
