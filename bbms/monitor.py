"""
Pipeline driver: snapshot -> reconcile -> evaluate alerts -> publish.

A pass may be started by the polling loop or by a read request, and passes
may overlap. Each pass works from its own snapshot; per-device progress is
guarded by monotonic observation times, one for publishing and one for
alert evaluation, so a slower, older pass can never undo what a newer one
already handled.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from starlette.concurrency import run_in_threadpool

from bbms import alerts
from bbms.alerts import AlertRecord, AlertTransition
from bbms.broadcaster import Broadcaster
from bbms.errors import BbmsError
from bbms.ledger import DocumentStore, LedgerDocument
from bbms.queue import AppendJob, JobQueue
from bbms.reconcile import DeviceReading, load_snapshot, reconcile

logger = logging.getLogger(__name__)


@dataclass
class MonitorConfig:
    collection_id: str
    alert_collection_id: str
    include_untyped: bool = False
    default_limit: float = 40.0
    critical_margin: float = alerts.DEFAULT_CRITICAL_MARGIN
    device_limits: Dict[str, float] = field(default_factory=dict)


class TemperatureMonitor:
    def __init__(
        self,
        store: DocumentStore,
        broadcaster: Broadcaster,
        queue: JobQueue,
        config: MonitorConfig,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.queue = queue
        self.config = config
        self._lock = threading.Lock()
        self._last_published: Dict[str, datetime] = {}
        self._last_evaluated: Dict[str, datetime] = {}
        self._local_alerts: Dict[str, AlertRecord] = {}

    def limit_for(self, reading: DeviceReading) -> float:
        if reading.alert_limit is not None:
            return reading.alert_limit
        return self.config.device_limits.get(reading.device_id, self.config.default_limit)

    def snapshot(self) -> List[LedgerDocument]:
        return load_snapshot(self.store, self.config.collection_id)

    def current_readings(self) -> Dict[str, DeviceReading]:
        """Reconcile without evaluating or publishing."""
        return reconcile(self.snapshot(), include_untyped=self.config.include_untyped)

    def run_pass(self) -> Dict[str, DeviceReading]:
        """
        Run one full pass and return the reconciled readings.

        Raises ReconciliationUnavailable if the readings snapshot cannot be
        fetched. If a separate alert collection cannot be fetched, readings
        are still published but alerts are only evaluated for devices whose
        alert state this process already holds.
        """
        documents = self.snapshot()
        readings = reconcile(documents, include_untyped=self.config.include_untyped)

        ledger_alerts: Optional[Dict[str, AlertRecord]]
        if self.config.alert_collection_id == self.config.collection_id:
            ledger_alerts = alerts.latest_alerts(documents)
        else:
            try:
                ledger_alerts = alerts.latest_alerts(
                    load_snapshot(self.store, self.config.alert_collection_id)
                )
            except BbmsError as exc:
                logger.warning(
                    "Alert state unavailable, deferring alert evaluation: %s", exc.message
                )
                ledger_alerts = None

        for reading in readings.values():
            if ledger_alerts is None:
                self.advance(reading, None, alerts_known=False)
            else:
                self.advance(reading, ledger_alerts.get(reading.device_id))
        return readings

    def advance(
        self,
        reading: DeviceReading,
        ledger_alert: Optional[AlertRecord],
        *,
        alerts_known: bool = True,
    ) -> Optional[AlertTransition]:
        """
        Publish one device's reading and evaluate its alert state, each only
        if the reading is newer than the last one handled for that step.

        With ``alerts_known=False`` the ledger's alert state is unknown, so a
        device without local alert state is published but not evaluated; a
        later pass evaluates the same reading once the state is readable.
        """
        device_id = reading.device_id
        with self._lock:
            transition = None
            if alerts_known or device_id in self._local_alerts:
                transition = self._evaluate(reading, ledger_alert)

            # Publishing only queues; holding the lock keeps per-device order.
            published = self._last_published.get(device_id)
            if published is None or reading.observed_at > published:
                self._last_published[device_id] = reading.observed_at
                self.broadcaster.publish(device_id, reading)
            if transition is not None and transition.emitted:
                self._emit(transition)
        return transition

    def _emit(self, transition: AlertTransition) -> None:
        record = transition.record
        self._enqueue_alert(record)
        self.broadcaster.publish(transition.device_id, transition)
        logger.info(
            "Alert %s for device %s at %.1f (limit %.1f)",
            transition.kind.value,
            transition.device_id,
            record.current_value,
            record.limit,
        )

    def _evaluate(
        self, reading: DeviceReading, ledger_alert: Optional[AlertRecord]
    ) -> Optional[AlertTransition]:
        last = self._last_evaluated.get(reading.device_id)
        if last is not None and reading.observed_at <= last:
            return None
        self._last_evaluated[reading.device_id] = reading.observed_at

        previous = alerts.newest(ledger_alert, self._local_alerts.get(reading.device_id))
        transition = alerts.evaluate(
            reading,
            self.limit_for(reading),
            previous,
            critical_margin=self.config.critical_margin,
        )
        if transition.record is not None:
            self._local_alerts[reading.device_id] = transition.record
        return transition

    def _enqueue_alert(self, record: AlertRecord) -> None:
        job = AppendJob(
            collection_id=self.config.alert_collection_id, fields=record.to_fields()
        )
        try:
            self.queue.enqueue(job.to_json())
        except Exception:
            logger.exception("Failed to queue alert write for device %s", record.device_id)

    async def run_forever(self, interval_seconds: float) -> None:
        """Poll the ledger on a fixed interval until cancelled."""
        while True:
            try:
                readings = await run_in_threadpool(self.run_pass)
                logger.debug("Monitor pass reconciled %d devices", len(readings))
            except BbmsError as exc:
                logger.error("Monitor pass failed: %s", exc.message)
            except Exception:
                logger.exception("Monitor pass crashed")
            await asyncio.sleep(interval_seconds)


def build_config(settings) -> MonitorConfig:
    return MonitorConfig(
        collection_id=settings.rubidex_collection_id,
        alert_collection_id=settings.alert_collection_id,
        include_untyped=settings.reconcile_include_untyped,
        default_limit=settings.default_temperature_limit,
        critical_margin=settings.critical_margin,
        device_limits=dict(settings.device_temperature_limits),
    )

