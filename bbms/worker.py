"""
Worker loop that performs queued ledger appends.

Transient ledger failures (unavailable, timeout) are retried with
exponential backoff up to a bounded number of attempts; rejections are
final. Every failure is reported to the operational log.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Set

from bbms.config import get_settings
from bbms.dependencies import get_document_store, get_queue_client
from bbms.errors import LedgerRejected, LedgerTimeout, LedgerUnavailable
from bbms.ledger import DocumentStore
from bbms.queue import AppendJob, JobQueue

logger = logging.getLogger(__name__)


def process_job(
    job: AppendJob,
    store: DocumentStore,
    queue: JobQueue,
    *,
    max_attempts: int,
    backoff_seconds: float,
) -> bool:
    """
    Append one job's fields to the ledger. Returns True if it was written.
    """
    try:
        document = store.append(job.collection_id, job.fields)
    except LedgerRejected as exc:
        logger.error(
            "Ledger rejected append to %s (HTTP %s): %s",
            job.collection_id,
            exc.upstream_status,
            exc.body,
        )
        return False
    except (LedgerUnavailable, LedgerTimeout) as exc:
        job.attempts += 1
        if job.attempts >= max_attempts:
            logger.error(
                "Giving up on append to %s after %d attempts: %s",
                job.collection_id,
                job.attempts,
                exc.message,
            )
            return False
        delay = backoff_seconds * (2 ** (job.attempts - 1))
        job.not_before = time.time() + delay
        logger.warning(
            "Append to %s failed (%s), retry %d in %.1fs",
            job.collection_id,
            exc.kind,
            job.attempts,
            delay,
        )
        queue.enqueue(job.to_json())
        return False

    logger.info(f"Appended document {document.id or '?'} to {job.collection_id}")
    return True


def _handle_payload(payload: str, store: DocumentStore, queue: JobQueue, settings) -> bool:
    """Process one dequeued payload. Returns False if it was put back as not yet due."""
    try:
        job = AppendJob.from_json(payload)
    except (ValueError, KeyError, TypeError) as exc:
        logger.error("Dropping unreadable append job %r: %s", payload[:256], exc)
        return True

    if job.not_before > time.time():
        queue.enqueue(payload)
        return False

    process_job(
        job,
        store,
        queue,
        max_attempts=settings.alert_write_max_attempts,
        backoff_seconds=settings.alert_write_backoff_seconds,
    )
    return True


def process_next(
    *,
    store: Optional[DocumentStore] = None,
    queue: Optional[JobQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Fetch and process one job from the queue. Returns True if a job was handled.
    """
    settings = get_settings()
    if store is None:
        store = get_document_store()
    if queue is None:
        queue = get_queue_client()

    payload = queue.dequeue(block=block, timeout=timeout)
    if payload is None:
        return False
    return _handle_payload(payload, store, queue, settings)


def drain(
    *, store: Optional[DocumentStore] = None, queue: Optional[JobQueue] = None
) -> int:
    """
    Process every job that is due right now. Returns the count handled.

    Jobs that are not due yet are put back and passed over; the drain ends
    when the queue is empty or a passed-over job comes round again.
    """
    settings = get_settings()
    if store is None:
        store = get_document_store()
    if queue is None:
        queue = get_queue_client()

    handled = 0
    deferred: Set[str] = set()
    while True:
        payload = queue.dequeue(block=False)
        if payload is None:
            break
        if payload in deferred:
            queue.enqueue(payload)
            break
        if _handle_payload(payload, store, queue, settings):
            handled += 1
        else:
            deferred.add(payload)
    return handled


def run_loop(poll_interval_seconds: float = 2.0) -> None:
    """
    Blocking loop on the queue. Intended to be run under systemd/supervisor
    when the queue is Redis-backed.
    """
    store = get_document_store()
    queue = get_queue_client()
    while True:
        try:
            processed = process_next(
                store=store, queue=queue, block=True, timeout=int(poll_interval_seconds)
            )
        except Exception:
            logger.exception("Append worker iteration failed")
            processed = False
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().log_level)
    run_loop()
