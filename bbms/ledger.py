"""
Document store abstraction for the Rubidex ledger and an in-memory test implementation.

The ledger is append-only: documents are fetched as a whole collection and
new documents are appended one at a time. Nothing here mutates or deletes.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import requests

from bbms.errors import LedgerRejected, LedgerTimeout, LedgerUnavailable

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%SZ",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a ledger timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings, the ledger's ``yyyy-MM-dd HH:mm:ss[Z]`` form and
    epoch milliseconds. Returns None for anything else.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    parsed: Optional[datetime] = None
    for fmt in _TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class LedgerDocument:
    """Immutable record as stored by the ledger."""

    id: str
    collection_id: Optional[str]
    fields: Dict[str, Any]
    creation_time: Optional[datetime] = None
    update_time: Optional[datetime] = None

    @property
    def effective_time(self) -> Optional[datetime]:
        """Update time when present, else creation time."""
        return self.update_time or self.creation_time

    @classmethod
    def from_payload(
        cls, payload: Dict[str, Any], collection_id: Optional[str] = None
    ) -> "LedgerDocument":
        fields = payload.get("fields")
        if not isinstance(fields, dict):
            fields = {}
        creation = payload.get("creationDate", payload.get("creation_date"))
        update = payload.get("updateDate", payload.get("update_date"))
        return cls(
            id=str(payload.get("id") or ""),
            collection_id=payload.get("collection_id")
            or payload.get("collectionId")
            or collection_id,
            fields=dict(fields),
            creation_time=parse_timestamp(creation),
            update_time=parse_timestamp(update),
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "collection_id": self.collection_id,
            "fields": dict(self.fields),
            "creation_date": format_timestamp(self.creation_time),
            "update_date": format_timestamp(self.update_time),
        }


def _unwrap_documents(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("result")
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise LedgerUnavailable(
            "Unexpected document list shape from ledger", body=str(payload)[:2048]
        )
    return [item for item in payload if isinstance(item, dict)]


class DocumentStore(Protocol):
    """Defines the operations the pipeline needs from the ledger."""

    def fetch_all(self, collection_id: str) -> List[LedgerDocument]:
        ...

    def append(self, collection_id: str, fields: Dict[str, Any]) -> LedgerDocument:
        ...

    def ping(self, collection_id: str) -> int:
        ...


class InMemoryDocumentStore:
    """Append-only in-memory ledger for development and tests."""

    def __init__(self):
        self.collections: Dict[str, List[LedgerDocument]] = {}
        self._lock = threading.Lock()

    def fetch_all(self, collection_id: str) -> List[LedgerDocument]:
        with self._lock:
            return list(self.collections.get(collection_id, []))

    def append(self, collection_id: str, fields: Dict[str, Any]) -> LedgerDocument:
        now = datetime.now(timezone.utc)
        document = LedgerDocument(
            id=uuid.uuid4().hex,
            collection_id=collection_id,
            fields=dict(fields),
            creation_time=now,
            update_time=now,
        )
        with self._lock:
            self.collections.setdefault(collection_id, []).append(document)
        return document

    def add_document(self, collection_id: str, payload: Dict[str, Any]) -> LedgerDocument:
        """Insert a raw ledger payload as-is (timestamps included)."""
        document = LedgerDocument.from_payload(payload, collection_id)
        with self._lock:
            self.collections.setdefault(collection_id, []).append(document)
        return document

    def ping(self, collection_id: str) -> int:
        return len(self.fetch_all(collection_id))

    def reset(self) -> None:
        with self._lock:
            self.collections.clear()


@dataclass
class RubidexDocumentStore:
    """
    HTTP client for the Rubidex collection API.

    Errors are normalized into LedgerUnavailable, LedgerTimeout and
    LedgerRejected carrying the upstream status and body. Retrying is the
    caller's decision.
    """

    base_url: str
    api_key: str
    clearance: Optional[str] = None
    timeout: float = 30.0
    session: Optional[requests.Session] = field(default=None, repr=False)

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        if self.session is None:
            self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Key {self.api_key}",
                "Content-Type": "application/json",
            }
        )
        if self.clearance is not None:
            self.session.headers["clearance"] = str(self.clearance)

    def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise LedgerTimeout(f"Ledger request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise LedgerUnavailable(f"Ledger request failed: {exc}") from exc

        if response.status_code >= 500:
            raise LedgerUnavailable(
                f"Ledger returned HTTP {response.status_code}",
                upstream_status=response.status_code,
                body=response.text,
            )
        if response.status_code >= 400:
            raise LedgerRejected(
                f"Ledger rejected request with HTTP {response.status_code}",
                upstream_status=response.status_code,
                body=response.text,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise LedgerUnavailable(
                "Ledger returned a non-JSON body",
                upstream_status=response.status_code,
                body=response.text,
            ) from exc

    def fetch_all(self, collection_id: str) -> List[LedgerDocument]:
        payload = self._request(
            "GET", f"{self.base_url}/all", params={"collection-id": collection_id}
        )
        documents = [
            LedgerDocument.from_payload(item, collection_id)
            for item in _unwrap_documents(payload)
        ]
        logger.info(
            "Retrieved %d documents from collection %s", len(documents), collection_id
        )
        return documents

    def append(self, collection_id: str, fields: Dict[str, Any]) -> LedgerDocument:
        body = {"collection_id": collection_id, "fields": fields}
        payload = self._request("POST", f"{self.base_url}/", json=body)
        if isinstance(payload, dict) and isinstance(payload.get("result"), dict):
            payload = payload["result"]
        if not isinstance(payload, dict):
            payload = {}
        echo = dict(payload)
        echo.setdefault("fields", fields)
        return LedgerDocument.from_payload(echo, collection_id)

    def ping(self, collection_id: str) -> int:
        return len(self.fetch_all(collection_id))
