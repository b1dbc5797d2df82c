"""
Error taxonomy shared by the ledger client, the pipeline and the HTTP surface.

Every error carries a stable ``kind`` tag so callers (REST clients and
realtime subscribers) can branch on it without parsing messages.
"""

from __future__ import annotations

from typing import Optional


class BbmsError(Exception):
    """Base error with a stable kind tag and the HTTP status it maps to."""

    kind: str = "InternalError"
    status_code: int = 500

    def __init__(self, message: str = "", *, kind: Optional[str] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        if kind:
            self.kind = kind

    def as_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class LedgerError(BbmsError):
    """A document store call failed. Carries the upstream status and body verbatim."""

    kind = "LedgerError"
    status_code = 502

    def __init__(
        self,
        message: str = "",
        *,
        upstream_status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body

    def as_dict(self) -> dict:
        payload = super().as_dict()
        if self.upstream_status is not None:
            payload["upstreamStatus"] = self.upstream_status
        if self.body:
            payload["upstreamBody"] = self.body
        return payload


class LedgerUnavailable(LedgerError):
    kind = "LedgerUnavailable"
    status_code = 502


class LedgerTimeout(LedgerError):
    kind = "LedgerTimeout"
    status_code = 503


class LedgerRejected(LedgerError):
    kind = "LedgerRejected"
    status_code = 422


class ReconciliationUnavailable(BbmsError):
    """The snapshot for a reconciliation pass could not be fetched."""

    kind = "ReconciliationUnavailable"
    status_code = 503

    def __init__(self, message: str = "", *, cause: Optional[LedgerError] = None):
        super().__init__(message)
        self.cause = cause

    def as_dict(self) -> dict:
        payload = super().as_dict()
        if self.cause is not None:
            payload["cause"] = self.cause.as_dict()
        return payload


MISSING_TOKEN = "MissingToken"
INVALID_TOKEN = "InvalidToken"
INSUFFICIENT_ACCESS_LEVEL = "InsufficientAccessLevel"


class AuthorizationError(BbmsError):
    kind = INVALID_TOKEN
    status_code = 401

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message, kind=kind)
        self.status_code = 403 if kind == INSUFFICIENT_ACCESS_LEVEL else 401


class MalformedDocument(BbmsError):
    """A single ledger document could not be interpreted. Never fatal to a pass."""

    kind = "MalformedDocument"
    status_code = 422

    def __init__(self, message: str = "", *, document_id: Optional[str] = None):
        super().__init__(message)
        self.document_id = document_id


class AuditLogFailure(BbmsError):
    kind = "AuditLogFailure"


class NotFound(BbmsError):
    kind = "NotFound"
    status_code = 404
