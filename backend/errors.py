"""
Error taxonomy for the reconciliation engine.

Position-level errors (ValidationError, MatchingError) never abort a document.
Document-level errors (ExtractionServiceError once retries are exhausted,
PersistenceError) mark the document failed and are surfaced to the caller.
"""
from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for all engine errors."""


class ValidationError(ReconciliationError):
    """Malformed extracted position. Fatal for that position only."""

    def __init__(self, message: str, position_ref: str | None = None):
        super().__init__(message)
        self.position_ref = position_ref


class ExtractionServiceError(ReconciliationError):
    """Structured extraction call failed. Only the retryable subset is retried."""

    def __init__(self, message: str, retryable: bool = False, rate_limited: bool = False):
        super().__init__(message)
        self.retryable = retryable
        self.rate_limited = rate_limited


class MatchingError(ReconciliationError):
    """Corpus search failed for one position."""

    def __init__(self, message: str, position_id: str | None = None):
        super().__init__(message)
        self.position_id = position_id


class PersistenceError(ReconciliationError):
    """Write (or read) against the persistence store failed."""


class DocumentNotFoundError(ReconciliationError, LookupError):
    def __init__(self, document_id: str):
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class InvalidStatusTransition(ReconciliationError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid document status transition {current} -> {target}")
        self.current = current
        self.target = target


class ReconciliationCancelled(ReconciliationError):
    """Caller aborted the run; no corpus entries were written."""


class PositionNotFoundError(ReconciliationError, LookupError):
    def __init__(self, document_id: str, position_id: str):
        super().__init__(f"Position {position_id} not found in document {document_id}")
        self.document_id = document_id
        self.position_id = position_id
