"""
Persistence gateway: the only path between the engine and the store.

Documents, status transitions (with audit trail), market analyses and the append-only price
corpus. Completing a document, storing its analysis and appending its corpus entries commit in
one transaction, so corpus entries exist only for completed documents.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import s3_client
from audit import record_status as audit_status
from db.models import AnalysisRecord, CorpusEntryRecord, DocumentRecord, utcnow
from db.session import SessionLocal
from engine.matcher import corpus_key, select_effective_entries
from errors import (
    DocumentNotFoundError,
    InvalidStatusTransition,
    PersistenceError,
    PositionNotFoundError,
)
from models import (
    CorpusStats,
    DataQuality,
    Document,
    DocumentListItem,
    DocumentMetadata,
    DocumentStatus,
    MarketAnalysis,
    Position,
    PriceCorpusEntry,
    SourceType,
    can_transition,
)
from services.classifier import with_summary
from text_extract import extract_text

logger = logging.getLogger(__name__)


def _to_document(row: DocumentRecord) -> Document:
    return Document(
        id=row.id,
        filename=row.filename,
        source_type=SourceType(row.source_type),
        status=DocumentStatus(row.status),
        positions=[Position.model_validate(p) for p in (row.positions or [])],
        metadata=DocumentMetadata.model_validate(row.metadata_ or {}),
        clear_count=row.clear_count or 0,
        assumption_count=row.assumption_count or 0,
        unclear_count=row.unclear_count or 0,
        completeness_pct=row.completeness_pct or 0.0,
        total_value=row.total_value or 0.0,
        error=row.error,
        s3_key=row.s3_key,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_list_item(row: DocumentRecord) -> DocumentListItem:
    analysis = row.analysis
    return DocumentListItem(
        id=row.id,
        filename=row.filename,
        source_type=SourceType(row.source_type),
        status=DocumentStatus(row.status),
        project_name=(row.metadata_ or {}).get("project_name"),
        total_positions=len(row.positions or []),
        positions_analyzed=analysis.positions_analyzed if analysis else 0,
        data_quality=DataQuality(analysis.data_quality) if analysis else None,
        total_value=row.total_value or 0.0,
        error=row.error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_entry(row: CorpusEntryRecord) -> PriceCorpusEntry:
    return PriceCorpusEntry(
        id=row.id,
        description=row.description,
        unit_price=row.unit_price,
        unit=row.unit,
        category=row.category or "",
        tags=list(row.tags or []),
        confidence=row.confidence,
        source_document_id=row.source_document_id,
        observed_at=row.observed_at,
        normalized_key=row.normalized_key,
    )


def _entry_row(entry: PriceCorpusEntry) -> CorpusEntryRecord:
    return CorpusEntryRecord(
        id=entry.id or str(uuid.uuid4()),
        description=entry.description,
        unit_price=entry.unit_price,
        unit=entry.unit,
        category=entry.category,
        tags=list(entry.tags),
        confidence=entry.confidence,
        source_document_id=entry.source_document_id,
        observed_at=entry.observed_at,
        normalized_key=entry.normalized_key or corpus_key(entry.description),
    )


def _write_document_fields(row: DocumentRecord, document: Document) -> None:
    row.positions = [p.model_dump(mode="json") for p in document.positions]
    row.metadata_ = document.metadata.model_dump(mode="json")
    row.clear_count = document.clear_count
    row.assumption_count = document.assumption_count
    row.unclear_count = document.unclear_count
    row.completeness_pct = document.completeness_pct
    row.total_value = document.total_value


class SqlPersistenceGateway:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("[gateway] database error: %s", e)
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _get_row(db: Session, document_id: str) -> DocumentRecord:
        row = db.get(DocumentRecord, document_id)
        if row is None:
            raise DocumentNotFoundError(document_id)
        return row

    @staticmethod
    def _transition(db: Session, row: DocumentRecord, target: DocumentStatus, reason: Optional[str] = None) -> None:
        current = DocumentStatus(row.status)
        if not can_transition(current, target):
            raise InvalidStatusTransition(current.value, target.value)
        row.status = target.value
        row.updated_at = utcnow()
        if target == DocumentStatus.FAILED:
            row.error = reason
        elif target == DocumentStatus.PROCESSING:
            row.error = None
        if target == DocumentStatus.COMPLETED:
            row.completed_at = row.updated_at
        audit_status(db, row.id, current.value, target.value, reason)

    # ---- documents ----

    def create_document(
        self,
        filename: str,
        source_type: SourceType,
        raw_text: Optional[str] = None,
        s3_key: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> Document:
        doc_id = document_id or str(uuid.uuid4())
        with self._session() as db:
            row = DocumentRecord(
                id=doc_id,
                filename=filename,
                source_type=source_type.value,
                status=DocumentStatus.PENDING.value,
                raw_text=raw_text,
                s3_key=s3_key,
                positions=[],
                metadata_={},
            )
            db.add(row)
            audit_status(db, doc_id, None, DocumentStatus.PENDING.value)
            db.flush()
            document = _to_document(row)
        logger.info("[gateway] created document=%s filename=%s", doc_id, filename)
        return document

    def load_document(self, document_id: str) -> Document:
        with self._session() as db:
            return _to_document(self._get_row(db, document_id))

    def load_source_text(self, document_id: str) -> str:
        """Stored extracted text, or re-extract from the raw file in S3."""
        with self._session() as db:
            row = self._get_row(db, document_id)
            raw_text, s3_key, filename = row.raw_text, row.s3_key, row.filename
        if raw_text:
            return raw_text
        if s3_key:
            data = s3_client.download_bytes(s3_key)
            if data is not None:
                text, _ = extract_text(filename, data)
                return text
        raise PersistenceError(f"No source text available for document {document_id}")

    def record_status(self, document_id: str, status: DocumentStatus, reason: Optional[str] = None) -> Document:
        with self._session() as db:
            row = self._get_row(db, document_id)
            self._transition(db, row, status, reason)
            db.flush()
            document = _to_document(row)
        logger.info("[gateway] document=%s status=%s", document_id, status.value)
        return document

    def complete_document(
        self,
        document: Document,
        analysis: MarketAnalysis,
        corpus_entries: Iterable[PriceCorpusEntry] = (),
    ) -> Document:
        """Atomically mark completed, store positions + analysis and append corpus entries."""
        entries = list(corpus_entries)
        with self._session() as db:
            row = self._get_row(db, document.id)
            _write_document_fields(row, document)
            self._transition(db, row, DocumentStatus.COMPLETED)
            if row.analysis is not None:
                db.delete(row.analysis)
                db.flush()
            db.add(AnalysisRecord(
                id=str(uuid.uuid4()),
                document_id=document.id,
                payload=analysis.model_dump(mode="json"),
                average_confidence=analysis.average_confidence,
                positions_analyzed=analysis.positions_analyzed,
                data_quality=analysis.data_quality.value,
            ))
            self._add_entries(db, entries)
            db.flush()
            stored = _to_document(row)
        logger.info("[gateway] completed document=%s corpus_entries=%d", document.id, len(entries))
        return stored

    def update_position(self, document_id: str, position: Position) -> Document:
        """Replace one position and recompute the document counters."""
        with self._session() as db:
            row = self._get_row(db, document_id)
            current = _to_document(row)
            if not any(p.id == position.id for p in current.positions):
                raise PositionNotFoundError(document_id, position.id)
            positions = [position if p.id == position.id else p for p in current.positions]
            updated = with_summary(current, positions)
            _write_document_fields(row, updated)
            row.updated_at = utcnow()
            db.flush()
            return _to_document(row)

    def list_documents(self) -> List[DocumentListItem]:
        """All documents, most recently updated first, with their analysis summary."""
        with self._session() as db:
            rows = db.query(DocumentRecord).order_by(DocumentRecord.updated_at.desc(), DocumentRecord.id).all()
            return [_to_list_item(r) for r in rows]

    def get_market_analysis(self, document_id: str) -> Optional[MarketAnalysis]:
        with self._session() as db:
            row = self._get_row(db, document_id)
            if row.analysis is None:
                return None
            return MarketAnalysis.model_validate(row.analysis.payload)

    # ---- price corpus ----

    @staticmethod
    def _add_entries(db: Session, entries: List[PriceCorpusEntry]) -> int:
        if not entries:
            return 0
        ids = [e.id for e in entries if e.id]
        existing = set()
        if ids:
            existing = {r[0] for r in db.query(CorpusEntryRecord.id).filter(CorpusEntryRecord.id.in_(ids))}
        added = 0
        for entry in entries:
            if entry.id and entry.id in existing:
                continue
            db.add(_entry_row(entry))
            added += 1
        return added

    def append_corpus_entries(self, entries: Iterable[PriceCorpusEntry]) -> int:
        """Append entries; ids already present are skipped, existing rows never change."""
        with self._session() as db:
            added = self._add_entries(db, list(entries))
        logger.info("[gateway] appended corpus entries=%d", added)
        return added

    def corpus_snapshot(self) -> List[PriceCorpusEntry]:
        """Consistent read of the effective corpus (superseded entries removed)."""
        with self._session() as db:
            rows = db.query(CorpusEntryRecord).order_by(CorpusEntryRecord.created_at, CorpusEntryRecord.id).all()
            entries = [_to_entry(r) for r in rows]
        return select_effective_entries(entries)

    def stats(self) -> CorpusStats:
        with self._session() as db:
            total = db.query(func.count(DocumentRecord.id)).scalar() or 0
            completed = db.query(func.count(DocumentRecord.id)).filter(
                DocumentRecord.status == DocumentStatus.COMPLETED.value).scalar() or 0
            failed = db.query(func.count(DocumentRecord.id)).filter(
                DocumentRecord.status == DocumentStatus.FAILED.value).scalar() or 0
            entries = db.query(func.count(CorpusEntryRecord.id)).scalar() or 0
            analyzed = db.query(func.coalesce(func.sum(AnalysisRecord.positions_analyzed), 0)).scalar() or 0
            avg = db.query(func.avg(AnalysisRecord.average_confidence)).scalar()
        return CorpusStats(
            total_documents=total,
            completed_documents=completed,
            failed_documents=failed,
            corpus_entries=entries,
            positions_analyzed=int(analyzed),
            average_confidence=round(float(avg or 0.0), 4),
            analysis_rate_pct=round(completed / total * 100, 1) if total else 0.0,
        )
