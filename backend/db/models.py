"""SQLAlchemy models for documents, their status trail, market analyses and the price corpus."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .session import Base

JSONType = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentRecord(Base):
    __tablename__ = "documents"

    id = Column(String, primary_key=True)
    filename = Column(String, nullable=False)
    source_type = Column("source_type", String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    error = Column(Text, nullable=True)
    s3_key = Column("s3_key", String, nullable=True)
    raw_text = Column("raw_text", Text, nullable=True)
    positions = Column(JSONType, nullable=False, default=list)
    metadata_ = Column("metadata", JSONType, default=dict)
    clear_count = Column("clear_count", Integer, nullable=False, default=0)
    assumption_count = Column("assumption_count", Integer, nullable=False, default=0)
    unclear_count = Column("unclear_count", Integer, nullable=False, default=0)
    completeness_pct = Column("completeness_pct", Float, nullable=False, default=0.0)
    total_value = Column("total_value", Float, nullable=False, default=0.0)
    created_at = Column("created_at", DateTime(timezone=True), default=utcnow)
    updated_at = Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column("completed_at", DateTime(timezone=True), nullable=True)

    status_events = relationship("StatusEvent", back_populates="document", cascade="all, delete-orphan")
    analysis = relationship("AnalysisRecord", back_populates="document", uselist=False, cascade="all, delete-orphan")


class StatusEvent(Base):
    __tablename__ = "document_status_events"

    id = Column(String, primary_key=True)
    document_id = Column("document_id", String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column("from_status", String, nullable=True)
    to_status = Column("to_status", String, nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column("created_at", DateTime(timezone=True), default=utcnow)

    document = relationship("DocumentRecord", back_populates="status_events")


class AnalysisRecord(Base):
    __tablename__ = "market_analyses"

    id = Column(String, primary_key=True)
    document_id = Column("document_id", String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True)
    payload = Column(JSONType, nullable=False)
    average_confidence = Column("average_confidence", Float, nullable=False, default=0.0)
    positions_analyzed = Column("positions_analyzed", Integer, nullable=False, default=0)
    data_quality = Column("data_quality", String, nullable=False)
    created_at = Column("created_at", DateTime(timezone=True), default=utcnow)

    document = relationship("DocumentRecord", back_populates="analysis")


class CorpusEntryRecord(Base):
    """Append-only; rows are never updated in place."""
    __tablename__ = "price_corpus_entries"

    id = Column(String, primary_key=True)
    description = Column(Text, nullable=False)
    unit_price = Column("unit_price", Float, nullable=False)
    unit = Column(String, nullable=False)
    category = Column(String, nullable=False, default="")
    tags = Column(JSONType, default=list)
    confidence = Column(Float, nullable=False)
    source_document_id = Column("source_document_id", String, nullable=True, index=True)
    observed_at = Column("observed_at", Date, nullable=True)
    normalized_key = Column("normalized_key", String, nullable=False, index=True)
    created_at = Column("created_at", DateTime(timezone=True), default=utcnow)
