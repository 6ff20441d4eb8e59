"""
Document reconciliation API: upload, analyze, review and edit positions, price recommendations.
Engine errors are translated to HTTP status codes here and nowhere else.
"""
from __future__ import annotations

import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

import s3_client
from errors import (
    DocumentNotFoundError,
    ExtractionServiceError,
    InvalidStatusTransition,
    PersistenceError,
    PositionNotFoundError,
    ReconciliationCancelled,
    ValidationError,
)
from gateway import SqlPersistenceGateway
from models import (
    CorpusStats,
    Document,
    DocumentListItem,
    MarketAnalysis,
    PositionEdit,
    PricingRecommendationRequest,
    PricingRecommendationResponse,
    ReconciliationResult,
)
from services.classifier import build_follow_up_questions
from services.pipeline import ReconciliationPipeline, cancel_run, edit_position, recommend_prices
from text_extract import MAX_UPLOAD_BYTES, MIN_TEXT_CHARS, detect_source_type, extract_text

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["api"])

_CONTENT_TYPES = {
    "pdf": "application/pdf",
    "spreadsheet": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "gaeb": "application/xml",
}


def get_gateway() -> SqlPersistenceGateway:
    return SqlPersistenceGateway()


def get_pipeline(gateway: SqlPersistenceGateway = Depends(get_gateway)) -> ReconciliationPipeline:
    return ReconciliationPipeline(gateway)


def _raise_http(e: Exception):
    if isinstance(e, (DocumentNotFoundError, PositionNotFoundError)):
        raise HTTPException(status_code=404, detail=str(e)) from e
    if isinstance(e, ValidationError):
        raise HTTPException(status_code=422, detail=str(e)) from e
    if isinstance(e, InvalidStatusTransition):
        raise HTTPException(status_code=409, detail=str(e)) from e
    if isinstance(e, ReconciliationCancelled):
        raise HTTPException(status_code=409, detail=str(e)) from e
    if isinstance(e, ExtractionServiceError):
        status = 429 if e.rate_limited else 502
        raise HTTPException(status_code=status, detail=f"Dokumentenanalyse fehlgeschlagen: {e}") from e
    if isinstance(e, PersistenceError):
        raise HTTPException(status_code=500, detail=str(e)) from e
    raise e


# --- Documents ---

@router.get("/documents", response_model=List[DocumentListItem])
def list_documents(gateway: SqlPersistenceGateway = Depends(get_gateway)):
    try:
        return gateway.list_documents()
    except PersistenceError as e:
        _raise_http(e)


@router.post("/documents", response_model=Document, status_code=201)
async def upload_document(
    file: UploadFile = File(...),
    gateway: SqlPersistenceGateway = Depends(get_gateway),
):
    if not file.filename:
        raise HTTPException(status_code=400, detail="Missing filename")
    try:
        source_type = detect_source_type(file.filename)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    data = await file.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail=f"File exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)}MB")
    try:
        text, source_type = extract_text(file.filename, data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if len(text.strip()) < MIN_TEXT_CHARS:
        raise HTTPException(status_code=422, detail="Dokument enthält zu wenig verwertbaren Text")

    document_id = str(uuid.uuid4())
    key = s3_client.upload_key(document_id, file.filename)
    stored = s3_client.upload_bytes(key, data, _CONTENT_TYPES[source_type.value])
    try:
        document = gateway.create_document(
            file.filename,
            source_type,
            raw_text=text,
            s3_key=key if stored else None,
            document_id=document_id,
        )
    except PersistenceError as e:
        _raise_http(e)
    logger.info("[api] uploaded document=%s source=%s chars=%d", document.id, source_type.value, len(text))
    return document


@router.post("/documents/{document_id}/analyze", response_model=ReconciliationResult)
def analyze_document(
    document_id: str,
    pipeline: ReconciliationPipeline = Depends(get_pipeline),
):
    try:
        return pipeline.run(document_id)
    except (
        DocumentNotFoundError,
        InvalidStatusTransition,
        ExtractionServiceError,
        PersistenceError,
        ReconciliationCancelled,
    ) as e:
        _raise_http(e)


@router.post("/documents/{document_id}/analyze-async", status_code=202)
def analyze_document_async(
    document_id: str,
    gateway: SqlPersistenceGateway = Depends(get_gateway),
):
    from jobs.tasks import analyze_document_task

    try:
        gateway.load_document(document_id)
    except DocumentNotFoundError as e:
        _raise_http(e)
    task = analyze_document_task.delay(document_id)
    return {"document_id": document_id, "task_id": task.id}


@router.post("/documents/{document_id}/cancel", status_code=202)
def cancel_analysis(document_id: str, gateway: SqlPersistenceGateway = Depends(get_gateway)):
    try:
        gateway.load_document(document_id)
    except (DocumentNotFoundError, PersistenceError) as e:
        _raise_http(e)
    if not cancel_run(document_id):
        raise HTTPException(status_code=409, detail="Keine laufende Analyse für dieses Dokument")
    return {"document_id": document_id, "cancelled": True}


@router.get("/documents/{document_id}", response_model=Document)
def get_document(document_id: str, gateway: SqlPersistenceGateway = Depends(get_gateway)):
    try:
        return gateway.load_document(document_id)
    except (DocumentNotFoundError, PersistenceError) as e:
        _raise_http(e)


@router.get("/documents/{document_id}/market-analysis", response_model=MarketAnalysis)
def get_market_analysis(document_id: str, gateway: SqlPersistenceGateway = Depends(get_gateway)):
    try:
        analysis = gateway.get_market_analysis(document_id)
    except (DocumentNotFoundError, PersistenceError) as e:
        _raise_http(e)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Document has not been analyzed yet")
    return analysis


@router.patch("/documents/{document_id}/positions/{position_id}", response_model=Document)
def update_position(
    document_id: str,
    position_id: str,
    body: PositionEdit,
    gateway: SqlPersistenceGateway = Depends(get_gateway),
):
    try:
        return edit_position(gateway, document_id, position_id, body)
    except (DocumentNotFoundError, PositionNotFoundError, ValidationError, PersistenceError) as e:
        _raise_http(e)


@router.get("/documents/{document_id}/questions")
def get_questions(document_id: str, gateway: SqlPersistenceGateway = Depends(get_gateway)):
    try:
        document = gateway.load_document(document_id)
    except (DocumentNotFoundError, PersistenceError) as e:
        _raise_http(e)
    return {
        "document_id": document.id,
        "open_positions": sum(1 for p in document.positions if p.questions),
        "questions": build_follow_up_questions(document.positions),
    }


# --- Pricing & corpus ---

@router.post("/pricing/recommendations", response_model=PricingRecommendationResponse)
def pricing_recommendations(
    body: PricingRecommendationRequest,
    gateway: SqlPersistenceGateway = Depends(get_gateway),
):
    if not body.positions:
        raise HTTPException(status_code=422, detail="No positions given")
    try:
        corpus = gateway.corpus_snapshot()
    except PersistenceError as e:
        _raise_http(e)
    return recommend_prices(body, corpus)


@router.get("/corpus/stats", response_model=CorpusStats)
def corpus_stats(gateway: SqlPersistenceGateway = Depends(get_gateway)):
    try:
        return gateway.stats()
    except PersistenceError as e:
        _raise_http(e)
