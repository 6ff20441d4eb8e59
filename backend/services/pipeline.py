"""
Document reconciliation pipeline: extraction -> classification -> matching -> aggregation.

The pipeline holds no state between runs. Everything it reads and writes goes through the
persistence gateway; a document either reaches `completed` with its analysis and corpus
entries, or `failed` with the reason and no corpus writes.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import date
from typing import Dict, List, Optional

from engine.aggregator import AggregatorConfig, reconcile_positions
from engine.matcher import MatcherConfig, PriceCorpusMatcher
from errors import PositionNotFoundError, ReconciliationCancelled, ReconciliationError
from models import (
    DocumentStatus,
    Position,
    PositionEdit,
    PricingRecommendationRequest,
    PricingRecommendationResponse,
    PriceCorpusEntry,
    ReconciliationResult,
)
from position_extract import ExtractionBackend, get_extraction_backend
from services.classifier import apply_edit, normalize_positions, with_summary

logger = logging.getLogger(__name__)

# runs in this process, by document id; cancel_run() can only reach these
_active_runs: Dict[str, threading.Event] = {}
_active_lock = threading.Lock()


def cancel_run(document_id: str) -> bool:
    """Signal the in-process run for this document to stop. False if none is running here."""
    with _active_lock:
        event = _active_runs.get(document_id)
    if event is None:
        return False
    event.set()
    logger.info("[pipeline] cancellation requested document=%s", document_id)
    return True


class ReconciliationPipeline:
    def __init__(
        self,
        gateway,
        extractor: Optional[ExtractionBackend] = None,
        matcher_config: Optional[MatcherConfig] = None,
        aggregator_config: Optional[AggregatorConfig] = None,
        today: Optional[date] = None,
    ):
        self.gateway = gateway
        self.extractor = extractor or get_extraction_backend()
        self.matcher_config = matcher_config or MatcherConfig.from_env()
        self.aggregator_config = aggregator_config or AggregatorConfig.from_env()
        self.today = today

    def _fail(self, document_id: str, reason: str) -> None:
        try:
            self.gateway.record_status(document_id, DocumentStatus.FAILED, reason)
        except ReconciliationError as e:
            logger.error("[pipeline] could not mark document=%s failed: %s", document_id, e)

    def run(self, document_id: str, cancel_event: Optional[threading.Event] = None) -> ReconciliationResult:
        """Analyze one document end to end. Raises the document-level error after marking it failed."""
        t0 = time.perf_counter()
        document = self.gateway.record_status(document_id, DocumentStatus.PROCESSING)
        if cancel_event is None:
            cancel_event = threading.Event()
        with _active_lock:
            _active_runs[document_id] = cancel_event
        try:
            text = self.gateway.load_source_text(document_id)
            payload = self.extractor.extract(text, document.source_type)
            normalized = normalize_positions(payload.positions, document)
            document = with_summary(document.model_copy(update={"metadata": payload.metadata}), normalized.positions)

            matcher = PriceCorpusMatcher(self.gateway.corpus_snapshot(), self.matcher_config, today=self.today)
            result = reconcile_positions(document, matcher, self.aggregator_config, cancel_event)
            if cancel_event.is_set():
                raise ReconciliationCancelled("Reconciliation cancelled")

            entries = [p.entry for p in result.corpus_proposals]
            stored = self.gateway.complete_document(result.document, result.analysis, entries)
        except Exception as e:
            logger.warning("[pipeline] document=%s failed: %s", document_id, e)
            self._fail(document_id, str(e) or e.__class__.__name__)
            raise
        finally:
            with _active_lock:
                if _active_runs.get(document_id) is cancel_event:
                    del _active_runs[document_id]

        warnings = list(payload.warnings) + [
            f"Position {r.reference or r.index + 1} verworfen: {r.reason}" for r in normalized.rejected
        ]
        logger.info(
            "[pipeline] document=%s completed positions=%d rejected=%d duration=%.2fs",
            document_id, len(stored.positions), len(normalized.rejected), time.perf_counter() - t0,
        )
        return result.model_copy(update={
            "document": stored,
            "rejected_positions": normalized.rejected,
            "warnings": warnings,
        })


def edit_position(gateway, document_id: str, position_id: str, edit: PositionEdit):
    """Apply a user correction to one position and persist the recomputed document."""
    document = gateway.load_document(document_id)
    position = next((p for p in document.positions if p.id == position_id), None)
    if position is None:
        raise PositionNotFoundError(document_id, position_id)
    return gateway.update_position(document_id, apply_edit(position, edit))


def recommend_prices(
    request: PricingRecommendationRequest,
    corpus: List[PriceCorpusEntry],
    config: Optional[MatcherConfig] = None,
    today: Optional[date] = None,
) -> PricingRecommendationResponse:
    matcher = PriceCorpusMatcher(corpus, config or MatcherConfig.from_env(), today=today)
    recommendations = []
    for i, item in enumerate(request.positions):
        position = Position(
            id=item.id or f"pos-{i + 1}",
            title=item.description[:80],
            description=item.description,
            category=item.category or request.trade_category,
            unit=item.unit,
            quantity=item.quantity,
            unit_price=item.unit_price,
        )
        recommendations.append(matcher.recommend_price(position))
    priced = [r for r in recommendations if r.confidence > 0]
    return PricingRecommendationResponse(
        recommendations=recommendations,
        total_positions=len(recommendations),
        with_recommendations=len(priced),
        average_confidence=round(sum(r.confidence for r in priced) / len(priced), 4) if priced else 0.0,
    )
