"""
Reconciliation & market analysis: per-position matches -> MarketAnalysis, price estimates,
review flags and corpus update proposals for one document.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from engine.matcher import PriceCorpusMatcher, corpus_key
from errors import ReconciliationCancelled
from models import (
    CorpusProposal,
    DataQuality,
    Document,
    Match,
    MarketAnalysis,
    Position,
    PositionAnalysis,
    PositionStatus,
    PriceAdjustment,
    PriceCorpusEntry,
    PriceSource,
    PriceTrend,
    ReconciliationResult,
)
from services.classifier import apply_price_estimate, mark_unclear, with_summary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregatorConfig:
    review_threshold_pct: float = 10.0
    min_proposal_confidence: float = 0.5
    max_workers: int = 8
    at_market_band_pct: float = 5.0

    @classmethod
    def from_env(cls) -> "AggregatorConfig":
        return cls(
            review_threshold_pct=float(os.environ.get("REVIEW_THRESHOLD_PCT", "10")),
            min_proposal_confidence=float(os.environ.get("MIN_PROPOSAL_CONFIDENCE", "0.5")),
            max_workers=int(os.environ.get("MATCH_MAX_WORKERS", "8")),
            at_market_band_pct=float(os.environ.get("AT_MARKET_BAND_PCT", "5")),
        )


def _estimate_note(best: Match) -> str:
    return (
        f"Preis basiert auf Preisdatenbank: {best.description} "
        f"({best.market_price:.2f} EUR/{best.unit}, Konfidenz {best.confidence:.0%})"
    )


def _match_all(
    positions: List[Position],
    matcher: PriceCorpusMatcher,
    max_workers: int,
    cancel_event: Optional[threading.Event],
) -> List[tuple[List[Match], Optional[Exception]]]:
    """Run matcher.match concurrently; results in input order, failures isolated per position."""

    def task(position: Position) -> List[Match]:
        if cancel_event is not None and cancel_event.is_set():
            raise ReconciliationCancelled("Reconciliation cancelled")
        return matcher.match(position)

    if not positions:
        return []
    outcomes: List[tuple[List[Match], Optional[Exception]]] = []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(positions)))) as pool:
        futures = [pool.submit(task, p) for p in positions]
        for position, future in zip(positions, futures):
            try:
                outcomes.append((future.result(), None))
            except ReconciliationCancelled:
                for f in futures:
                    f.cancel()
                raise
            except Exception as e:
                logger.warning("[reconcile] matching failed position=%s error=%s", position.id, e)
                outcomes.append(([], e))
    return outcomes


def reconcile_positions(
    document: Document,
    matcher: PriceCorpusMatcher,
    config: Optional[AggregatorConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ReconciliationResult:
    """
    Match every position of the document and aggregate the outcome.

    Positions without a price get the top candidate's price as an assumption. Positions whose
    own price deviates from the best match by more than the review threshold are flagged for
    review and never overridden. A failing match marks only that position unclear.
    """
    config = config or AggregatorConfig()
    t0 = time.perf_counter()
    positions = list(document.positions)
    outcomes = _match_all(positions, matcher, config.max_workers, cancel_event)

    analyses: List[PositionAnalysis] = []
    best_matches: List[Match] = []
    review_ids: List[str] = []
    adjustments: List[PriceAdjustment] = []
    failed_ids: List[str] = []
    markups: List[float] = []

    for position, (matches, error) in zip(positions, outcomes):
        if error is not None:
            failed_ids.append(position.id)
            updated = mark_unclear(position, f"Preisabgleich fehlgeschlagen: {error}")
            analyses.append(PositionAnalysis(position=updated, error=str(error)))
            continue
        best = matches[0] if matches else None
        updated = position
        recommended = None
        review = False
        if best is not None:
            best_matches.append(best)
            if position.unit_price is not None:
                variance = best.price_variance
                if variance is not None:
                    markups.append((position.unit_price - best.market_price) / best.market_price * 100)
                    if abs(variance) > config.review_threshold_pct:
                        review = True
                        review_ids.append(position.id)
                        adjustments.append(PriceAdjustment(
                            position_id=position.id,
                            current_price=position.unit_price,
                            suggested_price=best.market_price,
                            variance_pct=variance,
                            reason=f"Preis weicht {variance:+d}% vom Marktpreis ab ({best.description})",
                        ))
            else:
                recommended = best.market_price
                updated = apply_price_estimate(position, best.market_price, _estimate_note(best))
        analyses.append(PositionAnalysis(
            position=updated,
            matches=matches,
            recommended_unit_price=recommended,
            requires_review=review,
        ))

    total = len(positions)
    analyzed = len(best_matches)
    avg = sum(m.confidence for m in best_matches) / analyzed if analyzed else 0.0
    avg = min(1.0, max(0.0, avg))
    markup = sum(markups) / len(markups) if markups else None
    # thresholds see unrounded values; rounding is for display only
    analysis = MarketAnalysis(
        document_id=document.id,
        positions_analyzed=analyzed,
        total_positions=total,
        average_confidence=round(avg, 4),
        data_quality=DataQuality.from_confidence(avg),
        coverage_pct=round(analyzed / total * 100, 1) if total else 0.0,
        matches=best_matches,
        review_position_ids=review_ids,
        price_adjustments=adjustments,
        failed_position_ids=failed_ids,
        insufficient_market_data=analyzed == 0,
        matched_positions=len(markups),
        new_positions=total - analyzed - len(failed_ids),
        average_markup_pct=round(markup, 1) if markup is not None else None,
        price_trend=PriceTrend.from_markup(markup, config.at_market_band_pct) if markup is not None else None,
    )
    updated_document = with_summary(document, [a.position for a in analyses])
    proposals = propose_corpus_entries(updated_document, analyses, config, today=matcher.today)
    logger.info(
        "[reconcile] document=%s analyzed=%d/%d avg_conf=%.3f quality=%s review=%d failed=%d proposals=%d duration=%.2fs",
        document.id, analyzed, total, avg, analysis.data_quality.value, len(review_ids),
        len(failed_ids), len(proposals), time.perf_counter() - t0,
    )
    return ReconciliationResult(
        document=updated_document,
        analysis=analysis,
        position_analyses=analyses,
        corpus_proposals=proposals,
    )


def document_confidence(document: Document) -> float:
    """Share of clear positions: how much of the document's pricing is self-consistent."""
    total = len(document.positions)
    return document.clear_count / total if total else 0.0


def propose_corpus_entries(
    document: Document,
    analyses: List[PositionAnalysis],
    config: AggregatorConfig,
    today: Optional[date] = None,
) -> List[CorpusProposal]:
    """Clear, self-priced positions without a conflicting market match become corpus candidates."""
    confidence = round(document_confidence(document), 4)
    if confidence < config.min_proposal_confidence:
        return []
    proposals = []
    for a in analyses:
        p = a.position
        if p.status != PositionStatus.CLEAR or p.unit_price is None or a.requires_review:
            continue
        if p.price_source not in (PriceSource.DOCUMENT, PriceSource.MANUAL):
            continue
        entry = PriceCorpusEntry(
            id=f"{document.id}:{p.id}",
            description=p.description,
            unit_price=p.unit_price,
            unit=p.unit,
            category=p.category,
            tags=[p.category] if p.category else [],
            confidence=confidence,
            source_document_id=document.id,
            observed_at=today or date.today(),
            normalized_key=corpus_key(p.description),
        )
        proposals.append(CorpusProposal(position_id=p.id, entry=entry))
    return proposals
