"""Tests for reconciliation: market analysis, estimates, review flags, proposals and failure isolation."""
import threading
import time
from datetime import date

import pytest

from engine.aggregator import AggregatorConfig, reconcile_positions
from engine.matcher import PriceCorpusMatcher
from errors import ReconciliationCancelled
from models import (
    DataQuality,
    Document,
    Position,
    PositionStatus,
    PriceCorpusEntry,
    PriceSource,
    PriceTrend,
    RawPosition,
)
from services.classifier import normalize_positions, with_summary

TODAY = date(2026, 6, 1)

FLIESEN = PriceCorpusEntry(
    id="c1", description="Badezimmer Fliesen verlegen", unit_price=65.0, unit="m²",
    category="Fliesenarbeiten", confidence=0.9,
)


def _const(value):
    return lambda a, b: value


def _document(*positions: Position) -> Document:
    return with_summary(Document(id="doc-1", filename="lv.pdf"), list(positions))


def _priced(pid, description, quantity, unit_price, unit="m²", category="Fliesenarbeiten") -> Position:
    raw = RawPosition(id=pid, description=description, unit=unit, quantity=quantity,
                      unit_price=unit_price, category=category)
    return normalize_positions([raw]).positions[0]


def test_fliesen_scenario_estimate_and_total():
    position = Position(id="p1", description="Fliesen verlegen Bad", quantity=20, unit="m²",
                        category="Fliesenarbeiten")
    assert position.status == PositionStatus.UNCLEAR
    matcher = PriceCorpusMatcher([FLIESEN], similarity=_const(0.95), today=TODAY)

    result = reconcile_positions(_document(position), matcher)

    analysis = result.analysis
    assert analysis.positions_analyzed == 1
    assert analysis.average_confidence == pytest.approx(0.855)
    assert analysis.data_quality == DataQuality.HIGH
    pa = result.position_analyses[0]
    assert pa.recommended_unit_price == 65.0
    assert pa.position.status == PositionStatus.ASSUMPTION
    assert pa.position.price_source == PriceSource.ESTIMATE
    assert pa.position.total_price == 1300.00
    assert "Preis basiert auf Preisdatenbank" in pa.position.comments
    assert result.document.assumption_count == 1
    assert result.document.total_value == 1300.0


def test_empty_corpus_degrades_to_low_quality():
    doc = _document(_priced("p1", "Fliesen entfernen", 25, 15.0), Position(id="p2", description="Putz", unit="m²"))
    result = reconcile_positions(doc, PriceCorpusMatcher([], today=TODAY))
    a = result.analysis
    assert a.positions_analyzed == 0
    assert a.average_confidence == 0.0
    assert a.data_quality == DataQuality.LOW
    assert a.insufficient_market_data is True
    assert a.matches == []


def test_price_deviation_flagged_for_review_not_overridden():
    position = _priced("p1", "Fliesen verlegen Bad", 20, 80.0)
    matcher = PriceCorpusMatcher([FLIESEN], similarity=_const(0.95), today=TODAY)

    result = reconcile_positions(_document(position), matcher)

    assert result.analysis.review_position_ids == ["p1"]
    adj = result.analysis.price_adjustments[0]
    assert adj.variance_pct == 23
    assert adj.current_price == 80.0
    assert adj.suggested_price == 65.0
    pa = result.position_analyses[0]
    assert pa.requires_review is True
    assert pa.position.unit_price == 80.0
    assert pa.position.status == PositionStatus.CLEAR
    assert result.corpus_proposals == []


def test_small_deviation_not_flagged_and_proposed():
    position = _priced("p1", "Fliesen verlegen Bad", 20, 70.0)
    matcher = PriceCorpusMatcher([FLIESEN], similarity=_const(0.95), today=TODAY)
    result = reconcile_positions(_document(position), matcher)
    assert result.analysis.matches[0].price_variance == 8
    assert result.analysis.review_position_ids == []
    assert [p.position_id for p in result.corpus_proposals] == ["p1"]


def test_partial_failure_isolated_to_one_position():
    def similarity(a, b):
        if "defekt" in a:
            raise RuntimeError("corpus index unavailable")
        return 0.95

    positions = [
        _priced("p1", "Fliesen verlegen Bad", 20, 66.0),
        _priced("p2", "defekt Fliesen", 10, 50.0),
        Position(id="p3", description="Fliesen verlegen Gäste-WC", quantity=5, unit="m²", category="Fliesenarbeiten"),
    ]
    matcher = PriceCorpusMatcher([FLIESEN], similarity=similarity, today=TODAY)

    result = reconcile_positions(_document(*positions), matcher)

    assert [a.position.id for a in result.position_analyses] == ["p1", "p2", "p3"]
    failed = result.position_analyses[1]
    assert failed.position.status == PositionStatus.UNCLEAR
    assert "Preisabgleich fehlgeschlagen" in failed.position.comments
    assert failed.error
    assert result.analysis.failed_position_ids == ["p2"]
    assert result.analysis.positions_analyzed == 2
    assert result.position_analyses[0].matches
    assert result.position_analyses[2].position.unit_price == 65.0
    assert all(p.position_id != "p2" for p in result.corpus_proposals)


class _SlowMatcher(PriceCorpusMatcher):
    """Earlier positions finish later."""

    def match(self, position):
        time.sleep(0.05 if position.id == "p1" else 0.0)
        return super().match(position)


def test_results_collected_in_input_order():
    positions = [
        Position(id=f"p{i}", description="Fliesen verlegen Bad", quantity=i, unit="m²", category="Fliesenarbeiten")
        for i in range(1, 6)
    ]
    matcher = _SlowMatcher([FLIESEN], similarity=_const(0.95), today=TODAY)
    result = reconcile_positions(_document(*positions), matcher, AggregatorConfig(max_workers=4))
    assert [a.position.id for a in result.position_analyses] == ["p1", "p2", "p3", "p4", "p5"]
    assert [m.position_id for m in result.analysis.matches] == ["p1", "p2", "p3", "p4", "p5"]


def test_cancelled_run_raises_and_proposes_nothing():
    event = threading.Event()
    event.set()
    doc = _document(_priced("p1", "Fliesen entfernen", 25, 15.0))
    with pytest.raises(ReconciliationCancelled):
        reconcile_positions(doc, PriceCorpusMatcher([FLIESEN], today=TODAY), cancel_event=event)


def test_proposals_carry_document_confidence():
    doc = _document(
        _priced("p1", "Steckdosen setzen", 12, 45.0, unit="Stk", category="Elektroarbeiten"),
        _priced("p2", "Schalter setzen", 8, 30.0, unit="Stk", category="Elektroarbeiten"),
    )
    result = reconcile_positions(doc, PriceCorpusMatcher([], today=TODAY))
    assert len(result.corpus_proposals) == 2
    entry = result.corpus_proposals[0].entry
    assert entry.confidence == 1.0
    assert entry.source_document_id == "doc-1"
    assert entry.observed_at == TODAY
    assert entry.id == "doc-1:p1"


def test_no_proposals_when_document_mostly_unclear():
    doc = _document(
        _priced("p1", "Steckdosen setzen", 12, 45.0, unit="Stk"),
        Position(id="p2", description="Kabel verlegen", unit="m"),
        Position(id="p3", description="Verteiler setzen", unit="Stk"),
    )
    result = reconcile_positions(doc, PriceCorpusMatcher([], today=TODAY))
    assert result.corpus_proposals == []


@pytest.mark.parametrize("similarity", [0.0, 0.4, 0.7, 1.0])
def test_analyzed_never_exceeds_total(similarity):
    doc = _document(
        _priced("p1", "Fliesen verlegen Bad", 20, 80.0),
        Position(id="p2", description="Fliesen verlegen Flur", unit="m²", quantity=12),
        Position(id="p3", description="Silikonfuge", unit="m"),
    )
    result = reconcile_positions(doc, PriceCorpusMatcher([FLIESEN], similarity=_const(similarity), today=TODAY))
    a = result.analysis
    assert a.positions_analyzed <= a.total_positions == 3
    assert 0.0 <= a.average_confidence <= 1.0


def test_data_quality_thresholds_unrounded_average():
    def similarity(a, b):
        return 0.8001 if "Bad" in a else 0.8

    positions = [
        Position(id="p1", description="Fliesen verlegen Bad", unit="m²", category="Fliesenarbeiten"),
        Position(id="p2", description="Fliesen verlegen Flur", unit="m²", category="Fliesenarbeiten"),
        Position(id="p3", description="Fliesen verlegen Küche", unit="m²", category="Fliesenarbeiten"),
    ]
    entry = FLIESEN.model_copy(update={"confidence": 1.0})
    result = reconcile_positions(_document(*positions), PriceCorpusMatcher([entry], similarity=similarity, today=TODAY))
    assert result.analysis.average_confidence == 0.8
    assert result.analysis.data_quality == DataQuality.HIGH


# ---- offer pricing summary ----

def test_offer_pricing_summary():
    def similarity(a, b):
        return 0.0 if "Silikon" in a else 0.95

    doc = _document(
        _priced("p1", "Fliesen verlegen Bad", 20, 80.0),
        _priced("p2", "Fliesen verlegen Flur", 12, 70.0),
        Position(id="p3", description="Fliesen verlegen WC", unit="m²", quantity=5, category="Fliesenarbeiten"),
        Position(id="p4", description="Silikonfuge", unit="m", category="Fliesenarbeiten"),
    )
    a = reconcile_positions(doc, PriceCorpusMatcher([FLIESEN], similarity=similarity, today=TODAY)).analysis
    assert a.positions_analyzed == 3
    assert a.matched_positions == 2
    assert a.new_positions == 1
    assert a.average_markup_pct == 15.4
    assert a.price_trend == PriceTrend.ABOVE_MARKET


@pytest.mark.parametrize("own_price,trend", [
    (60.0, PriceTrend.BELOW_MARKET),
    (66.0, PriceTrend.AT_MARKET),
    (80.0, PriceTrend.ABOVE_MARKET),
])
def test_price_trend_band(own_price, trend):
    doc = _document(_priced("p1", "Fliesen verlegen Bad", 20, own_price))
    result = reconcile_positions(doc, PriceCorpusMatcher([FLIESEN], similarity=_const(0.95), today=TODAY),
                                 AggregatorConfig(at_market_band_pct=5.0))
    assert result.analysis.price_trend == trend


def test_no_price_comparison_leaves_trend_unset():
    position = Position(id="p1", description="Fliesen verlegen Bad", unit="m²", quantity=20, category="Fliesenarbeiten")
    a = reconcile_positions(_document(position), PriceCorpusMatcher([FLIESEN], similarity=_const(0.95), today=TODAY)).analysis
    assert a.matched_positions == 0
    assert a.new_positions == 0
    assert a.average_markup_pct is None
    assert a.price_trend is None
