"""Tests for corpus matching: similarity, confidence, recency, ranking and supersession."""
from datetime import date

import pytest

from engine.matcher import (
    NO_MARKET_DATA,
    MatcherConfig,
    PriceCorpusMatcher,
    corpus_key,
    normalize_unit,
    price_variance,
    recency_factor,
    select_effective_entries,
    token_similarity,
    tokenize,
)
from errors import MatchingError
from models import Position, PriceCorpusEntry

TODAY = date(2026, 6, 1)


def _entry(entry_id="c1", description="Badezimmer Fliesen verlegen", unit_price=65.0, unit="m²",
           category="Fliesenarbeiten", confidence=0.9, observed_at=None, **kw) -> PriceCorpusEntry:
    return PriceCorpusEntry(
        id=entry_id, description=description, unit_price=unit_price, unit=unit,
        category=category, confidence=confidence, observed_at=observed_at, **kw,
    )


def _position(description="Fliesen verlegen Bad", unit="m²", category="Fliesenarbeiten", **kw) -> Position:
    return Position(id=kw.pop("id", "p1"), description=description, unit=unit, category=category, **kw)


def _const(value):
    return lambda a, b: value


# ---- similarity ----

def test_tokenize_folds_umlauts_and_drops_stopwords():
    assert tokenize("Dämmung für Außenwand inkl. Kleber") == ["daemmung", "aussenwand", "kleber"]


def test_identical_descriptions_score_one():
    assert token_similarity("Fliesen verlegen", "fliesen  VERLEGEN") == pytest.approx(1.0)


def test_similarity_is_intuitive():
    close = token_similarity("Fliesen verlegen Bad", "Badezimmer Fliesen verlegen")
    far = token_similarity("Fliesen verlegen Bad", "Fassadengerüst stellen")
    assert close > 0.8
    assert far < 0.3
    assert close > far


@pytest.mark.parametrize("a,b", [
    ("", "Fliesen"),
    ("Putz", "Putz"),
    ("Gerüst stellen und vorhalten", "Gerüst"),
    ("12 Stk Steckdosen", "Steckdose setzen 12"),
])
def test_similarity_in_unit_interval(a, b):
    assert 0.0 <= token_similarity(a, b) <= 1.0


def test_unit_normalization():
    assert normalize_unit("qm") == normalize_unit("m²") == normalize_unit("m2")
    assert normalize_unit("Stück") == normalize_unit("Stk.") == normalize_unit("St")
    assert normalize_unit("cbm") == normalize_unit("m³")
    assert normalize_unit("lfm") == "m"


# ---- confidence ----

def test_fliesen_scenario_confidence():
    matcher = PriceCorpusMatcher([_entry()], similarity=_const(0.95), today=TODAY)
    matches = matcher.match(_position(quantity=20))
    assert len(matches) == 1
    m = matches[0]
    assert m.confidence == pytest.approx(0.855)
    assert m.recency_factor == 1.0
    assert m.market_price == 65.0
    assert m.price_variance is None


def test_variance_computed_against_own_price():
    matcher = PriceCorpusMatcher([_entry()], similarity=_const(0.95), today=TODAY)
    m = matcher.match(_position(quantity=20, unit_price=80.0))[0]
    assert m.price_variance == 23


def test_price_variance_rounding():
    assert price_variance(80, 65) == 23
    assert price_variance(50, 65) == -23
    assert price_variance(65, 65) == 0
    assert price_variance(None, 65) is None


def test_confidence_monotonic_in_source_confidence():
    low = PriceCorpusMatcher([_entry(confidence=0.5)], similarity=_const(0.8), today=TODAY)
    high = PriceCorpusMatcher([_entry(confidence=0.9)], similarity=_const(0.8), today=TODAY)
    assert high.match(_position())[0].confidence >= low.match(_position())[0].confidence


def test_recency_factor_decays_to_floor():
    assert recency_factor(date(2025, 6, 1), TODAY, 24, 0.5) == 1.0
    assert recency_factor(None, TODAY, 24, 0.5) == 1.0
    assert recency_factor(date(2023, 6, 1), TODAY, 24, 0.5) == pytest.approx(0.75, abs=0.01)
    assert recency_factor(date(2018, 1, 1), TODAY, 24, 0.5) == 0.5


def test_old_entries_are_trusted_less():
    matcher = PriceCorpusMatcher(
        [_entry("old", observed_at=date(2022, 6, 1)), _entry("new", observed_at=date(2026, 1, 1))],
        similarity=_const(0.9), today=TODAY,
    )
    matches = matcher.match(_position())
    assert [m.corpus_entry_id for m in matches] == ["new", "old"]
    assert matches[0].confidence > matches[1].confidence


def test_prefilter_mismatch_penalizes_but_keeps_candidate():
    entry = _entry(unit="Stk", category="Elektroarbeiten")
    matcher = PriceCorpusMatcher([entry], config=MatcherConfig(category_penalty=0.6),
                                 similarity=_const(1.0), today=TODAY)
    m = matcher.match(_position())[0]
    assert m.similarity_score == pytest.approx(0.6)
    assert m.confidence == pytest.approx(0.54)


def test_unit_compatibility_passes_prefilter():
    entry = _entry(unit="qm", category="Sonstiges")
    matcher = PriceCorpusMatcher([entry], similarity=_const(1.0), today=TODAY)
    assert matcher.match(_position())[0].similarity_score == 1.0


# ---- ranking ----

def test_empty_corpus_returns_empty_list():
    assert PriceCorpusMatcher([], today=TODAY).match(_position()) == []


def test_candidates_below_floor_discarded():
    matcher = PriceCorpusMatcher([_entry()], similarity=_const(0.3), today=TODAY)
    assert matcher.match(_position()) == []


def test_top_n_and_ordering():
    entries = [_entry(f"c{i}", confidence=0.4 + i * 0.08) for i in range(7)]
    matcher = PriceCorpusMatcher(entries, config=MatcherConfig(top_n=5), similarity=_const(1.0), today=TODAY)
    matches = matcher.match(_position())
    assert len(matches) == 5
    confidences = [m.confidence for m in matches]
    assert confidences == sorted(confidences, reverse=True)
    assert matches[0].corpus_entry_id == "c6"


def test_internal_failure_raised_as_matching_error():
    def broken(a, b):
        raise RuntimeError("index unavailable")

    matcher = PriceCorpusMatcher([_entry()], similarity=broken, today=TODAY)
    with pytest.raises(MatchingError) as exc:
        matcher.match(_position(id="p9"))
    assert exc.value.position_id == "p9"


# ---- supersession ----

def test_newer_and_more_confident_entry_supersedes():
    entries = [
        _entry("a", confidence=0.7, observed_at=date(2025, 1, 1)),
        _entry("b", description="Fliesen verlegen Badezimmer", confidence=0.9, observed_at=date(2026, 1, 1)),
        _entry("c", unit="Stk", confidence=0.5),
    ]
    kept = select_effective_entries(entries)
    assert [e.id for e in kept] == ["b", "c"]


def test_older_confident_entry_does_not_hide_newer_price():
    entries = [
        _entry("old", unit_price=50.0, confidence=0.9, observed_at=date(2022, 1, 1)),
        _entry("new", unit_price=70.0, confidence=0.85, observed_at=date(2026, 1, 1)),
    ]
    assert [e.id for e in select_effective_entries(entries)] == ["old", "new"]


def test_equal_confidence_supersedes_nothing():
    entries = [
        _entry("old", confidence=0.8, observed_at=date(2024, 1, 1)),
        _entry("new", confidence=0.8, observed_at=date(2026, 1, 1)),
    ]
    assert [e.id for e in select_effective_entries(entries)] == ["old", "new"]


def test_newer_price_reaches_matcher():
    entries = [
        _entry("old", unit_price=50.0, confidence=0.9, observed_at=date(2022, 1, 1)),
        _entry("new", unit_price=70.0, confidence=0.85, observed_at=date(2026, 1, 1)),
    ]
    matcher = PriceCorpusMatcher(select_effective_entries(entries), similarity=_const(1.0), today=TODAY)
    assert {m.market_price for m in matcher.match(_position())} == {50.0, 70.0}


def test_corpus_key_is_order_insensitive():
    assert corpus_key("Fliesen verlegen, Bad") == corpus_key("Bad Fliesen verlegen")


# ---- recommendations ----

def test_recommend_price_without_market_data():
    rec = PriceCorpusMatcher([], today=TODAY).recommend_price(_position())
    assert rec.confidence == 0.0
    assert rec.recommended_price == 0.0
    assert rec.sources == [NO_MARKET_DATA]


def test_recommend_price_confident_match_uses_market_price():
    matcher = PriceCorpusMatcher([_entry()], similarity=_const(0.95), today=TODAY)
    rec = matcher.recommend_price(_position())
    assert rec.recommended_price == 65.0
    assert rec.confidence == pytest.approx(0.855)
    assert rec.price_range.min == rec.price_range.max == 65.0


def test_recommend_price_weak_match_adds_margin():
    matcher = PriceCorpusMatcher(
        [_entry("a", unit_price=60.0), _entry("b", unit_price=70.0, confidence=0.6)],
        similarity=_const(0.5), today=TODAY,
    )
    rec = matcher.recommend_price(_position())
    assert rec.recommended_price == 66.0
    assert rec.price_range.min == 60.0
    assert rec.price_range.max == 70.0
    assert rec.price_range.avg == 65.0
