"""
Price corpus matcher: position -> ranked market price candidates.

confidence = similarity * source confidence * recency factor. Entries outside the position's
trade and unit are penalized, never excluded, so miscategorized corpus data still surfaces.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import date
from difflib import SequenceMatcher
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from errors import MatchingError
from models import (
    Match,
    Position,
    PriceCorpusEntry,
    PriceRange,
    PricingRecommendation,
    round_half_up,
    round_money,
)

NO_MARKET_DATA = "Keine Marktdaten verfügbar"

_UMLAUTS = str.maketrans({"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"})
_TOKEN = re.compile(r"[a-z0-9]+")
STOPWORDS = frozenset({
    "und", "oder", "inkl", "incl", "mit", "ohne", "der", "die", "das", "den", "dem", "des",
    "ein", "eine", "einer", "eines", "von", "vom", "fuer", "bis", "zu", "zum", "zur", "in",
    "im", "an", "am", "auf", "aus", "bei", "nach", "je", "pro", "ca", "gem", "sowie", "liefern",
})

_UNIT_ALIASES: Dict[str, str] = {
    "m2": "m2", "m²": "m2", "qm": "m2", "quadratmeter": "m2",
    "m3": "m3", "m³": "m3", "cbm": "m3", "kubikmeter": "m3",
    "stk": "stk", "st": "stk", "stück": "stk", "stueck": "stk", "stck": "stk",
    "lfm": "m", "lfdm": "m", "m": "m", "meter": "m", "lfd.m": "m",
    "h": "h", "std": "h", "stunde": "h", "stunden": "h",
    "psch": "psch", "pauschal": "psch", "pa": "psch", "ls": "psch",
    "kg": "kg", "t": "t", "to": "t", "l": "l", "ltr": "l",
}

SimilarityFn = Callable[[str, str], float]


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass(frozen=True)
class MatcherConfig:
    top_n: int = 5
    min_confidence: float = 0.3
    recency_horizon_months: int = 24
    recency_floor: float = 0.5
    category_penalty: float = 0.6

    @classmethod
    def from_env(cls) -> "MatcherConfig":
        return cls(
            top_n=int(os.environ.get("MATCH_TOP_N", "5")),
            min_confidence=_env_float("MATCH_MIN_CONFIDENCE", 0.3),
            recency_horizon_months=int(os.environ.get("MATCH_RECENCY_HORIZON_MONTHS", "24")),
            recency_floor=_env_float("MATCH_RECENCY_FLOOR", 0.5),
            category_penalty=_env_float("MATCH_CATEGORY_PENALTY", 0.6),
        )


def tokenize(text: str) -> List[str]:
    """Lowercase, fold umlauts, drop stopwords and single characters. Order preserved."""
    folded = (text or "").lower().translate(_UMLAUTS)
    return [t for t in _TOKEN.findall(folded) if t not in STOPWORDS and (len(t) > 1 or t.isdigit())]


def corpus_key(description: str) -> str:
    """Normalized description used to group corpus entries for supersession."""
    return " ".join(sorted(set(tokenize(description))))


def normalize_unit(unit: str) -> str:
    u = (unit or "").strip().lower().rstrip(".")
    return _UNIT_ALIASES.get(u, u)


def units_compatible(a: str, b: str) -> bool:
    return bool(a and b) and normalize_unit(a) == normalize_unit(b)


def _token_credit(token: str, others: Sequence[str]) -> float:
    best = 0.0
    for o in others:
        if token == o:
            return 1.0
        short, long_ = (token, o) if len(token) <= len(o) else (o, token)
        # German compounds: "bad"/"badezimmer", "fliesen"/"wandfliesen"
        if len(short) >= 3 and (long_.startswith(short) or long_.endswith(short)):
            best = max(best, 0.75)
    return best


def _soft_overlap(a: Sequence[str], b: Sequence[str]) -> float:
    forward = sum(_token_credit(t, b) for t in a) / len(a)
    backward = sum(_token_credit(t, a) for t in b) / len(b)
    return (forward + backward) / 2


def token_similarity(a: str, b: str) -> float:
    """Textual similarity in [0,1]: soft token overlap blended with a sequence ratio."""
    ta, tb = tokenize(a), tokenize(b)
    if not ta or not tb:
        return 0.0
    seq = SequenceMatcher(None, " ".join(sorted(ta)), " ".join(sorted(tb))).ratio()
    score = 0.7 * _soft_overlap(ta, tb) + 0.3 * seq
    return min(1.0, max(0.0, score))


def recency_factor(observed_at: Optional[date], today: date, horizon_months: int, floor: float) -> float:
    """1.0 within the horizon, then linear decay to the floor over one more horizon."""
    if observed_at is None or horizon_months <= 0:
        return 1.0
    age_months = (today - observed_at).days / 30.44
    if age_months <= horizon_months:
        return 1.0
    decay = (age_months - horizon_months) / horizon_months
    return max(floor, 1.0 - (1.0 - floor) * decay)


def price_variance(own_price: Optional[float], market_price: float) -> Optional[int]:
    """Percent deviation of own vs. market price, half-up rounded; None without own price."""
    if own_price is None or own_price <= 0 or market_price <= 0:
        return None
    return round_half_up((own_price - market_price) / market_price * 100)


def _supersession_key(entry: PriceCorpusEntry) -> Tuple[str, str]:
    return entry.normalized_key or corpus_key(entry.description), normalize_unit(entry.unit)


def _is_superseded(entry: PriceCorpusEntry, group: List[PriceCorpusEntry]) -> bool:
    observed = entry.observed_at or date.min
    return any((o.observed_at or date.min) > observed and o.confidence > entry.confidence for o in group)


def select_effective_entries(entries: Iterable[PriceCorpusEntry]) -> List[PriceCorpusEntry]:
    """
    Drop entries superseded by another entry for the same (normalized description, unit):
    one observed strictly later with strictly higher confidence. An older entry never hides
    a newer price, and equal confidence supersedes nothing. Input order of survivors is kept.
    """
    items = list(entries)
    groups: Dict[Tuple[str, str], List[PriceCorpusEntry]] = {}
    for e in items:
        groups.setdefault(_supersession_key(e), []).append(e)
    return [e for e in items if not _is_superseded(e, groups[_supersession_key(e)])]


class PriceCorpusMatcher:
    """Matches positions against a read-only corpus snapshot."""

    def __init__(
        self,
        corpus: Iterable[PriceCorpusEntry],
        config: Optional[MatcherConfig] = None,
        similarity: SimilarityFn = token_similarity,
        today: Optional[date] = None,
    ):
        self.corpus: Tuple[PriceCorpusEntry, ...] = tuple(corpus)
        self.config = config or MatcherConfig()
        self.similarity = similarity
        self.today = today or date.today()

    def _passes_prefilter(self, position: Position, entry: PriceCorpusEntry) -> bool:
        category = (position.category or "").strip().lower()
        if category and category == (entry.category or "").strip().lower():
            return True
        tags = {t.lower() for t in entry.tags}
        if tags and (category in tags or tags & set(tokenize(position.description))):
            return True
        return units_compatible(position.unit, entry.unit)

    def _score(self, position: Position, entry: PriceCorpusEntry) -> Match:
        sim = self.similarity(position.description, entry.description)
        sim = min(1.0, max(0.0, float(sim)))
        if not self._passes_prefilter(position, entry):
            sim *= self.config.category_penalty
        rf = recency_factor(entry.observed_at, self.today, self.config.recency_horizon_months, self.config.recency_floor)
        confidence = min(1.0, max(0.0, sim * entry.confidence * rf))
        return Match(
            position_id=position.id,
            corpus_entry_id=entry.id,
            description=entry.description,
            unit=entry.unit,
            market_price=entry.unit_price,
            similarity_score=round(sim, 4),
            recency_factor=round(rf, 4),
            confidence=round(confidence, 4),
            price_variance=price_variance(position.unit_price, entry.unit_price),
            source_document_id=entry.source_document_id,
        )

    def match(self, position: Position) -> List[Match]:
        """Ranked candidates, best first. An empty list means no usable market data."""
        if not self.corpus:
            return []
        try:
            scored = [(self._score(position, e), e) for e in self.corpus]
        except Exception as e:
            raise MatchingError(f"Corpus search failed: {e}", position_id=position.id) from e
        scored.sort(key=lambda me: (-me[0].confidence, -(me[1].observed_at or date.min).toordinal(), me[1].id))
        top = [m for m, _ in scored[: self.config.top_n]]
        return [m for m in top if m.confidence >= self.config.min_confidence]

    def recommend_price(self, position: Position) -> PricingRecommendation:
        """Recommended unit price from the retained matches; +10% margin when the best match is weak."""
        matches = self.match(position)
        if not matches:
            return PricingRecommendation(
                position_id=position.id,
                description=position.description,
                unit=position.unit,
                sources=[NO_MARKET_DATA],
            )
        best = matches[0]
        factor = 1.0 if best.confidence > 0.8 else 1.1
        prices = [m.market_price for m in matches]
        return PricingRecommendation(
            position_id=position.id,
            description=position.description,
            unit=position.unit,
            recommended_price=round_money(best.market_price * factor),
            price_range=PriceRange(
                min=min(prices),
                max=max(prices),
                avg=round_money(sum(prices) / len(prices)),
            ),
            confidence=best.confidence,
            sources=[f"Preisdatenbank: {m.description}" for m in matches],
        )
