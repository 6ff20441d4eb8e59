from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field


def round_money(value: float) -> float:
    """Round a currency amount to 2 decimals, half-up (1.005 -> 1.01)."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PositionStatus(str, Enum):
    CLEAR = "clear"
    ASSUMPTION = "assumption"
    UNCLEAR = "unclear"


class PriceSource(str, Enum):
    DOCUMENT = "document"
    ESTIMATE = "estimate"
    MANUAL = "manual"


class SourceType(str, Enum):
    PDF = "pdf"
    SPREADSHEET = "spreadsheet"
    GAEB = "gaeb"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_STATUS_TRANSITIONS: Dict[DocumentStatus, frozenset] = {
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING}),
    # processing -> processing: a re-run reclaims a run that died before recording its outcome
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.PROCESSING, DocumentStatus.COMPLETED, DocumentStatus.FAILED}),
    DocumentStatus.FAILED: frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.COMPLETED: frozenset(),
}


def can_transition(current: DocumentStatus, target: DocumentStatus) -> bool:
    return target in _STATUS_TRANSITIONS[current]


class DataQuality(str, Enum):
    HIGH = "Hoch"
    MEDIUM = "Mittel"
    LOW = "Niedrig"

    @classmethod
    def from_confidence(cls, average_confidence: float) -> "DataQuality":
        if average_confidence > 0.8:
            return cls.HIGH
        if average_confidence > 0.6:
            return cls.MEDIUM
        return cls.LOW


class PriceTrend(str, Enum):
    ABOVE_MARKET = "above_market"
    AT_MARKET = "at_market"
    BELOW_MARKET = "below_market"

    @classmethod
    def from_markup(cls, average_markup_pct: float, band_pct: float) -> "PriceTrend":
        if average_markup_pct > band_pct:
            return cls.ABOVE_MARKET
        if average_markup_pct < -band_pct:
            return cls.BELOW_MARKET
        return cls.AT_MARKET


# ---- Positions ----

class Position(BaseModel):
    """
    One line item of a specification or offer.

    total_price is derived from quantity and unit_price on every read; it is
    never stored independently of its inputs.
    """
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: str
    code: Optional[str] = None
    title: str = ""
    description: str
    category: str = ""
    unit: str
    quantity: Optional[float] = Field(default=None, ge=0.0)
    unit_price: Optional[float] = Field(
        default=None,
        ge=0.0,
        validation_alias=AliasChoices("unit_price", "unitPrice"),
    )
    status: PositionStatus = PositionStatus.UNCLEAR
    price_source: Optional[PriceSource] = None
    comments: str = ""
    questions: List[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_price(self) -> Optional[float]:
        if self.quantity is None or self.unit_price is None:
            return None
        return round_money(self.quantity * self.unit_price)


class PositionEdit(BaseModel):
    """User correction of a position. Only fields explicitly sent are applied; null removes a value."""
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    quantity: Optional[float] = Field(default=None, ge=0.0)
    unit_price: Optional[float] = Field(
        default=None,
        ge=0.0,
        validation_alias=AliasChoices("unit_price", "unitPrice"),
    )


class PositionSummary(BaseModel):
    total_positions: int = 0
    clear_count: int = 0
    assumption_count: int = 0
    unclear_count: int = 0
    completeness_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    total_value: float = 0.0


# ---- Structured extraction contract ----

class RawPosition(BaseModel):
    """Candidate position as returned by the structured extraction service."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    code: Optional[str] = Field(default=None, validation_alias=AliasChoices("code", "positionNumber"))
    title: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("unit_price", "unitPrice", "price"),
    )
    category: Optional[str] = Field(default=None, validation_alias=AliasChoices("category", "tradeCategory"))


class DocumentMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    project_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("project_name", "projectName"))
    project_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("project_number", "projectNumber"))
    client: Optional[str] = None
    date: Optional[str] = None
    currency: str = "EUR"


class ExtractionPayload(BaseModel):
    """Validated response of the structured extraction service."""
    positions: List[RawPosition] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    warnings: List[str] = Field(default_factory=list)


class RejectedPosition(BaseModel):
    index: int = Field(ge=0)
    reference: str = ""
    reason: str


class NormalizationResult(BaseModel):
    positions: List[Position] = Field(default_factory=list)
    rejected: List[RejectedPosition] = Field(default_factory=list)


# ---- Documents ----

class Document(BaseModel):
    """One uploaded specification/offer and its extracted positions."""
    id: str
    filename: str
    source_type: SourceType = SourceType.PDF
    status: DocumentStatus = DocumentStatus.PENDING
    positions: List[Position] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    clear_count: int = Field(default=0, ge=0)
    assumption_count: int = Field(default=0, ge=0)
    unclear_count: int = Field(default=0, ge=0)
    completeness_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    total_value: float = 0.0
    error: Optional[str] = None
    s3_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DocumentListItem(BaseModel):
    """Overview row: document status plus its analysis summary, without positions."""
    id: str
    filename: str
    source_type: SourceType
    status: DocumentStatus
    project_name: Optional[str] = None
    total_positions: int = 0
    positions_analyzed: int = 0
    data_quality: Optional[DataQuality] = None
    total_value: float = 0.0
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---- Corpus & matching ----

class PriceCorpusEntry(BaseModel):
    """A previously reconciled, price-confirmed position kept as comparison data."""
    id: str = ""
    description: str
    unit_price: float = Field(gt=0.0)
    unit: str
    category: str = ""
    tags: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    source_document_id: Optional[str] = None
    observed_at: Optional[date] = None
    normalized_key: str = ""


class Match(BaseModel):
    position_id: str
    corpus_entry_id: str = ""
    description: str
    unit: str
    market_price: float = Field(gt=0.0)
    similarity_score: float = Field(ge=0.0, le=1.0)
    recency_factor: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    price_variance: Optional[int] = Field(default=None, description="Percent difference of own vs. market price")
    source_document_id: Optional[str] = None


class PriceAdjustment(BaseModel):
    position_id: str
    current_price: float
    suggested_price: float
    variance_pct: int
    reason: str


class MarketAnalysis(BaseModel):
    document_id: str
    positions_analyzed: int = Field(default=0, ge=0)
    total_positions: int = Field(default=0, ge=0)
    average_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    data_quality: DataQuality = DataQuality.LOW
    coverage_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    matches: List[Match] = Field(default_factory=list)
    review_position_ids: List[str] = Field(default_factory=list)
    price_adjustments: List[PriceAdjustment] = Field(default_factory=list)
    failed_position_ids: List[str] = Field(default_factory=list)
    insufficient_market_data: bool = False
    # offer-level pricing summary; matched = own price compared to a market price
    matched_positions: int = Field(default=0, ge=0)
    new_positions: int = Field(default=0, ge=0)
    average_markup_pct: Optional[float] = None
    price_trend: Optional[PriceTrend] = None


class PositionAnalysis(BaseModel):
    """Per-position outcome of one reconciliation run."""
    position: Position
    matches: List[Match] = Field(default_factory=list)
    recommended_unit_price: Optional[float] = None
    requires_review: bool = False
    error: Optional[str] = None

    @property
    def best_match(self) -> Optional[Match]:
        return self.matches[0] if self.matches else None


class CorpusProposal(BaseModel):
    position_id: str
    entry: PriceCorpusEntry


class ReconciliationResult(BaseModel):
    document: Document
    analysis: MarketAnalysis
    position_analyses: List[PositionAnalysis] = Field(default_factory=list)
    corpus_proposals: List[CorpusProposal] = Field(default_factory=list)
    rejected_positions: List[RejectedPosition] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---- Pricing recommendations ----

class PriceRange(BaseModel):
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0


class PricingRecommendation(BaseModel):
    position_id: str
    description: str
    unit: str
    recommended_price: float = 0.0
    price_range: PriceRange = Field(default_factory=PriceRange)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    sources: List[str] = Field(default_factory=list)


class RecommendationPositionInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    description: str
    unit: str
    category: str = ""
    quantity: Optional[float] = Field(default=None, ge=0.0)
    unit_price: Optional[float] = Field(
        default=None,
        ge=0.0,
        validation_alias=AliasChoices("unit_price", "unitPrice"),
    )


class PricingRecommendationRequest(BaseModel):
    trade_category: str = Field(default="", validation_alias=AliasChoices("trade_category", "tradeCategory"))
    positions: List[RecommendationPositionInput]


class PricingRecommendationResponse(BaseModel):
    recommendations: List[PricingRecommendation] = Field(default_factory=list)
    total_positions: int = 0
    with_recommendations: int = 0
    average_confidence: float = 0.0


class CorpusStats(BaseModel):
    total_documents: int = 0
    completed_documents: int = 0
    failed_documents: int = 0
    corpus_entries: int = 0
    positions_analyzed: int = 0
    average_confidence: float = 0.0
    analysis_rate_pct: float = 0.0
