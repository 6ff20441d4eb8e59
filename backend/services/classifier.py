"""
Position normalizer & classifier.

Turns raw extracted candidates into validated Position records and assigns the completeness
status (clear / assumption / unclear). Pure functions, no I/O. Status is always derived from
the current inputs, so re-classifying an unchanged position returns an identical position.
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional

from errors import ValidationError
from models import (
    Document,
    NormalizationResult,
    Position,
    PositionEdit,
    PositionStatus,
    PositionSummary,
    PriceSource,
    RawPosition,
    RejectedPosition,
    round_money,
)

logger = logging.getLogger(__name__)

QUESTION_PRICE_MISSING = "Einheitspreis muss kalkuliert werden"
QUESTION_QUANTITY_MISSING = "Menge muss ermittelt werden"
QUESTION_QUANTITY_INTENDED = "Welche Menge ist für diese Position vorgesehen?"
QUESTION_DRAWINGS = "Gibt es Pläne oder Maße zur Mengenermittlung?"
QUESTION_CONFIRM_ESTIMATE = "Geschätzten Einheitspreis bestätigen"

DEFAULT_CATEGORY = "Allgemein"

# Trade (Gewerk) keywords, first hit wins
TRADE_KEYWORDS = [
    ("Gerüstarbeiten", ("gerüst", "geruest")),
    ("Abbrucharbeiten", ("abbruch", "rückbau", "rueckbau", "entfernen", "demontage")),
    ("Erdarbeiten", ("aushub", "erdarbeit", "baugrube", "verfüll")),
    ("Betonarbeiten", ("beton", "fundament", "bewehrung", "schalung")),
    ("Mauerarbeiten", ("mauerwerk", "mauern", "kalksandstein", "ziegelmauer")),
    ("Dämmarbeiten", ("dämm", "daemm", "wdvs", "wärmedämm", "isolier")),
    ("Putzarbeiten", ("putz", "spachtel")),
    ("Fliesenarbeiten", ("fliese", "fliesen", "naturstein", "verfugen")),
    ("Malerarbeiten", ("maler", "anstrich", "streichen", "tapez", "lackier")),
    ("Trockenbauarbeiten", ("trockenbau", "gipskarton", "rigips", "ständerwand")),
    ("Bodenbelagsarbeiten", ("parkett", "laminat", "estrich", "bodenbelag", "vinyl")),
    ("Dacharbeiten", ("dach", "ziegel", "dachrinne", "abdichtung")),
    ("Fensterarbeiten", ("fenster", "verglasung")),
    ("Elektroarbeiten", ("elektro", "steckdose", "schalter", "kabel", "leitung verlegen", "leuchte", "verteiler")),
    ("Sanitärarbeiten", ("sanitär", "sanitaer", "wc", "waschtisch", "dusche", "badewanne", "armatur")),
    ("Heizungsarbeiten", ("heizung", "heizkörper", "heizkoerper", "fußbodenheizung")),
]

_WS = re.compile(r"\s+")


def infer_category(text: str) -> Optional[str]:
    """Best-effort trade category from free text, None if no keyword matches."""
    low = (text or "").lower()
    for trade, keywords in TRADE_KEYWORDS:
        if any(k in low for k in keywords):
            return trade
    return None


def _present(value: Optional[float]) -> bool:
    return value is not None and value > 0


def append_comment(comments: str, note: str) -> str:
    """Append a note as its own line unless that exact line already exists."""
    note = (note or "").strip()
    if not note:
        return comments
    lines = [ln for ln in (comments or "").split("\n") if ln]
    if note in lines:
        return comments
    return "\n".join(lines + [note])


def derive_status(position: Position) -> PositionStatus:
    has_qty = _present(position.quantity)
    has_price = _present(position.unit_price)
    if has_qty and has_price:
        # A corpus-estimated price is an assumption until a user confirms it
        if position.price_source == PriceSource.ESTIMATE:
            return PositionStatus.ASSUMPTION
        return PositionStatus.CLEAR
    if has_qty or has_price:
        return PositionStatus.ASSUMPTION
    return PositionStatus.UNCLEAR


def _questions_for(position: Position, status: PositionStatus) -> List[str]:
    has_qty = _present(position.quantity)
    has_price = _present(position.unit_price)
    if status == PositionStatus.CLEAR:
        return []
    if status == PositionStatus.UNCLEAR:
        if not has_qty and not has_price:
            return [QUESTION_QUANTITY_INTENDED, QUESTION_DRAWINGS]
        # Forced to unclear (e.g. matching failure) with partial inputs
        return [QUESTION_QUANTITY_MISSING if not has_qty else QUESTION_PRICE_MISSING]
    questions = []
    if not has_price:
        questions.append(QUESTION_PRICE_MISSING)
    if not has_qty:
        questions.append(QUESTION_QUANTITY_MISSING)
    if has_price and position.price_source == PriceSource.ESTIMATE:
        questions.append(QUESTION_CONFIRM_ESTIMATE)
    return questions


def classify_position(position: Position) -> Position:
    """Assign status and questions from the current inputs. Idempotent."""
    quantity = position.quantity if _present(position.quantity) else None
    unit_price = position.unit_price if _present(position.unit_price) else None
    base = position.model_copy(update={"quantity": quantity, "unit_price": unit_price})
    status = derive_status(base)
    return base.model_copy(update={"status": status, "questions": _questions_for(base, status)})


def classify_raw_position(raw: RawPosition, index: int) -> Position:
    """Validate one extracted candidate and build its classified Position."""
    ref = raw.code or raw.id or f"#{index + 1}"
    description = _WS.sub(" ", (raw.description or raw.title or "")).strip()
    unit = (raw.unit or "").strip()
    if not description:
        raise ValidationError("Position has no description", position_ref=ref)
    if not unit:
        raise ValidationError("Position has no unit", position_ref=ref)
    if raw.quantity is not None and raw.quantity < 0:
        raise ValidationError(f"Negative quantity: {raw.quantity}", position_ref=ref)
    if raw.unit_price is not None and raw.unit_price < 0:
        raise ValidationError(f"Negative unit price: {raw.unit_price}", position_ref=ref)

    title = _WS.sub(" ", (raw.title or "")).strip() or description[:80]
    category = (raw.category or "").strip() or infer_category(f"{title} {description}") or DEFAULT_CATEGORY
    has_price = _present(raw.unit_price)
    position = Position(
        id=(raw.id or "").strip() or f"pos-{index + 1}",
        code=(raw.code or "").strip() or None,
        title=title,
        description=description,
        category=category,
        unit=unit,
        quantity=raw.quantity if _present(raw.quantity) else None,
        unit_price=raw.unit_price if has_price else None,
        price_source=PriceSource.DOCUMENT if has_price else None,
    )
    return classify_position(position)


def normalize_positions(raws: Iterable[RawPosition], document: Optional[Document] = None) -> NormalizationResult:
    """
    Validate and classify all candidates of one document.

    Invalid candidates are collected as RejectedPosition and never abort the document.
    Ids are made unique within the document.
    """
    positions: List[Position] = []
    rejected: List[RejectedPosition] = []
    seen_ids: set[str] = set()
    for index, raw in enumerate(raws):
        try:
            position = classify_raw_position(raw, index)
        except ValidationError as e:
            rejected.append(RejectedPosition(index=index, reference=e.position_ref or "", reason=str(e)))
            continue
        pid = position.id
        n = 2
        while pid in seen_ids:
            pid = f"{position.id}-{n}"
            n += 1
        seen_ids.add(pid)
        positions.append(position if pid == position.id else position.model_copy(update={"id": pid}))
    logger.info(
        "[classify] document=%s positions=%d rejected=%d",
        document.id if document else "-", len(positions), len(rejected),
    )
    return NormalizationResult(positions=positions, rejected=rejected)


def apply_price_estimate(position: Position, unit_price: float, note: str) -> Position:
    """
    Fill a missing unit price from market data. Never overrides an existing price and never
    makes the position clear on its own (unclear -> assumption).
    """
    if _present(position.unit_price) or unit_price is None or unit_price <= 0:
        return position
    updated = position.model_copy(update={
        "unit_price": round_money(unit_price),
        "price_source": PriceSource.ESTIMATE,
        "comments": append_comment(position.comments, note),
    })
    return classify_position(updated)


def apply_edit(position: Position, edit: PositionEdit) -> Position:
    """
    Apply an explicit user correction. Only fields present in the request are applied;
    a supplied unit price becomes a manual (confirmed) price.
    """
    fields = edit.model_fields_set
    update = {}
    for name in ("title", "description", "category", "unit"):
        if name in fields:
            value = getattr(edit, name)
            if name in ("description", "unit") and not (value or "").strip():
                raise ValidationError(f"{name} must not be empty", position_ref=position.id)
            update[name] = value.strip() if value else ""
    if "quantity" in fields:
        update["quantity"] = edit.quantity if _present(edit.quantity) else None
    if "unit_price" in fields:
        update["unit_price"] = edit.unit_price if _present(edit.unit_price) else None
        update["price_source"] = PriceSource.MANUAL if _present(edit.unit_price) else None
    # An estimated price stays an estimate until the price itself is edited
    updated = position.model_copy(update=update)
    return classify_position(updated)


def mark_unclear(position: Position, note: str) -> Position:
    """Force a position to unclear with a recorded reason (used when matching fails)."""
    updated = position.model_copy(update={"comments": append_comment(position.comments, note)})
    return updated.model_copy(update={
        "status": PositionStatus.UNCLEAR,
        "questions": _questions_for(updated, PositionStatus.UNCLEAR),
    })


def summarize_positions(positions: List[Position]) -> PositionSummary:
    """Status counters, completeness (share of clear positions) and total value."""
    total = len(positions)
    clear = sum(1 for p in positions if p.status == PositionStatus.CLEAR)
    assumption = sum(1 for p in positions if p.status == PositionStatus.ASSUMPTION)
    unclear = total - clear - assumption
    value = round_money(sum(p.total_price for p in positions if p.total_price is not None))
    return PositionSummary(
        total_positions=total,
        clear_count=clear,
        assumption_count=assumption,
        unclear_count=unclear,
        completeness_pct=round(clear / total * 100, 1) if total else 0.0,
        total_value=value,
    )


def with_summary(document: Document, positions: List[Position]) -> Document:
    """Document copy carrying the given positions and their recomputed counters."""
    s = summarize_positions(positions)
    return document.model_copy(update={
        "positions": positions,
        "clear_count": s.clear_count,
        "assumption_count": s.assumption_count,
        "unclear_count": s.unclear_count,
        "completeness_pct": s.completeness_pct,
        "total_value": s.total_value,
    })


def build_follow_up_questions(positions: List[Position]) -> List[str]:
    """Client question list, grouped per open position."""
    out = []
    for p in positions:
        if p.status == PositionStatus.CLEAR or not p.questions:
            continue
        out.append(f"Position {p.code or p.id} - {p.title or p.description}:")
        out.extend(f"  • {q}" for q in p.questions)
        out.append("")
    return out[:-1] if out else out
