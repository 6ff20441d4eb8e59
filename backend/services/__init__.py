"""Backend services."""

from services.classifier import (
    apply_edit,
    apply_price_estimate,
    build_follow_up_questions,
    classify_position,
    normalize_positions,
    summarize_positions,
)

__all__ = [
    "apply_edit",
    "apply_price_estimate",
    "build_follow_up_questions",
    "classify_position",
    "normalize_positions",
    "summarize_positions",
]
