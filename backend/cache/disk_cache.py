"""
Content-hash disk cache for structured extraction results.
Extraction: key = sha256(text + source_type + model) -> ExtractionPayload JSON.
"""
from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any

# Cache directory under backend/cache unless overridden
_CACHE_DIR = Path(os.environ.get("EXTRACTION_CACHE_DIR") or Path(__file__).resolve().parent)
EXTRACTION_CACHE_DIR = _CACHE_DIR / "extraction"


def _ensure_dir(d: Path) -> None:
    d.mkdir(parents=True, exist_ok=True)


def _extraction_key(text: str, source_type: str, model: str) -> str:
    h = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return hashlib.sha256((h + "|" + source_type + "|" + model).encode()).hexdigest()


def get_cached_extraction(text: str, source_type: str, model: str) -> dict[str, Any] | None:
    """Return cached ExtractionPayload as dict, or None."""
    _ensure_dir(EXTRACTION_CACHE_DIR)
    path = EXTRACTION_CACHE_DIR / f"{_extraction_key(text, source_type, model)}.json"
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def set_cached_extraction(text: str, source_type: str, model: str, payload: dict[str, Any]) -> None:
    """Store ExtractionPayload dict in cache."""
    _ensure_dir(EXTRACTION_CACHE_DIR)
    path = EXTRACTION_CACHE_DIR / f"{_extraction_key(text, source_type, model)}.json"
    path.write_text(json.dumps(payload, default=str), encoding="utf-8")
