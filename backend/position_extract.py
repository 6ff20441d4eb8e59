"""
Structured extraction: document text -> candidate positions + metadata (ExtractionPayload).

OpenAIExtractionClient asks the model for JSON matching the ExtractionPayload schema and
validates the answer with pydantic. RegexExtractionClient parses the usual bill-of-quantities
line layouts deterministically and is used when no API key is configured.
Positions are returned unclassified; the classifier decides their status.
"""
from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import List, Optional, Protocol

import openai
from openai import OpenAI
from pydantic import ValidationError as SchemaValidationError
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from cache.disk_cache import get_cached_extraction, set_cached_extraction
from errors import ExtractionServiceError
from models import DocumentMetadata, ExtractionPayload, RawPosition, SourceType

logger = logging.getLogger(__name__)

OPENAI_EXTRACTION_MODEL = (os.environ.get("OPENAI_EXTRACTION_MODEL") or "gpt-4o-mini").strip()
EXTRACTION_TIMEOUT_S = float(os.environ.get("EXTRACTION_TIMEOUT_S", "60"))
EXTRACTION_MAX_ATTEMPTS = int(os.environ.get("EXTRACTION_MAX_ATTEMPTS", "3"))
# Text budget sent to the model: head + tail
EXTRACTION_MAX_CHARS = int(os.environ.get("EXTRACTION_MAX_CHARS", "60000"))
TAIL_SHARE = 0.25

EXTRACTION_SCHEMA = ExtractionPayload.model_json_schema()

SYSTEM_PROMPT = """Du bist ein Experte für deutsche Leistungsverzeichnisse (LV) und Angebote im Bauwesen.
Extrahiere ALLE Positionen des Dokuments als JSON. Keine Prosa, kein Markdown.
- Pro Position: code (Positionsnummer), title (Kurztext), description (Langtext oder Kurztext),
  unit (Einheit wie m², m³, Stk, lfm, psch), quantity, unit_price (Einheitspreis netto), category (Gewerk).
- Erfinde keine Werte. Fehlt Menge oder Einheitspreis, setze null.
- Zahlen im deutschen Format (1.234,56) als JSON-Zahl (1234.56) ausgeben.
- metadata: project_name, project_number, client, date, currency.
- Unsicherheiten als kurze Hinweise in warnings."""


def _truncate_head_tail(text: str, max_chars: int = EXTRACTION_MAX_CHARS) -> tuple[str, list[str]]:
    """Keep the head and the tail (totals, closing positions) of an oversized text."""
    warnings: list[str] = []
    if len(text) <= max_chars:
        return text, warnings
    tail_chars = int(max_chars * TAIL_SHARE)
    head = text[: max_chars - tail_chars]
    tail = text[-tail_chars:] if tail_chars else ""
    warnings.append(f"Input text truncated for extraction ({len(text)} > {max_chars} chars).")
    return head + "\n\n...[gekürzt]...\n\n" + tail, warnings


def prepare_text_for_extraction(text: str, max_chars: int = EXTRACTION_MAX_CHARS) -> tuple[str, list[str]]:
    """Whitespace-normalize and truncate. Returns (text_for_model, extra_warnings)."""
    lines = [" ".join(ln.split()) for ln in (text or "").splitlines()]
    cleaned = "\n".join(ln for ln in lines if ln)
    return _truncate_head_tail(cleaned, max_chars)


class ExtractionBackend(Protocol):
    def extract(self, text: str, source_type: Optional[SourceType] = None) -> ExtractionPayload:
        ...


def _strip_fences(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```\w*\n?", "", raw)
        raw = re.sub(r"\n?```\s*$", "", raw)
    return raw


def parse_extraction_response(raw: str) -> ExtractionPayload:
    """Validate raw model output against the payload schema. Violations are not retried."""
    try:
        return ExtractionPayload.model_validate_json(_strip_fences(raw))
    except SchemaValidationError as e:
        raise ExtractionServiceError(f"Extraction response violates schema: {e.error_count()} error(s)") from e


def _translate_openai_error(e: Exception) -> ExtractionServiceError:
    # APITimeoutError subclasses APIConnectionError; check it first for the message
    if isinstance(e, openai.APITimeoutError):
        return ExtractionServiceError(f"Extraction service timed out: {e}", retryable=True)
    if isinstance(e, openai.APIConnectionError):
        return ExtractionServiceError(f"Extraction service unreachable: {e}", retryable=True)
    if isinstance(e, openai.RateLimitError):
        return ExtractionServiceError(f"Extraction service rate limited: {e}", retryable=True, rate_limited=True)
    if isinstance(e, openai.InternalServerError):
        return ExtractionServiceError(f"Extraction service error: {e}", retryable=True)
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ExtractionServiceError(f"Extraction service rejected credentials: {e}")
    if isinstance(e, openai.BadRequestError):
        return ExtractionServiceError(f"Extraction request rejected: {e}")
    if isinstance(e, openai.APIStatusError):
        return ExtractionServiceError(f"Extraction service returned {e.status_code}: {e}", retryable=e.status_code >= 500)
    return ExtractionServiceError(f"Extraction failed: {e}")


def _is_retryable(e: BaseException) -> bool:
    return isinstance(e, ExtractionServiceError) and e.retryable


class OpenAIExtractionClient:
    """Structured extraction via OpenAI chat completions with a JSON-schema response format."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = OPENAI_EXTRACTION_MODEL,
        timeout: float = EXTRACTION_TIMEOUT_S,
        max_attempts: int = EXTRACTION_MAX_ATTEMPTS,
        retry_wait: float = 1.0,
        client=None,
        use_cache: bool = True,
    ):
        if client is None:
            api_key = api_key or os.environ.get("OPENAI_API_KEY")
            if not api_key or not str(api_key).strip():
                raise ValueError("OPENAI_API_KEY not configured")
            # Retries are driven by tenacity below, not by the SDK
            client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client
        self.model = model
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_wait = retry_wait
        self.use_cache = use_cache

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, min=0, max=8),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _call_once(self, text: str, source_type: Optional[SourceType]) -> ExtractionPayload:
        kind = source_type.value.upper() if source_type else "LV"
        t0 = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"{kind}-Dokument:\n---\n{text}\n---"},
                ],
                temperature=0.1,
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "lv_extraction", "schema": EXTRACTION_SCHEMA},
                },
                timeout=self.timeout,
            )
        except openai.OpenAIError as e:
            err = _translate_openai_error(e)
            logger.warning("[extract] LLM call failed model=%s retryable=%s error=%s", self.model, err.retryable, e)
            raise err from e
        logger.info("[extract] LLM call duration=%.2fs model=%s", time.perf_counter() - t0, self.model)

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            raise ExtractionServiceError("Extraction service returned no content")
        return parse_extraction_response(content)

    def extract(self, text: str, source_type: Optional[SourceType] = None) -> ExtractionPayload:
        prepared, warnings = prepare_text_for_extraction(text)
        source_key = source_type.value if source_type else ""
        if self.use_cache:
            cached = get_cached_extraction(prepared, source_key, self.model)
            if cached is not None:
                logger.info("[extract] cache hit model=%s", self.model)
                return ExtractionPayload.model_validate(cached)

        payload = self._retrying()(self._call_once, prepared, source_type)
        if warnings:
            payload = payload.model_copy(update={"warnings": warnings + payload.warnings})
        if self.use_cache:
            set_cached_extraction(prepared, source_key, self.model, payload.model_dump(mode="json"))
        return payload


# ---- Deterministic line parser ----

_UNITS = r"m²|m2|m³|m3|qm|cbm|lfdm|lfm|Stück|Stk\.?|St\.?|psch\.?|pauschal|Std\.?|h|kg|t|l|m"
_NUM = r"\d{1,3}(?:\.\d{3})+(?:,\d+)?|\d+(?:[.,]\d+)?"

_RE_LINE = re.compile(r"^(?:Pos(?:ition)?\.?\s*)?(?P<code>\d{1,4}(?:\.\d{1,4}){0,3})[:.)]?\s+(?P<body>\S.*)$", re.I)
_RE_QTY_UNIT = re.compile(rf"(?P<qty>{_NUM})\s*(?P<unit>{_UNITS})(?![\w/])", re.I)
_RE_PRICE = re.compile(rf"(?P<price>{_NUM})\s*(?:EUR|€)(?:\s*/\s*(?P<per>{_UNITS}))?", re.I)
_RE_UNIT_CELL = re.compile(rf"^(?:{_UNITS})$", re.I)
_RE_NUM_CELL = re.compile(rf"^(?:{_NUM})(?:\s*(?:EUR|€))?$", re.I)
_RE_CODE_CELL = re.compile(r"^\d{1,4}(?:\.\d{1,4}){0,3}\.?$")

_RE_META = [
    ("project_number", re.compile(r"\b(?:Projekt-?Nr\.?|Projektnummer|Angebots?-?Nr\.?)\s*:?\s*(\S+)", re.I)),
    ("project_name", re.compile(r"\b(?:Projekt(?:name)?|Bauvorhaben|BV)\s*:\s*(.+)", re.I)),
    ("client", re.compile(r"\b(?:Kunde|Auftraggeber|Bauherr)\s*:\s*(.+)", re.I)),
    ("date", re.compile(r"\bDatum\s*:\s*(\d{1,2}\.\d{1,2}\.\d{2,4})", re.I)),
]


def parse_german_number(s: str) -> Optional[float]:
    """'1.234,56' -> 1234.56, '12,5' -> 12.5, '8.5' -> 8.5, '1.500' -> 1500.0."""
    s = (s or "").strip().replace(" ", "").replace("€", "").replace("EUR", "")
    if not s:
        return None
    if "," in s:
        s = s.replace(".", "").replace(",", ".")
    elif s.count(".") == 1 and len(s.split(".")[1]) != 3:
        pass
    else:
        s = s.replace(".", "")
    try:
        return float(s)
    except ValueError:
        return None


def _clean_unit(unit: str) -> str:
    return unit.strip().rstrip(".")


def _clean_desc(s: str) -> str:
    return s.strip(" ,;:-=|\t")


class RegexExtractionClient:
    """Line-oriented parser for text-layer LVs, spreadsheet rows and GAEB item lines."""

    def extract(self, text: str, source_type: Optional[SourceType] = None) -> ExtractionPayload:
        t0 = time.perf_counter()
        prepared, warnings = prepare_text_for_extraction(text)
        metadata = self._metadata(prepared)
        positions: List[RawPosition] = []
        section: Optional[str] = None
        for line in prepared.splitlines():
            if " | " in line:
                raw = self._parse_row([c.strip() for c in line.split(" | ")])
            else:
                raw, heading = self._parse_line(line)
                if heading:
                    section = heading
                    continue
            if raw is None:
                continue
            if section and not raw.category:
                raw.category = section
            positions.append(raw)
        if not positions:
            warnings.append("No positions recognized in document text.")
        logger.info(
            "[extract] regex extraction duration=%.2fs positions=%d",
            time.perf_counter() - t0, len(positions),
        )
        return ExtractionPayload(positions=positions, metadata=metadata, warnings=warnings)

    def _metadata(self, text: str) -> DocumentMetadata:
        found = {}
        for line in text.splitlines()[:40]:
            for field, rx in _RE_META:
                m = rx.search(line)
                if m and field not in found:
                    found[field] = m.group(1).strip()
        return DocumentMetadata(**found)

    def _parse_line(self, line: str) -> tuple[Optional[RawPosition], Optional[str]]:
        """Returns (position, None) for an item line or (None, heading) for a section line."""
        m = _RE_LINE.match(line)
        if not m:
            return None, None
        code, body = m.group("code").rstrip("."), m.group("body")
        qty_matches = list(_RE_QTY_UNIT.finditer(body))
        price_m = None
        quantity = unit = None
        desc_end = len(body)
        if qty_matches:
            qm = qty_matches[-1]
            quantity = parse_german_number(qm.group("qty"))
            unit = _clean_unit(qm.group("unit"))
            desc_end = qm.start()
            price_m = _RE_PRICE.search(body, qm.end())
        else:
            price_m = _RE_PRICE.search(body)
            if price_m:
                desc_end = price_m.start()
                if price_m.group("per"):
                    unit = _clean_unit(price_m.group("per"))
        unit_price = parse_german_number(price_m.group("price")) if price_m else None

        desc = _clean_desc(body[:desc_end])
        if not desc and qty_matches:
            rest = body[qty_matches[-1].end():]
            desc = _clean_desc(_RE_PRICE.sub("", rest))
        if unit is None and unit_price is None and "." not in code:
            # "01 Gerüstarbeiten": section heading
            return None, desc or None
        if unit is None and unit_price is None and not desc:
            return None, None
        return RawPosition(code=code, title=desc, description=desc, unit=unit,
                           quantity=quantity, unit_price=unit_price), None

    def _parse_row(self, cells: List[str]) -> Optional[RawPosition]:
        unit_idx = next((i for i, c in enumerate(cells) if _RE_UNIT_CELL.match(c)), None)
        if unit_idx is None:
            return None
        code = cells[0].rstrip(".") if unit_idx > 1 and _RE_CODE_CELL.match(cells[0]) else None
        text_cells = [
            c for i, c in enumerate(cells[:unit_idx])
            if not _RE_NUM_CELL.match(c) and not (i == 0 and code)
        ]
        if not text_cells:
            return None
        desc = max(text_cells, key=len)
        before = cells[unit_idx - 1] if unit_idx > 0 else ""
        quantity = parse_german_number(before) if _RE_NUM_CELL.match(before) else None
        unit_price = None
        for c in cells[unit_idx + 1:]:
            if _RE_NUM_CELL.match(c):
                unit_price = parse_german_number(c)
                break
        return RawPosition(code=code, title=text_cells[0], description=desc,
                           unit=_clean_unit(cells[unit_idx]), quantity=quantity, unit_price=unit_price)


def get_extraction_backend() -> ExtractionBackend:
    """OpenAI client when OPENAI_API_KEY is set, otherwise the deterministic parser."""
    api_key = os.environ.get("OPENAI_API_KEY")
    if api_key and str(api_key).strip():
        return OpenAIExtractionClient(api_key=api_key)
    logger.warning("[extract] OPENAI_API_KEY not configured; using regex extraction")
    return RegexExtractionClient()
