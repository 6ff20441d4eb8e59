"""
Text extraction adapter: uploaded PDF, spreadsheet or GAEB file -> normalized plain text.

PDF via pypdf, XLSX via openpyxl, GAEB DA XML (.x81-.x86) via ElementTree.
Older GAEB 90 exchange files (.d8x/.p8x) are already fixed-width text.
"""
from __future__ import annotations

import logging
import re
import time
import unicodedata
import xml.etree.ElementTree as ET
from io import BytesIO
from typing import BinaryIO, List

from openpyxl import load_workbook
from pypdf import PdfReader

from models import SourceType

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
# Below this many characters there is nothing worth sending to extraction
MIN_TEXT_CHARS = 50

_GAEB_EXT = re.compile(r"^[xdp]8\d$")
_MULTI_SPACE = re.compile(r"[ \t\u00a0\u2009\u202f]+")
_MULTI_BLANK = re.compile(r"\n{3,}")


def detect_source_type(filename: str) -> SourceType:
    """Map a filename extension to its source type. Raises ValueError for unsupported files."""
    ext = filename.lower().rsplit(".", 1)[-1] if "." in filename else ""
    if ext == "pdf":
        return SourceType.PDF
    if ext == "xls":
        raise ValueError("Legacy .xls files are not supported; please save as .xlsx")
    if ext in ("xlsx", "xlsm", "csv"):
        return SourceType.SPREADSHEET
    if _GAEB_EXT.match(ext):
        return SourceType.GAEB
    raise ValueError(f"Unsupported file type: .{ext or '?'} (PDF, Excel or GAEB expected)")


def normalize_text(text: str) -> str:
    """NFC-normalize, unify line endings, collapse runs of blanks and empty lines."""
    if not text:
        return ""
    t = unicodedata.normalize("NFC", text)
    t = t.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    lines = [_MULTI_SPACE.sub(" ", ln).strip() for ln in t.split("\n")]
    t = "\n".join(lines)
    t = _MULTI_BLANK.sub("\n\n", t)
    return t.strip()


def extract_text_from_pdf(file: BinaryIO) -> str:
    """Extract raw text from a PDF using pypdf."""
    reader = PdfReader(file)
    parts = []
    for page in reader.pages:
        text = page.extract_text()
        if text:
            parts.append(text)
    return "\n\n".join(parts) if parts else ""


def _cell_to_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:.2f}".replace(".", ",")
    return str(value).strip()


def extract_text_from_spreadsheet(file: BinaryIO, filename: str = "") -> str:
    """One line per non-empty row, cells joined with ' | '."""
    if filename.lower().endswith(".csv"):
        return file.read().decode("utf-8-sig", errors="replace").replace(";", " | ")
    try:
        wb = load_workbook(file, read_only=True, data_only=True)
    except Exception as e:
        raise ValueError(f"Failed to read spreadsheet: {e}") from e
    lines: List[str] = []
    try:
        for ws in wb.worksheets:
            for row in ws.iter_rows(values_only=True):
                cells = [_cell_to_text(v) for v in row]
                if any(cells):
                    lines.append(" | ".join(c for c in cells if c))
    finally:
        wb.close()
    return "\n".join(lines)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(el: ET.Element, name: str) -> ET.Element | None:
    for c in el:
        if _local(c.tag) == name:
            return c
    return None


def _all_text(el: ET.Element | None) -> str:
    if el is None:
        return ""
    return " ".join(t.strip() for t in el.itertext() if t and t.strip())


def _gaeb_item_line(item: ET.Element, prefix: List[str]) -> str:
    rno = ".".join(prefix + [item.get("RNoPart", "").strip()]).strip(".")
    desc = _child(item, "Description")
    short = ""
    long_text = ""
    if desc is not None:
        complete = _child(desc, "CompleteText")
        if complete is not None:
            short = _all_text(_child(complete, "OutlineText"))
            long_text = _all_text(_child(complete, "DetailTxt"))
        if not short:
            short = _all_text(_child(desc, "StLNo")) or _all_text(desc)
    qty = _all_text(_child(item, "Qty"))
    unit = _all_text(_child(item, "QU"))
    up = _all_text(_child(item, "UP"))
    text = short if not long_text or long_text.startswith(short) else f"{short} - {long_text}"
    parts = [p for p in (rno, text, qty and f"{qty.replace('.', ',')} {unit}".strip(), up and f"{up.replace('.', ',')} EUR/{unit}") if p]
    return " ".join(parts)


def _walk_gaeb(el: ET.Element, prefix: List[str], out: List[str]) -> None:
    for c in el:
        name = _local(c.tag)
        if name == "BoQCtgy":
            label = _all_text(_child(c, "LblTx"))
            next_prefix = prefix + [c.get("RNoPart", "").strip()]
            if label:
                out.append(f"{'.'.join(p for p in next_prefix if p)} {label}".strip())
            _walk_gaeb(c, next_prefix, out)
        elif name == "Item":
            out.append(_gaeb_item_line(c, [p for p in prefix if p]))
        else:
            _walk_gaeb(c, prefix, out)


def extract_text_from_gaeb(data: bytes) -> str:
    """GAEB DA XML -> one text line per BoQ item; GAEB 90 files are returned decoded."""
    head = data[:200].lstrip()
    if not head.startswith(b"<"):
        return data.decode("cp1252", errors="replace")
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise ValueError(f"Failed to parse GAEB XML: {e}") from e
    lines: List[str] = []
    project = root.find(".//{*}PrjInfo")
    if project is not None:
        name = _all_text(_child(project, "LblPrj")) or _all_text(_child(project, "NamePrj"))
        if name:
            lines.append(f"Projekt: {name}")
    _walk_gaeb(root, [], lines)
    return "\n".join(lines)


def extract_text(filename: str, data: bytes) -> tuple[str, SourceType]:
    """Decode an uploaded file to normalized plain text. Returns (text, source_type)."""
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValueError(f"File exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)}MB")
    source_type = detect_source_type(filename)
    t0 = time.perf_counter()
    if source_type == SourceType.PDF:
        raw = extract_text_from_pdf(BytesIO(data))
    elif source_type == SourceType.SPREADSHEET:
        raw = extract_text_from_spreadsheet(BytesIO(data), filename)
    elif source_type == SourceType.GAEB:
        raw = extract_text_from_gaeb(data)
    else:
        raise ValueError(f"Unsupported source type: {source_type}")
    text = normalize_text(raw)
    logger.info(
        "[extract] text extraction duration=%.2fs source=%s len=%d",
        time.perf_counter() - t0, source_type.value, len(text),
    )
    return text, source_type
