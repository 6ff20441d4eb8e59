"""Tests for file type detection and text extraction from spreadsheets and GAEB files."""
from io import BytesIO

import pytest
from openpyxl import Workbook

from models import SourceType
from text_extract import MAX_UPLOAD_BYTES, detect_source_type, extract_text, normalize_text


@pytest.mark.parametrize("filename,expected", [
    ("LV_Bad.pdf", SourceType.PDF),
    ("angebot.XLSX", SourceType.SPREADSHEET),
    ("preise.csv", SourceType.SPREADSHEET),
    ("ausschreibung.x83", SourceType.GAEB),
    ("ausschreibung.x81", SourceType.GAEB),
    ("alt.d83", SourceType.GAEB),
])
def test_detect_source_type(filename, expected):
    assert detect_source_type(filename) == expected


def test_unsupported_file_type_rejected():
    with pytest.raises(ValueError):
        detect_source_type("brief.docx")
    with pytest.raises(ValueError):
        detect_source_type("ohne_endung")


def test_normalize_text_collapses_whitespace():
    raw = "01.001  Fliesen\t verlegen \r\n\r\n\r\n\r\n02.001 Putz"
    assert normalize_text(raw) == "01.001 Fliesen verlegen\n\n02.001 Putz"


def test_xlsx_rows_become_pipe_lines():
    wb = Workbook()
    ws = wb.active
    ws.append(["Pos", "Beschreibung", "Menge", "Einheit", "EP", "GP"])
    ws.append([1, "Fliesen entfernen", 25, "m²", 15.5, 387.5])
    ws.append([None, None, None, None, None, None])
    buf = BytesIO()
    wb.save(buf)

    text, source_type = extract_text("angebot.xlsx", buf.getvalue())

    assert source_type == SourceType.SPREADSHEET
    assert text.splitlines() == [
        "Pos | Beschreibung | Menge | Einheit | EP | GP",
        "1 | Fliesen entfernen | 25 | m² | 15,50 | 387,50",
    ]


def test_csv_semicolons_become_pipes():
    data = "Pos;Beschreibung;Menge\n1;Fliesen entfernen;25\n".encode("utf-8")
    text, _ = extract_text("preise.csv", data)
    assert "1 | Fliesen entfernen | 25" in text


def test_legacy_xls_rejected():
    with pytest.raises(ValueError):
        extract_text("alt.xls", b"\xd0\xcf\x11\xe0")


def test_legacy_xls_rejected_at_detection():
    with pytest.raises(ValueError, match="save as .xlsx"):
        detect_source_type("Angebot_2019.XLS")


GAEB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<GAEB xmlns="http://www.gaeb.de/GAEB_DA_XML/DA83/3.2">
  <PrjInfo><NamePrj>SAN-5</NamePrj><LblPrj>Sanierung Musterstraße</LblPrj></PrjInfo>
  <Award><BoQ><BoQBody>
    <BoQCtgy RNoPart="01">
      <LblTx><p><span>Gerüstarbeiten</span></p></LblTx>
      <BoQBody><Itemlist>
        <Item RNoPart="001">
          <Qty>350.000</Qty><QU>m2</QU>
          <Description><CompleteText>
            <OutlineText><OutlTxt><TextOutlTxt><span>Fassadengerüst stellen</span></TextOutlTxt></OutlTxt></OutlineText>
          </CompleteText></Description>
        </Item>
        <Item RNoPart="002">
          <Qty>4.000</Qty><QU>Wo</QU><UP>120.50</UP>
          <Description><CompleteText>
            <OutlineText><OutlTxt><TextOutlTxt><span>Gerüst vorhalten</span></TextOutlTxt></OutlTxt></OutlineText>
          </CompleteText></Description>
        </Item>
      </Itemlist></BoQBody>
    </BoQCtgy>
  </BoQBody></BoQ></Award>
</GAEB>"""


def test_gaeb_xml_items_become_lines():
    text, source_type = extract_text("lv.x83", GAEB_XML.encode("utf-8"))
    assert source_type == SourceType.GAEB
    lines = text.splitlines()
    assert lines[0] == "Projekt: Sanierung Musterstraße"
    assert "01 Gerüstarbeiten" in lines
    assert "01.001 Fassadengerüst stellen 350,000 m2" in lines
    assert "01.002 Gerüst vorhalten 4,000 Wo 120,50 EUR/Wo" in lines


def test_gaeb_malformed_xml_rejected():
    with pytest.raises(ValueError):
        extract_text("lv.x83", b"<GAEB><Award>")


def test_gaeb90_text_passed_through():
    data = "00 Leistungsverzeichnis Sanierung\n01.001 Putz ausbessern 12 m2".encode("cp1252")
    text, _ = extract_text("alt.d83", data)
    assert "01.001 Putz ausbessern 12 m2" in text


def test_oversized_upload_rejected():
    with pytest.raises(ValueError):
        extract_text("gross.pdf", b"0" * (MAX_UPLOAD_BYTES + 1))
