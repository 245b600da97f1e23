import pytest
from pypdf import PageObject

from omintel.errors import ExtractionError
from omintel.extraction import (
    FINANCIAL_KEYWORDS,
    STOP_CHARACTER_LIMIT,
    STOP_FOUND_ALL_SECTIONS,
    STOP_PAGES_EXHAUSTED,
    PdfTextExtraction,
    assess_text_quality,
    chunk_text,
    clamp_text,
    extract_text,
    match_keywords,
    truncation_marker,
)

from conftest import FINANCIAL_PAGE

FILLER = "abcdefghij" * 6


def _events(data, **kwargs):
    extraction = PdfTextExtraction(data, **kwargs)
    events = list(extraction)
    return events, extraction.result


def test_plain_document_reads_every_page(make_pdf):
    data = make_pdf(["Property overview", "Location and access", "Site plan"])

    events, result = _events(data)

    assert events[0] == {"type": "start", "totalPages": 3, "pagesToProcess": 3}
    assert [e["page"] for e in events if e["type"] == "progress"] == [1, 2, 3]
    assert not any(e["type"] in ("limit_reached", "early_exit") for e in events)
    assert result.stop_reason == STOP_PAGES_EXHAUSTED
    assert result.pages_processed == 3
    assert result.truncated is False
    assert "\n--- Page 1 ---\nProperty overview\n" in result.text
    assert "\n--- Page 3 ---\nSite plan\n" in result.text
    assert result.characters == len("Property overview") + len("Location and access") + len("Site plan")


def test_financial_first_page_exits_early(make_pdf):
    data = make_pdf([FINANCIAL_PAGE, "appendix", "photos"])

    events, result = _events(data)

    assert events[-1] == {"type": "early_exit", "page": 1, "reason": STOP_FOUND_ALL_SECTIONS}
    assert result.pages_processed == 1
    assert result.total_pages == 3
    assert "--- Page 2 ---" not in result.text
    assert len(result.sections_found) >= len(FINANCIAL_KEYWORDS) * 0.8


def test_progress_events_accumulate_keywords(make_pdf):
    data = make_pdf(["Rent roll summary", "Net operating income and cap rate", "nothing"])

    events, _ = _events(data)
    progress = [e for e in events if e["type"] == "progress"]

    assert progress[0]["keywordsFound"] == ["rent_roll"]
    assert set(progress[1]["keywordsFound"]) == {"noi", "cap_rate"}
    assert set(progress[2]["totalKeywordsFound"]) == {"rent_roll", "noi", "cap_rate"}
    assert progress[2]["keywordsFound"] == []
    assert all(p["totalPages"] == 3 for p in progress)
    assert progress[1]["charactersExtracted"] > progress[0]["charactersExtracted"]


def test_character_limit_stops_and_truncates(make_pdf):
    data = make_pdf([FILLER, FILLER, FILLER])

    events, result = _events(data, max_chars=100)

    assert events[-1] == {"type": "limit_reached", "page": 2, "reason": STOP_CHARACTER_LIMIT}
    assert result.pages_processed == 2
    assert result.truncated is True
    assert len(result.text) <= 100
    assert result.text.endswith(truncation_marker(100))


def test_character_limit_wins_over_early_exit(make_pdf):
    data = make_pdf([FINANCIAL_PAGE, "more"])

    events, result = _events(data, max_chars=50)

    assert events[-1]["type"] == "limit_reached"
    assert result.stop_reason == STOP_CHARACTER_LIMIT
    assert len(result.text) <= 50


def test_page_cap(make_pdf):
    data = make_pdf([f"page {n}" for n in range(1, 6)])

    events, result = _events(data, max_pages=2)

    assert events[0] == {"type": "start", "totalPages": 5, "pagesToProcess": 2}
    assert result.pages_processed == 2
    assert result.total_pages == 5
    assert result.stop_reason == STOP_PAGES_EXHAUSTED


def test_extraction_is_deterministic(make_pdf):
    data = make_pdf([FINANCIAL_PAGE, FILLER])

    first = extract_text(data)
    second = extract_text(data)

    assert first == second


def test_extract_text_reports_events(make_pdf):
    seen = []
    extract_text(make_pdf(["one", "two"]), on_event=seen.append)

    assert [e["type"] for e in seen] == ["start", "progress", "progress"]


def test_unreadable_page_fails_extraction(make_pdf, monkeypatch):
    def broken_page(self, *args, **kwargs):
        raise ValueError("bad content stream")

    monkeypatch.setattr(PageObject, "extract_text", broken_page)

    with pytest.raises(ExtractionError, match="Failed to extract text from page 1: bad content stream"):
        extract_text(make_pdf(["one", "two"]))


@pytest.mark.parametrize("data", [b"", b"hello, not a pdf", b"%PDF-1.4\nthis is garbage"])
def test_unreadable_input_raises(data):
    with pytest.raises(ExtractionError):
        extract_text(data)


def test_clamp_text():
    assert clamp_text("short", 100) == ("short", False)

    text, truncated = clamp_text("x" * 500, 120)
    assert truncated is True
    assert len(text) == 120
    assert text.endswith(truncation_marker(120))

    # limit smaller than the marker still honors the bound
    text, truncated = clamp_text("x" * 500, 10)
    assert truncated is True
    assert len(text) <= 10


def test_match_keywords():
    assert match_keywords("The IRR and the internal rate of return") == ["irr"]
    assert match_keywords("capitalization rate and cash flow") == ["cap_rate", "cash_flow"]
    assert match_keywords("squirrel") == []


def test_assess_text_quality():
    prose = ("The property generated net operating income of 1.2 million dollars last year. "
             "Occupancy has been stable above ninety percent for the past five years. "
             "The sponsor plans modest renovations to the common areas and lobby.")
    quality, reason = assess_text_quality(prose)
    assert reason is None
    assert quality >= 40

    assert assess_text_quality("tiny") == (0, "Text too short")
    _, reason = assess_text_quality("%$#@ 1234 5678 !!!! ???? ---- ==== ++++ //// \\\\ ;;;; :::: ''''")
    assert reason == "Too few alphabetic characters"


def test_chunk_text():
    assert chunk_text("") == []
    assert len(chunk_text("word " * 100)) == 1

    chunks = chunk_text(" ".join(str(n) for n in range(100)), max_tokens=40, overlap=8)
    # 30 words per chunk, stepping 24
    assert len(chunks) == 4
    assert chunks[0].split()[0] == "0"
    assert chunks[1].split()[0] == "24"
    assert chunks[-1].split()[-1] == "99"
