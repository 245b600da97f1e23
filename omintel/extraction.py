# omintel/extraction.py
"""
PDF text extraction for LLM context:
 - read pages strictly in order, at most ``max_pages`` of them
 - stop after the page where the cumulative character count reaches
   ``max_chars`` (checked first) or where 80% of the financial keyword
   categories have been seen across the pages read so far
 - clamp the final text to ``max_chars``, truncation marker included
 - emit one progress event per page so callers can stream it

Extraction is pure: the same bytes and limits give the same text.
"""
import io
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pypdf import PdfReader

from omintel.errors import ExtractionError

logger = logging.getLogger(__name__)

MAX_PAGES = 10
MAX_CHARS = 100_000
EARLY_EXIT_RATIO = 0.8

FINANCIAL_KEYWORDS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("noi", re.compile(r"\b(noi|net\s+operating\s+income)\b", re.I)),
    ("cap_rate", re.compile(r"\b(cap\s+rate|capitalization\s+rate)\b", re.I)),
    ("rent_roll", re.compile(r"\b(rent\s+roll)\b", re.I)),
    ("financial_highlights", re.compile(r"\b(financial\s+(highlights|summary))\b", re.I)),
    ("income_statement", re.compile(r"\b(income\s+statement)\b", re.I)),
    ("cash_flow", re.compile(r"\b(cash\s+flow)\b", re.I)),
    ("returns_analysis", re.compile(r"\b(returns?\s+analysis)\b", re.I)),
    ("irr", re.compile(r"\b(irr|internal\s+rate\s+of\s+return)\b", re.I)),
]

STOP_PAGES_EXHAUSTED = "pages_exhausted"
STOP_CHARACTER_LIMIT = "character_limit"
STOP_FOUND_ALL_SECTIONS = "found_all_sections"

# Tunable params for chunk counting (rough: 4 chars per token, 0.75 words per token)
CHUNK_TOKENS = 15000
CHUNK_OVERLAP_TOKENS = 500
WORDS_PER_TOKEN = 0.75


def truncation_marker(max_chars: int) -> str:
    return f"\n\n[Content truncated at {max_chars} character limit]"


def clamp_text(text: str, max_chars: int) -> Tuple[str, bool]:
    """Return (text, truncated); the result, marker included, never exceeds max_chars.

    The marker is only guaranteed to survive when max_chars >= len(truncation_marker(max_chars));
    Settings enforces that for EXTRACTION_MAX_CHARS.
    """
    if len(text) <= max_chars:
        return text, False
    marker = truncation_marker(max_chars)
    keep = max(0, max_chars - len(marker))
    return (text[:keep] + marker)[:max_chars], True


def match_keywords(text: str) -> List[str]:
    return [name for name, pattern in FINANCIAL_KEYWORDS if pattern.search(text)]


@dataclass
class ExtractionResult:
    text: str
    total_pages: int
    pages_processed: int
    characters: int                  # raw page characters, before framing/clamping
    sections_found: List[str] = field(default_factory=list)
    stop_reason: str = STOP_PAGES_EXHAUSTED
    truncated: bool = False


def open_pdf(data: bytes) -> PdfReader:
    if not data:
        raise ExtractionError("PDF file is empty")
    if b"%PDF-" not in data[:1024]:
        raise ExtractionError("File is not a PDF document")
    try:
        reader = PdfReader(io.BytesIO(data))
        # force the page tree to load so corrupt files fail here
        len(reader.pages)
    except Exception as e:
        raise ExtractionError(f"Failed to parse PDF content: {e}") from e
    return reader


def _page_text(reader: PdfReader, page_num: int) -> str:
    """
    Text of a 1-based page, whitespace-normalized. An unreadable page fails
    the whole extraction; no partial text is kept.
    """
    try:
        text = reader.pages[page_num - 1].extract_text() or ""
    except Exception as e:
        logger.error("Failed to extract text from page %s: %s", page_num, e)
        raise ExtractionError(f"Failed to extract text from page {page_num}: {e}") from e
    return " ".join(text.split())


class PdfTextExtraction:
    """
    Iterate to run the extraction page by page; each item is an event dict
    (``start``, ``progress``, ``limit_reached``, ``early_exit``). After the
    iterator is exhausted ``result`` holds the ExtractionResult.
    """

    def __init__(self, data: bytes, max_pages: int = MAX_PAGES, max_chars: int = MAX_CHARS):
        self.data = data
        self.max_pages = max_pages
        self.max_chars = max_chars
        self.result: Optional[ExtractionResult] = None

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return self._run()

    def _run(self) -> Iterator[Dict[str, Any]]:
        reader = open_pdf(self.data)
        total_pages = len(reader.pages)
        pages_to_process = min(total_pages, self.max_pages)
        yield {"type": "start", "totalPages": total_pages, "pagesToProcess": pages_to_process}

        parts: List[str] = []
        total_chars = 0
        found: List[str] = []
        stop_reason = STOP_PAGES_EXHAUSTED
        pages_processed = 0

        for page_num in range(1, pages_to_process + 1):
            page_text = _page_text(reader, page_num)
            pages_processed = page_num

            page_keywords = match_keywords(page_text)
            for name in page_keywords:
                if name not in found:
                    found.append(name)

            parts.append(f"\n--- Page {page_num} ---\n{page_text}\n")
            total_chars += len(page_text)

            yield {
                "type": "progress",
                "page": page_num,
                "totalPages": pages_to_process,
                "charactersExtracted": total_chars,
                "keywordsFound": page_keywords,
                "totalKeywordsFound": list(found),
            }

            if total_chars >= self.max_chars:
                stop_reason = STOP_CHARACTER_LIMIT
                yield {"type": "limit_reached", "page": page_num, "reason": stop_reason}
                break
            if len(found) >= len(FINANCIAL_KEYWORDS) * EARLY_EXIT_RATIO:
                stop_reason = STOP_FOUND_ALL_SECTIONS
                yield {"type": "early_exit", "page": page_num, "reason": stop_reason}
                break

        text, truncated = clamp_text("".join(parts), self.max_chars)
        self.result = ExtractionResult(
            text=text,
            total_pages=total_pages,
            pages_processed=pages_processed,
            characters=total_chars,
            sections_found=found,
            stop_reason=stop_reason,
            truncated=truncated,
        )
        logger.info(
            "Extracted %d chars from %d/%d pages (stop=%s, sections=%s)",
            len(text), pages_processed, total_pages, stop_reason, ",".join(found) or "-",
        )


def extract_text(data: bytes, max_pages: int = MAX_PAGES, max_chars: int = MAX_CHARS,
                 on_event: Optional[Callable[[Dict[str, Any]], None]] = None) -> ExtractionResult:
    extraction = PdfTextExtraction(data, max_pages=max_pages, max_chars=max_chars)
    for event in extraction:
        if on_event is not None:
            on_event(event)
    return extraction.result


def assess_text_quality(text: str) -> Tuple[int, Optional[str]]:
    """
    Score 0-100 from letter ratio, word density, sentence structure and digits.
    Returns (quality, reason) where reason explains a low score, else None.
    """
    if not text or len(text) < 50:
        return 0, "Text too short"

    total_chars = len(text)
    letters = len(re.findall(r"[a-zA-Z]", text))
    words = len(re.findall(r"\b[a-zA-Z]{2,}\b", text))
    sentences = len(re.findall(r"[.!?]+", text))
    digits = len(re.findall(r"\d", text))

    letter_ratio = letters / total_chars
    word_density = words / (total_chars / 100)
    has_structure = sentences > 0 and words > sentences * 3

    quality = letter_ratio * 40
    quality += min(word_density * 2, 30)
    quality += 20 if has_structure else 0
    quality += min((digits / total_chars) * 100, 10)
    quality = int(round(quality))

    if letter_ratio < 0.3:
        return quality, "Too few alphabetic characters"
    if words < 20:
        return quality, "Too few words detected"
    if quality < 40:
        return quality, "Overall quality score too low"
    return quality, None


def chunk_text(text: str, max_tokens: int = CHUNK_TOKENS, overlap: int = CHUNK_OVERLAP_TOKENS) -> List[str]:
    """
    Sliding word window sized for an LLM context.
    """
    words = text.split()
    if not words:
        return []
    words_per_chunk = max(1, int(max_tokens * WORDS_PER_TOKEN))
    step = max(1, words_per_chunk - int(overlap * WORDS_PER_TOKEN))

    chunks: List[str] = []
    start = 0
    while start < len(words):
        chunks.append(" ".join(words[start:start + words_per_chunk]))
        if start + words_per_chunk >= len(words):
            break
        start += step
    return chunks
