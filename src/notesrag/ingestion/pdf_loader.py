"""PDF page extraction with OCR fallback, plus page-level chunking.

Uses PyMuPDF (fitz) for text extraction and its Tesseract bridge for OCR.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, List

import fitz  # PyMuPDF

from notesrag.models import Chunk, PageText
from notesrag.utils.text import CHUNK_MAX_CHARS, CHUNK_OVERLAP_CHARS, split_long_section

LOGGER = logging.getLogger(__name__)

OCR_MIN_CHARS = 120
OCR_MIN_ALPHA_RATIO = 0.35
OCR_DPI = 300
SUMMARY_MAX_CHARS = 7000
SUMMARY_PAGE_CHARS = 600

_WHITESPACE_RE = re.compile(r"\s+")
_ALPHA_RE = re.compile(r"[a-z]", re.IGNORECASE)


def alpha_char_ratio(text: str) -> float:
    """Share of ASCII letters among non-whitespace characters."""
    compact = _WHITESPACE_RE.sub("", text or "")
    if not compact:
        return 0.0
    return len(_ALPHA_RE.findall(compact)) / len(compact)


def should_ocr_page(policy: str, text: str) -> bool:
    if policy == "off":
        return False
    if policy == "always":
        return True
    trimmed = (text or "").strip()
    return len(trimmed) < OCR_MIN_CHARS or alpha_char_ratio(trimmed) < OCR_MIN_ALPHA_RATIO


def merge_extracted_and_ocr_text(extracted: str, ocr: str) -> str:
    """Combine native and OCR text for one page.

    OCR output replaces native text when it is at least 1.5x longer; otherwise
    the two are merged line by line without case-insensitive duplicates.
    """
    extracted = (extracted or "").strip()
    ocr = (ocr or "").strip()
    if not extracted:
        return ocr
    if not ocr:
        return extracted
    if len(ocr) >= len(extracted) * 1.5:
        return ocr

    seen: set[str] = set()
    merged: List[str] = []
    for line in f"{extracted}\n{ocr}".splitlines():
        key = line.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(line.strip())
    return "\n".join(merged)


def _ocr_page(page: "fitz.Page") -> str:
    textpage = page.get_textpage_ocr(dpi=OCR_DPI, full=True)
    return page.get_text(textpage=textpage) or ""


def extract_pdf_pages(path: Path, *, ocr_policy: str = "smart") -> List[PageText]:
    """Extract per-page text, running OCR on pages the policy selects.

    Raises whatever PyMuPDF raises when the file cannot be opened; OCR failures
    on individual pages are logged and leave the native text in place.
    """
    pages: List[PageText] = []
    doc = fitz.open(path)
    try:
        for index in range(len(doc)):
            page = doc[index]
            page_number = index + 1
            extracted = page.get_text() or ""
            final_text = extracted
            ocr_applied = False

            if should_ocr_page(ocr_policy, extracted):
                try:
                    final_text = merge_extracted_and_ocr_text(extracted, _ocr_page(page))
                    ocr_applied = True
                except Exception as exc:
                    LOGGER.warning("OCR failed on %s page %s: %s", path.name, page_number, exc)

            pages.append(
                PageText(
                    page_number=page_number,
                    text=final_text.strip(),
                    extracted_chars=len(extracted.strip()),
                    final_chars=len(final_text.strip()),
                    ocr_applied=ocr_applied,
                )
            )
    finally:
        doc.close()
    return pages


def build_page_chunks(
    *,
    file_name: str,
    source_path: str,
    pages: Iterable[PageText],
    max_chars: int = CHUNK_MAX_CHARS,
    overlap_chars: int = CHUNK_OVERLAP_CHARS,
) -> List[Chunk]:
    """Chunk each page separately; part ordinals restart on every page."""
    chunks: List[Chunk] = []
    for page in pages:
        if not page.text.strip():
            continue
        parts = split_long_section(page.text, max_chars, overlap_chars)
        for part_index, part in enumerate(parts, start=1):
            if not part.strip():
                continue
            chunks.append(
                Chunk(
                    id=f"slide:{file_name}:p{page.page_number}:{part_index}",
                    source_name=file_name,
                    source_path=source_path,
                    text=part,
                )
            )
    return chunks


def build_pdf_summary(
    *, file_name: str, pages: Iterable[PageText], max_chars: int = SUMMARY_MAX_CHARS
) -> str:
    """File header plus a leading snippet of each page, capped at ``max_chars``."""
    summary = f"File: {file_name}"
    for page in pages:
        flat = _WHITESPACE_RE.sub(" ", page.text or "").strip()
        if not flat:
            continue
        candidate = f"{summary}\nPage {page.page_number}: {flat[:SUMMARY_PAGE_CHARS]}"
        if len(candidate) > max_chars:
            break
        summary = candidate
    return summary
