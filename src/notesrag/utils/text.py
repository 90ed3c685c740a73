"""Text helpers: section-aware chunking and lexical scoring."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Mapping, Sequence

from notesrag.errors import ConfigurationError
from notesrag.models import Chunk

CHUNK_MAX_CHARS = 2200
CHUNK_OVERLAP_CHARS = 200
CHUNKING_VERSION = "v1"

_HEADING_RE = re.compile(r"^(#{1,6}\s+|chapter\s+\d+[:\s])", re.IGNORECASE)
_LINE_SPLIT_RE = re.compile(r"\r?\n")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class Lexicon:
    """Domain synonym groups and per-section retrieval hints."""

    synonyms: Mapping[str, tuple[str, ...]]
    section_hints: Mapping[str, str]

    @classmethod
    def from_dict(cls, data: Mapping) -> "Lexicon":
        synonyms = {
            str(key).lower(): tuple(str(term).lower() for term in terms)
            for key, terms in dict(data.get("synonyms") or {}).items()
        }
        hints = {str(key): str(value) for key, value in dict(data.get("section_hints") or {}).items()}
        return cls(synonyms=MappingProxyType(synonyms), section_hints=MappingProxyType(hints))


def load_lexicon(path: Path | None = None) -> Lexicon:
    """Load a lexicon from ``path`` or the packaged default."""
    if path is None:
        return default_lexicon()
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot load lexicon {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Lexicon {path} must be a JSON object")
    return Lexicon.from_dict(data)


@lru_cache(maxsize=1)
def default_lexicon() -> Lexicon:
    raw = resources.files("notesrag").joinpath("data/lexicon.json").read_text(encoding="utf-8")
    return Lexicon.from_dict(json.loads(raw))


def preview_text(text: str, length: int = 120) -> str:
    return _WHITESPACE_RE.sub(" ", text or "")[:length]


def split_into_sections(text: str) -> List[str]:
    """Split text at markdown headings and ``Chapter N`` lines.

    A heading only opens a new section when the current one already has lines,
    so a document starting with a heading does not yield an empty first section.
    """
    sections: List[str] = []
    current: List[str] = []

    for line in _LINE_SPLIT_RE.split(text or ""):
        if _HEADING_RE.match(line.strip()) and current:
            sections.append("\n".join(current))
            current = [line]
            continue
        current.append(line)

    if current:
        sections.append("\n".join(current))

    return [section for section in sections if section.strip()]


def split_long_section(
    text: str,
    max_chars: int = CHUNK_MAX_CHARS,
    overlap_chars: int = CHUNK_OVERLAP_CHARS,
) -> List[str]:
    """Split text into overlapping windows, preferring paragraph breaks.

    A window is snapped back to just after the last blank line when that break
    lies past the window's midpoint.
    """
    text = text or ""
    parts: List[str] = []
    start = 0
    length = len(text)

    while start < length:
        end = min(length, start + max_chars)

        if end < length:
            paragraph_break = text.rfind("\n\n", start, end)
            if paragraph_break > start + max_chars // 2:
                end = paragraph_break + 2

        parts.append(text[start:end])

        if end >= length:
            break

        start = max(start + 1, end - overlap_chars)

    return parts


def build_chunks_from_text(
    *,
    text: str,
    prefix: str,
    source_name: str,
    source_path: str,
    max_chars: int = CHUNK_MAX_CHARS,
    overlap_chars: int = CHUNK_OVERLAP_CHARS,
) -> List[Chunk]:
    """Chunk a whole document; ordinals run across sections."""
    chunks: List[Chunk] = []
    index = 1
    for section in split_into_sections(text):
        for part in split_long_section(section, max_chars, overlap_chars):
            if not part.strip():
                continue
            chunks.append(
                Chunk(
                    id=f"{prefix}:{index}",
                    source_name=source_name,
                    source_path=source_path,
                    text=part,
                )
            )
            index += 1
    return chunks


def to_tokens(value: str) -> List[str]:
    """Lowercased unique alphanumeric tokens of three or more characters."""
    cleaned = _NON_ALNUM_RE.sub(" ", (value or "").lower())
    tokens = (token.strip() for token in _WHITESPACE_RE.split(cleaned))
    return list(dict.fromkeys(token for token in tokens if len(token) >= 3))


def build_topic_terms(topic: str, lexicon: Lexicon | None = None) -> List[str]:
    """Expand a topic into search terms using synonyms and naive singulars."""
    lexicon = lexicon or default_lexicon()
    terms = dict.fromkeys(to_tokens(topic))

    for token in list(terms):
        for synonym in lexicon.synonyms.get(token, ()):
            terms.setdefault(synonym)
        if token.endswith("s") and len(token) > 4:
            terms.setdefault(token[:-1])

    topic_lower = (topic or "").lower()
    for key, synonyms in lexicon.synonyms.items():
        if key in topic_lower:
            terms.setdefault(key)
            for synonym in synonyms:
                terms.setdefault(synonym)

    return list(terms)


def lexical_score(text: str, terms: Iterable[str]) -> int:
    """Count term hits; terms of six or more characters weigh 3, others 1."""
    lower = (text or "").lower()
    score = 0
    for term in terms:
        if term and term in lower:
            score += 3 if len(term) >= 6 else 1
    return score


def normalize_min_max(values: Sequence[float]) -> List[float]:
    """Rescale finite values to [0, 1]; degenerate inputs map to zeros."""
    finite = [float(v) for v in values if _is_finite(v)]
    if not finite:
        return [0.0 for _ in values]

    low, high = min(finite), max(finite)
    if low == high:
        return [0.0 for _ in values]

    span = high - low
    return [(float(v) - low) / span if _is_finite(v) else 0.0 for v in values]


def _is_finite(value: float) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False
