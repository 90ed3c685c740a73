"""Hybrid lexical + semantic ranking, balanced merging and context packing."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from notesrag.models import (
    Candidate,
    Chunk,
    ContextSelection,
    RankedSlideFile,
    RankedSource,
    SlideFile,
)
from notesrag.utils.text import (
    Lexicon,
    build_topic_terms,
    default_lexicon,
    lexical_score,
    normalize_min_max,
    preview_text,
)

LOGGER = logging.getLogger(__name__)

CHUNK_OVERHEAD_CHARS = 220

Vector = Sequence[float]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity of two equal-length, non-zero vectors."""
    left = np.asarray(a, dtype="float64")
    right = np.asarray(b, dtype="float64")
    if left.ndim != 1 or left.shape != right.shape:
        raise ValueError(f"Vector shapes differ: {left.shape} vs {right.shape}")
    denom = float(np.linalg.norm(left) * np.linalg.norm(right))
    if denom == 0.0:
        raise ValueError("Cosine similarity undefined for zero vector")
    return float(np.dot(left, right) / denom)


def _safe_similarity(query: Optional[Vector], vector: Optional[Vector]) -> float:
    if query is None or vector is None:
        return 0.0
    try:
        return cosine_similarity(query, vector)
    except (ValueError, TypeError) as exc:
        LOGGER.debug("Similarity failed, scoring 0: %s", exc)
        return 0.0


def _combine(
    lexical_raw: Sequence[float],
    semantic_raw: Sequence[float],
    lexical_weight: float,
    semantic_weight: float,
) -> List[float]:
    lexical_norm = normalize_min_max(lexical_raw)
    semantic_norm = normalize_min_max(semantic_raw)
    return [
        lexical_weight * lex + semantic_weight * sem
        for lex, sem in zip(lexical_norm, semantic_norm)
    ]


def build_section_query(topic: str, section_name: str, lexicon: Lexicon | None = None) -> str:
    """Topic plus a focus hint that steers retrieval toward one section."""
    lexicon = lexicon or default_lexicon()
    hint = lexicon.section_hints.get(section_name, section_name.lower())
    return f"{topic}\nSection: {section_name}\nFocus: {hint}"


def rank_slide_files_by_hybrid(
    *,
    topic: str,
    slide_files: Sequence[SlideFile],
    query_embedding: Optional[Vector],
    lexical_weight: float = 0.45,
    semantic_weight: float = 0.55,
    lexicon: Lexicon | None = None,
) -> List[RankedSlideFile]:
    terms = build_topic_terms(topic, lexicon)
    lexical_raw = [
        float(lexical_score(f"{file.file_name}\n{file.summary_text or ''}", terms))
        for file in slide_files
    ]
    semantic_raw = [_safe_similarity(query_embedding, file.summary_embedding) for file in slide_files]
    scores = _combine(lexical_raw, semantic_raw, lexical_weight, semantic_weight)

    ranked = [
        RankedSlideFile(file=file, lexical_score=lex, semantic_score=sem, score=score)
        for file, lex, sem, score in zip(slide_files, lexical_raw, semantic_raw, scores)
    ]
    ranked.sort(key=lambda item: (-item.score, item.file_name))
    return ranked


def rank_chunks_hybrid(
    *,
    query: str,
    chunks: Sequence[Chunk],
    embedding_by_id: Mapping[str, Vector],
    query_embedding: Optional[Vector],
    lexical_weight: float = 0.4,
    semantic_weight: float = 0.6,
    source_group: str = "",
    lexicon: Lexicon | None = None,
) -> List[Candidate]:
    terms = build_topic_terms(query, lexicon)
    lexical_raw = [float(lexical_score(chunk.text, terms)) for chunk in chunks]
    semantic_raw = [
        _safe_similarity(query_embedding, embedding_by_id.get(chunk.id)) for chunk in chunks
    ]
    scores = _combine(lexical_raw, semantic_raw, lexical_weight, semantic_weight)

    ranked: List[Candidate] = []
    for chunk, lex, sem, score in zip(chunks, lexical_raw, semantic_raw, scores):
        candidate = Candidate.from_chunk(chunk, source_group=source_group)
        candidate.lexical_score = lex
        candidate.semantic_score = sem
        candidate.score = score
        ranked.append(candidate)
    ranked.sort(key=lambda item: (-item.score, item.id))
    return ranked


def merge_source_balanced(
    *,
    ranked_sources: Iterable[RankedSource],
    per_source_cap: int = 12,
    candidate_limit: int = 60,
) -> List[Candidate]:
    """Cap each source group before a global re-sort so no group is crowded out."""
    merged: List[Candidate] = []
    for source in ranked_sources:
        merged.extend(
            replace(item, source_group=source.source_group)
            for item in source.items[:per_source_cap]
        )
    merged.sort(key=lambda item: (-item.score, item.id))
    return merged[:candidate_limit]


def assemble_section_context(
    *,
    selected_chunks: Sequence[Candidate],
    context_budget_chars: int = 28000,
    group_order: Sequence[str] | None = None,
    grouped_titles: Mapping[str, str] | None = None,
    overhead_chars: int = CHUNK_OVERHEAD_CHARS,
) -> ContextSelection:
    """Greedily pack chunks under the budget, skipping any that do not fit.

    Accepted chunks keep their relative order and are rendered grouped by
    source group; groups with nothing accepted are left out.
    """
    selected: List[Candidate] = []
    used_chars = 0
    for chunk in selected_chunks:
        estimated = len(chunk.text) + overhead_chars
        if used_chars + estimated > context_budget_chars:
            continue
        selected.append(chunk)
        used_chars += estimated

    order = list(group_order) if group_order is not None else []
    for chunk in selected:
        if chunk.source_group not in order:
            order.append(chunk.source_group)
    titles = grouped_titles or {}

    by_group: Dict[str, List[Candidate]] = {}
    for chunk in selected:
        by_group.setdefault(chunk.source_group, []).append(chunk)

    parts: List[str] = []
    for group in order:
        items = by_group.get(group)
        if not items:
            continue
        parts.append(titles.get(group, f"### {group}"))
        for item in items:
            parts.append(f"#### [{item.id}] Source: {item.source_name}\n{item.text}")

    return ContextSelection(context_text="\n\n".join(parts), used_chars=used_chars, selected=selected)


def summarize_candidate_preview(candidates: Sequence[Candidate], limit: int = 5) -> List[dict]:
    return [
        {
            "id": candidate.id,
            "source": candidate.source_name,
            "score": candidate.score,
            "preview": preview_text(candidate.text),
        }
        for candidate in candidates[:limit]
    ]
