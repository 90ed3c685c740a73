"""Query-time access to the index: readiness checks, loading and section retrieval."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from notesrag.config import AppConfig
from notesrag.embedding.client import EmbeddingClient
from notesrag.errors import ConfigurationError, StaleIndexError
from notesrag.index.artifacts import RunCache, absolute_from_cache
from notesrag.index.indexer import discover_sources, freshness_issue
from notesrag.index.manifest import MANIFEST_FILE, fingerprint_file, read_manifest
from notesrag.index.search import (
    assemble_section_context,
    build_section_query,
    merge_source_balanced,
    rank_chunks_hybrid,
    rank_slide_files_by_hybrid,
    summarize_candidate_preview,
)
from notesrag.models import (
    Candidate,
    Chunk,
    ContextSelection,
    Manifest,
    RankedSource,
    ReadinessIssue,
    SlideFile,
    SourceDocument,
)
from notesrag.utils.text import Lexicon

LOGGER = logging.getLogger(__name__)

SLIDES_GROUP = "slides"
MAX_REPORTED_ISSUES = 12

CONFIGURATION_REASONS = (
    "type_mismatch",
    "specialty_mismatch",
    "embedding_model_mismatch",
    "chunking_version_mismatch",
)

# (topic, section_name, candidates, limit) -> chunk ids in preferred order
Reranker = Callable[[str, str, Sequence[Candidate], int], Sequence[str]]


def list_readiness_issues(
    config: AppConfig,
    manifest: Manifest,
    sources: Sequence[SourceDocument],
    *,
    cache_dir: Path,
) -> List[ReadinessIssue]:
    """Every reason the index cannot serve ``sources`` as fresh."""
    issues: List[ReadinessIssue] = []
    for doc in sources:
        path = str(doc.path)
        try:
            fingerprint = fingerprint_file(doc.path)
        except OSError as exc:
            issues.append(ReadinessIssue(path=path, reason=f"source_unreadable:{exc}"))
            continue

        reason = freshness_issue(
            manifest.sources.get(str(fingerprint.path)),
            fingerprint,
            doc,
            config=config,
            cache_dir=cache_dir,
        )
        if reason is not None:
            issues.append(
                ReadinessIssue(
                    path=path,
                    reason=reason,
                    configuration=reason.startswith(CONFIGURATION_REASONS),
                )
            )
    return issues


def ensure_index_ready(issues: Sequence[ReadinessIssue], *, allow_stale: bool = False, hint: str = "") -> None:
    """Raise unless ``issues`` is empty or the caller tolerates a stale index."""
    if not issues:
        return
    if allow_stale:
        LOGGER.warning("Proceeding with stale index (%d issues)", len(issues))
        return

    lines = ["RAG index is missing or stale."]
    if hint:
        lines.append(f"Run: {hint}")
    lines.extend(f"- {issue}" for issue in issues[:MAX_REPORTED_ISSUES])
    message = "\n".join(lines)
    if any(issue.configuration for issue in issues):
        raise ConfigurationError(message, issues)
    raise StaleIndexError(message, issues)


@dataclass(slots=True)
class IndexedNote:
    key: str
    label: str
    source_path: str
    chunks: List[Chunk]
    embedding_by_id: Dict[str, List[float]]

    @property
    def group_key(self) -> str:
        return f"note:{self.key}"


@dataclass(slots=True)
class IndexedContext:
    embedding_model: str
    specialty: str
    notes: List[IndexedNote] = field(default_factory=list)
    slides: List[SlideFile] = field(default_factory=list)
    issues: List[ReadinessIssue] = field(default_factory=list)


def load_indexed_context(
    config: AppConfig,
    *,
    base_dir: Path | None = None,
    allow_stale: bool = False,
    cache: RunCache | None = None,
    hint: str = "",
) -> IndexedContext:
    """Load every indexed note and slide deck for ``config``.

    Raises :class:`StaleIndexError` or :class:`ConfigurationError` when the
    index is not ready, unless ``allow_stale`` is set; in that case unreadable
    sources are skipped with a warning.
    """
    base = (base_dir or Path.cwd()).resolve()
    cache = cache or RunCache()
    cache_dir = config.resolve_cache_dir(base)
    manifest = read_manifest(cache_dir / MANIFEST_FILE)
    sources = discover_sources(config, base_dir=base)

    issues = list_readiness_issues(config, manifest, sources, cache_dir=cache_dir)
    ensure_index_ready(issues, allow_stale=allow_stale, hint=hint)

    context = IndexedContext(
        embedding_model=config.embedding_model,
        specialty=config.specialty,
        issues=issues,
    )
    for doc in sources:
        entry = manifest.sources.get(str(doc.path.resolve()))
        if entry is None or entry.specialty != config.specialty:
            LOGGER.warning("Skipping unindexed source %s", doc.path)
            continue
        artifact_dir = absolute_from_cache(cache_dir, entry.artifact_dir)

        if doc.group == "slide":
            slide = cache.load_slide_file(artifact_dir, file_name=doc.file_name, source_path=str(doc.path))
            if slide is None:
                LOGGER.warning("Skipping unreadable slide artifacts for %s", doc.path)
                continue
            context.slides.append(slide)
            continue

        loaded = cache.load_chunks(artifact_dir)
        if loaded is None:
            LOGGER.warning("Skipping unreadable note artifacts for %s", doc.path)
            continue
        chunks, embedding_by_id = loaded
        for chunk in chunks:
            chunk.source_name = chunk.source_name or doc.file_name
        context.notes.append(
            IndexedNote(
                key=doc.key,
                label=doc.label,
                source_path=str(doc.path),
                chunks=chunks,
                embedding_by_id=embedding_by_id,
            )
        )
    return context


@dataclass(slots=True)
class SectionResult:
    query: str
    slide_files: List[str]
    candidates: List[Candidate]
    selection: ContextSelection
    used_fallback: bool


class SectionRetriever:
    """Builds the bounded context block for one topic section."""

    def __init__(
        self,
        context: IndexedContext,
        embedder: EmbeddingClient,
        config: AppConfig,
        *,
        reranker: Optional[Reranker] = None,
        lexicon: Lexicon | None = None,
    ) -> None:
        self.context = context
        self.embedder = embedder
        self.config = config
        self.reranker = reranker
        self.lexicon = lexicon

    def _embed_query(self, query: str, label: str) -> Optional[List[float]]:
        try:
            embedding, _usage = self.embedder.embed_one(self.context.embedding_model, query)
            return embedding
        except Exception as exc:
            LOGGER.warning("Query embedding failed for %s, using lexical-only ranking: %s", label, exc)
            return None

    def _select(self, topic: str, section_name: str, candidates: List[Candidate]) -> tuple[List[Candidate], bool]:
        limit = min(self.config.selection_limit, len(candidates))
        fallback = candidates[:limit]
        if self.reranker is None or not candidates:
            return fallback, self.reranker is not None

        try:
            chosen_ids = list(self.reranker(topic, section_name, candidates, limit))
        except Exception as exc:
            LOGGER.warning("Reranker failed for %s:%s, using hybrid ranking: %s", topic, section_name, exc)
            return fallback, True

        by_id = {candidate.id: candidate for candidate in candidates}
        selected: List[Candidate] = []
        seen: set[str] = set()
        for chunk_id in chosen_ids:
            candidate = by_id.get(chunk_id)
            if candidate is not None and chunk_id not in seen:
                seen.add(chunk_id)
                selected.append(candidate)
            if len(selected) >= limit:
                break
        if not selected:
            return fallback, True
        return selected, False

    def build_section_context(self, topic: str, section_name: str) -> SectionResult:
        label = f"{topic}:{section_name}"
        query = build_section_query(topic, section_name, self.lexicon)
        query_embedding = self._embed_query(query, label)

        ranked_files = rank_slide_files_by_hybrid(
            topic=query,
            slide_files=self.context.slides,
            query_embedding=query_embedding,
            lexicon=self.lexicon,
        )
        top_files = [ranked.file for ranked in ranked_files[: self.config.top_slides]]
        slide_chunks = [chunk for file in top_files for chunk in file.chunks]
        slide_embeddings: Dict[str, List[float]] = {}
        for file in top_files:
            slide_embeddings.update(file.chunk_embeddings)

        limit = self.config.per_source_rank_limit
        ranked_sources = [
            RankedSource(
                source_group=note.group_key,
                items=rank_chunks_hybrid(
                    query=query,
                    chunks=note.chunks,
                    embedding_by_id=note.embedding_by_id,
                    query_embedding=query_embedding,
                    source_group=note.group_key,
                    lexicon=self.lexicon,
                )[:limit],
            )
            for note in self.context.notes
        ]
        ranked_sources.append(
            RankedSource(
                source_group=SLIDES_GROUP,
                items=rank_chunks_hybrid(
                    query=query,
                    chunks=slide_chunks,
                    embedding_by_id=slide_embeddings,
                    query_embedding=query_embedding,
                    source_group=SLIDES_GROUP,
                    lexicon=self.lexicon,
                )[:limit],
            )
        )

        candidates = merge_source_balanced(
            ranked_sources=ranked_sources,
            per_source_cap=self.config.merge_per_source_cap,
            candidate_limit=self.config.merge_candidate_limit,
        )
        LOGGER.debug("Top candidates for %s: %s", label, summarize_candidate_preview(candidates))
        selected, used_fallback = self._select(topic, section_name, candidates)

        titles = {note.group_key: f"### Senior Note: {note.label} (Indexed)" for note in self.context.notes}
        titles[SLIDES_GROUP] = "### Lecture Slides (Indexed)"
        selection = assemble_section_context(
            selected_chunks=selected,
            context_budget_chars=self.config.context_budget_chars,
            group_order=[note.group_key for note in self.context.notes] + [SLIDES_GROUP],
            grouped_titles=titles,
        )

        slide_names = [file.file_name for file in top_files]
        LOGGER.info("[%s] Slides: %s", label, ", ".join(slide_names) or "none")
        LOGGER.info("[%s] Selected IDs: %s", label, ", ".join(c.id for c in selection.selected) or "none")
        LOGGER.info("[%s] Context chars: %d", label, selection.used_chars)
        return SectionResult(
            query=query,
            slide_files=slide_names,
            candidates=candidates,
            selection=selection,
            used_fallback=used_fallback,
        )
