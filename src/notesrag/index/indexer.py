"""Document indexing pipeline."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from notesrag.config import AppConfig
from notesrag.embedding.client import EmbeddingClient
from notesrag.index.artifacts import (
    absolute_from_cache,
    artifacts_complete,
    note_artifact_dir,
    pdf_artifact_dir,
    relative_to_cache,
    write_note_artifacts,
    write_pdf_artifacts,
)
from notesrag.index.manifest import (
    MANIFEST_FILE,
    fingerprint_file,
    is_fingerprint_match,
    read_manifest,
    utc_now,
    write_manifest,
)
from notesrag.ingestion.pdf_loader import build_page_chunks, build_pdf_summary, extract_pdf_pages
from notesrag.models import Fingerprint, Manifest, ManifestEntry, SourceDocument
from notesrag.utils.files import list_note_files, list_slide_pdfs
from notesrag.utils.text import CHUNKING_VERSION, build_chunks_from_text

LOGGER = logging.getLogger(__name__)


def discover_sources(config: AppConfig, *, base_dir: Path | None = None) -> List[SourceDocument]:
    """Notes (explicit, then from note directories) followed by slide decks."""
    base = (base_dir or Path.cwd()).resolve()
    sources: List[SourceDocument] = []
    seen: set[Path] = set()

    for note in config.notes:
        path = note.path if note.path.is_absolute() else base / note.path
        path = path.resolve()
        if path not in seen:
            seen.add(path)
            sources.append(SourceDocument(path=path, group="note", label=note.label, key=note.key))

    for notes_dir in config.notes_dirs:
        directory = notes_dir if notes_dir.is_absolute() else base / notes_dir
        for doc in list_note_files(directory, base_dir=base):
            if doc.path not in seen:
                seen.add(doc.path)
                sources.append(doc)

    if config.slides_dir is not None:
        slides_dir = config.slides_dir if config.slides_dir.is_absolute() else base / config.slides_dir
        for doc in list_slide_pdfs(slides_dir):
            if doc.path not in seen:
                seen.add(doc.path)
                sources.append(doc)

    return sources


def default_artifact_dir(cache_dir: Path, doc: SourceDocument, fingerprint: Fingerprint) -> Path:
    if doc.entry_type == "pdf":
        return pdf_artifact_dir(cache_dir, fingerprint.sha256)
    return note_artifact_dir(cache_dir, doc.key)


def freshness_issue(
    entry: Optional[ManifestEntry],
    fingerprint: Fingerprint,
    doc: SourceDocument,
    *,
    config: AppConfig,
    cache_dir: Path,
) -> Optional[str]:
    """Return why ``doc`` must be re-indexed, or ``None`` when its artifacts are fresh."""
    if entry is None:
        return "missing_manifest_entry"
    if entry.type != doc.entry_type:
        return f"type_mismatch_expected_{doc.entry_type}"
    if entry.specialty != config.specialty:
        return "specialty_mismatch"
    if entry.model_id != config.embedding_model:
        return "embedding_model_mismatch"
    if entry.chunking_version != CHUNKING_VERSION:
        return "chunking_version_mismatch"
    if not is_fingerprint_match(entry, fingerprint):
        return "source_changed_since_index"
    artifact_dir = absolute_from_cache(cache_dir, entry.artifact_dir)
    if not artifacts_complete(artifact_dir, entry.type):
        return "artifacts_incomplete"
    return None


@dataclass(slots=True)
class GroupStats:
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    chunks: int = 0


@dataclass(slots=True)
class IndexReport:
    notes: GroupStats = field(default_factory=GroupStats)
    slides: GroupStats = field(default_factory=GroupStats)
    failures: Dict[str, str] = field(default_factory=dict)
    processed_files: List[Path] = field(default_factory=list)

    def group(self, doc: SourceDocument) -> GroupStats:
        return self.notes if doc.group == "note" else self.slides

    def increment(self, status: str, doc: SourceDocument, *, chunks: int = 0, error: str = "") -> None:
        stats = self.group(doc)
        if status == "indexed":
            stats.indexed += 1
            stats.chunks += chunks
        elif status == "skipped":
            stats.skipped += 1
        else:
            stats.failed += 1
            self.failures[str(doc.path)] = error or "unknown error"
        self.processed_files.append(doc.path)

    @property
    def failed(self) -> int:
        return self.notes.failed + self.slides.failed


class Indexer:
    """Coordinates fingerprinting, chunking, embedding and persistence."""

    def __init__(self, embedder: EmbeddingClient, config: AppConfig, *, base_dir: Path | None = None) -> None:
        self.embedder = embedder
        self.config = config
        self.base_dir = (base_dir or Path.cwd()).resolve()
        self.cache_dir = config.resolve_cache_dir(self.base_dir)
        self.manifest_path = self.cache_dir / MANIFEST_FILE
        self._lock = threading.Lock()

    def index(self, sources: Sequence[SourceDocument] | None = None, *, force: bool = False) -> IndexReport:
        """Index every stale source; one document's failure never aborts the run."""
        if sources is None:
            sources = discover_sources(self.config, base_dir=self.base_dir)

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        manifest = read_manifest(self.manifest_path)
        manifest.chunking_version = CHUNKING_VERSION
        manifest.embedding_model = self.config.embedding_model

        report = IndexReport()
        if not sources:
            LOGGER.warning("No sources found to index")
            write_manifest(self.manifest_path, manifest)
            return report

        def run(doc: SourceDocument) -> None:
            try:
                status, chunks = self._index_single(doc, manifest, force=force)
            except Exception as exc:
                LOGGER.error("Failed to index %s: %s", doc.path, exc)
                LOGGER.debug("Indexing failure for %s", doc.path, exc_info=True)
                with self._lock:
                    report.increment("failed", doc, error=str(exc))
                return
            with self._lock:
                report.increment(status, doc, chunks=chunks)

        workers = max(self.config.document_workers, 1)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(run, sources))

        write_manifest(self.manifest_path, manifest)
        return report

    def _index_single(self, doc: SourceDocument, manifest: Manifest, *, force: bool) -> tuple[str, int]:
        fingerprint = fingerprint_file(doc.path)
        key = str(fingerprint.path)
        with self._lock:
            existing = manifest.sources.get(key)

        if not force:
            reason = freshness_issue(
                existing, fingerprint, doc, config=self.config, cache_dir=self.cache_dir
            )
            if reason is None:
                LOGGER.debug("Up to date: %s", doc.path)
                return "skipped", 0
            LOGGER.info("Indexing %s (%s)", doc.path.name, reason)
        else:
            LOGGER.info("Indexing %s (forced)", doc.path.name)

        artifact_dir = default_artifact_dir(self.cache_dir, doc, fingerprint)
        if doc.entry_type == "pdf":
            chunk_count = self._index_pdf(doc, artifact_dir)
        else:
            chunk_count = self._index_note(doc, artifact_dir)

        extra = (
            {"fileName": doc.file_name}
            if doc.group == "slide"
            else {"noteName": doc.key, "noteLabel": doc.label, "fileName": doc.file_name}
        )
        entry = ManifestEntry(
            type=doc.entry_type,
            specialty=self.config.specialty,
            size=fingerprint.size,
            mtime_ms=fingerprint.mtime_ms,
            sha256=fingerprint.sha256,
            indexed_at=utc_now(),
            model_id=self.config.embedding_model,
            chunking_version=CHUNKING_VERSION,
            artifact_dir=relative_to_cache(self.cache_dir, artifact_dir),
            extra=extra,
        )
        with self._lock:
            manifest.sources[key] = entry
        return "indexed", chunk_count

    def _index_note(self, doc: SourceDocument, artifact_dir: Path) -> int:
        text = doc.path.read_text(encoding="utf-8")
        chunks = build_chunks_from_text(
            text=text,
            prefix=doc.key,
            source_name=doc.file_name,
            source_path=str(doc.path),
            max_chars=self.config.chunk_chars,
            overlap_chars=self.config.overlap,
        )
        embeddings = self.embedder.embed_many(
            self.config.embedding_model,
            [chunk.text for chunk in chunks],
            max_parallel_calls=self.config.max_parallel_calls,
        )
        write_note_artifacts(
            artifact_dir,
            note_name=doc.key,
            source_path=str(doc.path),
            model_id=self.config.embedding_model,
            chunks=chunks,
            embeddings=embeddings,
        )
        return len(chunks)

    def _index_pdf(self, doc: SourceDocument, artifact_dir: Path) -> int:
        pages = extract_pdf_pages(doc.path, ocr_policy=self.config.ocr_policy)
        summary = build_pdf_summary(file_name=doc.file_name, pages=pages)
        chunks = build_page_chunks(
            file_name=doc.file_name,
            source_path=str(doc.path),
            pages=pages,
            max_chars=self.config.chunk_chars,
            overlap_chars=self.config.overlap,
        )

        summary_embedding, summary_usage = self.embedder.embed_one(self.config.embedding_model, summary)
        embeddings = self.embedder.embed_many(
            self.config.embedding_model,
            [chunk.text for chunk in chunks],
            max_parallel_calls=self.config.max_parallel_calls,
        )
        write_pdf_artifacts(
            artifact_dir,
            file_name=doc.file_name,
            source_path=str(doc.path),
            model_id=self.config.embedding_model,
            ocr_policy=self.config.ocr_policy,
            pages=pages,
            summary=summary,
            summary_embedding=summary_embedding,
            summary_usage=summary_usage,
            chunks=chunks,
            embeddings=embeddings,
        )
        return len(chunks)
