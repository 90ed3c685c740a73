"""On-disk artifact layout for indexed documents.

Each document owns one directory under the cache root:

* ``pdf/<sha256>/``: ``pages.json``, ``summary.json``, ``summary.embedding.json``,
  ``chunks.json``, ``chunks.embedding.json``
* ``notes/<key>/``: ``chunks.json``, ``chunks.embedding.json``

Every file records its own ``modelId``/``indexedAt`` so readers can validate
it without the manifest.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from notesrag.index.manifest import read_json_if_exists, utc_now, write_json_atomic
from notesrag.models import Chunk, EmbeddingResult, EntryType, PageText, SlideFile
from notesrag.utils.text import CHUNKING_VERSION

LOGGER = logging.getLogger(__name__)

PAGES_FILE = "pages.json"
SUMMARY_FILE = "summary.json"
SUMMARY_EMBEDDING_FILE = "summary.embedding.json"
CHUNKS_FILE = "chunks.json"
CHUNKS_EMBEDDING_FILE = "chunks.embedding.json"

ARTIFACT_FILES: Dict[str, tuple[str, ...]] = {
    "pdf": (PAGES_FILE, SUMMARY_FILE, SUMMARY_EMBEDDING_FILE, CHUNKS_FILE, CHUNKS_EMBEDDING_FILE),
    "note": (CHUNKS_FILE, CHUNKS_EMBEDDING_FILE),
}

ChunkIndex = tuple[List[Chunk], Dict[str, List[float]]]


def pdf_artifact_dir(cache_dir: Path, sha256: str) -> Path:
    return cache_dir / "pdf" / sha256


def note_artifact_dir(cache_dir: Path, key: str) -> Path:
    return cache_dir / "notes" / key


def relative_to_cache(cache_dir: Path, path: Path) -> str:
    return Path(path).relative_to(cache_dir).as_posix()


def absolute_from_cache(cache_dir: Path, relative: str) -> Path:
    return (cache_dir / relative).resolve()


def artifacts_complete(artifact_dir: Path, entry_type: EntryType) -> bool:
    """True when every expected file exists and holds a JSON object."""
    return all(
        isinstance(read_json_if_exists(artifact_dir / name), dict)
        for name in ARTIFACT_FILES[entry_type]
    )


def write_note_artifacts(
    artifact_dir: Path,
    *,
    note_name: str,
    source_path: str,
    model_id: str,
    chunks: Sequence[Chunk],
    embeddings: EmbeddingResult,
) -> None:
    records = embeddings.to_records([chunk.id for chunk in chunks], model_id)
    indexed_at = utc_now()
    write_json_atomic(
        artifact_dir / CHUNKS_FILE,
        {
            "noteName": note_name,
            "sourcePath": source_path,
            "indexedAt": indexed_at,
            "chunkingVersion": CHUNKING_VERSION,
            "modelId": model_id,
            "chunks": [chunk.to_dict() for chunk in chunks],
        },
    )
    write_json_atomic(
        artifact_dir / CHUNKS_EMBEDDING_FILE,
        {
            "noteName": note_name,
            "sourcePath": source_path,
            "indexedAt": indexed_at,
            "modelId": model_id,
            "usage": embeddings.usage,
            "chunkIds": [record.key for record in records],
            "embeddings": [record.vector for record in records],
        },
    )


def write_pdf_artifacts(
    artifact_dir: Path,
    *,
    file_name: str,
    source_path: str,
    model_id: str,
    ocr_policy: str,
    pages: Sequence[PageText],
    summary: str,
    summary_embedding: List[float],
    summary_usage: Optional[Dict[str, int]],
    chunks: Sequence[Chunk],
    embeddings: EmbeddingResult,
) -> None:
    records = embeddings.to_records([chunk.id for chunk in chunks], model_id)
    indexed_at = utc_now()
    base = {"fileName": file_name, "sourcePath": source_path}
    write_json_atomic(
        artifact_dir / PAGES_FILE,
        {
            **base,
            "pageCount": len(pages),
            "indexedAt": indexed_at,
            "ocrPolicy": ocr_policy,
            "pages": [page.to_dict() for page in pages],
        },
    )
    write_json_atomic(
        artifact_dir / SUMMARY_FILE,
        {**base, "indexedAt": indexed_at, "summary": summary},
    )
    write_json_atomic(
        artifact_dir / SUMMARY_EMBEDDING_FILE,
        {
            **base,
            "modelId": model_id,
            "indexedAt": indexed_at,
            "usage": summary_usage,
            "embedding": summary_embedding,
        },
    )
    write_json_atomic(
        artifact_dir / CHUNKS_FILE,
        {
            **base,
            "modelId": model_id,
            "chunkingVersion": CHUNKING_VERSION,
            "indexedAt": indexed_at,
            "chunks": [chunk.to_dict() for chunk in chunks],
        },
    )
    write_json_atomic(
        artifact_dir / CHUNKS_EMBEDDING_FILE,
        {
            **base,
            "modelId": model_id,
            "indexedAt": indexed_at,
            "usage": embeddings.usage,
            "chunkIds": [record.key for record in records],
            "embeddings": [record.vector for record in records],
        },
    )


def _is_vector(value: Any) -> bool:
    return isinstance(value, list) and all(
        isinstance(x, (int, float)) and not isinstance(x, bool) for x in value
    )


class RunCache:
    """Memoised artifact reads for the lifetime of one run.

    Create one per indexing or query session and pass it to the loaders that
    need it; nothing is shared between runs.
    """

    def __init__(self) -> None:
        self._json: Dict[Path, Any] = {}
        self.hits = 0

    def read_json(self, path: Path) -> Any:
        path = Path(path)
        if path in self._json:
            self.hits += 1
            return self._json[path]
        data = read_json_if_exists(path, None)
        self._json[path] = data
        return data

    def load_chunks(self, artifact_dir: Path) -> Optional[ChunkIndex]:
        """Chunks and their vectors keyed by chunk id, or ``None`` if unreadable."""
        chunks_data = self.read_json(artifact_dir / CHUNKS_FILE)
        embeddings_data = self.read_json(artifact_dir / CHUNKS_EMBEDDING_FILE)
        if not isinstance(chunks_data, dict) or not isinstance(embeddings_data, dict):
            return None

        chunks = [
            chunk
            for chunk in (Chunk.from_dict(raw) for raw in chunks_data.get("chunks") or [])
            if chunk is not None
        ]
        chunk_ids = embeddings_data.get("chunkIds") or []
        vectors = embeddings_data.get("embeddings") or []
        embedding_by_id: Dict[str, List[float]] = {}
        for chunk_id, vector in zip(chunk_ids, vectors):
            if isinstance(chunk_id, str) and chunk_id and _is_vector(vector):
                embedding_by_id[chunk_id] = vector
        return chunks, embedding_by_id

    def load_slide_file(self, artifact_dir: Path, *, file_name: str, source_path: str) -> Optional[SlideFile]:
        summary_data = self.read_json(artifact_dir / SUMMARY_FILE)
        summary_embedding_data = self.read_json(artifact_dir / SUMMARY_EMBEDDING_FILE)
        loaded = self.load_chunks(artifact_dir)
        if not isinstance(summary_data, dict) or not isinstance(summary_embedding_data, dict) or loaded is None:
            return None

        chunks, embedding_by_id = loaded
        summary_embedding = summary_embedding_data.get("embedding")
        return SlideFile(
            file_name=file_name,
            source_path=source_path,
            summary_text=str(summary_data.get("summary") or ""),
            summary_embedding=summary_embedding if _is_vector(summary_embedding) else None,
            chunks=chunks,
            chunk_embeddings=embedding_by_id,
        )
