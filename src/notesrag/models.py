"""Core notesrag data models.

Records that are persisted to JSON carry ``to_dict``/``from_dict`` helpers that
use the camelCase keys of the on-disk format. ``from_dict`` returns ``None``
instead of guessing defaults when a required field is missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

LOGGER = logging.getLogger(__name__)

SourceGroup = Literal["note", "slide"]
EntryType = Literal["note", "pdf"]

MANIFEST_VERSION = "v1"


@dataclass(slots=True, frozen=True)
class SourceDocument:
    """An indexable input discovered on disk."""

    path: Path
    group: SourceGroup
    label: str
    key: str

    @property
    def file_name(self) -> str:
        return self.path.name

    @property
    def is_pdf(self) -> bool:
        return self.path.suffix.lower() == ".pdf"

    @property
    def entry_type(self) -> EntryType:
        return "pdf" if self.group == "slide" or self.is_pdf else "note"


@dataclass(slots=True, frozen=True)
class Fingerprint:
    """Identity of a file's content at one point in time."""

    path: Path
    size: int
    mtime_ms: float
    sha256: str

    def matches(self, other: "Fingerprint") -> bool:
        return (
            self.size == other.size
            and self.mtime_ms == other.mtime_ms
            and self.sha256 == other.sha256
        )


def _require(data: Mapping[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    value = data.get(key)
    if not isinstance(value, kind) or isinstance(value, bool):
        raise KeyError(key)
    return value


@dataclass(slots=True)
class ManifestEntry:
    """Last indexed state of one source document."""

    type: EntryType
    specialty: str
    size: int
    mtime_ms: float
    sha256: str
    indexed_at: str
    model_id: str
    chunking_version: str
    artifact_dir: str
    extra: Dict[str, Any] = field(default_factory=dict)

    _KEYS = (
        "type",
        "specialty",
        "size",
        "mtimeMs",
        "sha256",
        "indexedAt",
        "modelId",
        "chunkingVersion",
        "artifactDir",
    )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "specialty": self.specialty,
            "size": self.size,
            "mtimeMs": self.mtime_ms,
            "sha256": self.sha256,
            "indexedAt": self.indexed_at,
            "modelId": self.model_id,
            "chunkingVersion": self.chunking_version,
            "artifactDir": self.artifact_dir,
        }
        payload.update(self.extra)
        return payload

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ManifestEntry"]:
        if not isinstance(data, Mapping):
            return None
        try:
            entry_type = _require(data, "type", str)
            if entry_type not in ("note", "pdf"):
                raise KeyError("type")
            entry = cls(
                type=entry_type,
                specialty=_require(data, "specialty", str),
                size=_require(data, "size", int),
                mtime_ms=float(_require(data, "mtimeMs", (int, float))),
                sha256=_require(data, "sha256", str),
                indexed_at=_require(data, "indexedAt", str),
                model_id=_require(data, "modelId", str),
                chunking_version=_require(data, "chunkingVersion", str),
                artifact_dir=_require(data, "artifactDir", str),
            )
        except KeyError as exc:
            LOGGER.debug("Ignoring manifest entry missing %s", exc)
            return None
        entry.extra = {k: v for k, v in data.items() if k not in cls._KEYS}
        return entry


@dataclass(slots=True)
class Manifest:
    """Ledger mapping each source path to its last indexed state."""

    created_at: str
    updated_at: str
    manifest_version: str = MANIFEST_VERSION
    chunking_version: str = "unknown"
    embedding_model: str = ""
    sources: Dict[str, ManifestEntry] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manifestVersion": self.manifest_version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "chunkingVersion": self.chunking_version,
            "embeddingModel": self.embedding_model,
            "sources": {path: entry.to_dict() for path, entry in self.sources.items()},
        }

    def prune_missing(self) -> List[str]:
        """Drop entries whose source file no longer exists and return their paths."""
        missing = [path for path in self.sources if not Path(path).is_file()]
        for path in missing:
            del self.sources[path]
        return missing


@dataclass(slots=True)
class Chunk:
    """Bounded span of a source document's text."""

    id: str
    source_name: str
    source_path: str
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceName": self.source_name,
            "sourcePath": self.source_path,
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Chunk"]:
        if not isinstance(data, Mapping):
            return None
        chunk_id = data.get("id")
        text = data.get("text")
        if not isinstance(chunk_id, str) or not chunk_id or not isinstance(text, str):
            return None
        return cls(
            id=chunk_id,
            source_name=str(data.get("sourceName") or ""),
            source_path=str(data.get("sourcePath") or ""),
            text=text,
        )


@dataclass(slots=True)
class PageText:
    """Text recovered from one page of a PDF."""

    page_number: int
    text: str
    extracted_chars: int
    final_chars: int
    ocr_applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageNumber": self.page_number,
            "text": self.text,
            "mutoolChars": self.extracted_chars,
            "finalChars": self.final_chars,
            "ocrApplied": self.ocr_applied,
        }


@dataclass(slots=True)
class EmbeddingResult:
    """Vectors returned by the embedding service, in request order."""

    embeddings: List[List[float]]
    usage: Optional[Dict[str, int]] = None

    def to_records(self, keys: Sequence[str], model_id: str) -> List["EmbeddingRecord"]:
        """Pair each vector with its chunk or document key."""
        if len(keys) != len(self.embeddings):
            raise ValueError(f"Expected {len(keys)} embeddings, got {len(self.embeddings)}")
        return [
            EmbeddingRecord(key=key, vector=vector, model_id=model_id)
            for key, vector in zip(keys, self.embeddings)
        ]


@dataclass(slots=True)
class EmbeddingRecord:
    """One vector keyed by chunk id, or by document for summary embeddings."""

    key: str
    vector: List[float]
    model_id: str
    usage: Optional[Dict[str, int]] = None


@dataclass(slots=True)
class Candidate:
    """A chunk scored for one query."""

    id: str
    source_name: str
    source_path: str
    text: str
    lexical_score: float = 0.0
    semantic_score: float = 0.0
    score: float = 0.0
    source_group: str = ""

    @classmethod
    def from_chunk(cls, chunk: Chunk, *, source_group: str = "") -> "Candidate":
        return cls(
            id=chunk.id,
            source_name=chunk.source_name,
            source_path=chunk.source_path,
            text=chunk.text,
            source_group=source_group,
        )


@dataclass(slots=True)
class SlideFile:
    """Indexed slide deck with its summary and chunk embeddings."""

    file_name: str
    source_path: str
    summary_text: str
    summary_embedding: Optional[List[float]]
    chunks: List[Chunk] = field(default_factory=list)
    chunk_embeddings: Dict[str, List[float]] = field(default_factory=dict)


@dataclass(slots=True)
class RankedSlideFile:
    """Slide deck scored for one query."""

    file: SlideFile
    lexical_score: float
    semantic_score: float
    score: float

    @property
    def file_name(self) -> str:
        return self.file.file_name


@dataclass(slots=True)
class RankedSource:
    """Already-ranked items from one source group."""

    source_group: str
    items: List[Candidate]


@dataclass(slots=True)
class ContextSelection:
    """Chunks admitted under a character budget and their rendered text."""

    context_text: str
    used_chars: int
    selected: List[Candidate]


@dataclass(slots=True, frozen=True)
class ReadinessIssue:
    """Reason a source cannot be served from the index."""

    path: str
    reason: str
    configuration: bool = False

    def __str__(self) -> str:
        return f"{self.reason}: {self.path}"
