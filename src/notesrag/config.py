"""Application configuration defaults."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from notesrag.embedding.client import DEFAULT_EMBEDDING_MODEL
from notesrag.errors import ConfigurationError
from notesrag.utils.files import slugify
from notesrag.utils.text import CHUNK_MAX_CHARS, CHUNK_OVERLAP_CHARS

LOGGER = logging.getLogger(__name__)

DEFAULT_SPECIALTY = "general-surgery"
DEFAULT_CACHE_ROOT = Path(".cache/rag")
DEFAULT_SURGERY_CACHE_DIR = DEFAULT_CACHE_ROOT / "surgery"
OCR_POLICIES = ("smart", "always", "off")
ENV_FILES = (".env.local", ".env")


def env_int(name: str, fallback: int) -> int:
    """Read a positive integer from the environment, ignoring junk values."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return fallback
    try:
        value = int(raw)
    except ValueError:
        LOGGER.warning("Ignoring non-integer %s=%r", name, raw)
        return fallback
    return value if value > 0 else fallback


def load_env_files(base_dir: Path | None = None) -> None:
    """Load ``.env.local`` then ``.env`` without overriding set variables."""
    base = base_dir or Path.cwd()
    for name in ENV_FILES:
        path = base / name
        if path.is_file():
            load_dotenv(path, override=False)


@dataclass(slots=True, frozen=True)
class NoteSpec:
    """A note source requested on the command line."""

    key: str
    path: Path
    label: str


def parse_note_spec(raw_value: str, fallback_index: int = 0) -> NoteSpec:
    """Parse ``label=path`` or a bare ``path`` into a :class:`NoteSpec`."""
    raw = (raw_value or "").strip()
    if not raw:
        raise ConfigurationError("--note requires a value")

    label = ""
    note_path = raw
    separator = raw.find("=")
    if separator > 0:
        label = raw[:separator].strip()
        note_path = raw[separator + 1 :].strip()

    if not note_path:
        raise ConfigurationError(f"Invalid --note value: {raw_value}")

    label = label or Path(note_path).stem or f"note-{fallback_index + 1}"
    key = slugify(label) or f"note-{fallback_index + 1}"
    return NoteSpec(key=key, path=Path(note_path), label=label)


@dataclass(slots=True, frozen=True)
class Preset:
    """Named bundle of specialty, slides directory and notes."""

    specialty: str
    slides_dir: Path
    notes: tuple[NoteSpec, ...]


PRESETS = {
    "psychiatry": Preset(
        specialty="psychiatry",
        slides_dir=Path("slides/psychiatry"),
        notes=(
            NoteSpec(
                key="psychiatry-senior",
                path=Path("notes/psychiatry-senior.md"),
                label="Psychiatry Senior Notes",
            ),
        ),
    ),
}


def get_preset(name: str) -> Preset:
    try:
        return PRESETS[name.strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown preset {name!r}. Available: {', '.join(sorted(PRESETS))}"
        ) from None


def preset_notes(name: str) -> List[NoteSpec]:
    return list(get_preset(name).notes)


def resolve_cache_dir(specialty: str) -> Path:
    if specialty == DEFAULT_SPECIALTY:
        return DEFAULT_SURGERY_CACHE_DIR
    return DEFAULT_CACHE_ROOT / specialty


@dataclass(slots=True)
class AppConfig:
    specialty: str = DEFAULT_SPECIALTY
    cache_dir: Path | None = None
    slides_dir: Path | None = None
    notes: List[NoteSpec] = field(default_factory=list)
    notes_dirs: List[Path] = field(default_factory=list)
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    ocr_policy: str = "smart"
    chunk_chars: int = CHUNK_MAX_CHARS
    overlap: int = CHUNK_OVERLAP_CHARS
    document_workers: int = 2
    max_parallel_calls: int = 4
    top_slides: int = 4
    context_budget_chars: int = field(
        default_factory=lambda: env_int("RAG_SECTION_CONTEXT_CHAR_BUDGET", 78000)
    )
    per_source_rank_limit: int = field(
        default_factory=lambda: env_int("RAG_SECTION_PER_SOURCE_RANK_LIMIT", 80)
    )
    merge_per_source_cap: int = field(
        default_factory=lambda: env_int("RAG_SECTION_MERGE_PER_SOURCE_CAP", 32)
    )
    merge_candidate_limit: int = field(
        default_factory=lambda: env_int("RAG_SECTION_MERGE_CANDIDATE_LIMIT", 144)
    )
    selection_limit: int = field(
        default_factory=lambda: env_int("RAG_SCOUT_SELECTION_LIMIT", 28)
    )

    def __post_init__(self) -> None:
        self.specialty = slugify(self.specialty) or DEFAULT_SPECIALTY
        self.ocr_policy = (self.ocr_policy or "").lower()
        if self.ocr_policy not in OCR_POLICIES:
            raise ConfigurationError(f"Invalid OCR policy: {self.ocr_policy!r}")
        if self.cache_dir is None:
            self.cache_dir = resolve_cache_dir(self.specialty)

    def resolve_cache_dir(self, base_dir: Path | None = None) -> Path:
        cache_dir = Path(self.cache_dir or resolve_cache_dir(self.specialty))
        if cache_dir.is_absolute() or base_dir is None:
            return cache_dir.resolve()
        return (base_dir / cache_dir).resolve()

    def require_sources(self) -> None:
        """Raise :class:`ConfigurationError` unless at least one note source is set."""
        if not self.notes and not self.notes_dirs:
            raise ConfigurationError("At least one note is required. Use --note or --notes-dir.")
