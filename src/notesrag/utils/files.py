"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import List

from notesrag.models import SourceDocument

LOGGER = logging.getLogger(__name__)

NOTE_SUFFIXES = frozenset({".md", ".mdx", ".txt", ".pdf"})

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    """Lowercase ``value`` and join its alphanumeric runs with dashes."""
    lowered = (value or "").lower().replace("&", " and ")
    return _SLUG_RE.sub("-", lowered).strip("-")


def compute_sha256(path: Path) -> str:
    """Compute SHA256 hash for a file."""
    sha = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            sha.update(chunk)
    return sha.hexdigest()


def list_slide_pdfs(slides_dir: Path) -> List[SourceDocument]:
    """List PDFs directly inside ``slides_dir`` sorted by file name."""
    directory = Path(slides_dir).resolve()
    if not directory.is_dir():
        LOGGER.warning("Slides directory not found: %s", directory)
        return []

    slides = [
        SourceDocument(path=child, group="slide", label=child.name, key=child.name)
        for child in directory.iterdir()
        if child.is_file() and child.suffix.lower() == ".pdf"
    ]
    return sorted(slides, key=lambda doc: doc.path.name)


def list_note_files(notes_dir: Path, *, base_dir: Path | None = None) -> List[SourceDocument]:
    """List note files directly inside ``notes_dir`` sorted by path.

    Keys are derived from the path relative to ``base_dir`` (default: cwd) so
    that notes with the same name in different folders stay distinct.
    """
    directory = Path(notes_dir).resolve()
    if not directory.is_dir():
        LOGGER.warning("Notes directory not found: %s", directory)
        return []

    base = (base_dir or Path.cwd()).resolve()
    notes: List[SourceDocument] = []
    for child in directory.iterdir():
        if not child.is_file() or child.suffix.lower() not in NOTE_SUFFIXES:
            continue
        try:
            relative = child.relative_to(base)
        except ValueError:
            relative = child
        key = slugify(str(relative)) or slugify(child.name) or "note"
        notes.append(SourceDocument(path=child, group="note", label=child.stem or child.name, key=key))
    return sorted(notes, key=lambda doc: str(doc.path))
