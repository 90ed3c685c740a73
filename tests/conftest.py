"""Shared fixtures for notesrag tests."""

from __future__ import annotations

import string
from pathlib import Path
from typing import List, Sequence

import fitz
import pytest
from tenacity import wait_none

from notesrag.config import AppConfig, NoteSpec
from notesrag.embedding.client import EmbeddingClient
from notesrag.errors import RetryableServiceError
from notesrag.models import EmbeddingResult

LONG_PAGE_TEXT = (
    "Acute pancreatitis is an inflammatory condition of the pancreas. "
    "Gallstones and alcohol are the commonest causes. Management is supportive "
    "with fluids, analgesia and early enteral nutrition."
)


def letter_vector(text: str) -> List[float]:
    """Deterministic bag-of-letters vector; never all zeros."""
    lower = text.lower()
    return [float(lower.count(ch)) for ch in string.ascii_lowercase] + [1.0]


class FakeBackend:
    """In-memory embedding backend recording every call."""

    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.calls: List[tuple[str, List[str]]] = []
        self.failures = failures
        self.error = error or RetryableServiceError("temporarily unavailable")

    def embed_batch(self, model: str, texts: Sequence[str]) -> EmbeddingResult:
        self.calls.append((model, list(texts)))
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return EmbeddingResult(
            embeddings=[letter_vector(text) for text in texts],
            usage={"tokens": sum(len(text.split()) for text in texts)},
        )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def embedder(fake_backend: FakeBackend) -> EmbeddingClient:
    return EmbeddingClient(fake_backend, batch_size=4, retry_wait=wait_none())


def make_pdf(path: Path, page_texts: Sequence[str]) -> Path:
    """Write a PDF with one page per entry; empty strings give blank pages."""
    doc = fitz.open()
    for text in page_texts:
        page = doc.new_page()
        if text:
            page.insert_textbox(fitz.Rect(72, 72, 540, 770), text, fontsize=11)
    doc.save(str(path))
    doc.close()
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> dict:
    """A notes file, a slides directory with one deck, and a cache directory."""
    notes_dir = tmp_path / "notes"
    notes_dir.mkdir()
    note = notes_dir / "felix.md"
    note.write_text(
        "# Pancreatitis\n\nAcute pancreatitis presents with epigastric pain radiating to the back.\n\n"
        "## Management\n\nFluid resuscitation, analgesia and treating gallstones.\n\n"
        "# Hernia\n\nInguinal hernia repair options include open and laparoscopic mesh.\n",
        encoding="utf-8",
    )
    slides_dir = tmp_path / "slides"
    slides_dir.mkdir()
    make_pdf(slides_dir / "hbp.pdf", [LONG_PAGE_TEXT, LONG_PAGE_TEXT + " Cholangitis needs drainage."])
    return {
        "root": tmp_path,
        "note": note,
        "slides_dir": slides_dir,
        "cache_dir": tmp_path / "cache",
    }


@pytest.fixture
def app_config(workspace: dict) -> AppConfig:
    return AppConfig(
        cache_dir=workspace["cache_dir"],
        slides_dir=workspace["slides_dir"],
        notes=[NoteSpec(key="felix", path=workspace["note"], label="Felix")],
        embedding_model="fake-model",
        document_workers=2,
    )
