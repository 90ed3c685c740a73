"""Tests for the indexing pipeline."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest

from notesrag.config import NoteSpec
from notesrag.index.indexer import (
    IndexReport,
    Indexer,
    discover_sources,
    freshness_issue,
)
from notesrag.index.manifest import fingerprint_file, read_manifest
from notesrag.ingestion import pdf_loader
from notesrag.models import SourceDocument

from conftest import LONG_PAGE_TEXT, make_pdf


@pytest.fixture
def indexer(embedder, app_config, workspace) -> Indexer:
    return Indexer(embedder, app_config, base_dir=workspace["root"])


class TestIndexReport:
    """Test per-group counters."""

    def test_increment_by_group(self) -> None:
        report = IndexReport()
        note = SourceDocument(path=Path("/n/a.md"), group="note", label="a", key="a")
        slide = SourceDocument(path=Path("/s/b.pdf"), group="slide", label="b.pdf", key="b.pdf")

        report.increment("indexed", note, chunks=3)
        report.increment("skipped", slide)
        report.increment("failed", slide, error="boom")

        assert (report.notes.indexed, report.notes.chunks) == (1, 3)
        assert (report.slides.skipped, report.slides.failed) == (1, 1)
        assert report.failures == {"/s/b.pdf": "boom"}
        assert report.failed == 1
        assert report.processed_files == [Path("/n/a.md"), Path("/s/b.pdf"), Path("/s/b.pdf")]


class TestDiscoverSources:
    """Test source discovery."""

    def test_notes_before_slides_without_duplicates(self, app_config, workspace) -> None:
        config = replace(app_config, notes_dirs=[workspace["note"].parent])
        sources = discover_sources(config, base_dir=workspace["root"])

        assert [doc.group for doc in sources] == ["note", "slide"]
        assert sources[0].key == "felix"
        assert sources[0].label == "Felix"
        assert sources[1].file_name == "hbp.pdf"

    def test_relative_note_paths_resolve_against_base(self, app_config, workspace) -> None:
        config = replace(app_config, notes=[NoteSpec(key="felix", path=Path("notes/felix.md"), label="Felix")])
        sources = discover_sources(config, base_dir=workspace["root"])
        assert sources[0].path == workspace["note"].resolve()


class TestIndexer:
    """Test incremental indexing end to end with a fake embedding backend."""

    def test_first_run_indexes_everything(self, indexer, workspace) -> None:
        """Every source gets artifacts and a manifest entry."""
        report = indexer.index()

        assert report.notes.indexed == 1
        assert report.slides.indexed == 1
        assert report.notes.chunks == 3
        assert report.failed == 0

        manifest = read_manifest(indexer.manifest_path)
        note_key = str(workspace["note"].resolve())
        slide_path = (workspace["slides_dir"] / "hbp.pdf").resolve()
        assert set(manifest.sources) == {note_key, str(slide_path)}
        assert manifest.embedding_model == "fake-model"
        assert manifest.chunking_version == "v1"

        note_entry = manifest.sources[note_key]
        assert note_entry.type == "note"
        assert note_entry.artifact_dir == "notes/felix"
        assert note_entry.extra["noteLabel"] == "Felix"

        slide_entry = manifest.sources[str(slide_path)]
        assert slide_entry.type == "pdf"
        assert slide_entry.artifact_dir == f"pdf/{fingerprint_file(slide_path).sha256}"

        pdf_dir = indexer.cache_dir / slide_entry.artifact_dir
        assert sorted(p.name for p in pdf_dir.iterdir()) == [
            "chunks.embedding.json",
            "chunks.json",
            "pages.json",
            "summary.embedding.json",
            "summary.json",
        ]
        embeddings = json.loads((pdf_dir / "chunks.embedding.json").read_text())
        chunks = json.loads((pdf_dir / "chunks.json").read_text())
        assert embeddings["chunkIds"] == [chunk["id"] for chunk in chunks["chunks"]]
        assert len(embeddings["embeddings"]) == len(chunks["chunks"])
        summary = json.loads((pdf_dir / "summary.json").read_text())["summary"]
        assert summary.startswith("File: hbp.pdf\nPage 1:")

    def test_second_run_skips_fresh_sources(self, indexer, fake_backend) -> None:
        indexer.index()
        calls = len(fake_backend.calls)

        report = indexer.index()

        assert report.notes.skipped == 1
        assert report.slides.skipped == 1
        assert len(fake_backend.calls) == calls

    def test_modified_note_is_reindexed(self, indexer, workspace) -> None:
        indexer.index()
        workspace["note"].write_text("# Pancreatitis\n\nUpdated content about necrosis.\n", encoding="utf-8")

        report = indexer.index()

        assert report.notes.indexed == 1
        assert report.slides.skipped == 1
        chunks = json.loads((indexer.cache_dir / "notes/felix/chunks.json").read_text())
        assert "necrosis" in chunks["chunks"][0]["text"]

    def test_force_reindexes(self, indexer) -> None:
        indexer.index()
        report = indexer.index(force=True)
        assert report.notes.indexed == 1
        assert report.slides.indexed == 1

    def test_model_change_reindexes(self, indexer, embedder, app_config, workspace) -> None:
        indexer.index()
        other = Indexer(embedder, replace(app_config, embedding_model="other-model"), base_dir=workspace["root"])
        report = other.index()
        assert report.notes.indexed == 1
        assert read_manifest(other.manifest_path).embedding_model == "other-model"

    def test_missing_artifacts_reindexed(self, indexer) -> None:
        indexer.index()
        (indexer.cache_dir / "notes/felix/chunks.embedding.json").unlink()
        report = indexer.index()
        assert report.notes.indexed == 1

    def test_undecodable_artifact_reindexed(self, indexer) -> None:
        """Corrupt artifact bytes count as missing artifacts, not as a failure."""
        indexer.index()
        chunks_path = indexer.cache_dir / "notes/felix/chunks.json"
        chunks_path.write_bytes(b"\xff\xfe junk")

        report = indexer.index()

        assert report.notes.indexed == 1
        assert report.failed == 0
        assert len(json.loads(chunks_path.read_text())["chunks"]) == 3

    def test_undecodable_manifest_rebuilds_index(self, indexer) -> None:
        indexer.index()
        indexer.manifest_path.write_bytes(b"\xff\xfe\x00garbage")

        report = indexer.index()

        assert report.notes.indexed == 1
        assert report.slides.indexed == 1
        assert len(read_manifest(indexer.manifest_path).sources) == 2

    def test_failure_does_not_abort_run(self, embedder, app_config, workspace) -> None:
        """A missing note fails alone; the manifest still records the rest."""
        missing = NoteSpec(key="ghost", path=workspace["root"] / "ghost.md", label="Ghost")
        config = replace(app_config, notes=[missing, *app_config.notes])
        indexer = Indexer(embedder, config, base_dir=workspace["root"])

        report = indexer.index()

        assert report.notes.failed == 1
        assert report.notes.indexed == 1
        assert report.slides.indexed == 1
        assert str((workspace["root"] / "ghost.md").resolve()) in report.failures
        assert len(read_manifest(indexer.manifest_path).sources) == 2

    def test_orphan_entries_are_kept(self, indexer, workspace) -> None:
        indexer.index()
        only_slides = [doc for doc in discover_sources(indexer.config, base_dir=workspace["root"]) if doc.group == "slide"]
        indexer.index(only_slides)
        assert len(read_manifest(indexer.manifest_path).sources) == 2


class TestFreshnessIssue:
    """Test the re-index reasons."""

    def test_reasons(self, indexer, workspace) -> None:
        indexer.index()
        manifest = read_manifest(indexer.manifest_path)
        doc = discover_sources(indexer.config, base_dir=workspace["root"])[0]
        fingerprint = fingerprint_file(doc.path)
        entry = manifest.sources[str(doc.path)]

        def issue(candidate):
            return freshness_issue(
                candidate, fingerprint, doc, config=indexer.config, cache_dir=indexer.cache_dir
            )

        assert issue(entry) is None
        assert issue(None) == "missing_manifest_entry"
        assert issue(replace(entry, type="pdf")) == "type_mismatch_expected_note"
        assert issue(replace(entry, specialty="ent")) == "specialty_mismatch"
        assert issue(replace(entry, model_id="x")) == "embedding_model_mismatch"
        assert issue(replace(entry, chunking_version="v0")) == "chunking_version_mismatch"
        assert issue(replace(entry, sha256="0" * 64)) == "source_changed_since_index"
        assert issue(replace(entry, artifact_dir="notes/missing")) == "artifacts_incomplete"


class TestScannedPageIndexing:
    """Index a deck whose middle page has no text layer."""

    def test_pages_and_chunks_artifacts(self, embedder, app_config, workspace, monkeypatch) -> None:
        deck_dir = workspace["root"] / "decks"
        deck_dir.mkdir()
        make_pdf(deck_dir / "deck.pdf", [LONG_PAGE_TEXT, "", LONG_PAGE_TEXT])
        monkeypatch.setattr(pdf_loader, "_ocr_page", lambda page: "Scanned cholangitis flowchart")
        config = replace(app_config, slides_dir=deck_dir, ocr_policy="smart")
        indexer = Indexer(embedder, config, base_dir=workspace["root"])

        report = indexer.index()

        assert report.slides.indexed == 1
        entry = read_manifest(indexer.manifest_path).sources[str((deck_dir / "deck.pdf").resolve())]
        artifact_dir = indexer.cache_dir / entry.artifact_dir
        pages = json.loads((artifact_dir / "pages.json").read_text())["pages"]
        assert [page["ocrApplied"] for page in pages] == [False, True, False]
        assert pages[1]["mutoolChars"] == 0
        assert pages[1]["text"] == "Scanned cholangitis flowchart"

        chunks = json.loads((artifact_dir / "chunks.json").read_text())["chunks"]
        assert [chunk["id"] for chunk in chunks] == [
            "slide:deck.pdf:p1:1",
            "slide:deck.pdf:p2:1",
            "slide:deck.pdf:p3:1",
        ]
