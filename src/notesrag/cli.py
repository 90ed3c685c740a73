"""Command line interface for notesrag."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from notesrag.config import (
    DEFAULT_SPECIALTY,
    AppConfig,
    get_preset,
    load_env_files,
    parse_note_spec,
)
from notesrag.embedding.client import DEFAULT_EMBEDDING_MODEL, EmbeddingClient
from notesrag.errors import NotesRagError
from notesrag.index.artifacts import absolute_from_cache
from notesrag.index.indexer import Indexer, discover_sources
from notesrag.index.manifest import MANIFEST_FILE, read_manifest, write_manifest
from notesrag.index.retriever import SectionRetriever, list_readiness_issues, load_indexed_context
from notesrag.utils.files import slugify
from notesrag.utils.text import load_lexicon

console = Console()
err_console = Console(stderr=True)
app = typer.Typer(help="notesrag - hybrid retrieval index for notes and lecture slides")

SpecialtyOption = typer.Option(DEFAULT_SPECIALTY, "--specialty", help="Specialty the index belongs to")
NoteOption = typer.Option(None, "--note", help='Note source, "<label>=<path>" or "<path>" (repeatable)')
NotesDirOption = typer.Option(None, "--notes-dir", help="Directory of notes to include (repeatable)")
SlidesDirOption = typer.Option(None, "--slides-dir", help="Directory containing slide PDFs")
CacheDirOption = typer.Option(None, "--cache-dir", help="Index cache directory")
ModelOption = typer.Option(DEFAULT_EMBEDDING_MODEL, "--embedding-model", help="Embedding model id")
PresetOption = typer.Option(None, "--preset", help="Named preset (e.g. psychiatry); explicit options win")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _build_config(
    *,
    specialty: str,
    notes: Optional[List[str]],
    notes_dirs: Optional[List[Path]],
    slides_dir: Optional[Path],
    cache_dir: Optional[Path],
    embedding_model: str,
    ocr_policy: str = "smart",
    preset: Optional[str] = None,
) -> AppConfig:
    note_specs = []
    if preset:
        chosen = get_preset(preset)
        if specialty == DEFAULT_SPECIALTY:
            specialty = chosen.specialty
        slides_dir = slides_dir or chosen.slides_dir
        if not notes:
            note_specs = list(chosen.notes)
    for raw in notes or []:
        spec = parse_note_spec(raw, len(note_specs))
        note_specs = [existing for existing in note_specs if existing.key != spec.key]
        note_specs.append(spec)
    config = AppConfig(
        specialty=specialty,
        cache_dir=cache_dir,
        slides_dir=slides_dir,
        notes=note_specs,
        notes_dirs=list(notes_dirs or []),
        embedding_model=embedding_model,
        ocr_policy=ocr_policy,
    )
    config.require_sources()
    return config


def _index_hint(config: AppConfig) -> str:
    parts = [f'notesrag index --specialty "{config.specialty}"', f'--cache-dir "{config.cache_dir}"']
    if config.slides_dir is not None:
        parts.append(f'--slides-dir "{config.slides_dir}"')
    parts.extend(f'--note "{note.label}={note.path}"' for note in config.notes)
    parts.extend(f'--notes-dir "{notes_dir}"' for notes_dir in config.notes_dirs)
    return " ".join(parts)


def _fail(exc: Exception) -> None:
    err_console.print(f"[red]{escape(str(exc))}[/red]")
    raise typer.Exit(code=1)


@app.callback()
def main() -> None:
    """Load .env.local and .env before running any command."""
    load_env_files()


@app.command()
def index(
    specialty: str = SpecialtyOption,
    note: Optional[List[str]] = NoteOption,
    notes_dir: Optional[List[Path]] = NotesDirOption,
    slides_dir: Optional[Path] = SlidesDirOption,
    cache_dir: Optional[Path] = CacheDirOption,
    embedding_model: str = ModelOption,
    preset: Optional[str] = PresetOption,
    ocr_policy: str = typer.Option("smart", "--ocr-policy", help="OCR policy: smart, always or off"),
    force: bool = typer.Option(False, "--force", help="Rebuild all artifacts"),
    verbose: bool = VerboseOption,
) -> None:
    """Index notes and slide decks into the cache directory."""
    _setup_logging(verbose)
    try:
        config = _build_config(
            specialty=specialty,
            notes=note,
            notes_dirs=notes_dir,
            slides_dir=slides_dir,
            cache_dir=cache_dir,
            embedding_model=embedding_model,
            preset=preset,
            ocr_policy=ocr_policy,
        )
        with EmbeddingClient.for_model(config.embedding_model) as embedder:
            indexer = Indexer(embedder, config)
            console.print(f"Indexing into [bold]{indexer.cache_dir}[/bold]...")
            report = indexer.index(force=force)
    except NotesRagError as exc:
        _fail(exc)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Group")
    table.add_column("Indexed")
    table.add_column("Skipped")
    table.add_column("Failed")
    table.add_column("Chunks")
    for name, stats in (("notes", report.notes), ("slides", report.slides)):
        table.add_row(name, str(stats.indexed), str(stats.skipped), str(stats.failed), str(stats.chunks))
    console.print(table)

    if report.failures:
        for path, message in report.failures.items():
            err_console.print(f"[red]Failed:[/red] {escape(path)}: {escape(message)}")
        raise typer.Exit(code=1)


@app.command()
def query(
    topic: str = typer.Argument(..., help="Topic to retrieve context for"),
    section: Optional[List[str]] = typer.Option(None, "--section", help="Section name (repeatable)"),
    specialty: str = SpecialtyOption,
    note: Optional[List[str]] = NoteOption,
    notes_dir: Optional[List[Path]] = NotesDirOption,
    slides_dir: Optional[Path] = SlidesDirOption,
    cache_dir: Optional[Path] = CacheDirOption,
    embedding_model: str = ModelOption,
    preset: Optional[str] = PresetOption,
    allow_stale_index: bool = typer.Option(
        False, "--allow-stale-index", help="Continue with stale or missing artifacts (warn only)"
    ),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", help="Write each section's context here"),
    lexicon_path: Optional[Path] = typer.Option(
        None, "--lexicon", help="JSON file with synonym groups and section hints"
    ),
    verbose: bool = VerboseOption,
) -> None:
    """Assemble the retrieved context for each section of a topic."""
    _setup_logging(verbose)
    try:
        config = _build_config(
            specialty=specialty,
            notes=note,
            notes_dirs=notes_dir,
            slides_dir=slides_dir,
            cache_dir=cache_dir,
            embedding_model=embedding_model,
            preset=preset,
        )
        lexicon = load_lexicon(lexicon_path)
        context = load_indexed_context(config, allow_stale=allow_stale_index, hint=_index_hint(config))
    except NotesRagError as exc:
        _fail(exc)
        return

    sections = section or list(lexicon.section_hints)
    with EmbeddingClient.for_model(config.embedding_model) as embedder:
        retriever = SectionRetriever(context, embedder, config, lexicon=lexicon)
        for name in sections:
            result = retriever.build_section_context(topic, name)
            if output_dir is not None:
                output_dir.mkdir(parents=True, exist_ok=True)
                target = output_dir / f"{slugify(name) or 'section'}.md"
                target.write_text(result.selection.context_text + "\n", encoding="utf-8")
                console.print(f"{name}: {len(result.selection.selected)} chunks, "
                              f"{result.selection.used_chars} chars -> {target}", markup=False)
            else:
                console.rule(escape(name))
                console.print(result.selection.context_text or "No context retrieved.", markup=False)


@app.command()
def status(
    specialty: str = SpecialtyOption,
    note: Optional[List[str]] = NoteOption,
    notes_dir: Optional[List[Path]] = NotesDirOption,
    slides_dir: Optional[Path] = SlidesDirOption,
    cache_dir: Optional[Path] = CacheDirOption,
    embedding_model: str = ModelOption,
    preset: Optional[str] = PresetOption,
) -> None:
    """Report sources whose index entries are missing or stale."""
    try:
        config = _build_config(
            specialty=specialty,
            notes=note,
            notes_dirs=notes_dir,
            slides_dir=slides_dir,
            cache_dir=cache_dir,
            embedding_model=embedding_model,
            preset=preset,
        )
    except NotesRagError as exc:
        _fail(exc)
        return

    resolved = config.resolve_cache_dir(Path.cwd())
    manifest = read_manifest(resolved / MANIFEST_FILE)
    sources = discover_sources(config)
    issues = list_readiness_issues(config, manifest, sources, cache_dir=resolved)
    if not issues:
        console.print(f"[green]Index is up to date ({len(sources)} sources).[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Reason")
    table.add_column("Source")
    for issue in issues:
        table.add_row(issue.reason, issue.path)
    console.print(table)
    raise typer.Exit(code=1)


@app.command()
def prune(
    specialty: str = SpecialtyOption,
    cache_dir: Optional[Path] = CacheDirOption,
) -> None:
    """Remove manifest entries (and unshared artifacts) whose source file is gone."""
    config = AppConfig(specialty=specialty, cache_dir=cache_dir)
    resolved = config.resolve_cache_dir(Path.cwd())
    manifest_path = resolved / MANIFEST_FILE
    if not manifest_path.exists():
        console.print("[yellow]Manifest not found, nothing to prune.[/yellow]")
        return

    manifest = read_manifest(manifest_path)
    before = dict(manifest.sources)
    removed = manifest.prune_missing()
    still_used = {entry.artifact_dir for entry in manifest.sources.values()}
    for path in removed:
        artifact_dir = before[path].artifact_dir
        if artifact_dir not in still_used:
            shutil.rmtree(absolute_from_cache(resolved, artifact_dir), ignore_errors=True)
    write_manifest(manifest_path, manifest)
    console.print(f"Removed {len(removed)} orphaned entries.")
