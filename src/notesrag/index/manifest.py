"""Fingerprints, the index manifest, and atomic JSON persistence."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from notesrag.models import MANIFEST_VERSION, Fingerprint, Manifest, ManifestEntry
from notesrag.utils.files import compute_sha256

LOGGER = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def fingerprint_file(path: Path) -> Fingerprint:
    """Fingerprint a regular file; raises ``OSError`` if it is missing or not a file."""
    absolute = Path(path).resolve()
    stat = absolute.stat()
    if not absolute.is_file():
        raise IsADirectoryError(f"Expected file: {absolute}")
    return Fingerprint(
        path=absolute,
        size=stat.st_size,
        mtime_ms=stat.st_mtime_ns / 1_000_000,
        sha256=compute_sha256(absolute),
    )


def is_fingerprint_match(entry: ManifestEntry | None, fingerprint: Fingerprint | None) -> bool:
    if entry is None or fingerprint is None:
        return False
    return (
        entry.sha256 == fingerprint.sha256
        and entry.size == fingerprint.size
        and float(entry.mtime_ms) == float(fingerprint.mtime_ms)
    )


def read_json_if_exists(path: Path, fallback: Any = None) -> Any:
    """Parse JSON at ``path``; missing, unreadable or malformed files give ``fallback``."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return fallback
    except PermissionError as exc:
        LOGGER.warning("Cannot read %s: %s", path, exc)
        return fallback
    except UnicodeDecodeError as exc:
        LOGGER.warning("Ignoring undecodable JSON %s: %s", path, exc)
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        LOGGER.warning("Ignoring unreadable JSON %s: %s", path, exc)
        return fallback


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON via a temp file in the same directory, then rename into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with handle:
            handle.write(json.dumps(data, indent=2, ensure_ascii=False))
            handle.write("\n")
        os.replace(handle.name, path)
    except BaseException:
        Path(handle.name).unlink(missing_ok=True)
        raise


def empty_manifest() -> Manifest:
    now = utc_now()
    return Manifest(created_at=now, updated_at=now)


def read_manifest(path: Path) -> Manifest:
    """Load the manifest, falling back to an empty one when absent or malformed."""
    data = read_json_if_exists(path, None)
    if not isinstance(data, dict):
        return empty_manifest()

    now = utc_now()
    sources = {}
    raw_sources = data.get("sources")
    if isinstance(raw_sources, dict):
        for source_path, raw_entry in raw_sources.items():
            entry = ManifestEntry.from_dict(raw_entry)
            if entry is None:
                LOGGER.debug("Dropping invalid manifest entry for %s", source_path)
                continue
            sources[source_path] = entry

    return Manifest(
        manifest_version=str(data.get("manifestVersion") or MANIFEST_VERSION),
        created_at=str(data.get("createdAt") or now),
        updated_at=str(data.get("updatedAt") or now),
        chunking_version=str(data.get("chunkingVersion") or "unknown"),
        embedding_model=str(data.get("embeddingModel") or ""),
        sources=sources,
    )


def write_manifest(path: Path, manifest: Manifest) -> None:
    manifest.updated_at = utc_now()
    write_json_atomic(path, manifest.to_dict())
