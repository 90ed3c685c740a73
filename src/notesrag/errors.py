"""Exception types raised by notesrag."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from notesrag.models import ReadinessIssue


class NotesRagError(Exception):
    """Base class for all notesrag errors."""


class RetryableServiceError(NotesRagError):
    """An external service call failed in a way that may succeed on retry."""


class EmbeddingServiceError(NotesRagError):
    """The embedding service rejected a request permanently."""


class IndexNotReadyError(NotesRagError):
    """The on-disk index cannot be served as-is."""

    def __init__(self, message: str, issues: Sequence[ReadinessIssue] = ()) -> None:
        super().__init__(message)
        self.issues = list(issues)


class StaleIndexError(IndexNotReadyError):
    """Indexed artifacts are missing or older than their sources."""


class ConfigurationError(IndexNotReadyError):
    """Options are invalid, or the index was built with a different configuration."""
