"""Error taxonomy for the retrieval, aggregation and artifact engines.

Every failure is local to the operation that raised it. Callers can tell
"no matches" apart from "search unavailable" because backend failures are
always raised, never turned into empty results.
"""

from __future__ import annotations


class GalleryError(Exception):
    """Base exception for notebook gallery operations."""

    pass


class InvalidQuery(GalleryError):
    """Bad sort field, sort direction or malformed query text. Not retried."""

    pass


class BackendUnavailable(GalleryError):
    """The relational store or the search index could not be reached.

    Callers may retry with backoff; the engines never retry internally.
    """

    def __init__(self, backend: str, message: str = "") -> None:
        self.backend = backend
        super().__init__(f"{backend} unavailable" + (f": {message}" if message else ""))


class DataUnavailable(GalleryError):
    """The event log could not be read during aggregation.

    The previously stored summary is left untouched.
    """

    pass


class GenerationTimeout(GalleryError):
    """Artifact regeneration did not finish within the caller's bound."""

    def __init__(self, notebook_uuid: str, timeout: float) -> None:
        self.notebook_uuid = notebook_uuid
        self.timeout = timeout
        super().__init__(
            f"Word cloud generation for {notebook_uuid} exceeded {timeout:g}s"
        )


class FingerprintFailure(GalleryError):
    """Notebook document could not be parsed or hashed.

    The notebook keeps its previous code cell set.
    """

    pass


class NotebookNotFound(GalleryError):
    """No notebook with the given id or uuid exists."""

    def __init__(self, key: int | str) -> None:
        self.key = key
        super().__init__(f"Notebook not found: {key}")
