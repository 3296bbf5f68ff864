"""Code cell fingerprints for near-duplicate detection.

Each code cell gets an exact digest (md5 of its source) and a fuzzy,
context-triggered piecewise hash (ssdeep format via ppdeep). Identical
cells share both digests; lightly edited cells keep fuzzy digests that
compare as close.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import sqlite3
from dataclasses import dataclass

import ppdeep

from .content import ContentStore
from .errors import BackendUnavailable, FingerprintFailure
from .locks import KeyedLock
from .models import CodeCell, Notebook
from .parser import NotebookFormatError, code_cells_source, parse_notebook
from .store import NotebookStore

logger = logging.getLogger(__name__)


def exact_digest(source: str) -> str:
    return hashlib.md5(source.encode("utf-8")).hexdigest()


def fuzzy_digest(source: str) -> str:
    return ppdeep.hash(source.encode("utf-8"))


def fuzzy_distance(a: str, b: str) -> int:
    """Distance between two fuzzy digests: 0 when identical, up to 100."""
    if a == b:
        return 0
    return 100 - ppdeep.compare(a, b)


def fingerprint_document(notebook_id: int, document: str | bytes) -> list[CodeCell]:
    """Fingerprint every code cell of a notebook document, in order.

    Raises:
        FingerprintFailure: If the document can't be parsed or hashed.
    """
    try:
        sources = code_cells_source(parse_notebook(document))
    except NotebookFormatError as e:
        raise FingerprintFailure(f"Notebook {notebook_id} is not parseable: {e}") from e

    cells = []
    for number, source in enumerate(sources):
        try:
            cells.append(
                CodeCell(
                    notebook_id=notebook_id,
                    cell_number=number,
                    digest=exact_digest(source),
                    fuzzy_digest=fuzzy_digest(source),
                )
            )
        except (ValueError, TypeError) as e:
            raise FingerprintFailure(
                f"Could not hash cell {number} of notebook {notebook_id}: {e}"
            ) from e
    return cells


@dataclass
class NearDuplicate:
    """A code cell in another notebook close to one of ours."""

    cell: CodeCell
    other: CodeCell
    distance: int


class FingerprintEngine:
    """Recomputes a notebook's code cell set from its stored document."""

    def __init__(
        self,
        store: NotebookStore,
        content: ContentStore,
        locks: KeyedLock | None = None,
    ) -> None:
        self.store = store
        self.content = content
        self._locks = locks or KeyedLock()

    async def rehash(self, notebook: Notebook) -> list[CodeCell]:
        """Replace the notebook's code cells with ones computed from its content.

        The replacement is all or nothing: on any failure the notebook keeps
        its previous cell set.

        Args:
            notebook: The notebook to fingerprint.

        Returns:
            The new code cells, ordered by cell number.

        Raises:
            FingerprintFailure: If the document is missing or unparseable.
            BackendUnavailable: If the store can't be written.
        """
        async with self._locks.hold(notebook.id):
            document = await asyncio.to_thread(self.content.read, notebook.uuid)
            if document is None:
                raise FingerprintFailure(f"No content stored for notebook {notebook.uuid}")

            cells = await asyncio.to_thread(fingerprint_document, notebook.id, document)

            try:
                await self.store.replace_code_cells(notebook.id, cells)
            except sqlite3.Error as e:
                raise BackendUnavailable("store", str(e)) from e

        logger.info(f"Rehashed notebook {notebook.uuid}: {len(cells)} code cells")
        return cells

    async def rehash_all(self) -> dict[str, int]:
        """Rehash every notebook, logging and counting failures.

        Returns:
            Counts of "rehashed" and "failed" notebooks.
        """
        counts = {"rehashed": 0, "failed": 0}
        notebooks = await self.store.get_notebooks(await self.store.all_notebook_ids())
        for notebook in notebooks.values():
            try:
                await self.rehash(notebook)
                counts["rehashed"] += 1
            except FingerprintFailure as e:
                logger.warning(f"Skipping notebook {notebook.uuid}: {e}")
                counts["failed"] += 1
        return counts

    async def near_duplicates(
        self, notebook: Notebook, threshold: int = 20
    ) -> list[NearDuplicate]:
        """Cells in other notebooks within `threshold` fuzzy distance of ours.

        Returns:
            Matches ordered by distance, then by position.
        """
        own = await self.store.code_cells(notebook.id)
        others = await self.store.other_code_cells(notebook.id)

        matches = []
        for cell in own:
            for other in others:
                distance = fuzzy_distance(cell.fuzzy_digest, other.fuzzy_digest)
                if distance <= threshold:
                    matches.append(NearDuplicate(cell=cell, other=other, distance=distance))
        matches.sort(
            key=lambda m: (
                m.distance, m.cell.cell_number, m.other.notebook_id, m.other.cell_number
            )
        )
        return matches
