"""Gallery: the engines wired over one store, index and set of directories.

Shared by the batch CLI and the HTTP service. Content changes, deletion,
visibility, tags and index maintenance go through here so every dependent
(code cells, index document, word cloud files) follows the notebook.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field

from .config import GalleryConfig
from .content import ContentStore
from .errors import BackendUnavailable, GenerationTimeout, NotebookNotFound
from .fingerprint import FingerprintEngine
from .locks import KeyedLock
from .metrics import MetricsAggregator
from .models import Notebook, utcnow
from .parser import NotebookFormatError, notebook_text, packages, parse_notebook
from .permissions import PermissionBuilder
from .ranking import RankingEngine
from .search_index import SearchIndex
from .store import NotebookStore
from .wordcloud_cache import ArtifactPaths, WordcloudCache, render_wordcloud

logger = logging.getLogger(__name__)


@dataclass
class Gallery:
    """All gallery components, built from a GalleryConfig unless injected."""

    config: GalleryConfig = field(default_factory=GalleryConfig)
    permissions: PermissionBuilder = field(default_factory=PermissionBuilder)

    store: NotebookStore | None = None
    index: SearchIndex | None = None
    content: ContentStore | None = None
    wordclouds: WordcloudCache | None = None
    fingerprints: FingerprintEngine | None = None
    metrics: MetricsAggregator | None = None
    ranking: RankingEngine | None = None

    _locks: KeyedLock = field(default_factory=KeyedLock, repr=False)

    def __post_init__(self) -> None:
        directories = self.config.directories
        if self.store is None:
            self.store = NotebookStore(directories.state)
        if self.index is None:
            self.index = SearchIndex(directories.state)
        if self.content is None:
            self.content = ContentStore(directories.content)
        if self.wordclouds is None:
            cloud = self.config.wordcloud
            self.wordclouds = WordcloudCache(
                directory=directories.wordclouds,
                generator=functools.partial(
                    render_wordcloud, width=cloud.width, height=cloud.height
                ),
                ttl_seconds=cloud.ttl_seconds,
            )
        # Rehash and recompute share one lock table: one writer per notebook
        if self.fingerprints is None:
            self.fingerprints = FingerprintEngine(self.store, self.content, locks=self._locks)
        if self.metrics is None:
            self.metrics = MetricsAggregator(
                self.store,
                on_change=self.reindex,
                policy=self.config.health.to_policy(),
                locks=self._locks,
            )
        if self.ranking is None:
            self.ranking = RankingEngine(
                self.store,
                self.index,
                permissions=self.permissions,
                weights=self.config.ranking.to_weights(),
                per_page=self.config.ranking.per_page,
            )

    # ================================================================
    # Lifecycle
    # ================================================================

    async def open(self) -> None:
        await self.store.initialize()
        await self.index.initialize()
        logger.info("Gallery opened")

    async def close(self) -> None:
        await self.index.close()
        await self.store.close()

    async def __aenter__(self) -> Gallery:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ================================================================
    # Lookup
    # ================================================================

    async def get_notebook(self, uuid: str) -> Notebook:
        """Load a notebook by uuid.

        Raises:
            NotebookNotFound: If there is no such notebook.
            BackendUnavailable: If the store can't be read.
        """
        try:
            notebook = await self.store.get_notebook_by_uuid(uuid)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e
        if notebook is None:
            raise NotebookNotFound(uuid)
        return notebook

    async def all_notebooks(self) -> list[Notebook]:
        notebooks = await self.store.get_notebooks(await self.store.all_notebook_ids())
        return list(notebooks.values())

    # ================================================================
    # Index maintenance
    # ================================================================

    def _body(self, notebook: Notebook) -> str:
        document = self.content.read(notebook.uuid)
        if document is None:
            return ""
        try:
            return notebook_text(parse_notebook(document))
        except NotebookFormatError as e:
            logger.warning(f"Indexing {notebook.uuid} without body: {e}")
            return ""

    async def reindex(self, notebook: Notebook) -> None:
        """Rewrite the notebook's index document from the store and content."""
        body = await asyncio.to_thread(self._body, notebook)
        try:
            document = await self.store.index_document(notebook.id, body)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e
        if document is None:
            await self.index.delete(notebook.id)
            return
        try:
            await self.index.upsert(document)
        except sqlite3.Error as e:
            raise BackendUnavailable("search index", str(e)) from e
        logger.debug(f"Reindexed notebook {notebook.uuid}")

    async def rebuild_index(self) -> int:
        """Clear the index and reindex every notebook.

        Returns:
            Number of notebooks indexed.
        """
        await self.index.clear()
        notebooks = await self.all_notebooks()
        for notebook in notebooks:
            await self.reindex(notebook)
        logger.info(f"Rebuilt search index: {len(notebooks)} notebooks")
        return len(notebooks)

    # ================================================================
    # Visibility and tags
    # ================================================================

    async def _update_indexed(self, notebook: Notebook, change: Awaitable[None]) -> None:
        """Apply a store change to an indexed field, then reindex the notebook."""
        async with self._locks.hold(notebook.id):
            try:
                await change
            except sqlite3.Error as e:
                raise BackendUnavailable("store", str(e)) from e
            await self.reindex(notebook)

    async def set_public(self, notebook: Notebook, public: bool) -> None:
        await self._update_indexed(notebook, self.store.set_public(notebook.id, public))
        logger.info(f"Notebook {notebook.uuid} is now {'public' if public else 'private'}")

    async def share(self, notebook: Notebook, user_id: int) -> None:
        """Give a user read access and make the index agree.

        Raises:
            BackendUnavailable: If the store or the index can't be written.
                A failed reindex leaves the share in place; rebuild_index()
                brings the index back in line.
        """
        await self._update_indexed(notebook, self.store.share(notebook.id, user_id))
        logger.info(f"Shared notebook {notebook.uuid} with user {user_id}")

    async def unshare(self, notebook: Notebook, user_id: int) -> None:
        await self._update_indexed(notebook, self.store.unshare(notebook.id, user_id))
        logger.info(f"Unshared notebook {notebook.uuid} from user {user_id}")

    async def set_tags(
        self, notebook: Notebook, tags: Iterable[str], user_id: int | None = None
    ) -> None:
        await self._update_indexed(
            notebook, self.store.set_tags(notebook.id, list(tags), user_id=user_id)
        )

    # ================================================================
    # Content changes and deletion
    # ================================================================

    async def content_changed(self, notebook: Notebook) -> Notebook:
        """Handle new content: rehash, bump content_updated_at, reindex.

        The word cloud is left to its staleness policy.

        Raises:
            FingerprintFailure: If the new content can't be fingerprinted.
                Nothing else is touched in that case.
        """
        await self.fingerprints.rehash(notebook)
        await self.store.touch_content(notebook.id)
        refreshed = await self.store.get_notebook(notebook.id) or notebook
        await self.reindex(refreshed)
        logger.info(f"Processed content change for {notebook.uuid}")
        return refreshed

    async def delete_notebook(self, notebook: Notebook) -> None:
        """Delete a notebook with its index document, content and word cloud."""
        await self.store.delete_notebook(notebook.id)
        await self.index.delete(notebook.id)
        self.content.remove(notebook.uuid)
        self.wordclouds.remove(notebook.uuid)
        logger.info(f"Deleted notebook {notebook.uuid}")

    # ================================================================
    # Word clouds
    # ================================================================

    async def wordcloud(self, notebook: Notebook, timeout: float | None = None) -> ArtifactPaths:
        """Current word cloud for a notebook, regenerated if stale."""
        if not self.wordclouds.is_stale(notebook) and not self.wordclouds.in_flight(notebook.uuid):
            return self.wordclouds.paths_for(notebook.uuid)
        try:
            weights = await self.store.keywords(notebook.id)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e
        return await self.wordclouds.ensure_current(notebook, weights, timeout=timeout)

    async def generate_all_wordclouds(self, timeout: float | None = None) -> dict[str, int]:
        """Bring every notebook's word cloud up to date.

        Returns:
            Counts of "regenerated", "current" and "failed" notebooks.
        """
        counts = {"regenerated": 0, "current": 0, "failed": 0}
        for notebook in await self.all_notebooks():
            if not self.wordclouds.is_stale(notebook):
                counts["current"] += 1
                continue
            try:
                await self.wordcloud(notebook, timeout=timeout)
                counts["regenerated"] += 1
            except (GenerationTimeout, OSError, ValueError) as e:
                logger.warning(f"Word cloud failed for {notebook.uuid}: {e}")
                counts["failed"] += 1
        return counts

    # ================================================================
    # Batch
    # ================================================================

    async def rehash_all(self) -> dict[str, int]:
        return await self.fingerprints.rehash_all()

    async def recompute_all(self) -> dict[str, int]:
        return await self.metrics.recompute_all()

    async def package_summary(self) -> dict[str, dict[str, int]]:
        """Number of notebooks loading each package, by language.

        Notebooks without readable content are left out.

        Returns:
            {lang: {package: notebook count}}
        """
        summary: dict[str, dict[str, int]] = {}
        for notebook in await self.all_notebooks():
            document = await asyncio.to_thread(self.content.read, notebook.uuid)
            if document is None:
                continue
            try:
                names = packages(parse_notebook(document), notebook.lang)
            except NotebookFormatError as e:
                logger.debug(f"No packages for {notebook.uuid}: {e}")
                continue
            counts = summary.setdefault(notebook.lang, {})
            for name in names:
                counts[name] = counts.get(name, 0) + 1
        return summary

    async def stats(self) -> dict:
        """Counts for the stats command and the health endpoint."""
        notebook_ids = await self.store.all_notebook_ids()
        return {
            "notebooks": len(notebook_ids),
            "indexed": await self.index.count(),
            "checked_at": utcnow().isoformat(),
        }

