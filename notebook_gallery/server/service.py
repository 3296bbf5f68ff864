"""GalleryService: the HTTP API and content watcher over one Gallery.

This module wires together:
- ConfigManager: YAML configuration with environment overrides
- Gallery: store, search index, engines and word cloud cache
- ContentWatcher: notebook document change detection
- GalleryAPI: HTTP API endpoints
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from aiohttp import web

from ..config import ConfigManager, GalleryConfig
from ..errors import FingerprintFailure, GalleryError
from ..gallery import Gallery
from .api import GalleryAPI
from .content_watcher import ContentWatcher

if TYPE_CHECKING:
    from aiohttp.web import AppRunner, TCPSite

logger = logging.getLogger(__name__)


@dataclass
class GalleryService:
    """Main service: opens the gallery, serves HTTP, follows content changes."""

    config_path: Path | None = None

    # Injected components (for testability)
    config: GalleryConfig | None = None
    gallery: Gallery | None = None
    content_watcher: ContentWatcher | None = None
    api: GalleryAPI | None = None

    # HTTP server config; None takes the configured value
    host: str | None = None
    port: int | None = None

    # Internal state
    _runner: AppRunner | None = field(default=None, repr=False)
    _site: TCPSite | None = field(default=None, repr=False)
    _running: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize components if not injected."""
        if self.config is None:
            self.config = ConfigManager(self.config_path).load()

        if self.host is None:
            self.host = self.config.server.host
        if self.port is None:
            self.port = self.config.server.port

        if self.gallery is None:
            self.gallery = Gallery(config=self.config)

        if self.content_watcher is None and self.config.server.watch_content:
            self.content_watcher = ContentWatcher(
                content=self.gallery.content,
                on_changed_callback=self.on_content_changed,
            )

        if self.api is None:
            self.api = GalleryAPI(
                gallery=self.gallery,
                wordcloud_timeout=self.config.wordcloud.timeout,
            )

    @property
    def is_running(self) -> bool:
        return self._running

    async def on_content_changed(self, uuid: str) -> None:
        """Rehash and reindex the notebook whose document changed.

        Files that belong to no notebook are ignored. A document that can't
        be fingerprinted leaves the notebook as it was.
        """
        notebook = await self.gallery.store.get_notebook_by_uuid(uuid)
        if notebook is None:
            logger.debug(f"Content change for unknown notebook {uuid}")
            return

        try:
            await self.gallery.content_changed(notebook)
        except FingerprintFailure as e:
            logger.warning(f"Keeping previous code cells for {uuid}: {e}")
        except GalleryError as e:
            logger.error(f"Content change for {uuid} not applied: {e}")

    async def start(self) -> None:
        """Start the service.

        Startup sequence:
        1. Open the store and the search index
        2. Start the content watcher (if enabled)
        3. Start HTTP server
        """
        if self._running:
            logger.warning("Service already running")
            return

        logger.info("Starting gallery service...")

        await self.gallery.open()

        if self.content_watcher is not None:
            await self.content_watcher.start()
            logger.info("Content watcher started")

        app = self.api.create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        self._running = True
        logger.info(f"HTTP server listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the service: HTTP server, then the watcher, then the databases."""
        if not self._running:
            return

        logger.info("Stopping gallery service...")

        if self._site:
            await self._site.stop()
            self._site = None

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("HTTP server stopped")

        if self.content_watcher is not None:
            await self.content_watcher.stop()

        await self.gallery.close()

        self._running = False
        logger.info("Gallery service stopped")
