"""Watches the content directory for changed notebook documents."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from watchfiles import Change, awatch

from ..content import ContentStore

logger = logging.getLogger(__name__)


@dataclass
class ContentWatcher:
    """Calls back with the uuid of each notebook document that changes.

    Uses watchfiles for change detection. Several writes to the same file
    within one debounce window produce a single callback. Deleted
    documents are logged and otherwise ignored; deleting a notebook goes
    through the gallery, not the filesystem.
    """

    content: ContentStore
    on_changed_callback: Callable[[str], Awaitable[None]]
    debounce_ms: int = 100

    _running: bool = False
    _watch_task: asyncio.Task | None = field(default=None, repr=False)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start watching in the background. Use stop() to shut down."""
        if self._running:
            return

        self.content.directory.mkdir(parents=True, exist_ok=True)
        self._running = True
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(self._watch_loop())
        logger.info(f"Watching notebook content in {self.content.directory}")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

    async def _watch_loop(self) -> None:
        while self._running:
            try:
                async for changes in awatch(
                    self.content.directory,
                    stop_event=self._stop_event,
                    debounce=self.debounce_ms,
                    recursive=False,
                ):
                    if not self._running:
                        break

                    await self.handle_changes(changes)

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in content watch loop")
                await asyncio.sleep(0.5)

    async def handle_changes(self, changes: set[tuple[Change, str]]) -> None:
        """Handle a batch of file change events.

        Args:
            changes: Set of (change_type, path) tuples from watchfiles.
        """
        changed: set[str] = set()
        deleted: set[str] = set()

        for change_type, path_str in changes:
            uuid = self.content.uuid_for(Path(path_str))
            if uuid is None:
                continue

            if change_type == Change.deleted:
                deleted.add(uuid)
            elif change_type in (Change.modified, Change.added):
                changed.add(uuid)

        for uuid in deleted - changed:
            logger.info(f"Notebook content deleted: {uuid} (ignored)")

        for uuid in sorted(changed):
            try:
                await self.on_changed_callback(uuid)
            except Exception:
                logger.exception(f"Error processing content change for {uuid}")
