"""HTTP service for the notebook gallery."""

from __future__ import annotations

from notebook_gallery.server.api import GalleryAPI
from notebook_gallery.server.content_watcher import ContentWatcher
from notebook_gallery.server.service import GalleryService

__all__ = [
    "GalleryAPI",
    "ContentWatcher",
    "GalleryService",
]
