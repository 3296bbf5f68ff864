"""Shared test fixtures for the HTTP service tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from notebook_gallery.config import GalleryConfig
from notebook_gallery.gallery import Gallery
from notebook_gallery.server.api import GalleryAPI
from notebook_gallery.wordcloud_cache import WordcloudCache


def placeholder_wordcloud(uuid, weights, image_path: Path, map_path: Path) -> None:
    image_path.write_bytes(b"\x89PNG placeholder")
    areas = "".join(f'<area alt="{word}">' for word in sorted(weights))
    map_path.write_text(f'<map name="wordcloud-{uuid}">{areas}</map>', encoding="utf-8")


@pytest.fixture
async def gallery(gallery_config: GalleryConfig) -> Gallery:
    """Opened Gallery whose word clouds skip real rendering."""
    wordclouds = WordcloudCache(
        directory=gallery_config.directories.wordclouds, generator=placeholder_wordcloud
    )
    gallery = Gallery(config=gallery_config, wordclouds=wordclouds)
    await gallery.open()
    yield gallery
    await gallery.close()


@pytest.fixture
def store(gallery: Gallery):
    """Entity factories write through the gallery's own store."""
    return gallery.store


@pytest.fixture
def api(gallery: Gallery) -> GalleryAPI:
    return GalleryAPI(gallery=gallery)
