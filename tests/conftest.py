"""Shared test fixtures for the notebook gallery."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable

import pytest

from notebook_gallery.config import DirectoriesConfig, GalleryConfig
from notebook_gallery.gallery import Gallery
from notebook_gallery.models import Group, Notebook, User
from notebook_gallery.search_index import SearchIndex
from notebook_gallery.store import NotebookStore


# ---------------------------------------------------------------------------
# Notebook documents
# ---------------------------------------------------------------------------


def make_notebook_json(*cells: tuple[str, str]) -> str:
    """Build a minimal nbformat 4 document from (cell_type, source) pairs."""
    return json.dumps(
        {
            "nbformat": 4,
            "nbformat_minor": 5,
            "metadata": {"language_info": {"name": "python"}},
            "cells": [
                {"cell_type": cell_type, "metadata": {}, "source": source.splitlines(True)}
                for cell_type, source in cells
            ],
        }
    )


@pytest.fixture
def notebook_json() -> Callable[..., str]:
    """Factory for notebook documents.

    Usage:
        doc = notebook_json()  # two code cells and a markdown cell
        doc = notebook_json(("code", "x = 1"))
    """

    def _create(*cells: tuple[str, str]) -> str:
        if not cells:
            cells = (
                ("markdown", "# Regression analysis\nFitting a linear model."),
                ("code", "import numpy as np\nx = np.arange(10)\n"),
                ("code", "y = 2 * x + 1\nprint(y.mean())\n"),
            )
        return make_notebook_json(*cells)

    return _create


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(tmp_path: Path) -> NotebookStore:
    """Initialized relational store in a temp directory."""
    store = NotebookStore(tmp_path / "state")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def index(tmp_path: Path) -> SearchIndex:
    """Initialized search index in a temp directory."""
    index = SearchIndex(tmp_path / "state")
    await index.initialize()
    yield index
    await index.close()


@pytest.fixture
def gallery_config(tmp_path: Path) -> GalleryConfig:
    """Config with every directory under tmp_path."""
    return GalleryConfig(
        directories=DirectoriesConfig(
            state=tmp_path / "state",
            content=tmp_path / "notebooks",
            wordclouds=tmp_path / "wordclouds",
        )
    )


@pytest.fixture
async def gallery(gallery_config: GalleryConfig) -> Gallery:
    """Opened Gallery over temp directories."""
    gallery = Gallery(config=gallery_config)
    await gallery.open()
    yield gallery
    await gallery.close()


# ---------------------------------------------------------------------------
# Entity factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(store: NotebookStore) -> Callable[..., Awaitable[User]]:
    """Factory for users with unique names."""
    counter = iter(range(1, 10_000))

    async def _create(
        user_name: str | None = None,
        name: str = "",
        email: str = "",
        admin: bool = False,
    ) -> User:
        return await store.add_user(
            user_name or f"user{next(counter)}", name=name, email=email, admin=admin
        )

    return _create


@pytest.fixture
def make_group(store: NotebookStore) -> Callable[..., Awaitable[Group]]:
    """Factory for groups with unique gids."""
    counter = iter(range(1, 10_000))

    async def _create(gid: str | None = None, name: str = "", description: str = "") -> Group:
        n = next(counter)
        return await store.add_group(
            gid or f"group{n}", name=name or f"Group {n}", description=description
        )

    return _create


@pytest.fixture
def make_notebook(store: NotebookStore) -> Callable[..., Awaitable[Notebook]]:
    """Factory for notebooks with unique uuids.

    Usage:
        nb = await make_notebook(owner)
        nb = await make_notebook(owner, title="Custom", public=True)
    """
    counter = iter(range(1, 10_000))
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)

    async def _create(
        owner: User | Group,
        title: str | None = None,
        description: str = "",
        public: bool = False,
        lang: str = "python",
        lang_version: str = "3.11",
        uuid: str | None = None,
        created_at: datetime | None = None,
    ) -> Notebook:
        n = next(counter)
        return await store.add_notebook(
            uuid or f"nb-{n:04d}",
            title or f"Notebook {n}",
            description,
            owner,
            public=public,
            lang=lang,
            lang_version=lang_version,
            created_at=created_at or base + timedelta(days=n),
        )

    return _create
