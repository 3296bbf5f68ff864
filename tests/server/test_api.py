"""Tests for the REST API module."""

from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any
from unittest.mock import patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from notebook_gallery.models import ClickAction
from notebook_gallery.server.api import GalleryAPI


# --- Mock HTTP Request ---


@dataclass
class MockRequest:
    """Mock aiohttp request for testing."""

    match_info: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    _json_data: dict | None = None
    _json_error: bool = False
    transport: Any = None

    async def json(self) -> dict:
        """Return JSON body."""
        if self._json_error:
            raise json.JSONDecodeError("Invalid JSON", "", 0)
        return self._json_data or {}


def as_user(user, **query: str) -> MockRequest:
    return MockRequest(headers={"X-User-Id": str(user.id)}, query=query)


def for_notebook(notebook, user=None) -> MockRequest:
    headers = {"X-User-Id": str(user.id)} if user is not None else {}
    return MockRequest(match_info={"uuid": notebook.uuid}, headers=headers)


# ---------------------------------------------------------------------------
# GET /notebooks
# ---------------------------------------------------------------------------


class TestHandleNotebooks:
    """Tests for the listing and search endpoint."""

    @pytest.mark.asyncio
    async def test_anonymous_listing(self, api, make_user, make_notebook) -> None:
        owner = await make_user()
        public = await make_notebook(owner, title="Public work", public=True)
        await make_notebook(owner, public=False)

        response = await api.handle_notebooks(MockRequest())

        assert response.status == 200
        data = json.loads(response.body)
        assert data["total"] == 1
        assert data["page"] == 1
        assert data["pages"] == 1
        assert data["results"][0]["uuid"] == public.uuid
        assert data["results"][0]["title"] == "Public work"

    @pytest.mark.asyncio
    async def test_fulltext_query(self, api, gallery, make_user, make_notebook) -> None:
        owner = await make_user()
        match = await make_notebook(owner, title="Gradient boosting", public=True)
        other = await make_notebook(owner, title="Census cleanup", public=True)
        for notebook in (match, other):
            await gallery.reindex(notebook)

        response = await api.handle_notebooks(MockRequest(query={"q": "boosting"}))

        assert response.status == 200
        data = json.loads(response.body)
        assert [r["uuid"] for r in data["results"]] == [match.uuid]
        assert "<em>boosting</em>" in data["results"][0]["snippet"]

    @pytest.mark.asyncio
    async def test_admin_override(self, api, make_user, make_notebook) -> None:
        admin = await make_user(admin=True)
        await make_notebook(await make_user(), public=False)

        without = await api.handle_notebooks(as_user(admin))
        with_override = await api.handle_notebooks(as_user(admin, use_admin="1"))

        assert json.loads(without.body)["total"] == 0
        assert json.loads(with_override.body)["total"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "query",
        [{"sort": "owner"}, {"sort_dir": "sideways"}, {"page": "0"}, {"page": "two"}],
    )
    async def test_invalid_parameters(self, api, query) -> None:
        response = await api.handle_notebooks(MockRequest(query=query))

        assert response.status == 400
        assert "error" in json.loads(response.body)

    @pytest.mark.asyncio
    async def test_malformed_user_header(self, api) -> None:
        response = await api.handle_notebooks(MockRequest(headers={"X-User-Id": "abc"}))

        assert response.status == 400
        assert json.loads(response.body)["error"] == "Invalid X-User-Id header"

    @pytest.mark.asyncio
    async def test_unknown_user(self, api) -> None:
        response = await api.handle_notebooks(MockRequest(headers={"X-User-Id": "9999"}))

        assert response.status == 403

    @pytest.mark.asyncio
    async def test_store_failure_is_503(self, api, gallery) -> None:
        with patch.object(
            gallery.store, "list_notebooks", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            response = await api.handle_notebooks(MockRequest())

        assert response.status == 503
        assert json.loads(response.body) == {"error": "search unavailable"}


# ---------------------------------------------------------------------------
# Per-notebook endpoints
# ---------------------------------------------------------------------------


class TestHandleSimilar:
    """Tests for GET /notebooks/{uuid}/similar."""

    @pytest.mark.asyncio
    async def test_similar(self, api, store, make_user, make_notebook) -> None:
        owner = await make_user()
        source = await make_notebook(owner, public=True)
        other = await make_notebook(owner, title="Close cousin", public=True)
        hidden = await make_notebook(owner, public=False)
        await store.set_similarities(source.id, [(other.id, 0.7), (hidden.id, 0.9)])

        response = await api.handle_similar(for_notebook(source))

        assert response.status == 200
        data = json.loads(response.body)
        assert data["uuid"] == source.uuid
        assert data["similar"] == [
            {"id": other.id, "uuid": other.uuid, "title": "Close cousin", "score": 0.7}
        ]

    @pytest.mark.asyncio
    async def test_private_notebook_is_404(self, api, make_user, make_notebook) -> None:
        owner = await make_user()
        stranger = await make_user()
        notebook = await make_notebook(owner, public=False)

        anonymous = await api.handle_similar(for_notebook(notebook))
        other_user = await api.handle_similar(for_notebook(notebook, stranger))
        as_owner = await api.handle_similar(for_notebook(notebook, owner))

        assert anonymous.status == 404
        assert other_user.status == 404
        assert as_owner.status == 200

    @pytest.mark.asyncio
    async def test_missing_notebook_is_404(self, api) -> None:
        response = await api.handle_similar(MockRequest(match_info={"uuid": "missing"}))

        assert response.status == 404
        assert json.loads(response.body) == {"error": "Notebook not found"}


class TestHandleMetrics:
    """Tests for GET /notebooks/{uuid}/metrics and POST .../summary."""

    @pytest.mark.asyncio
    async def test_metrics_of_new_notebook(self, api, make_user, make_notebook) -> None:
        notebook = await make_notebook(await make_user(), public=True)

        response = await api.handle_metrics(for_notebook(notebook))

        assert response.status == 200
        data = json.loads(response.body)
        assert data["metrics"]["views"] == 0
        assert data["metrics"]["health"] is None
        assert data["health"] == {
            "status": "unknown",
            "score": None,
            "failed_cells": 0,
            "total_cells": 0,
        }

    @pytest.mark.asyncio
    async def test_recompute(self, api, store, make_user, make_notebook) -> None:
        user = await make_user()
        notebook = await make_notebook(user, public=True)
        await store.record_click(notebook.id, user.id, ClickAction.RAN)

        first = await api.handle_recompute(for_notebook(notebook, user))
        second = await api.handle_recompute(for_notebook(notebook, user))

        assert first.status == 200
        data = json.loads(first.body)
        assert data["changed"] is True
        assert data["metrics"]["runs"] == 1
        assert data["metrics"]["unique_runs"] == 1
        assert json.loads(second.body)["changed"] is False

    @pytest.mark.asyncio
    async def test_unreadable_log_is_503(self, api, store, make_user, make_notebook) -> None:
        notebook = await make_notebook(await make_user(), public=True)

        with patch.object(
            store, "click_counts", side_effect=sqlite3.OperationalError("database is locked")
        ):
            response = await api.handle_recompute(for_notebook(notebook))

        assert response.status == 503
        assert json.loads(response.body) == {"error": "metrics unavailable"}


class TestHandleWordcloud:
    """Tests for the word cloud image and map endpoints."""

    @pytest.mark.asyncio
    async def test_image(self, api, store, make_user, make_notebook) -> None:
        notebook = await make_notebook(await make_user(), public=True)
        await store.set_keywords(notebook.id, {"numpy": 1.0})

        response = await api.handle_wordcloud_image(for_notebook(notebook))

        assert response.status == 200
        assert response.content_type == "image/png"
        assert response.body == b"\x89PNG placeholder"

    @pytest.mark.asyncio
    async def test_map(self, api, store, make_user, make_notebook) -> None:
        notebook = await make_notebook(await make_user(), public=True)
        await store.set_keywords(notebook.id, {"numpy": 1.0, "pandas": 0.5})

        response = await api.handle_wordcloud_map(for_notebook(notebook))

        assert response.status == 200
        assert response.content_type == "text/html"
        assert response.text == (
            f'<map name="wordcloud-{notebook.uuid}">'
            '<area alt="numpy"><area alt="pandas"></map>'
        )

    @pytest.mark.asyncio
    async def test_private_wordcloud_is_404(self, api, gallery, make_user, make_notebook) -> None:
        notebook = await make_notebook(await make_user(), public=False)

        response = await api.handle_wordcloud_image(for_notebook(notebook))

        assert response.status == 404
        assert not gallery.wordclouds.paths_for(notebook.uuid).image.exists()

    @pytest.mark.asyncio
    async def test_timeout_is_504(self, gallery, make_user, make_notebook) -> None:
        def slow_generator(uuid, weights, image_path, map_path) -> None:
            time.sleep(0.3)
            image_path.write_bytes(b"late")
            map_path.write_text("<map></map>", encoding="utf-8")

        gallery.wordclouds.generator = slow_generator
        api = GalleryAPI(gallery=gallery, wordcloud_timeout=0.01)
        notebook = await make_notebook(await make_user(), public=True)

        response = await api.handle_wordcloud_image(for_notebook(notebook))

        assert response.status == 504
        # The regeneration keeps going and a later request picks it up
        paths = await gallery.wordcloud(notebook)
        assert paths.image.read_bytes() == b"late"


# ---------------------------------------------------------------------------
# Health and routing
# ---------------------------------------------------------------------------


class TestHandleHealth:
    """Tests for GET /health."""

    @pytest.mark.asyncio
    async def test_healthy(self, api, make_user, make_notebook) -> None:
        await make_notebook(await make_user())

        response = await api.handle_health(MockRequest())

        assert response.status == 200
        data = json.loads(response.body)
        assert data["status"] == "healthy"
        assert data["notebooks"] == 1
        assert data["indexed"] == 0
        assert data["uptime_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_unavailable(self, api, gallery) -> None:
        with patch.object(
            gallery, "stats", side_effect=sqlite3.OperationalError("unable to open database")
        ):
            response = await api.handle_health(MockRequest())

        assert response.status == 503
        assert json.loads(response.body)["status"] == "unavailable"


class TestCreateApp:
    """Tests for route registration."""

    @pytest.mark.asyncio
    async def test_routes(self, api, make_user, make_notebook) -> None:
        owner = await make_user()
        notebook = await make_notebook(owner, public=True)

        async with TestClient(TestServer(api.create_app())) as client:
            health = await client.get("/health")
            listing = await client.get("/notebooks", headers={"X-User-Id": str(owner.id)})
            recompute = await client.post(f"/notebooks/{notebook.uuid}/summary")
            wrong_method = await client.get(f"/notebooks/{notebook.uuid}/summary")

            assert health.status == 200
            assert listing.status == 200
            assert (await listing.json())["total"] == 1
            assert recompute.status == 200
            assert wrong_method.status == 405
