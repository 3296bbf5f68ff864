"""REST API for the notebook gallery.

Provides the ranked notebook listing/search endpoint and per-notebook
endpoints for similar notebooks, metrics, summary recomputation and the
word cloud artifacts.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field

from aiohttp import web

from ..errors import (
    BackendUnavailable,
    DataUnavailable,
    GalleryError,
    GenerationTimeout,
    InvalidQuery,
    NotebookNotFound,
)
from ..gallery import Gallery
from ..models import Notebook, Principal
from ..permissions import Intent

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


class RequestError(Exception):
    """A request that can't be served, with the HTTP status to answer with."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(message)


def error_response(error: GalleryError | RequestError) -> web.Response:
    """Map an error to its JSON response.

    Unavailable backends answer 503 rather than an empty result page.
    """
    if isinstance(error, RequestError):
        return web.json_response({"error": error.message}, status=error.status)
    if isinstance(error, InvalidQuery):
        return web.json_response({"error": str(error)}, status=400)
    if isinstance(error, NotebookNotFound):
        return web.json_response({"error": "Notebook not found"}, status=404)
    if isinstance(error, GenerationTimeout):
        return web.json_response({"error": "Word cloud generation timed out"}, status=504)
    if isinstance(error, BackendUnavailable):
        logger.warning(f"Backend unavailable: {error}")
        return web.json_response({"error": "search unavailable"}, status=503)
    if isinstance(error, DataUnavailable):
        logger.warning(f"Data unavailable: {error}")
        return web.json_response({"error": "metrics unavailable"}, status=503)
    logger.error(f"Unhandled gallery error: {error}")
    return web.json_response({"error": str(error)}, status=500)


def _int_param(request: web.Request, name: str, default: int) -> int:
    value = request.query.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise RequestError(400, f"{name} must be an integer") from None


@dataclass
class GalleryAPI:
    """HTTP handlers over a Gallery.

    Every handler resolves the principal first; notebooks the principal
    can't read answer 404, the same as notebooks that don't exist.
    """

    gallery: Gallery
    wordcloud_timeout: float | None = None

    _start_time: float = field(default_factory=time.time, repr=False)

    # =========================================================================
    # Request helpers
    # =========================================================================

    async def _principal(self, request: web.Request) -> Principal:
        """Principal from the X-User-Id header and the use_admin flag.

        Raises:
            RequestError: 400 for a malformed id, 403 for an unknown user.
        """
        raw = request.headers.get(USER_HEADER)
        use_admin = request.query.get("use_admin") in ("1", "true")
        user_id = None
        if raw:
            try:
                user_id = int(raw)
            except ValueError:
                raise RequestError(400, f"Invalid {USER_HEADER} header") from None
        try:
            principal = await self.gallery.store.principal_for(user_id, use_admin=use_admin)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e
        if principal is None:
            raise RequestError(403, "Unknown user")
        return principal

    async def _readable(self, request: web.Request, principal: Principal) -> Notebook:
        """The notebook named in the path, if the principal can read it.

        Raises:
            NotebookNotFound: If it doesn't exist or isn't readable.
        """
        uuid = request.match_info["uuid"]
        notebook = await self.gallery.get_notebook(uuid)
        if not await self.gallery.ranking.permitted(notebook, principal, Intent.READ):
            logger.debug(f"Notebook {uuid} not readable by user {principal.user_id}")
            raise NotebookNotFound(uuid)
        return notebook

    # =========================================================================
    # Endpoints
    # =========================================================================

    async def handle_notebooks(self, request: web.Request) -> web.Response:
        """Handle GET /notebooks - ranked listing or full-text search.

        Query Parameters:
            q: Query text (optional; listing mode when blank)
            page: 1-based page (default: 1)
            sort: Sort field (default: score)
            sort_dir: asc|desc (default: desc)
            use_admin: 1 to apply the admin override

        Response 200:
            {
                "results": [...],
                "total": 42,
                "page": 1,
                "per_page": 20,
                "pages": 3
            }

        Response 400: Invalid sort, direction or page
        Response 503: Search unavailable
        """
        try:
            principal = await self._principal(request)
            page = _int_param(request, "page", 1)
            result = await self.gallery.ranking.get(
                principal,
                q=request.query.get("q"),
                page=page,
                sort=request.query.get("sort"),
                sort_dir=request.query.get("sort_dir"),
            )
        except (GalleryError, RequestError) as e:
            return error_response(e)

        return web.json_response(result.to_dict())

    async def handle_similar(self, request: web.Request) -> web.Response:
        """Handle GET /notebooks/{uuid}/similar - readable similar notebooks.

        Response 200:
            {"uuid": "...", "similar": [{"uuid": "...", "title": "...", "score": 0.8}]}
        """
        try:
            principal = await self._principal(request)
            notebook = await self._readable(request, principal)
            similar = await self.gallery.ranking.similar_for(notebook, principal)
        except (GalleryError, RequestError) as e:
            return error_response(e)

        return web.json_response({
            "uuid": notebook.uuid,
            "similar": [
                {"id": other.id, "uuid": other.uuid, "title": other.title, "score": score}
                for other, score in similar
            ],
        })

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """Handle GET /notebooks/{uuid}/metrics - summary metrics and health.

        Response 200:
            {
                "uuid": "...",
                "metrics": {"views": 10, "unique_views": 4, ...},
                "health": {"status": "healthy", "score": 0.9, ...}
            }
        """
        try:
            principal = await self._principal(request)
            notebook = await self._readable(request, principal)
            metrics = await self.gallery.metrics.metrics(notebook)
            health = await self.gallery.metrics.health_status(notebook)
        except (GalleryError, RequestError) as e:
            return error_response(e)

        return web.json_response({
            "uuid": notebook.uuid,
            "metrics": metrics,
            "health": health.to_dict(),
        })

    async def handle_recompute(self, request: web.Request) -> web.Response:
        """Handle POST /notebooks/{uuid}/summary - recompute from event logs.

        Response 200:
            {"uuid": "...", "changed": true, "metrics": {...}}
        """
        try:
            principal = await self._principal(request)
            notebook = await self._readable(request, principal)
            _summary, changed = await self.gallery.metrics.recompute(notebook)
            metrics = await self.gallery.metrics.metrics(notebook)
        except (GalleryError, RequestError) as e:
            return error_response(e)

        return web.json_response({"uuid": notebook.uuid, "changed": changed, "metrics": metrics})

    async def handle_wordcloud_image(self, request: web.Request) -> web.Response:
        """Handle GET /notebooks/{uuid}/wordcloud.png - current word cloud image.

        Response 504: Regeneration outlasted the configured timeout
        """
        try:
            principal = await self._principal(request)
            notebook = await self._readable(request, principal)
            paths = await self.gallery.wordcloud(notebook, timeout=self.wordcloud_timeout)
            body = await asyncio.to_thread(paths.image.read_bytes)
        except (GalleryError, RequestError) as e:
            return error_response(e)
        except OSError as e:
            logger.error(f"Word cloud image unreadable: {e}")
            return web.json_response({"error": "Word cloud unavailable"}, status=503)

        return web.Response(body=body, content_type="image/png")

    async def handle_wordcloud_map(self, request: web.Request) -> web.Response:
        """Handle GET /notebooks/{uuid}/wordcloud.map - HTML image map."""
        try:
            principal = await self._principal(request)
            notebook = await self._readable(request, principal)
            await self.gallery.wordcloud(notebook, timeout=self.wordcloud_timeout)
        except (GalleryError, RequestError) as e:
            return error_response(e)

        image_map = self.gallery.wordclouds.read_map(notebook.uuid)
        if image_map is None:
            return web.json_response({"error": "Word cloud unavailable"}, status=503)
        return web.Response(text=image_map, content_type="text/html")

    async def handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health - liveness with store and index counts.

        Response 200:
            {
                "status": "healthy",
                "uptime_seconds": 3600,
                "notebooks": 120,
                "indexed": 120,
                "checked_at": "2024-01-15T10:30:00+00:00"
            }

        Response 503: Store or index unreachable
        """
        uptime = int(time.time() - self._start_time)
        try:
            stats = await self.gallery.stats()
        except sqlite3.Error as e:
            logger.warning(f"Health check failed: {e}")
            return web.json_response(
                {"status": "unavailable", "uptime_seconds": uptime}, status=503
            )

        return web.json_response({"status": "healthy", "uptime_seconds": uptime, **stats})

    def create_app(self) -> web.Application:
        """Create and configure the aiohttp web application.

        Returns:
            Configured aiohttp Application with all routes registered.
        """
        app = web.Application()

        app.router.add_get("/notebooks", self.handle_notebooks)
        app.router.add_get("/notebooks/{uuid}/similar", self.handle_similar)
        app.router.add_get("/notebooks/{uuid}/metrics", self.handle_metrics)
        app.router.add_post("/notebooks/{uuid}/summary", self.handle_recompute)
        app.router.add_get("/notebooks/{uuid}/wordcloud.png", self.handle_wordcloud_image)
        app.router.add_get("/notebooks/{uuid}/wordcloud.map", self.handle_wordcloud_map)
        app.router.add_get("/health", self.handle_health)

        return app
