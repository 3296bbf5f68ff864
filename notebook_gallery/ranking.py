"""Permission-scoped retrieval and ranking of notebooks.

Two modes:
- listing (no query text): relational store, sorted by a notebook or
  summary field, or by the principal's suggestion score
- full-text (query text): search index, relevance plus boosts for
  suggested and healthy notebooks, with highlighted snippets

Both modes are scoped by the same PermissionBuilder predicate, rendered
for the backend being queried.
"""

from __future__ import annotations

import html
import logging
import sqlite3
from dataclasses import dataclass

from .errors import BackendUnavailable, InvalidQuery
from .models import Notebook, Principal, SuggestionInfo, Summary
from .permissions import Intent, PermissionBuilder
from .predicates import Eq, all_of, to_sql
from .search_index import SearchIndex, build_fts_query
from .store import LISTING_SORT_COLUMNS, NotebookStore

logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 20
DEFAULT_SORT = "score"
DEFAULT_SORT_DIR = "desc"

SORT_FIELDS = frozenset(LISTING_SORT_COLUMNS)
SORT_DIRECTIONS = ("asc", "desc")

# Tags kept when escaping highlighted text
HIGHLIGHT_TAGS = ("b", "i", "em")


@dataclass(frozen=True)
class RankingWeights:
    """Full-text boost weights.

    Attributes:
        suggestion: Multiplier on a notebook's suggestion score.
        health: Multiplier on a notebook's health.
        health_threshold: Only health strictly above this is boosted.
    """

    suggestion: float = 5.0
    health: float = 10.0
    health_threshold: float = 0.5


def escape_highlight(text: str | None) -> str | None:
    """HTML-escape highlighted text, keeping the emphasis and break tags."""
    if not text:
        return text
    escaped = html.escape(text, quote=False)
    for tag in HIGHLIGHT_TAGS:
        escaped = escaped.replace(f"&lt;{tag}&gt;", f"<{tag}>")
        escaped = escaped.replace(f"&lt;/{tag}&gt;", f"</{tag}>")
    return escaped.replace("&lt;br&gt;", "<br>")


@dataclass
class RankedNotebook:
    """A notebook in a result page, with its ranking decorations.

    Attributes:
        notebook: The notebook.
        score: Relevance (full-text) or suggestion score (listing).
        summary: Ranking fields, for listing results.
        fulltext_snippet: Raw highlight text, for full-text results.
        reasons: The principal's suggestion reasons for this notebook.
    """

    notebook: Notebook
    score: float | None = None
    summary: Summary | None = None
    fulltext_snippet: str | None = None
    reasons: str | None = None

    @property
    def snippet(self) -> str | None:
        """Escaped highlight and suggestion reasons, joined when both exist."""
        fulltext = escape_highlight(self.fulltext_snippet)
        suggestion = None
        if self.reasons:
            suggestion = f"<em>{html.escape(self.reasons.capitalize(), quote=False)}</em>"
        if fulltext and suggestion:
            return f"{fulltext}<br><br>{suggestion}"
        return fulltext or suggestion

    def to_dict(self) -> dict:
        nb = self.notebook
        data = {
            "id": nb.id,
            "uuid": nb.uuid,
            "title": nb.title,
            "description": nb.description,
            "lang": nb.lang,
            "lang_version": nb.lang_version,
            "public": nb.public,
            "owner": {
                "type": nb.owner_type,
                "id": nb.owner.display_id,
                "name": nb.owner.display_name,
            },
            "tags": list(nb.tags),
            "created_at": nb.created_at.isoformat(),
            "updated_at": nb.updated_at.isoformat(),
            "score": self.score,
            "snippet": self.snippet,
        }
        if self.summary is not None:
            data.update(
                views=self.summary.views,
                stars=self.summary.stars,
                runs=self.summary.runs,
                health=self.summary.health,
            )
        return data


@dataclass
class ResultPage:
    results: list[RankedNotebook]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return max(1, -(-self.total // self.per_page))

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "pages": self.pages,
        }


class RankingEngine:
    """Answers listing, full-text and similarity queries for a principal."""

    def __init__(
        self,
        store: NotebookStore,
        index: SearchIndex,
        permissions: PermissionBuilder | None = None,
        weights: RankingWeights | None = None,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> None:
        self.store = store
        self.index = index
        self.permissions = permissions or PermissionBuilder()
        self.weights = weights or RankingWeights()
        self.per_page = per_page

    # ================================================================
    # Entry point
    # ================================================================

    async def get(
        self,
        principal: Principal,
        q: str | None = None,
        page: int = 1,
        sort: str | None = None,
        sort_dir: str | None = None,
    ) -> ResultPage:
        """Full-text search when the query holds search terms, a listing otherwise.

        Text without terms (blank, or only quote marks) lists like no query.
        """
        if q is not None and build_fts_query(q) is not None:
            return await self.fulltext_search(q, principal, page, sort, sort_dir)
        return await self.listing(principal, page, sort, sort_dir)

    def _validate(self, page: int, sort: str | None, sort_dir: str | None) -> tuple[str, str]:
        sort = sort or DEFAULT_SORT
        sort_dir = (sort_dir or DEFAULT_SORT_DIR).lower()
        if sort not in SORT_FIELDS:
            raise InvalidQuery(f"Invalid sort field: {sort}")
        if sort_dir not in SORT_DIRECTIONS:
            raise InvalidQuery(f"Invalid sort direction: {sort_dir}")
        if page < 1:
            raise InvalidQuery(f"Invalid page: {page}")
        return sort, sort_dir

    # ================================================================
    # Listing mode
    # ================================================================

    async def listing(
        self,
        principal: Principal,
        page: int = 1,
        sort: str | None = None,
        sort_dir: str | None = None,
    ) -> ResultPage:
        """Readable notebooks sorted by a field and paginated.

        Raises:
            InvalidQuery: For an unknown sort field or direction.
            BackendUnavailable: If the store can't be queried.
        """
        sort, sort_dir = self._validate(page, sort, sort_dir)
        where = self.permissions.relational_filter(principal, Intent.READ)
        try:
            rows, total = await self.store.list_notebooks(
                where, principal, sort, sort_dir, page, self.per_page
            )
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e

        results = [
            RankedNotebook(
                notebook=row.notebook,
                score=row.suggestion_score,
                summary=row.summary,
                reasons=row.reasons,
            )
            for row in rows
        ]
        return ResultPage(results=results, total=total, page=page, per_page=self.per_page)

    # ================================================================
    # Full-text mode
    # ================================================================

    async def boosts_for(
        self, principal: Principal
    ) -> tuple[list[tuple[dict, float]], dict[int, SuggestionInfo]]:
        """Index boost clauses for a principal's suggestions and healthy notebooks.

        Returns:
            Tuple of ((filter clause, amount) pairs, suggestions by notebook id).
        """
        try:
            suggestions = await self.store.user_suggestions(principal)
            healthy = await self.store.healthy_notebooks(self.weights.health_threshold)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e

        boosts = [
            ({"term": {"id": notebook_id}}, info.score * self.weights.suggestion)
            for notebook_id, info in suggestions.items()
        ]
        boosts.extend(
            ({"term": {"id": notebook_id}}, health * self.weights.health)
            for notebook_id, health in healthy.items()
        )
        return boosts, suggestions

    async def fulltext_search(
        self,
        text: str,
        principal: Principal,
        page: int = 1,
        sort: str | None = None,
        sort_dir: str | None = None,
    ) -> ResultPage:
        """Readable notebooks matching text, ranked by boosted relevance.

        Raises:
            InvalidQuery: For an unknown sort or unparseable text.
            BackendUnavailable: If the index or the store can't be queried.
        """
        sort, sort_dir = self._validate(page, sort, sort_dir)
        boosts, suggestions = await self.boosts_for(principal)
        result = await self.index.query(
            text,
            filter=self.permissions.index_filter(principal, Intent.READ),
            boosts=boosts,
            sort=sort,
            sort_dir=sort_dir,
            page=page,
            per_page=self.per_page,
        )

        try:
            notebooks = await self.store.get_notebooks(hit.notebook_id for hit in result.hits)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e

        results = []
        total = result.total
        for hit in result.hits:
            notebook = notebooks.get(hit.notebook_id)
            if notebook is None:
                # Stale index document; rebuild_index() drops it
                logger.warning(f"Index hit for missing notebook id={hit.notebook_id}")
                total -= 1
                continue
            fragments = [
                fragment
                for column in ("title", "body", "description")
                for fragment in hit.highlights.get(column, [])
            ]
            snippet = " ... ".join(fragments)
            if principal.is_admin:
                snippet += f" [score: {hit.score:.4f}]"
            info = suggestions.get(hit.notebook_id)
            results.append(
                RankedNotebook(
                    notebook=notebook,
                    score=hit.score,
                    fulltext_snippet=snippet or None,
                    reasons=info.reasons if info else None,
                )
            )
        return ResultPage(
            results=results, total=total, page=page, per_page=self.per_page
        )

    # ================================================================
    # Similarity and access checks
    # ================================================================

    async def similar_for(
        self, notebook: Notebook, principal: Principal
    ) -> list[tuple[Notebook, float]]:
        """Readable notebooks similar to this one, best first."""
        where = self.permissions.relational_filter(principal, Intent.READ)
        try:
            return await self.store.similar_notebooks(notebook.id, where)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e

    async def permitted(
        self, notebook: Notebook, principal: Principal, intent: Intent | str = Intent.READ
    ) -> bool:
        """Whether the principal may read (or edit) one notebook."""
        predicate = self.permissions.predicate(principal, intent)
        where = to_sql(all_of(Eq("id", notebook.id), predicate))
        try:
            return notebook.id in await self.store.select_ids(where)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e

    async def language_counts(self, principal: Principal) -> list[tuple[str, str | None, int]]:
        """(lang, version, count) over the notebooks the principal can read."""
        where = self.permissions.relational_filter(principal, Intent.READ)
        try:
            return await self.store.language_counts(where)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e
