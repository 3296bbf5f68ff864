"""Tests for RankingEngine listing and full-text search."""

from __future__ import annotations

import logging
import sqlite3
from unittest.mock import patch

import pytest

from notebook_gallery.errors import BackendUnavailable, InvalidQuery
from notebook_gallery.models import Principal, Suggestion, Summary
from notebook_gallery.permissions import Intent
from notebook_gallery.ranking import (
    RankedNotebook,
    RankingEngine,
    RankingWeights,
    ResultPage,
    escape_highlight,
)
from notebook_gallery.search_index import SearchIndex
from notebook_gallery.store import NotebookStore


@pytest.fixture
def engine(store: NotebookStore, index: SearchIndex) -> RankingEngine:
    return RankingEngine(store, index, per_page=10)


@pytest.fixture
def indexed(store: NotebookStore, index: SearchIndex):
    """Push a notebook's current index document, with optional body text."""

    async def _index(notebook, body: str = "") -> None:
        await index.upsert(await store.index_document(notebook.id, body))

    return _index


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestEscapeHighlight:
    """Tests for escape_highlight."""

    def test_keeps_emphasis(self) -> None:
        text = "<script>x</script> <em>fit</em> <b>a</b><br>"
        expected = "&lt;script&gt;x&lt;/script&gt; <em>fit</em> <b>a</b><br>"
        assert escape_highlight(text) == expected

    def test_empty(self) -> None:
        assert escape_highlight(None) is None
        assert escape_highlight("") == ""


class TestResultPage:
    """Tests for ResultPage paging math."""

    def test_pages(self) -> None:
        assert ResultPage([], total=0, page=1, per_page=20).pages == 1
        assert ResultPage([], total=41, page=1, per_page=20).pages == 3


class TestSnippet:
    """Tests for RankedNotebook.snippet."""

    def test_reasons_are_escaped_and_emphasized(self) -> None:
        ranked = RankedNotebook(notebook=None, reasons="similar to <yours>")
        assert ranked.snippet == "<em>Similar to &lt;yours&gt;</em>"

    def test_fulltext_and_reasons_joined(self) -> None:
        ranked = RankedNotebook(notebook=None, fulltext_snippet="<em>fit</em>", reasons="starred")
        assert ranked.snippet == "<em>fit</em><br><br><em>Starred</em>"

    def test_no_snippet(self) -> None:
        assert RankedNotebook(notebook=None).snippet is None


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestListing:
    """Tests for listing mode."""

    @pytest.mark.asyncio
    async def test_anonymous_sees_public_only(self, engine, make_user, make_notebook) -> None:
        owner = await make_user()
        public = await make_notebook(owner, public=True)
        await make_notebook(owner, public=False)

        page = await engine.get(Principal.anonymous())

        assert [r.notebook.id for r in page.results] == [public.id]
        assert page.total == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("q", ["   ", '""', '" "  ""'])
    async def test_query_without_terms_is_listing(
        self, engine, make_user, make_notebook, q
    ) -> None:
        # Nothing is indexed, so only listing mode can find the notebook
        await make_notebook(await make_user(), public=True)

        page = await engine.get(Principal.anonymous(), q=q)

        assert page.total == 1
        assert page.results[0].summary == Summary.initial()

    @pytest.mark.asyncio
    async def test_default_sort_is_suggestion_score(
        self, engine, store, make_user, make_notebook
    ) -> None:
        user = await make_user()
        first = await make_notebook(user)
        second = await make_notebook(user)
        await store.add_suggestion(Suggestion(user.id, second.id, "recently viewed", 3.0))
        principal = await store.principal_for(user.id)

        page = await engine.listing(principal)

        assert [r.notebook.id for r in page.results] == [second.id, first.id]
        assert page.results[0].score == 3.0
        assert page.results[0].snippet == "<em>Recently viewed</em>"

    @pytest.mark.asyncio
    async def test_pagination(self, store, index, make_user, make_notebook) -> None:
        engine = RankingEngine(store, index, per_page=2)
        owner = await make_user()
        notebooks = [await make_notebook(owner, public=True) for _ in range(5)]

        page = await engine.listing(
            Principal.anonymous(), page=3, sort="created_at", sort_dir="asc"
        )

        assert [r.notebook.id for r in page.results] == [notebooks[4].id]
        assert (page.total, page.pages) == (5, 3)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [{"sort": "owner"}, {"sort_dir": "up"}, {"page": 0}],
    )
    async def test_invalid_query(self, engine, kwargs) -> None:
        with pytest.raises(InvalidQuery):
            await engine.listing(Principal.anonymous(), **kwargs)

    @pytest.mark.asyncio
    async def test_store_failure_is_not_empty_result(self, engine, store) -> None:
        with patch.object(
            store, "list_notebooks", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            with pytest.raises(BackendUnavailable):
                await engine.listing(Principal.anonymous())


# ---------------------------------------------------------------------------
# Full-text
# ---------------------------------------------------------------------------


class TestFulltext:
    """Tests for full-text mode."""

    @pytest.mark.asyncio
    async def test_boosts_for(self, engine, store, make_user, make_notebook) -> None:
        user = await make_user()
        suggested = await make_notebook(user)
        healthy = await make_notebook(user)
        await store.add_suggestion(Suggestion(user.id, suggested.id, "starred by friends", 2.0))
        await store.save_summary(healthy.id, Summary(health=0.8))
        await store.save_summary(suggested.id, Summary(health=0.4))

        boosts, suggestions = await engine.boosts_for(await store.principal_for(user.id))

        assert boosts == [
            ({"term": {"id": suggested.id}}, 10.0),
            ({"term": {"id": healthy.id}}, 8.0),
        ]
        assert suggestions[suggested.id].reasons == "starred by friends"

    @pytest.mark.asyncio
    async def test_boost_changes_score_by_weighted_amount(
        self, engine, store, indexed, make_user, make_notebook
    ) -> None:
        user = await make_user()
        plain = await make_notebook(user, title="Notebook A", public=True)
        boosted = await make_notebook(user, title="Notebook B", public=True)
        await store.add_suggestion(Suggestion(user.id, boosted.id, "similar", 2.0))
        await store.save_summary(boosted.id, Summary(health=0.8))
        for notebook in (plain, boosted):
            await indexed(notebook, body="kaplan meier survival estimate")

        page = await engine.get(await store.principal_for(user.id), q="kaplan")

        assert [r.notebook.id for r in page.results] == [boosted.id, plain.id]
        delta = page.results[0].score - page.results[1].score
        assert delta == pytest.approx(2.0 * 5.0 + 0.8 * 10.0)

    @pytest.mark.asyncio
    async def test_custom_weights(
        self, store, index, indexed, make_user, make_notebook
    ) -> None:
        engine = RankingEngine(store, index, weights=RankingWeights(suggestion=0.0, health=0.0))
        user = await make_user()
        notebook = await make_notebook(user, public=True)
        await store.add_suggestion(Suggestion(user.id, notebook.id, "similar", 2.0))
        await indexed(notebook, body="kaplan")

        boosts, _ = await engine.boosts_for(await store.principal_for(user.id))

        assert boosts == [({"term": {"id": notebook.id}}, 0.0)]

    @pytest.mark.asyncio
    async def test_permission_filter_applies(
        self, engine, indexed, make_user, make_notebook
    ) -> None:
        owner = await make_user()
        public = await make_notebook(owner, public=True)
        private = await make_notebook(owner, public=False)
        await indexed(public, body="bootstrap resampling")
        await indexed(private, body="bootstrap resampling")

        page = await engine.get(Principal.anonymous(), q="bootstrap")

        assert [r.notebook.id for r in page.results] == [public.id]

    @pytest.mark.asyncio
    async def test_snippet_highlights_and_admin_score(
        self, engine, store, indexed, make_user, make_notebook
    ) -> None:
        admin = await make_user(admin=True)
        member = await make_user()
        notebook = await make_notebook(admin, title="Bayesian <tricks>", public=True)
        await indexed(notebook)

        member_page = await engine.get(await store.principal_for(member.id), q="bayesian")
        admin_page = await engine.get(await store.principal_for(admin.id), q="bayesian")

        snippet = member_page.results[0].snippet
        assert snippet.startswith("<em>Bayesian</em> &lt;tricks&gt;")
        assert "[score:" not in snippet
        assert "[score:" in admin_page.results[0].snippet

    @pytest.mark.asyncio
    async def test_index_failure_is_backend_unavailable(self, engine, index) -> None:
        with patch.object(
            index, "_candidates", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            with pytest.raises(BackendUnavailable):
                await engine.get(Principal.anonymous(), q="anything")

    @pytest.mark.asyncio
    async def test_malformed_text_is_invalid_query(self, engine, index) -> None:
        with patch.object(
            index, "_candidates", side_effect=sqlite3.OperationalError("fts5: syntax error")
        ):
            with pytest.raises(InvalidQuery):
                await engine.get(Principal.anonymous(), q="anything")

    @pytest.mark.asyncio
    async def test_stale_index_hit_skipped_and_not_counted(
        self, engine, store, index, indexed, make_user, make_notebook, caplog
    ) -> None:
        notebook = await make_notebook(await make_user(), public=True)
        await indexed(notebook, body="orphan")
        await store.delete_notebook(notebook.id)

        with caplog.at_level(logging.WARNING):
            page = await engine.get(Principal.anonymous(), q="orphan")

        assert page.results == []
        assert page.total == 0
        assert f"Index hit for missing notebook id={notebook.id}" in caplog.text


# ---------------------------------------------------------------------------
# Access checks and similarity
# ---------------------------------------------------------------------------


class TestAccess:
    """Tests for permitted, similar_for and language_counts."""

    @pytest.mark.asyncio
    async def test_permitted(self, engine, store, make_user, make_notebook) -> None:
        owner = await make_user()
        stranger = await make_user()
        notebook = await make_notebook(owner, public=True)

        owner_principal = await store.principal_for(owner.id)
        stranger_principal = await store.principal_for(stranger.id)

        assert await engine.permitted(notebook, owner_principal, Intent.EDIT)
        assert await engine.permitted(notebook, stranger_principal, Intent.READ)
        assert not await engine.permitted(notebook, stranger_principal, Intent.EDIT)

    @pytest.mark.asyncio
    async def test_similar_for(self, engine, store, make_user, make_notebook) -> None:
        owner = await make_user()
        source = await make_notebook(owner, public=True)
        other = await make_notebook(owner, public=True)
        await store.set_similarities(source.id, [(other.id, 0.7)])

        similar = await engine.similar_for(source, Principal.anonymous())

        assert [(nb.id, score) for nb, score in similar] == [(other.id, 0.7)]

    @pytest.mark.asyncio
    async def test_language_counts(self, engine, make_user, make_notebook) -> None:
        owner = await make_user()
        await make_notebook(owner, public=True, lang="julia", lang_version="1.10")
        await make_notebook(owner, public=False, lang="R")

        counts = await engine.language_counts(Principal.anonymous())

        assert ("julia", None, 1) in counts
        assert all(lang != "R" for lang, _, _ in counts)
