"""SQLite FTS5 full-text index of notebooks.

This module provides:
- IndexHit / IndexResult: ranked hits with highlight fragments
- SearchIndex: aiosqlite interface to the notebook full-text index

The index is a CACHE - it can be fully rebuilt from the relational store
at any time. Each document keeps its permission and sort fields as JSON
next to the text columns; boolean filter clauses and boost clauses are
evaluated against those fields with the index's own filter semantics
(see predicates.index_filter_matches).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from .errors import BackendUnavailable, InvalidQuery
from .predicates import index_filter_matches

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class IndexHit:
    """One ranked document."""

    notebook_id: int
    uuid: str
    score: float
    highlights: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class IndexResult:
    """A page of hits plus the total number of matching documents."""

    hits: list[IndexHit]
    total: int


# ---------------------------------------------------------------------------
# SQL Schema Constants
# ---------------------------------------------------------------------------

# Text columns in FTS column order, with their bm25 weights
TEXT_COLUMNS: dict[str, float] = {
    "title": 50.0,
    "body": 1.0,
    "description": 10.0,
    "tags": 1.0,
    "owner": 1.0,
    "owner_description": 1.0,
    "lang": 1.0,
}

HIGHLIGHT_COLUMNS = ("title", "body", "description")

# Document fields kept for filtering and sorting
FILTER_FIELDS = (
    "id", "uuid", "public", "owner_type", "owner_id", "shares", "lang",
    "lang_version", "title_sort", "created_at", "updated_at", "views",
    "stars", "runs", "health",
)

# Sort name -> document field
SORT_FIELDS: dict[str, str] = {
    "score": "score",
    "title": "title_sort",
    "created_at": "created_at",
    "updated_at": "updated_at",
    "views": "views",
    "stars": "stars",
    "runs": "runs",
    "health": "health",
}

_COLUMNS_SQL = ", ".join(TEXT_COLUMNS)
_NEW_SQL = ", ".join(f"new.{c}" for c in TEXT_COLUMNS)
_OLD_SQL = ", ".join(f"old.{c}" for c in TEXT_COLUMNS)

CORE_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY,
    uuid TEXT NOT NULL,
    fields TEXT NOT NULL,
    {", ".join(f"{c} TEXT NOT NULL DEFAULT ''" for c in TEXT_COLUMNS)}
);
"""

FTS_SCHEMA = f"""
CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
    {_COLUMNS_SQL},
    content='documents',
    content_rowid='id',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS documents_fts_insert
AFTER INSERT ON documents BEGIN
    INSERT INTO documents_fts(rowid, {_COLUMNS_SQL}) VALUES (new.id, {_NEW_SQL});
END;

CREATE TRIGGER IF NOT EXISTS documents_fts_delete
AFTER DELETE ON documents BEGIN
    INSERT INTO documents_fts(documents_fts, rowid, {_COLUMNS_SQL})
    VALUES ('delete', old.id, {_OLD_SQL});
END;

CREATE TRIGGER IF NOT EXISTS documents_fts_update
AFTER UPDATE ON documents BEGIN
    INSERT INTO documents_fts(documents_fts, rowid, {_COLUMNS_SQL})
    VALUES ('delete', old.id, {_OLD_SQL});
    INSERT INTO documents_fts(rowid, {_COLUMNS_SQL}) VALUES (new.id, {_NEW_SQL});
END;
"""


def build_fts_query(query: str) -> str | None:
    """Convert user query text to FTS5 query syntax.

    - "auth bug" -> '"auth" OR "bug"' (terms OR'd)
    - '"auth bug"' -> '"auth bug"' (exact phrase preserved)
    - 'c++ "x.y"' -> '"c++" OR "x.y"' (every term quoted)

    Args:
        query: The user's search text.

    Returns:
        FTS5 query string, or None if the text holds no terms.
    """
    tokens: list[str] = []
    current: list[str] = []
    in_quote = False

    for char in query:
        if char == '"':
            if current:
                tokens.append("".join(current))
                current = []
            in_quote = not in_quote
        elif char.isspace() and not in_quote:
            if current:
                tokens.append("".join(current))
                current = []
        else:
            current.append(char)

    if current:
        tokens.append("".join(current))

    quoted = ['"' + t.strip() + '"' for t in tokens if t.strip()]
    return " OR ".join(quoted) if quoted else None


def _field_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value)
    return value


def _sort_key(value: Any) -> tuple:
    # Missing values sort lowest, as NULLs do in the relational store
    return (value is not None, value if value is not None else 0)


# ---------------------------------------------------------------------------
# SearchIndex Class
# ---------------------------------------------------------------------------


class SearchIndex:
    """Full-text notebook index on SQLite FTS5.

    Usage:
        index = SearchIndex(Path("~/.notebook-gallery/state"))
        await index.initialize()

        await index.upsert(document)
        result = await index.query("regression", filter=clause)

        await index.close()
    """

    def __init__(self, state_dir: Path, filename: str = "index.db") -> None:
        self.state_dir = Path(state_dir)
        self.db_path = self.state_dir / filename
        self._connection: aiosqlite.Connection | None = None

    # ================================================================
    # FTS5 Support
    # ================================================================

    @staticmethod
    def _check_fts5_available() -> bool:
        try:
            conn = sqlite3.connect(":memory:")
            conn.execute("CREATE VIRTUAL TABLE t USING fts5(x)")
            conn.close()
            return True
        except sqlite3.OperationalError:
            return False

    # ================================================================
    # Lifecycle
    # ================================================================

    async def initialize(self) -> None:
        """Create the state directory and the index tables.

        Raises:
            BackendUnavailable: If this SQLite build has no FTS5.
        """
        if not self._check_fts5_available():
            raise BackendUnavailable("search index", "SQLite FTS5 extension not available")

        self.state_dir.mkdir(parents=True, exist_ok=True)
        conn = await self._get_connection()
        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA busy_timeout = 5000")
        await conn.execute("PRAGMA synchronous = NORMAL")
        await conn.executescript(CORE_SCHEMA)
        await conn.executescript(FTS_SCHEMA)
        await conn.commit()
        logger.info(f"SearchIndex initialized at {self.db_path}")

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.debug("SearchIndex connection closed")

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    # ================================================================
    # Document Operations
    # ================================================================

    @staticmethod
    def _to_row(document: dict) -> tuple:
        fields = {name: _field_value(document.get(name)) for name in FILTER_FIELDS}
        text = [str(document.get(c) or "") for c in TEXT_COLUMNS]
        return (document["id"], document["uuid"], json.dumps(fields), *text)

    async def upsert(self, document: dict) -> None:
        """Insert or replace one document (see NotebookStore.index_document)."""
        await self.upsert_many([document])

    async def upsert_many(self, documents: list[dict]) -> int:
        """Insert or replace documents.

        Returns:
            The number of documents written.
        """
        if not documents:
            return 0
        assignments = ", ".join(f"{c} = excluded.{c}" for c in ("uuid", "fields", *TEXT_COLUMNS))
        placeholders = ", ".join("?" for _ in range(3 + len(TEXT_COLUMNS)))
        conn = await self._get_connection()
        await conn.executemany(
            f"""
            INSERT INTO documents (id, uuid, fields, {_COLUMNS_SQL})
            VALUES ({placeholders})
            ON CONFLICT(id) DO UPDATE SET {assignments}
            """,
            [self._to_row(d) for d in documents],
        )
        await conn.commit()
        return len(documents)

    async def delete(self, notebook_id: int) -> bool:
        """Remove a document.

        Returns:
            True if a document was deleted, False if not found.
        """
        conn = await self._get_connection()
        cursor = await conn.execute("DELETE FROM documents WHERE id = ?", (notebook_id,))
        await conn.commit()
        return cursor.rowcount > 0

    async def get(self, notebook_id: int) -> dict | None:
        """Stored filter and sort fields of one document."""
        conn = await self._get_connection()
        async with conn.execute(
            "SELECT fields FROM documents WHERE id = ?", (notebook_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return json.loads(row["fields"]) if row else None

    async def count(self) -> int:
        conn = await self._get_connection()
        async with conn.execute("SELECT COUNT(*) FROM documents") as cursor:
            return (await cursor.fetchone())[0]

    async def clear(self) -> None:
        """Delete every document (for rebuild)."""
        conn = await self._get_connection()
        await conn.execute("DELETE FROM documents")
        await conn.commit()
        logger.info("SearchIndex cleared all documents")

    # ================================================================
    # Search Operations
    # ================================================================

    async def query(
        self,
        text: str | None,
        filter: dict | None = None,
        boosts: list[tuple[dict, float]] | None = None,
        sort: str = "score",
        sort_dir: str = "desc",
        page: int = 1,
        per_page: int = 20,
    ) -> IndexResult:
        """Ranked, filtered, boosted and paginated query.

        Args:
            text: User query text, or None to match every document.
            filter: Boolean filter clause every hit must satisfy.
            boosts: (filter clause, amount) pairs; each clause a document
                matches adds its amount to the document's score.
            sort: A key of SORT_FIELDS. "score" is relevance.
            sort_dir: "asc" or "desc".
            page: 1-based page number.
            per_page: Page size.

        Returns:
            IndexResult with the requested page and the total hit count.

        Raises:
            InvalidQuery: If the sort is unknown or the text can't be parsed.
            BackendUnavailable: If the index can't be read.
        """
        if sort not in SORT_FIELDS:
            raise InvalidQuery(f"Unknown sort field: {sort}")
        if sort_dir not in ("asc", "desc"):
            raise InvalidQuery(f"Unknown sort direction: {sort_dir}")

        fts_query = build_fts_query(text) if text else None
        try:
            rows = await self._candidates(fts_query)
        except sqlite3.OperationalError as e:
            if "fts5" in str(e).lower() or "syntax error" in str(e).lower():
                raise InvalidQuery(f"Malformed query text: {text!r}") from e
            raise BackendUnavailable("search index", str(e)) from e
        except sqlite3.Error as e:
            raise BackendUnavailable("search index", str(e)) from e

        scored: list[tuple[dict, IndexHit]] = []
        for row in rows:
            fields = json.loads(row["fields"])
            if filter is not None and not index_filter_matches(filter, fields):
                continue
            score = row["score"]
            for clause, amount in boosts or ():
                if index_filter_matches(clause, fields):
                    score += amount
            highlights = {}
            for column in HIGHLIGHT_COLUMNS:
                fragment = row[f"hl_{column}"] if fts_query else None
                if fragment and "<em>" in fragment:
                    highlights[column] = [fragment]
            fields["score"] = score
            scored.append(
                (fields, IndexHit(row["id"], row["uuid"], score, highlights))
            )

        # Stable two-pass sort: id ascending breaks ties in either direction
        scored.sort(key=lambda item: item[1].notebook_id)
        sort_field = SORT_FIELDS[sort]
        scored.sort(
            key=lambda item: _sort_key(item[0].get(sort_field)), reverse=sort_dir == "desc"
        )

        start = (page - 1) * per_page
        hits = [hit for _, hit in scored[start : start + per_page]]
        logger.debug(
            "Index query",
            extra={"fts_query": fts_query, "total": len(scored), "page": page},
        )
        return IndexResult(hits=hits, total=len(scored))

    async def _candidates(self, fts_query: str | None) -> list[aiosqlite.Row]:
        conn = await self._get_connection()
        if fts_query is None:
            async with conn.execute(
                "SELECT id, uuid, fields, 0.0 AS score FROM documents"
            ) as cursor:
                return list(await cursor.fetchall())

        weights = ", ".join(str(w) for w in TEXT_COLUMNS.values())
        columns = list(TEXT_COLUMNS)
        snippets = ", ".join(
            f"snippet(documents_fts, {columns.index(c)}, '<em>', '</em>', '...', 16) AS hl_{c}"
            for c in HIGHLIGHT_COLUMNS
        )
        async with conn.execute(
            f"""
            SELECT documents.id AS id, documents.uuid AS uuid, documents.fields AS fields,
                -bm25(documents_fts, {weights}) AS score, {snippets}
            FROM documents_fts
            JOIN documents ON documents.id = documents_fts.rowid
            WHERE documents_fts MATCH ?
            """,
            (fts_query,),
        ) as cursor:
            return list(await cursor.fetchall())
