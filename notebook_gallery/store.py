"""SQLite relational store for notebooks and their dependents.

This module provides:
- NotebookStore: aiosqlite interface to users, groups, notebooks, summaries,
  click/execution logs, code cells, similarities, keywords and suggestions
- ListingRow: one row of a permission-scoped, sorted, paginated listing

Writes go through a dedicated writer connection. Each write runs in one
explicit transaction under a lock, so the reader connection (WAL mode)
only ever observes committed, whole rows.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from .models import (
    COUNTED_ACTIONS,
    Click,
    ClickAction,
    CodeCell,
    Execution,
    Group,
    Notebook,
    Owner,
    Principal,
    Suggestion,
    SuggestionInfo,
    Summary,
    User,
    utcnow,
)
from .predicates import SqlClause

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class ListingRow:
    """A notebook joined with its ranking fields and suggestion info."""

    notebook: Notebook
    summary: Summary
    reasons: str | None
    suggestion_score: float


# ---------------------------------------------------------------------------
# SQL Schema Constants
# ---------------------------------------------------------------------------

_ACTIONS_SQL = ", ".join(f"'{a.value}'" for a in ClickAction)

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    user_name TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL DEFAULT '',
    email TEXT NOT NULL DEFAULT '',
    admin INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS groups (
    id INTEGER PRIMARY KEY,
    gid TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS group_members (
    group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    editor INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (group_id, user_id)
);

CREATE TABLE IF NOT EXISTS notebooks (
    id INTEGER PRIMARY KEY,
    uuid TEXT NOT NULL UNIQUE COLLATE NOCASE,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    lang TEXT NOT NULL DEFAULT 'python',
    lang_version TEXT NOT NULL DEFAULT '',
    owner_type TEXT NOT NULL CHECK (owner_type IN ('User', 'Group')),
    owner_id INTEGER NOT NULL,
    public INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    content_updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notebooks_owner ON notebooks(owner_type, owner_id);
CREATE INDEX IF NOT EXISTS idx_notebooks_public ON notebooks(public);

CREATE TABLE IF NOT EXISTS summaries (
    notebook_id INTEGER PRIMARY KEY REFERENCES notebooks(id) ON DELETE CASCADE,
    views INTEGER NOT NULL DEFAULT 0,
    unique_views INTEGER NOT NULL DEFAULT 0,
    downloads INTEGER NOT NULL DEFAULT 0,
    unique_downloads INTEGER NOT NULL DEFAULT 0,
    runs INTEGER NOT NULL DEFAULT 0,
    unique_runs INTEGER NOT NULL DEFAULT 0,
    stars INTEGER NOT NULL DEFAULT 0,
    health REAL,
    reindex_pending INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS shares (
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    PRIMARY KEY (notebook_id, user_id)
);

CREATE TABLE IF NOT EXISTS stars (
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    PRIMARY KEY (notebook_id, user_id)
);

CREATE TABLE IF NOT EXISTS tags (
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    tag TEXT NOT NULL,
    user_id INTEGER,
    PRIMARY KEY (notebook_id, tag)
);

CREATE TABLE IF NOT EXISTS clicks (
    id INTEGER PRIMARY KEY,
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    user_id INTEGER,
    action TEXT NOT NULL CHECK (action IN ({_ACTIONS_SQL})),
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_clicks_notebook_action ON clicks(notebook_id, action);

CREATE TABLE IF NOT EXISTS executions (
    id INTEGER PRIMARY KEY,
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    cell_number INTEGER NOT NULL,
    user_id INTEGER,
    success INTEGER NOT NULL,
    runtime REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_executions_notebook ON executions(notebook_id, cell_number);

CREATE TABLE IF NOT EXISTS code_cells (
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    cell_number INTEGER NOT NULL,
    md5 TEXT NOT NULL,
    ssdeep TEXT NOT NULL,
    PRIMARY KEY (notebook_id, cell_number)
);

CREATE INDEX IF NOT EXISTS idx_code_cells_md5 ON code_cells(md5);

CREATE TABLE IF NOT EXISTS similarities (
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    other_notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    score REAL NOT NULL,
    PRIMARY KEY (notebook_id, other_notebook_id)
);

CREATE TABLE IF NOT EXISTS keywords (
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    keyword TEXT NOT NULL,
    tfidf REAL NOT NULL,
    PRIMARY KEY (notebook_id, keyword)
);

CREATE TABLE IF NOT EXISTS suggestions (
    id INTEGER PRIMARY KEY,
    user_id INTEGER,
    notebook_id INTEGER NOT NULL REFERENCES notebooks(id) ON DELETE CASCADE,
    reason TEXT NOT NULL,
    score REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_suggestions_user ON suggestions(user_id, notebook_id);
"""

# Notebook columns plus the owner's user or group columns
NOTEBOOK_SELECT = """
    SELECT notebooks.*,
        u.user_name AS owner_user_name, u.name AS owner_user_full_name,
        u.email AS owner_email, u.admin AS owner_admin,
        g.gid AS owner_gid, g.name AS owner_group_name,
        g.description AS owner_group_description
    FROM notebooks
    LEFT JOIN users u ON notebooks.owner_type = 'User' AND u.id = notebooks.owner_id
    LEFT JOIN groups g ON notebooks.owner_type = 'Group' AND g.id = notebooks.owner_id
"""

SUMMARY_COLUMNS = (
    "views", "unique_views", "downloads", "unique_downloads",
    "runs", "unique_runs", "stars", "health",
)

# Sort field -> ORDER BY expression for listings
LISTING_SORT_COLUMNS: dict[str, str] = {
    "title": "notebooks.title COLLATE NOCASE",
    "created_at": "notebooks.created_at",
    "updated_at": "notebooks.updated_at",
    "views": "summaries.views",
    "stars": "summaries.stars",
    "runs": "summaries.runs",
    "health": "summaries.health",
    "score": "suggestion_score",
}

RANDOM_REASON_PATTERN = "random%"


def _ts(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _summary_from_row(row: aiosqlite.Row) -> Summary:
    return Summary(**{name: row[name] for name in SUMMARY_COLUMNS})


def _owner_from_row(row: aiosqlite.Row, group_emails: dict[int, tuple[str, ...]]) -> Owner:
    if row["owner_type"] == "User":
        return User(
            id=row["owner_id"],
            user_name=row["owner_user_name"] or "",
            name=row["owner_user_full_name"] or "",
            email=row["owner_email"] or "",
            admin=bool(row["owner_admin"]),
        )
    return Group(
        id=row["owner_id"],
        gid=row["owner_gid"] or "",
        name=row["owner_group_name"] or "",
        description=row["owner_group_description"] or "",
        editor_emails=group_emails.get(row["owner_id"], ()),
    )


def _notebook_from_row(
    row: aiosqlite.Row,
    tags: dict[int, tuple[str, ...]],
    group_emails: dict[int, tuple[str, ...]],
) -> Notebook:
    return Notebook(
        id=row["id"],
        uuid=row["uuid"],
        title=row["title"],
        description=row["description"],
        owner=_owner_from_row(row, group_emails),
        public=bool(row["public"]),
        lang=row["lang"],
        lang_version=row["lang_version"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        content_updated_at=datetime.fromisoformat(row["content_updated_at"]),
        tags=tags.get(row["id"], ()),
    )


# ---------------------------------------------------------------------------
# NotebookStore Class
# ---------------------------------------------------------------------------


class NotebookStore:
    """SQLite-backed relational store.

    Usage:
        store = NotebookStore(Path("~/.notebook-gallery/state"))
        await store.initialize()

        owner = await store.add_user("alice")
        nb = await store.add_notebook("uuid-1", "Title", "Desc", owner)

        await store.close()
    """

    def __init__(self, state_dir: Path, filename: str = "gallery.db") -> None:
        """Initialize the NotebookStore.

        Args:
            state_dir: Directory for storing the database file.
            filename: Database file name inside state_dir.
        """
        self.state_dir = Path(state_dir)
        self.db_path = self.state_dir / filename
        self._reader: aiosqlite.Connection | None = None
        self._writer: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    # ================================================================
    # Lifecycle
    # ================================================================

    async def initialize(self) -> None:
        """Create the state directory, open connections and create tables."""
        self.state_dir.mkdir(parents=True, exist_ok=True)

        writer = await self._get_writer()
        await writer.execute("PRAGMA journal_mode = WAL")
        await writer.executescript(SCHEMA)

        await self._get_reader()
        logger.info(f"NotebookStore initialized at {self.db_path}")

    async def close(self) -> None:
        """Close both connections."""
        for conn in (self._reader, self._writer):
            if conn is not None:
                await conn.close()
        self._reader = None
        self._writer = None
        logger.debug("NotebookStore connections closed")

    # ================================================================
    # Connection Management
    # ================================================================

    async def _get_writer(self) -> aiosqlite.Connection:
        if self._writer is None:
            self._writer = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._writer.row_factory = aiosqlite.Row
            await self._writer.execute("PRAGMA busy_timeout = 5000")
            await self._writer.execute("PRAGMA synchronous = NORMAL")
            await self._writer.execute("PRAGMA foreign_keys = ON")
        return self._writer

    async def _get_reader(self) -> aiosqlite.Connection:
        if self._reader is None:
            self._reader = await aiosqlite.connect(self.db_path)
            self._reader.row_factory = aiosqlite.Row
            await self._reader.execute("PRAGMA busy_timeout = 5000")
            await self._reader.execute("PRAGMA query_only = ON")
        return self._reader

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the body as one write transaction; roll back on any error."""
        async with self._write_lock:
            conn = await self._get_writer()
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def _fetchall(self, sql: str, params: Iterable = ()) -> list[aiosqlite.Row]:
        conn = await self._get_reader()
        async with conn.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: Iterable = ()) -> aiosqlite.Row | None:
        conn = await self._get_reader()
        async with conn.execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    # ================================================================
    # Users and Groups
    # ================================================================

    async def add_user(
        self, user_name: str, name: str = "", email: str = "", admin: bool = False
    ) -> User:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO users (user_name, name, email, admin) VALUES (?, ?, ?, ?)",
                (user_name, name, email, 1 if admin else 0),
            )
            user_id = cursor.lastrowid
        return User(id=user_id, user_name=user_name, name=name, email=email, admin=admin)

    async def get_user(self, user_id: int) -> User | None:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        if row is None:
            return None
        return User(
            id=row["id"],
            user_name=row["user_name"],
            name=row["name"],
            email=row["email"],
            admin=bool(row["admin"]),
        )

    async def add_group(self, gid: str, name: str = "", description: str = "") -> Group:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO groups (gid, name, description) VALUES (?, ?, ?)",
                (gid, name, description),
            )
            group_id = cursor.lastrowid
        return Group(id=group_id, gid=gid, name=name, description=description)

    async def add_member(self, group_id: int, user_id: int, editor: bool = False) -> None:
        """Add a user to a group (or update their editor flag)."""
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO group_members (group_id, user_id, editor) VALUES (?, ?, ?)
                ON CONFLICT(group_id, user_id) DO UPDATE SET editor = excluded.editor
                """,
                (group_id, user_id, 1 if editor else 0),
            )

    async def principal_for(self, user_id: int | None, use_admin: bool = False) -> Principal | None:
        """Build the principal for a user.

        Args:
            user_id: The user id, or None for anonymous access.
            use_admin: Whether the admin override is requested.

        Returns:
            The Principal, or None if no such user exists.
        """
        if user_id is None:
            return Principal.anonymous()

        user = await self.get_user(user_id)
        if user is None:
            return None

        rows = await self._fetchall(
            "SELECT group_id, editor FROM group_members WHERE user_id = ?", (user_id,)
        )
        return Principal(
            user_id=user.id,
            read_groups=frozenset(r["group_id"] for r in rows),
            edit_groups=frozenset(r["group_id"] for r in rows if r["editor"]),
            is_admin=user.admin,
            use_admin=use_admin,
        )

    async def _group_emails(self, group_ids: Iterable[int]) -> dict[int, tuple[str, ...]]:
        group_ids = sorted(set(group_ids))
        if not group_ids:
            return {}
        placeholders = ", ".join("?" for _ in group_ids)
        rows = await self._fetchall(
            f"""
            SELECT group_members.group_id, users.email FROM group_members
            JOIN users ON users.id = group_members.user_id
            WHERE group_members.editor = 1 AND users.email != ''
                AND group_members.group_id IN ({placeholders})
            ORDER BY users.email
            """,
            group_ids,
        )
        emails: dict[int, list[str]] = {}
        for row in rows:
            emails.setdefault(row["group_id"], []).append(row["email"])
        return {gid: tuple(v) for gid, v in emails.items()}

    # ================================================================
    # Notebooks
    # ================================================================

    async def add_notebook(
        self,
        uuid: str,
        title: str,
        description: str,
        owner: Owner,
        public: bool = False,
        lang: str = "python",
        lang_version: str = "",
        created_at: datetime | None = None,
    ) -> Notebook:
        """Insert a notebook together with its initial summary."""
        now = created_at or utcnow()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO notebooks (
                    uuid, title, description, lang, lang_version, owner_type,
                    owner_id, public, created_at, updated_at, content_updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid, title, description, lang, lang_version, owner.owner_type,
                    owner.id, 1 if public else 0, _ts(now), _ts(now), _ts(now),
                ),
            )
            notebook_id = cursor.lastrowid
            await self._insert_summary(conn, notebook_id, Summary.initial())

        logger.info(f"Added notebook {uuid} (id={notebook_id})")
        return Notebook(
            id=notebook_id,
            uuid=uuid,
            title=title,
            description=description,
            owner=owner,
            public=public,
            lang=lang,
            lang_version=lang_version,
            created_at=now,
            updated_at=now,
            content_updated_at=now,
        )

    async def _load_notebooks(self, where: str, params: Iterable = ()) -> list[Notebook]:
        rows = await self._fetchall(f"{NOTEBOOK_SELECT} WHERE {where}", params)
        return await self._hydrate(rows)

    async def _hydrate(self, rows: list[aiosqlite.Row]) -> list[Notebook]:
        """Turn notebook rows into Notebooks, batch-loading tags and group emails."""
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        placeholders = ", ".join("?" for _ in ids)
        tag_rows = await self._fetchall(
            f"SELECT notebook_id, tag FROM tags WHERE notebook_id IN ({placeholders}) ORDER BY tag",
            ids,
        )
        tags: dict[int, list[str]] = {}
        for tag_row in tag_rows:
            tags.setdefault(tag_row["notebook_id"], []).append(tag_row["tag"])

        group_emails = await self._group_emails(
            row["owner_id"] for row in rows if row["owner_type"] == "Group"
        )
        frozen_tags = {k: tuple(v) for k, v in tags.items()}
        return [_notebook_from_row(row, frozen_tags, group_emails) for row in rows]

    async def get_notebook(self, notebook_id: int) -> Notebook | None:
        notebooks = await self._load_notebooks("notebooks.id = ?", (notebook_id,))
        return notebooks[0] if notebooks else None

    async def get_notebook_by_uuid(self, uuid: str) -> Notebook | None:
        notebooks = await self._load_notebooks("notebooks.uuid = ?", (uuid,))
        return notebooks[0] if notebooks else None

    async def get_notebooks(self, notebook_ids: Iterable[int]) -> dict[int, Notebook]:
        """Load several notebooks by id. Missing ids are simply absent."""
        ids = sorted(set(notebook_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        notebooks = await self._load_notebooks(f"notebooks.id IN ({placeholders})", ids)
        return {nb.id: nb for nb in notebooks}

    async def all_notebook_ids(self) -> list[int]:
        rows = await self._fetchall("SELECT id FROM notebooks ORDER BY id")
        return [row["id"] for row in rows]

    async def delete_notebook(self, notebook_id: int) -> bool:
        """Delete a notebook; dependents go with it by cascade.

        Returns:
            True if a notebook was deleted, False if not found.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute("DELETE FROM notebooks WHERE id = ?", (notebook_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted notebook id={notebook_id}")
        return deleted

    async def touch_content(self, notebook_id: int, when: datetime | None = None) -> None:
        """Record that the notebook's content changed."""
        stamp = _ts(when or utcnow())
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE notebooks SET content_updated_at = ?, updated_at = ? WHERE id = ?",
                (stamp, stamp, notebook_id),
            )

    # public, shares and tags are copied into the search index; Gallery
    # wraps these setters with a reindex
    async def set_public(self, notebook_id: int, public: bool) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE notebooks SET public = ?, updated_at = ? WHERE id = ?",
                (1 if public else 0, _ts(utcnow()), notebook_id),
            )

    async def share(self, notebook_id: int, user_id: int) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO shares (notebook_id, user_id) VALUES (?, ?)",
                (notebook_id, user_id),
            )

    async def unshare(self, notebook_id: int, user_id: int) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM shares WHERE notebook_id = ? AND user_id = ?",
                (notebook_id, user_id),
            )

    async def star(self, notebook_id: int, user_id: int) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO stars (notebook_id, user_id) VALUES (?, ?)",
                (notebook_id, user_id),
            )

    async def unstar(self, notebook_id: int, user_id: int) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM stars WHERE notebook_id = ? AND user_id = ?",
                (notebook_id, user_id),
            )

    async def star_count(self, notebook_id: int) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM stars WHERE notebook_id = ?", (notebook_id,)
        )
        return row[0]

    async def set_tags(
        self, notebook_id: int, tags: Iterable[str], user_id: int | None = None
    ) -> None:
        """Replace the notebook's tag list."""
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM tags WHERE notebook_id = ?", (notebook_id,))
            await conn.executemany(
                "INSERT OR IGNORE INTO tags (notebook_id, tag, user_id) VALUES (?, ?, ?)",
                [(notebook_id, tag, user_id) for tag in tags],
            )

    # ================================================================
    # Event Logs
    # ================================================================

    async def record_click(
        self,
        notebook_id: int,
        user_id: int | None,
        action: ClickAction,
        created_at: datetime | None = None,
    ) -> Click:
        """Append a click log entry."""
        click = Click(
            notebook_id=notebook_id,
            user_id=user_id,
            action=ClickAction(action),
            created_at=created_at or utcnow(),
        )
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT INTO clicks (notebook_id, user_id, action, created_at) VALUES (?, ?, ?, ?)",
                (notebook_id, user_id, click.action.value, _ts(click.created_at)),
            )
        return click

    async def click_counts(
        self, notebook_id: int, actions: Iterable[ClickAction]
    ) -> list[tuple[int | None, ClickAction, int]]:
        """Count clicks grouped by (actor, action).

        Returns:
            (user_id, action, count) rows in a stable order.
        """
        values = [ClickAction(a).value for a in actions]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        rows = await self._fetchall(
            f"""
            SELECT user_id, action, COUNT(*) AS n FROM clicks
            WHERE notebook_id = ? AND action IN ({placeholders})
            GROUP BY user_id, action
            ORDER BY user_id, action
            """,
            [notebook_id, *values],
        )
        return [(row["user_id"], ClickAction(row["action"]), row["n"]) for row in rows]

    async def viewer_counts(self, notebook_id: int) -> dict[ClickAction, dict[int | None, int]]:
        """Per-user click counts for each counted action.

        Returns:
            Map of action -> {user id: count}. Anonymous clicks are keyed None.
        """
        counts: dict[ClickAction, dict[int | None, int]] = {a: {} for a in COUNTED_ACTIONS}
        for user_id, action, count in await self.click_counts(notebook_id, COUNTED_ACTIONS):
            counts[action][user_id] = count
        return counts

    async def edit_history(self, notebook_id: int) -> list[Click]:
        """Created/edited clicks, oldest first."""
        rows = await self._fetchall(
            """
            SELECT * FROM clicks WHERE notebook_id = ? AND action IN (?, ?)
            ORDER BY created_at, id
            """,
            (notebook_id, ClickAction.CREATED.value, ClickAction.EDITED.value),
        )
        return [
            Click(
                notebook_id=row["notebook_id"],
                user_id=row["user_id"],
                action=ClickAction(row["action"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def record_execution(self, execution: Execution) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO executions (
                    notebook_id, cell_number, user_id, success, runtime, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.notebook_id,
                    execution.cell_number,
                    execution.user_id,
                    1 if execution.success else 0,
                    execution.runtime,
                    _ts(execution.created_at),
                ),
            )

    async def execution_counts(self, notebook_id: int) -> tuple[int, int]:
        """Return (successful, total) execution counts for a notebook."""
        row = await self._fetchone(
            """
            SELECT COALESCE(SUM(success), 0) AS ok, COUNT(*) AS total
            FROM executions WHERE notebook_id = ?
            """,
            (notebook_id,),
        )
        return row["ok"], row["total"]

    async def failed_cells(self, notebook_id: int, since: datetime) -> int:
        """Count cells whose most recent execution since `since` failed."""
        row = await self._fetchone(
            """
            SELECT COUNT(*) FROM (
                SELECT e.cell_number FROM executions e
                WHERE e.notebook_id = ? AND e.created_at >= ?
                    AND e.id = (
                        SELECT e2.id FROM executions e2
                        WHERE e2.notebook_id = e.notebook_id
                            AND e2.cell_number = e.cell_number
                            AND e2.created_at >= ?
                        ORDER BY e2.created_at DESC, e2.id DESC LIMIT 1
                    )
                    AND e.success = 0
            )
            """,
            (notebook_id, _ts(since), _ts(since)),
        )
        return row[0]

    # ================================================================
    # Summaries
    # ================================================================

    @staticmethod
    async def _insert_summary(
        conn: aiosqlite.Connection,
        notebook_id: int,
        summary: Summary,
        reindex_pending: bool = False,
    ) -> None:
        await conn.execute(
            """
            INSERT OR IGNORE INTO summaries (
                notebook_id, views, unique_views, downloads, unique_downloads,
                runs, unique_runs, stars, health, reindex_pending, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notebook_id,
                *(getattr(summary, name) for name in SUMMARY_COLUMNS),
                1 if reindex_pending else 0,
                _ts(utcnow()),
            ),
        )

    async def get_summary(self, notebook_id: int) -> Summary | None:
        row = await self._fetchone(
            "SELECT * FROM summaries WHERE notebook_id = ?", (notebook_id,)
        )
        return _summary_from_row(row) if row else None

    async def get_or_create_summary(self, notebook_id: int) -> Summary:
        """Return the notebook's summary, creating the initial one if absent."""
        summary = await self.get_summary(notebook_id)
        if summary is not None:
            return summary

        async with self._transaction() as conn:
            await self._insert_summary(conn, notebook_id, Summary.initial())
        logger.info(f"Created missing summary for notebook id={notebook_id}")
        # Another writer may have won the insert; read back whatever is stored
        return await self.get_summary(notebook_id) or Summary.initial()

    async def save_summary(self, notebook_id: int, summary: Summary) -> None:
        """Replace the whole summary row in a single statement.

        The row is flagged reindex_pending until clear_reindex_pending()
        records that the index has the new ranking fields.
        """
        assignments = ", ".join(f"{name} = ?" for name in SUMMARY_COLUMNS)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE summaries SET {assignments}, reindex_pending = 1, updated_at = ?
                WHERE notebook_id = ?
                """,
                (
                    *(getattr(summary, name) for name in SUMMARY_COLUMNS),
                    _ts(utcnow()),
                    notebook_id,
                ),
            )
            if cursor.rowcount == 0:
                await self._insert_summary(conn, notebook_id, summary, reindex_pending=True)

    async def reindex_pending(self, notebook_id: int) -> bool:
        """Whether a saved summary has not yet reached the search index."""
        row = await self._fetchone(
            "SELECT reindex_pending FROM summaries WHERE notebook_id = ?", (notebook_id,)
        )
        return bool(row and row[0])

    async def clear_reindex_pending(self, notebook_id: int) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE summaries SET reindex_pending = 0 WHERE notebook_id = ?",
                (notebook_id,),
            )

    # ================================================================
    # Code Cells
    # ================================================================

    async def replace_code_cells(self, notebook_id: int, cells: list[CodeCell]) -> None:
        """Swap in a notebook's full code cell set. All or nothing."""
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM code_cells WHERE notebook_id = ?", (notebook_id,))
            await conn.executemany(
                "INSERT INTO code_cells (notebook_id, cell_number, md5, ssdeep) VALUES (?, ?, ?, ?)",
                [(notebook_id, c.cell_number, c.digest, c.fuzzy_digest) for c in cells],
            )

    async def code_cells(self, notebook_id: int) -> list[CodeCell]:
        rows = await self._fetchall(
            "SELECT * FROM code_cells WHERE notebook_id = ? ORDER BY cell_number",
            (notebook_id,),
        )
        return [self._cell_from_row(row) for row in rows]

    async def cells_with_digest(self, digest: str) -> list[CodeCell]:
        """Code cells across all notebooks with the given exact digest."""
        rows = await self._fetchall(
            "SELECT * FROM code_cells WHERE md5 = ? ORDER BY notebook_id, cell_number",
            (digest,),
        )
        return [self._cell_from_row(row) for row in rows]

    async def other_code_cells(self, notebook_id: int) -> list[CodeCell]:
        """Code cells of every notebook except the given one."""
        rows = await self._fetchall(
            "SELECT * FROM code_cells WHERE notebook_id != ? ORDER BY notebook_id, cell_number",
            (notebook_id,),
        )
        return [self._cell_from_row(row) for row in rows]

    @staticmethod
    def _cell_from_row(row: aiosqlite.Row) -> CodeCell:
        return CodeCell(
            notebook_id=row["notebook_id"],
            cell_number=row["cell_number"],
            digest=row["md5"],
            fuzzy_digest=row["ssdeep"],
        )

    # ================================================================
    # Similarities, Keywords, Suggestions
    # ================================================================

    async def set_similarities(
        self, notebook_id: int, scores: Iterable[tuple[int, float]]
    ) -> None:
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM similarities WHERE notebook_id = ?", (notebook_id,))
            await conn.executemany(
                "INSERT INTO similarities (notebook_id, other_notebook_id, score) VALUES (?, ?, ?)",
                [(notebook_id, other, score) for other, score in scores],
            )

    async def set_keywords(self, notebook_id: int, weights: dict[str, float]) -> None:
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM keywords WHERE notebook_id = ?", (notebook_id,))
            await conn.executemany(
                "INSERT INTO keywords (notebook_id, keyword, tfidf) VALUES (?, ?, ?)",
                [(notebook_id, kw, weight) for kw, weight in weights.items()],
            )

    async def keywords(self, notebook_id: int) -> dict[str, float]:
        rows = await self._fetchall(
            "SELECT keyword, tfidf FROM keywords WHERE notebook_id = ? ORDER BY tfidf DESC, keyword",
            (notebook_id,),
        )
        return {row["keyword"]: row["tfidf"] for row in rows}

    async def add_suggestion(self, suggestion: Suggestion) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT INTO suggestions (user_id, notebook_id, reason, score) VALUES (?, ?, ?, ?)",
                (suggestion.user_id, suggestion.notebook_id, suggestion.reason, suggestion.score),
            )

    async def user_suggestions(self, principal: Principal) -> dict[int, SuggestionInfo]:
        """Non-random suggestions for a principal, merged per notebook."""
        user_clause = "user_id = ?" if principal.member else "user_id IS NULL"
        params = [principal.user_id] if principal.member else []
        rows = await self._fetchall(
            f"""
            SELECT notebook_id, GROUP_CONCAT(reason, ', ') AS reasons, SUM(score) AS score
            FROM suggestions
            WHERE {user_clause} AND reason NOT LIKE ?
            GROUP BY notebook_id
            ORDER BY notebook_id
            """,
            [*params, RANDOM_REASON_PATTERN],
        )
        return {
            row["notebook_id"]: SuggestionInfo(reasons=row["reasons"], score=row["score"])
            for row in rows
        }

    async def healthy_notebooks(self, threshold: float) -> dict[int, float]:
        """Notebook id -> health for every notebook with health above threshold."""
        rows = await self._fetchall(
            "SELECT notebook_id, health FROM summaries WHERE health > ? ORDER BY notebook_id",
            (threshold,),
        )
        return {row["notebook_id"]: row["health"] for row in rows}

    # ================================================================
    # Permission-scoped Queries
    # ================================================================

    async def select_ids(self, where: SqlClause) -> set[int]:
        """Ids of every notebook matching a permission clause."""
        rows = await self._fetchall(
            f"SELECT notebooks.id FROM notebooks WHERE {where.sql}", where.params
        )
        return {row["id"] for row in rows}

    async def list_notebooks(
        self,
        where: SqlClause,
        principal: Principal,
        sort: str,
        sort_dir: str,
        page: int,
        per_page: int,
    ) -> tuple[list[ListingRow], int]:
        """Permission-scoped listing joined with summaries and suggestions.

        Args:
            where: Permission clause over the notebooks table.
            principal: Whose suggestions to join.
            sort: One of LISTING_SORT_COLUMNS.
            sort_dir: "asc" or "desc".
            page: 1-based page number.
            per_page: Page size.

        Returns:
            Tuple of (rows on the page, total matching count).
        """
        if sort not in LISTING_SORT_COLUMNS:
            raise ValueError(f"Unknown sort field: {sort}")
        direction = {"asc": "ASC", "desc": "DESC"}[sort_dir.lower()]

        user_clause = "user_id = ?" if principal.member else "user_id IS NULL"
        join_params = [principal.user_id] if principal.member else []
        from_clause = f"""
            FROM notebooks
            JOIN summaries ON summaries.notebook_id = notebooks.id
            LEFT JOIN (
                SELECT notebook_id, GROUP_CONCAT(reason, ', ') AS reasons,
                    SUM(score) AS score
                FROM suggestions WHERE {user_clause}
                GROUP BY notebook_id
            ) sg ON sg.notebook_id = notebooks.id
            WHERE {where.sql}
        """
        params = [*join_params, *where.params]

        count_row = await self._fetchone(f"SELECT COUNT(*) {from_clause}", params)
        total = count_row[0]

        offset = (page - 1) * per_page
        rows = await self._fetchall(
            f"""
            SELECT notebooks.id AS listing_id, summaries.*, sg.reasons AS reasons,
                COALESCE(sg.score, 0) AS suggestion_score
            {from_clause}
            ORDER BY {LISTING_SORT_COLUMNS[sort]} {direction}, notebooks.id ASC
            LIMIT ? OFFSET ?
            """,
            [*params, per_page, offset],
        )
        notebooks = await self.get_notebooks(row["listing_id"] for row in rows)
        results = [
            ListingRow(
                notebook=notebooks[row["listing_id"]],
                summary=_summary_from_row(row),
                reasons=row["reasons"],
                suggestion_score=row["suggestion_score"],
            )
            for row in rows
            if row["listing_id"] in notebooks
        ]
        return results, total

    async def similar_notebooks(
        self, notebook_id: int, where: SqlClause
    ) -> list[tuple[Notebook, float]]:
        """Similarity edges from a notebook to permitted notebooks, best first."""
        rows = await self._fetchall(
            f"""
            SELECT similarities.other_notebook_id AS other_id, similarities.score AS score
            FROM similarities
            JOIN notebooks ON notebooks.id = similarities.other_notebook_id
            WHERE similarities.notebook_id = ? AND {where.sql}
            ORDER BY similarities.score DESC, notebooks.id ASC
            """,
            [notebook_id, *where.params],
        )
        notebooks = await self.get_notebooks(row["other_id"] for row in rows)
        return [
            (notebooks[row["other_id"]], row["score"])
            for row in rows
            if row["other_id"] in notebooks
        ]

    async def language_counts(self, where: SqlClause) -> list[tuple[str, str | None, int]]:
        """(lang, version, count) rows for permitted notebooks.

        One row per language with version None, plus python 2 and python 3
        rows split on lang_version, sorted by lower-cased language.
        """
        rows = await self._fetchall(
            f"SELECT lang, COUNT(*) AS n FROM notebooks WHERE {where.sql} GROUP BY lang",
            where.params,
        )
        counts: list[tuple[str, str | None, int]] = [(row["lang"], None, row["n"]) for row in rows]
        for major in ("2", "3"):
            row = await self._fetchone(
                f"""
                SELECT COUNT(*) FROM notebooks
                WHERE {where.sql} AND lang = 'python' AND lang_version LIKE ?
                """,
                [*where.params, f"{major}.%"],
            )
            counts.append(("python", major, row[0]))
        return sorted(counts, key=lambda c: (c[0].lower(), c[1] or ""))

    # ================================================================
    # Index Documents
    # ================================================================

    async def index_document(self, notebook_id: int, body: str = "") -> dict | None:
        """Denormalized fields the search index stores for a notebook.

        Args:
            notebook_id: The notebook to describe.
            body: Searchable text extracted from the notebook content.

        Returns:
            Field dict, or None if the notebook doesn't exist.
        """
        notebook = await self.get_notebook(notebook_id)
        if notebook is None:
            return None
        summary = await self.get_or_create_summary(notebook_id)
        share_rows = await self._fetchall(
            "SELECT user_id FROM shares WHERE notebook_id = ? ORDER BY user_id", (notebook_id,)
        )
        owner = notebook.owner
        return {
            "id": notebook.id,
            "uuid": notebook.uuid,
            "public": notebook.public,
            "owner_type": notebook.owner_type,
            "owner_id": notebook.owner_id,
            "shares": [row["user_id"] for row in share_rows],
            "lang": notebook.lang,
            "lang_version": notebook.lang_version,
            "title": notebook.title,
            "title_sort": notebook.title.lower(),
            "description": notebook.description,
            "body": body,
            "tags": " ".join(notebook.tags),
            "owner": owner.display_name,
            "owner_description": owner.description,
            "created_at": notebook.created_at,
            "updated_at": notebook.updated_at,
            "views": summary.views,
            "stars": summary.stars,
            "runs": summary.runs,
            "health": summary.health,
        }
