"""Data models for the notebook gallery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from operator import attrgetter
from typing import Callable, Union


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Owners (tagged variant: User or Group)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class User:
    """A gallery user. Also one of the two owner kinds."""

    id: int
    user_name: str
    name: str = ""
    email: str = ""
    admin: bool = False

    owner_type = "User"

    @property
    def display_id(self) -> str:
        return self.user_name

    @property
    def display_name(self) -> str:
        return self.user_name

    @property
    def description(self) -> str:
        return self.name

    @property
    def emails(self) -> tuple[str, ...]:
        return (self.email,) if self.email else ()


@dataclass(frozen=True)
class Group:
    """A group of users. Editors' emails are loaded with the group."""

    id: int
    gid: str
    name: str = ""
    description: str = ""
    editor_emails: tuple[str, ...] = ()

    owner_type = "Group"

    @property
    def display_id(self) -> str:
        return self.gid

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def emails(self) -> tuple[str, ...]:
        return self.editor_emails


Owner = Union[User, Group]


# ---------------------------------------------------------------------------
# Principal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principal:
    """Whoever is asking: a user (or nobody) with group memberships.

    Attributes:
        user_id: The acting user's id, or None for anonymous access.
        read_groups: Ids of every group the user belongs to.
        edit_groups: Ids of the groups the user may edit for.
        is_admin: Whether the user is an administrator.
        use_admin: Whether the admin override is requested for this call.
    """

    user_id: int | None = None
    read_groups: frozenset[int] = frozenset()
    edit_groups: frozenset[int] = frozenset()
    is_admin: bool = False
    use_admin: bool = False

    @classmethod
    def anonymous(cls) -> Principal:
        return cls()

    @property
    def member(self) -> bool:
        """True for a known user, False for anonymous access."""
        return self.user_id is not None

    @property
    def admin_override(self) -> bool:
        return self.use_admin and self.is_admin


# ---------------------------------------------------------------------------
# Notebook and its dependents
# ---------------------------------------------------------------------------


@dataclass
class Notebook:
    """Catalog entry for one notebook document."""

    id: int
    uuid: str
    title: str
    description: str
    owner: Owner
    public: bool = False
    lang: str = "python"
    lang_version: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    content_updated_at: datetime = field(default_factory=utcnow)
    tags: tuple[str, ...] = ()

    @property
    def owner_type(self) -> str:
        return self.owner.owner_type

    @property
    def owner_id(self) -> int:
        return self.owner.id

    @property
    def trusted(self) -> bool:
        return "trusted" in self.tags


@dataclass(frozen=True)
class Summary:
    """Aggregated counters for one notebook.

    Summaries are only ever replaced as a whole, never patched field by
    field, so equality is enough to detect a change.
    """

    views: int = 0
    unique_views: int = 0
    downloads: int = 0
    unique_downloads: int = 0
    runs: int = 0
    unique_runs: int = 0
    stars: int = 0
    health: float | None = None

    @classmethod
    def initial(cls) -> Summary:
        """Summary given to a brand-new notebook."""
        return cls(views=1, unique_views=1)


# Explicit metric name -> accessor table over Summary.
METRIC_ACCESSORS: dict[str, Callable[[Summary], int | float | None]] = {
    "views": attrgetter("views"),
    "unique_views": attrgetter("unique_views"),
    "downloads": attrgetter("downloads"),
    "unique_downloads": attrgetter("unique_downloads"),
    "runs": attrgetter("runs"),
    "unique_runs": attrgetter("unique_runs"),
    "stars": attrgetter("stars"),
    "health": attrgetter("health"),
}


class ClickAction(str, Enum):
    """Fixed set of actions recorded in the click log."""

    CREATED = "created notebook"
    EDITED = "edited notebook"
    VIEWED = "viewed notebook"
    DOWNLOADED = "downloaded notebook"
    RAN = "ran notebook"


# Actions folded into the summary counters
COUNTED_ACTIONS = (ClickAction.VIEWED, ClickAction.DOWNLOADED, ClickAction.RAN)


@dataclass(frozen=True)
class Click:
    """Immutable click log entry."""

    notebook_id: int
    user_id: int | None
    action: ClickAction
    created_at: datetime


@dataclass(frozen=True)
class Execution:
    """One recorded execution of a code cell."""

    notebook_id: int
    cell_number: int
    success: bool
    user_id: int | None = None
    runtime: float = 0.0
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class CodeCell:
    """Fingerprint of one code cell.

    Attributes:
        notebook_id: Owning notebook.
        cell_number: Position among the notebook's code cells, from 0.
        digest: Exact content digest (md5 hex).
        fuzzy_digest: Context-triggered piecewise hash (ssdeep format).
    """

    notebook_id: int
    cell_number: int
    digest: str
    fuzzy_digest: str


@dataclass(frozen=True)
class Similarity:
    """Directed similarity edge from one notebook to another."""

    notebook_id: int
    other_notebook_id: int
    score: float


@dataclass(frozen=True)
class Suggestion:
    """Recommendation of a notebook to a user."""

    user_id: int | None
    notebook_id: int
    reason: str
    score: float


@dataclass(frozen=True)
class SuggestionInfo:
    """Suggestions for one notebook, merged for a single principal."""

    reasons: str
    score: float
