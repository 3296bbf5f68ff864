"""Permission predicates for notebook read and edit access.

Readable when any of:
- the notebook is public
- the principal owns it
- it is owned by a group the principal belongs to
- it is shared with the principal
- the principal is an admin and asked for the admin override

Editable uses the same rule without the public clause, and with the
groups the principal may edit for. Organization-specific rules plug in as
PermissionExtension objects; their clauses are ANDed onto the rule and
rendered for both backends by the same translators.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol, Sequence

from .models import Principal
from .predicates import (
    FALSE,
    TRUE,
    Eq,
    Predicate,
    SharedWith,
    SqlClause,
    all_of,
    any_of,
    one_of,
    to_index_filter,
    to_sql,
)


class Intent(str, Enum):
    READ = "read"
    EDIT = "edit"


class PermissionExtension(Protocol):
    """Extra, organization-specific permission rule."""

    def clause(self, principal: Principal, intent: Intent) -> Predicate | None:
        """Return a predicate every permitted notebook must also satisfy."""
        ...


class PermissionBuilder:
    """Builds permission predicates and renders them for each backend."""

    def __init__(self, extensions: Sequence[PermissionExtension] = ()) -> None:
        self._extensions = tuple(extensions)

    def predicate(self, principal: Principal, intent: Intent | str) -> Predicate:
        """Build the predicate tree for a principal and intent."""
        intent = Intent(intent)

        clauses: list[Predicate] = []
        if intent is Intent.READ:
            clauses.append(Eq("public", True))

        if principal.member:
            groups = principal.read_groups if intent is Intent.READ else principal.edit_groups
            clauses.append(all_of(Eq("owner_type", "User"), Eq("owner_id", principal.user_id)))
            clauses.append(all_of(Eq("owner_type", "Group"), one_of("owner_id", groups)))
            clauses.append(SharedWith(principal.user_id))

        clauses.append(TRUE if principal.admin_override else FALSE)

        return all_of(any_of(*clauses), *self._extension_clauses(principal, intent))

    def _extension_clauses(self, principal: Principal, intent: Intent) -> list[Predicate]:
        extra = []
        for extension in self._extensions:
            clause = extension.clause(principal, intent)
            if clause is not None:
                extra.append(clause)
        return extra

    def relational_filter(self, principal: Principal, intent: Intent | str) -> SqlClause:
        """WHERE fragment over the notebooks table."""
        return to_sql(self.predicate(principal, intent))

    def index_filter(self, principal: Principal, intent: Intent | str) -> dict:
        """Boolean filter clause for the search index."""
        return to_index_filter(self.predicate(principal, intent))
