"""Typed predicate trees over notebook fields.

A predicate is built once and rendered by two translators:
- to_sql(): a parameterized WHERE fragment over the relational store
- to_index_filter(): a boolean filter clause for the search index

Both renderings must select exactly the same notebooks. The SQL side wraps
every NOT in COALESCE so NULL columns cannot make the two disagree.

Index filter clauses use a small Elasticsearch-style vocabulary:
    {"match_all": {}}                       always true
    {"match_none": {}}                      always false
    {"term": {field: value}}                equality (membership for lists)
    {"terms": {field: [v1, v2]}}            any-of equality
    {"bool": {"must": [...]}}               all of
    {"bool": {"should": [...]}}             any of
    {"bool": {"must_not": [clause]}}        negation
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

# ---------------------------------------------------------------------------
# Field tables
# ---------------------------------------------------------------------------

# Predicate field -> notebooks table column
SQL_COLUMNS: dict[str, str] = {
    "id": "notebooks.id",
    "public": "notebooks.public",
    "owner_type": "notebooks.owner_type",
    "owner_id": "notebooks.owner_id",
    "lang": "notebooks.lang",
    "lang_version": "notebooks.lang_version",
}

# Predicate field -> index document field
INDEX_FIELDS: dict[str, str] = {
    "id": "id",
    "public": "public",
    "owner_type": "owner_type",
    "owner_id": "owner_id",
    "lang": "lang",
    "lang_version": "lang_version",
}

SHARES_FIELD = "shares"


# ---------------------------------------------------------------------------
# Predicate nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Const:
    """Constant truth value."""

    value: bool


@dataclass(frozen=True)
class Eq:
    """field == value (field IS NULL when value is None)."""

    field: str
    value: Any


@dataclass(frozen=True)
class In:
    """field is one of values. Empty values select nothing."""

    field: str
    values: tuple


@dataclass(frozen=True)
class SharedWith:
    """The notebook is shared with the given user."""

    user_id: int


@dataclass(frozen=True)
class And:
    children: tuple[Predicate, ...]


@dataclass(frozen=True)
class Or:
    children: tuple[Predicate, ...]


@dataclass(frozen=True)
class Not:
    child: Predicate


Predicate = Union[Const, Eq, In, SharedWith, And, Or, Not]

TRUE = Const(True)
FALSE = Const(False)


def all_of(*children: Predicate) -> Predicate:
    """AND of children, dropping TRUE and short-circuiting on FALSE."""
    kept = []
    for child in children:
        if child == FALSE:
            return FALSE
        if child != TRUE:
            kept.append(child)
    if not kept:
        return TRUE
    if len(kept) == 1:
        return kept[0]
    return And(tuple(kept))


def any_of(*children: Predicate) -> Predicate:
    """OR of children, dropping FALSE and short-circuiting on TRUE."""
    kept = []
    for child in children:
        if child == TRUE:
            return TRUE
        if child != FALSE:
            kept.append(child)
    if not kept:
        return FALSE
    if len(kept) == 1:
        return kept[0]
    return Or(tuple(kept))


def negate(child: Predicate) -> Predicate:
    if isinstance(child, Const):
        return Const(not child.value)
    return Not(child)


def one_of(field: str, values) -> Predicate:
    """In() with a sorted, de-duplicated value tuple."""
    values = tuple(sorted(set(values)))
    if not values:
        return FALSE
    return In(field, values)


# ---------------------------------------------------------------------------
# SQL translator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SqlClause:
    """A WHERE fragment and its positional parameters."""

    sql: str
    params: tuple


def _sql_column(field: str) -> str:
    try:
        return SQL_COLUMNS[field]
    except KeyError:
        raise ValueError(f"Unknown predicate field: {field}") from None


def _sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def to_sql(predicate: Predicate) -> SqlClause:
    """Render a predicate as a WHERE fragment over the notebooks table.

    Args:
        predicate: The predicate tree.

    Returns:
        SqlClause with "?" placeholders and matching params.
    """
    params: list = []
    sql = _render_sql(predicate, params)
    return SqlClause(sql=sql, params=tuple(params))


def _render_sql(node: Predicate, params: list) -> str:
    if isinstance(node, Const):
        return "1 = 1" if node.value else "1 = 0"

    if isinstance(node, Eq):
        column = _sql_column(node.field)
        if node.value is None:
            return f"{column} IS NULL"
        params.append(_sql_value(node.value))
        return f"{column} = ?"

    if isinstance(node, In):
        if not node.values:
            return "1 = 0"
        column = _sql_column(node.field)
        params.extend(_sql_value(v) for v in node.values)
        placeholders = ", ".join("?" for _ in node.values)
        return f"{column} IN ({placeholders})"

    if isinstance(node, SharedWith):
        params.append(node.user_id)
        return (
            "EXISTS (SELECT 1 FROM shares WHERE shares.notebook_id = notebooks.id"
            " AND shares.user_id = ?)"
        )

    if isinstance(node, And):
        if not node.children:
            return "1 = 1"
        return "(" + " AND ".join(_render_sql(c, params) for c in node.children) + ")"

    if isinstance(node, Or):
        if not node.children:
            return "1 = 0"
        return "(" + " OR ".join(_render_sql(c, params) for c in node.children) + ")"

    if isinstance(node, Not):
        # NULL inside a NOT would be falsy on both branches; pin it to false first
        return f"(NOT COALESCE(({_render_sql(node.child, params)}), 0))"

    raise TypeError(f"Not a predicate node: {node!r}")


# ---------------------------------------------------------------------------
# Index translator
# ---------------------------------------------------------------------------


def _index_field(field: str) -> str:
    try:
        return INDEX_FIELDS[field]
    except KeyError:
        raise ValueError(f"Unknown predicate field: {field}") from None


def to_index_filter(node: Predicate) -> dict:
    """Render a predicate as a search index boolean filter clause."""
    if isinstance(node, Const):
        return {"match_all": {}} if node.value else {"match_none": {}}

    if isinstance(node, Eq):
        return {"term": {_index_field(node.field): node.value}}

    if isinstance(node, In):
        if not node.values:
            return {"match_none": {}}
        return {"terms": {_index_field(node.field): list(node.values)}}

    if isinstance(node, SharedWith):
        return {"term": {SHARES_FIELD: node.user_id}}

    if isinstance(node, And):
        return {"bool": {"must": [to_index_filter(c) for c in node.children]}}

    if isinstance(node, Or):
        return {"bool": {"should": [to_index_filter(c) for c in node.children]}}

    if isinstance(node, Not):
        return {"bool": {"must_not": [to_index_filter(node.child)]}}

    raise TypeError(f"Not a predicate node: {node!r}")


def _term_matches(doc_value: Any, value: Any) -> bool:
    if isinstance(doc_value, (list, tuple, set, frozenset)):
        return value in doc_value
    return doc_value == value


def index_filter_matches(clause: dict, doc: dict) -> bool:
    """Evaluate an index filter clause against one index document.

    This is the index's native filter semantics: a missing field has the
    value None, list-valued fields match a term if any element matches.

    Raises:
        ValueError: If the clause uses an unknown operator.
    """
    if len(clause) != 1:
        raise ValueError(f"Filter clause must have exactly one operator: {clause!r}")
    (op, body), = clause.items()

    if op == "match_all":
        return True
    if op == "match_none":
        return False
    if op == "term":
        (name, value), = body.items()
        return _term_matches(doc.get(name), value)
    if op == "terms":
        (name, values), = body.items()
        doc_value = doc.get(name)
        return any(_term_matches(doc_value, v) for v in values)
    if op == "bool":
        must = body.get("must", [])
        should = body.get("should")
        must_not = body.get("must_not", [])
        if not all(index_filter_matches(c, doc) for c in must):
            return False
        if any(index_filter_matches(c, doc) for c in must_not):
            return False
        if should is not None and not any(index_filter_matches(c, doc) for c in should):
            return False
        return True

    raise ValueError(f"Unknown filter operator: {op}")
