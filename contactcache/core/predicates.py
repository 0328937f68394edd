"""
Composition of filter groups into a single WHERE predicate.

A FilterGroup is a set of column/value pairs joined by OR (``orx``) or AND
(``andx``/``plain``). A group is gated either by a client+window (limit and
duplicate checks) or by the shared exclusivity expiration (exclusivity checks):

    (client = :c0 AND date_added >= :d0 AND (<group 0>))
    OR (client = :c1 AND date_added >= :d1 AND (<group 1>))
    OR (exclusive_expire_date IS NOT NULL
        AND exclusive_expire_date >= :expire
        AND (<exclusive group 0> OR <exclusive group 1> ...))

The expiration clause is appended once for all exclusive groups.
"""
from __future__ import annotations

import datetime as dt
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Optional

from sqlalchemy import Integer, Table, and_, bindparam, or_
from sqlalchemy.sql.elements import ColumnElement

from contactcache.rules.errors import CACHE_005_FILTER_INVALID, ConfigurationError


GROUP_OR = "orx"
GROUP_AND = "andx"
GROUP_PLAIN = "plain"
GROUP_KINDS = {GROUP_OR, GROUP_AND, GROUP_PLAIN}

INTEGER_COLUMNS = frozenset({"category_id", "contact_id", "campaign_id", "contactclient_id"})


def _freeze(value: Any) -> Any:
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else list(value)
        return tuple(items)
    return value


@dataclass(frozen=True)
class FilterGroup:
    kind: str
    properties: tuple[tuple[str, Any], ...] = ()
    contactclient_id: Optional[int] = None
    date_added: Optional[dt.datetime] = None
    exclusive_expire_date: Optional[dt.datetime] = None

    @classmethod
    def build(
        cls,
        kind: str,
        properties: Mapping[str, Any] | Iterable[tuple[str, Any]] = (),
        *,
        contactclient_id: int | None = None,
        date_added: dt.datetime | None = None,
        exclusive_expire_date: dt.datetime | None = None,
    ) -> "FilterGroup":
        if kind not in GROUP_KINDS:
            raise ConfigurationError(CACHE_005_FILTER_INVALID, f"unknown group kind={kind}")
        pairs = properties.items() if isinstance(properties, Mapping) else properties
        frozen = tuple((str(k), _freeze(v)) for k, v in pairs if v is not None)
        return cls(
            kind=kind,
            properties=frozen,
            contactclient_id=contactclient_id,
            date_added=date_added,
            exclusive_expire_date=exclusive_expire_date,
        )

    def get(self, column: str, default: Any = None) -> Any:
        for k, v in self.properties:
            if k == column:
                return v
        return default

    def with_properties(self, **updates: Any) -> "FilterGroup":
        """Replace existing columns in place and append new ones, keeping order."""
        pending = {k: _freeze(v) for k, v in updates.items()}
        merged: list[tuple[str, Any]] = []
        for k, v in self.properties:
            if k in pending:
                merged.append((k, pending.pop(k)))
            else:
                merged.append((k, v))
        merged.extend(pending.items())
        return replace(self, properties=tuple(merged))

    def with_expiration(self, expire_floor: dt.datetime) -> "FilterGroup":
        return replace(self, exclusive_expire_date=expire_floor)

    def canonical(self) -> str:
        return json.dumps(
            {
                "kind": self.kind,
                "properties": [[k, list(v) if isinstance(v, tuple) else v] for k, v in self.properties],
                "contactclient_id": self.contactclient_id,
                "date_added": self.date_added,
                "exclusive_expire_date": self.exclusive_expire_date,
            },
            ensure_ascii=False,
            default=str,
        )


def unique_groups(groups: Iterable[FilterGroup]) -> list[FilterGroup]:
    """Drop structurally identical groups, keeping first-seen order."""
    seen: dict[str, FilterGroup] = {}
    for g in groups:
        seen.setdefault(g.canonical(), g)
    return list(seen.values())


class PredicateBuilder:
    def __init__(self, table: Table) -> None:
        self.table = table

    def _bind(self, column: str, value: Any) -> Any:
        if column in INTEGER_COLUMNS:
            # Explicit integers keep the index usable.
            return bindparam(column, int(value), type_=Integer, unique=True)
        return bindparam(column, value, type_=self.table.c[column].type, unique=True)

    def _leaf(self, column: str, value: Any) -> ColumnElement[bool]:
        if column not in self.table.c:
            raise ConfigurationError(CACHE_005_FILTER_INVALID, f"unknown column={column}")
        col = self.table.c[column]
        if isinstance(value, tuple):
            values = [int(v) for v in value] if column in INTEGER_COLUMNS else list(value)
            return and_(col.isnot(None), col.in_(values))
        if value == "":
            return col == self._bind(column, value)
        return and_(col.isnot(None), col == self._bind(column, value))

    def group_expression(self, group: FilterGroup) -> Optional[ColumnElement[bool]]:
        terms = [self._leaf(column, value) for column, value in group.properties]
        if not terms:
            return None
        if group.kind == GROUP_OR:
            return or_(*terms)
        return and_(*terms)

    def compose(self, groups: Iterable[FilterGroup]) -> Optional[ColumnElement[bool]]:
        """
        One predicate for all groups, or None when there is nothing to query.

        None means "no query needed", never "match everything".
        """
        clauses: list[ColumnElement[bool]] = []
        exclusive_terms: list[ColumnElement[bool]] = []
        expire_floor: dt.datetime | None = None
        has_exclusive = False
        c = self.table.c
        for group in groups:
            inner = self.group_expression(group)
            if group.exclusive_expire_date is not None:
                if not has_exclusive:
                    expire_floor = group.exclusive_expire_date
                    has_exclusive = True
                if inner is not None:
                    exclusive_terms.append(inner)
                continue
            if group.contactclient_id is None or group.date_added is None:
                raise ConfigurationError(
                    CACHE_005_FILTER_INVALID,
                    "group needs a client and window or an exclusivity expiration",
                )
            parts = [
                c.contactclient_id == bindparam("contactclient_id", int(group.contactclient_id), type_=Integer, unique=True),
                c.date_added >= bindparam("date_added", group.date_added, type_=c.date_added.type, unique=True),
            ]
            if inner is not None:
                parts.append(inner)
            clauses.append(and_(*parts))

        # Expiration is one gate across the union of exclusive patterns.
        if exclusive_terms and expire_floor is not None:
            clauses.append(
                and_(
                    c.exclusive_expire_date.isnot(None),
                    c.exclusive_expire_date
                    >= bindparam("exclusive_expire_date", expire_floor, type_=c.exclusive_expire_date.type, unique=True),
                    or_(*exclusive_terms),
                )
            )

        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return or_(*clauses)
