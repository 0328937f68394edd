from __future__ import annotations

import datetime as dt
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Optional

import pendulum

from contactcache.core.config import MatchSettings, get_match_settings
from contactcache.core.intervals import oldest_date_added, to_storage
from contactcache.core.phone import E164PhoneNormalizer, PhoneNormalizer, normalize_or_none
from contactcache.core.predicates import GROUP_AND, GROUP_OR, FilterGroup, PredicateBuilder, unique_groups
from contactcache.db.repo import CacheRepo
from contactcache.rules.errors import CACHE_001_CLIENT_MISSING, ConfigurationError
from contactcache.rules.models import (
    DEFAULT_EXCLUSIVE_MATCHING,
    DEFAULT_EXCLUSIVE_SCOPE,
    MATCHING_ADDRESS,
    MATCHING_EMAIL,
    MATCHING_EXPLICIT,
    MATCHING_MOBILE,
    MATCHING_PHONE,
    SCOPE_CATEGORY,
    SCOPE_GLOBAL,
    SCOPE_UTM_SOURCE,
    CacheMatch,
    DuplicateRule,
    LimitHit,
    LimitRule,
    bitwise_in,
)


_WORD_START = re.compile(r"(^|\s)(\S)")

ADDRESS_FIELDS = ("address1", "address2", "city", "state", "zipcode", "country")


def ucwords(value: Optional[str]) -> str:
    """Capitalize the first letter of each word, leaving the rest untouched."""
    text = str(value or "")
    return _WORD_START.sub(lambda m: m.group(1) + m.group(2).upper(), text).strip()


def client_id_of(client: Any) -> int:
    cid = getattr(client, "id", None) if client is not None else None
    if cid in (None, "", 0):
        raise ConfigurationError(CACHE_001_CLIENT_MISSING, f"client={client!r}")
    return int(cid)


def client_category_id(client: Any) -> int | None:
    raw = getattr(client, "category_id", None)
    if raw in (None, "", 0):
        category = getattr(client, "category", None)
        raw = getattr(category, "id", None) if category is not None else None
    try:
        value = int(raw) if raw not in (None, "") else 0
    except (TypeError, ValueError):
        return None
    return value or None


def address_properties(contact: Any) -> dict[str, str]:
    """
    Address columns for matching, or {} when the address is not usable.

    address1 plus either city or zipcode is the minimum for a valid address.
    """
    values = {k: ucwords(getattr(contact, k, None)) for k in ADDRESS_FIELDS}
    if not values["address1"]:
        return {}
    if not values["city"] and not values["zipcode"]:
        return {}
    return {k: v for k, v in values.items() if v}


class MatchEngine:
    """
    Send-eligibility lookups against the contact cache.

    All checks are read-only. Duplicate and exclusivity checks issue at most one
    query, limit checks one count per rule. They return None when nothing
    qualifies; store failures raise StoreError instead.

    The ADDRESS bit of an exclusivity pattern is ignored unless
    settings.exclusive_address (CACHE_EXCLUSIVE_ADDRESS) is on.
    """

    def __init__(
        self,
        repo: CacheRepo,
        *,
        phone_normalizer: PhoneNormalizer | None = None,
        settings: MatchSettings | None = None,
    ) -> None:
        self.repo = repo
        self.settings = settings or get_match_settings()
        self.builder = PredicateBuilder(repo.table)
        # Built once here so concurrent callers never race on construction.
        self.phone_normalizer: PhoneNormalizer = phone_normalizer or E164PhoneNormalizer(self.settings.phone_region)
        self._logger = logging.getLogger("match_engine")

    def _timezone(self, timezone: str | None) -> str:
        return timezone or self.settings.timezone

    def _window_floor(self, duration: str, timezone: str | None, send_time: dt.datetime | None) -> dt.datetime:
        return to_storage(oldest_date_added(duration, self._timezone(timezone), send_time))

    def normalize_phone(self, raw: Optional[str]) -> Optional[str]:
        return normalize_or_none(self.phone_normalizer, raw)

    def limit_filter(
        self,
        client: Any,
        rule: LimitRule | Mapping[str, Any],
        timezone: str | None = None,
        send_time: dt.datetime | None = None,
    ) -> FilterGroup:
        r = LimitRule.coerce(rule)
        orx: dict[str, Any] = {}
        if r.scope & SCOPE_UTM_SOURCE:
            utm_source = r.value.strip()
            if utm_source:
                orx["utm_source"] = utm_source
        if r.scope & SCOPE_CATEGORY:
            try:
                category = int(r.value.strip() or 0)
            except ValueError:
                category = 0
            if category:
                orx["category_id"] = category
        # The window applies always, including global scope.
        return FilterGroup.build(
            GROUP_OR,
            orx,
            contactclient_id=client_id_of(client),
            date_added=self._window_floor(r.duration, timezone, send_time),
        )

    def find_limit(
        self,
        client: Any,
        rules: Sequence[LimitRule | Mapping[str, Any]] = (),
        timezone: str | None = None,
        send_time: dt.datetime | None = None,
    ) -> LimitHit | None:
        """First rule, in the given order, whose count exceeds its quantity."""
        client_id_of(client)
        for raw in rules:
            rule = LimitRule.coerce(raw)
            predicate = self.builder.compose([self.limit_filter(client, rule, timezone, send_time)])
            if predicate is None:
                continue
            count = self.repo.count(predicate)
            if count > rule.quantity:
                self._logger.info(
                    "limit exceeded client=%s scope=%s duration=%s quantity=%s count=%s",
                    client_id_of(client),
                    rule.scope,
                    rule.duration,
                    rule.quantity,
                    count,
                )
                return LimitHit(rule=rule, count=count)
        return None

    def duplicate_filters(
        self,
        contact: Any,
        client: Any,
        rules: Iterable[DuplicateRule | Mapping[str, Any]] = (),
        utm_source: str | None = None,
        timezone: str | None = None,
        send_time: dt.datetime | None = None,
    ) -> list[FilterGroup]:
        client_id = client_id_of(client)
        filters: list[FilterGroup] = []
        for raw in rules:
            rule = DuplicateRule.coerce(raw)
            orx: dict[str, Any] = {}
            if rule.matching & MATCHING_EXPLICIT:
                contact_id = getattr(contact, "id", None)
                if contact_id is not None:
                    orx["contact_id"] = int(contact_id)
            if rule.matching & MATCHING_EMAIL:
                email = str(getattr(contact, "email", None) or "").strip()
                if email:
                    orx["email"] = email
            if rule.matching & MATCHING_PHONE:
                phone = self.normalize_phone(getattr(contact, "phone", None))
                if phone:
                    orx["phone"] = phone
            if rule.matching & MATCHING_MOBILE:
                mobile = self.normalize_phone(getattr(contact, "mobile", None))
                if mobile:
                    orx["mobile"] = mobile
            if rule.matching & MATCHING_ADDRESS:
                address = address_properties(contact)
                if not address:
                    self._logger.debug("address dimension skipped, incomplete address client=%s", client_id)
                orx.update(address)
            # Scope values are extra alternatives here, they widen the match.
            if rule.scope & SCOPE_UTM_SOURCE:
                source = str(utm_source or "").strip()
                if source:
                    orx["utm_source"] = source
            if rule.scope & SCOPE_CATEGORY:
                category = client_category_id(client)
                if category:
                    orx["category_id"] = category
            if not orx:
                continue
            filters.append(
                FilterGroup.build(
                    GROUP_OR,
                    orx,
                    contactclient_id=client_id,
                    date_added=self._window_floor(rule.duration, timezone, send_time),
                )
            )
        return filters

    def find_duplicate(
        self,
        contact: Any,
        client: Any,
        rules: Iterable[DuplicateRule | Mapping[str, Any]] = (),
        utm_source: str | None = None,
        timezone: str | None = None,
        send_time: dt.datetime | None = None,
    ) -> CacheMatch | None:
        filters = self.duplicate_filters(contact, client, rules, utm_source, timezone, send_time)
        predicate = self.builder.compose(filters)
        if predicate is None:
            return None
        return self.repo.exists_one(predicate)

    def exclusive_filters(
        self,
        contact: Any,
        client: Any,
        send_time: dt.datetime | None = None,
        matching: int = DEFAULT_EXCLUSIVE_MATCHING,
        scope: int = DEFAULT_EXCLUSIVE_SCOPE,
    ) -> list[FilterGroup]:
        client_id = client_id_of(client)
        filters: list[FilterGroup] = []

        if matching & MATCHING_EXPLICIT:
            contact_id = getattr(contact, "id", None)
            if contact_id is not None:
                filters.append(
                    FilterGroup.build(
                        GROUP_AND,
                        {
                            "contact_id": int(contact_id),
                            "exclusive_pattern": bitwise_in(matching, MATCHING_EXPLICIT),
                        },
                    )
                )

        if matching & MATCHING_EMAIL:
            email = str(getattr(contact, "email", None) or "").strip()
            if email:
                filters.append(
                    FilterGroup.build(
                        GROUP_AND,
                        {"email": email, "exclusive_pattern": bitwise_in(matching, MATCHING_EMAIL)},
                    )
                )

        if matching & MATCHING_PHONE:
            phone = self.normalize_phone(getattr(contact, "phone", None))
            if phone:
                filters.append(
                    FilterGroup.build(
                        GROUP_AND,
                        {"phone": phone, "exclusive_pattern": bitwise_in(matching, MATCHING_PHONE)},
                    )
                )

        if matching & MATCHING_MOBILE:
            mobile = self.normalize_phone(getattr(contact, "mobile", None))
            if mobile:
                filters.append(
                    FilterGroup.build(
                        GROUP_AND,
                        {"mobile": mobile, "exclusive_pattern": bitwise_in(matching, MATCHING_MOBILE)},
                    )
                )

        if matching & MATCHING_ADDRESS:
            if not self.settings.exclusive_address:
                self._logger.info("address exclusivity ignored, CACHE_EXCLUSIVE_ADDRESS is off client=%s", client_id)
            else:
                address = address_properties(contact)
                if address:
                    address["exclusive_pattern"] = bitwise_in(matching, MATCHING_ADDRESS)
                    filters.append(FilterGroup.build(GROUP_AND, address))

        # Global scope narrows every group.
        if scope & SCOPE_GLOBAL:
            pattern = bitwise_in(scope, SCOPE_GLOBAL)
            filters = [f.with_properties(exclusive_scope=pattern) for f in filters]

        # Category scope adds a category-locked twin of every group.
        if scope & SCOPE_CATEGORY:
            category = client_category_id(client)
            if category:
                pattern = bitwise_in(scope, SCOPE_CATEGORY)
                expanded: list[FilterGroup] = []
                for f in filters:
                    expanded.append(f)
                    expanded.append(f.with_properties(category_id=category, exclusive_scope=pattern))
                filters = expanded

        expire_floor = to_storage(send_time if send_time is not None else pendulum.now("UTC"))
        return unique_groups(f.with_expiration(expire_floor) for f in filters)

    def find_exclusive(
        self,
        contact: Any,
        client: Any,
        send_time: dt.datetime | None = None,
        matching: int = DEFAULT_EXCLUSIVE_MATCHING,
        scope: int = DEFAULT_EXCLUSIVE_SCOPE,
    ) -> CacheMatch | None:
        filters = self.exclusive_filters(contact, client, send_time, matching, scope)
        predicate = self.builder.compose(filters)
        if predicate is None:
            return None
        return self.repo.exists_one(predicate)
