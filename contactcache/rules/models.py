from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from contactcache.rules.errors import CACHE_002_RULE_INVALID, ConfigurationError


MATCHING_EXPLICIT = 1
MATCHING_EMAIL = 2
MATCHING_PHONE = 4
MATCHING_MOBILE = 8
MATCHING_ADDRESS = 16

SCOPE_GLOBAL = 1
SCOPE_CATEGORY = 2
SCOPE_UTM_SOURCE = 4

# Address exclusivity is opt-in only.
DEFAULT_EXCLUSIVE_MATCHING = MATCHING_EXPLICIT | MATCHING_EMAIL | MATCHING_PHONE | MATCHING_MOBILE
DEFAULT_EXCLUSIVE_SCOPE = SCOPE_GLOBAL | SCOPE_CATEGORY


def bitwise_in(max_value: int, flag: int) -> list[int]:
    """All patterns in 1..max_value that include any bit of flag, ascending."""
    return [i for i in range(1, int(max_value) + 1) if i & int(flag)]


def _required(data: Mapping[str, Any], key: str, kind: str) -> Any:
    if key not in data or data[key] is None:
        raise ConfigurationError(CACHE_002_RULE_INVALID, f"{kind} rule missing key={key}")
    return data[key]


def _as_int(value: Any, key: str, kind: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(CACHE_002_RULE_INVALID, f"{kind} rule key={key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(CACHE_002_RULE_INVALID, f"{kind} rule key={key} value={value!r}") from e


def _as_duration(value: Any, kind: str) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(CACHE_002_RULE_INVALID, f"{kind} rule duration must be a string")
    return value.strip()


@dataclass(frozen=True)
class DuplicateRule:
    matching: int
    scope: int
    duration: str

    @classmethod
    def coerce(cls, obj: "DuplicateRule | Mapping[str, Any]") -> "DuplicateRule":
        if isinstance(obj, cls):
            return obj
        if not isinstance(obj, Mapping):
            raise ConfigurationError(CACHE_002_RULE_INVALID, f"duplicate rule type={type(obj).__name__}")
        return cls(
            matching=_as_int(_required(obj, "matching", "duplicate"), "matching", "duplicate"),
            scope=_as_int(obj.get("scope") or 0, "scope", "duplicate"),
            duration=_as_duration(_required(obj, "duration", "duplicate"), "duplicate"),
        )


@dataclass(frozen=True)
class LimitRule:
    scope: int
    duration: str
    quantity: int
    value: str = ""
    matching: int = 0

    @classmethod
    def coerce(cls, obj: "LimitRule | Mapping[str, Any]") -> "LimitRule":
        if isinstance(obj, cls):
            return obj
        if not isinstance(obj, Mapping):
            raise ConfigurationError(CACHE_002_RULE_INVALID, f"limit rule type={type(obj).__name__}")
        raw_value = obj.get("value")
        return cls(
            scope=_as_int(obj.get("scope") or 0, "scope", "limit"),
            duration=_as_duration(_required(obj, "duration", "limit"), "limit"),
            quantity=_as_int(_required(obj, "quantity", "limit"), "quantity", "limit"),
            value="" if raw_value is None else str(raw_value),
            matching=_as_int(obj.get("matching") or 0, "matching", "limit"),
        )


@dataclass(frozen=True)
class ExclusiveRule:
    matching: int
    scope: int
    duration: str

    @classmethod
    def coerce(cls, obj: "ExclusiveRule | Mapping[str, Any]") -> "ExclusiveRule":
        if isinstance(obj, cls):
            return obj
        if not isinstance(obj, Mapping):
            raise ConfigurationError(CACHE_002_RULE_INVALID, f"exclusive rule type={type(obj).__name__}")
        return cls(
            matching=_as_int(_required(obj, "matching", "exclusive"), "matching", "exclusive"),
            scope=_as_int(_required(obj, "scope", "exclusive"), "scope", "exclusive"),
            duration=_as_duration(_required(obj, "duration", "exclusive"), "exclusive"),
        )


@dataclass(frozen=True)
class LimitHit:
    rule: LimitRule
    count: int


@dataclass(frozen=True)
class CacheMatch:
    id: int
    contact_id: Optional[int]


@dataclass(frozen=True)
class CategoryRef:
    id: int


@dataclass(frozen=True)
class ContactData:
    id: Optional[int] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipcode: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ContactData":
        raw_id = data.get("id")
        values = {k: (None if data.get(k) is None else str(data.get(k))) for k in _CONTACT_TEXT_FIELDS}
        if raw_id in (None, ""):
            return cls(id=None, **values)
        try:
            contact_id = int(raw_id)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(CACHE_002_RULE_INVALID, f"contact id={raw_id!r} must be an integer") from e
        return cls(id=contact_id, **values)


_CONTACT_TEXT_FIELDS = (
    "email",
    "phone",
    "mobile",
    "address1",
    "address2",
    "city",
    "state",
    "zipcode",
    "country",
)


@dataclass(frozen=True)
class ClientData:
    id: int
    category: Optional[CategoryRef] = field(default=None)

    @classmethod
    def build(cls, client_id: int, category_id: int | None = None) -> "ClientData":
        return cls(id=int(client_id), category=CategoryRef(int(category_id)) if category_id else None)
