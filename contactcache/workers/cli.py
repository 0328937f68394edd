from __future__ import annotations

import datetime as dt
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

import pendulum
import yaml
from pendulum.parsing.exceptions import ParserError

from contactcache.rules.errors import CacheEngineError, ConfigurationError, StoreError, CACHE_002_RULE_INVALID
from contactcache.rules.models import (
    DEFAULT_EXCLUSIVE_MATCHING,
    DEFAULT_EXCLUSIVE_SCOPE,
    CacheMatch,
    ClientData,
    ContactData,
)
from contactcache.services.contact_cache import ContactCache


CONTACT_OPTIONS = ("email", "phone", "mobile", "address1", "address2", "city", "state", "zipcode", "country")


def _get_opt(argv: list[str], key: str) -> str | None:
    if key not in argv:
        return None
    idx = argv.index(key)
    if idx + 1 >= len(argv):
        return None
    return argv[idx + 1]


def _int_opt(argv: list[str], key: str) -> int | None:
    raw = _get_opt(argv, key)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(CACHE_002_RULE_INVALID, f"{key} expects an integer, got {raw!r}") from e


def _time_opt(argv: list[str], key: str) -> dt.datetime | None:
    raw = _get_opt(argv, key)
    if not raw:
        return None
    try:
        parsed = pendulum.parse(raw)
    except (ParserError, ValueError, OverflowError) as e:
        raise ConfigurationError(CACHE_002_RULE_INVALID, f"{key} expects a date-time, got {raw!r}") from e
    if not isinstance(parsed, dt.datetime):
        raise ConfigurationError(CACHE_002_RULE_INVALID, f"{key} expects a date-time, got {raw!r}")
    return parsed


def _load_document(path: Path) -> Any:
    # YAML is a superset of JSON, so both formats load here.
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def _load_rules(argv: list[str]) -> list[Any]:
    raw = _get_opt(argv, "--rules")
    if not raw:
        raise ConfigurationError(CACHE_002_RULE_INVALID, "--rules <file> is required")
    obj = _load_document(Path(raw))
    if isinstance(obj, dict):
        obj = obj.get("rules")
    if not isinstance(obj, list):
        raise ConfigurationError(CACHE_002_RULE_INVALID, f"rules file must hold a list: {raw}")
    return obj


def _client(argv: list[str]) -> ClientData:
    client_id = _int_opt(argv, "--client-id")
    if client_id is None:
        raise ConfigurationError(CACHE_002_RULE_INVALID, "--client-id is required")
    return ClientData.build(client_id, _int_opt(argv, "--category-id"))


def _contact(argv: list[str]) -> ContactData:
    data: dict[str, Any] = {}
    path = _get_opt(argv, "--contact")
    if path:
        obj = _load_document(Path(path))
        if not isinstance(obj, dict):
            raise ConfigurationError(CACHE_002_RULE_INVALID, f"contact file must hold a mapping: {path}")
        data.update(obj)
    contact_id = _get_opt(argv, "--contact-id")
    if contact_id:
        data["id"] = contact_id
    for name in CONTACT_OPTIONS:
        v = _get_opt(argv, f"--{name}")
        if v is not None:
            data[name] = v
    return ContactData.from_mapping(data)


def _match_payload(match: CacheMatch | None) -> dict[str, Any]:
    if match is None:
        return {"ok": True, "match": None}
    return {"ok": True, "match": asdict(match)}


def _print(obj: dict[str, Any]) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def cmd_db_upgrade(argv: list[str]) -> int:
    cache = ContactCache.from_settings()
    cache.ensure_schema()
    _print({"ok": True, **cache.observability_info()})
    return 0


def cmd_db_status(argv: list[str]) -> int:
    cache = ContactCache.from_settings()
    _print({"ok": True, **cache.observability_info(), **cache.repo.status()})
    return 0


def cmd_cache_purge(argv: list[str]) -> int:
    cache = ContactCache.from_settings()
    _print({"ok": True, "purged": cache.purge_expired()})
    return 0


def cmd_cache_collapse(argv: list[str]) -> int:
    cache = ContactCache.from_settings()
    _print({"ok": True, "exclusivity_collapsed": cache.collapse_expired_exclusivity()})
    return 0


def cmd_cache_maintain(argv: list[str]) -> int:
    cache = ContactCache.from_settings()
    _print({"ok": True, **cache.maintainer.run()})
    return 0


def cmd_check_limit(argv: list[str]) -> int:
    cache = ContactCache.from_settings()
    hit = cache.check_limit(
        _client(argv),
        _load_rules(argv),
        timezone=_get_opt(argv, "--timezone"),
        send_time=_time_opt(argv, "--send-time"),
    )
    if hit is None:
        _print({"ok": True, "limit": None})
        return 0
    _print({"ok": True, "limit": {"rule": asdict(hit.rule), "count": hit.count}})
    return 1


def cmd_check_duplicate(argv: list[str]) -> int:
    cache = ContactCache.from_settings()
    match = cache.check_duplicate(
        _contact(argv),
        _client(argv),
        _load_rules(argv),
        utm_source=_get_opt(argv, "--utm-source"),
        timezone=_get_opt(argv, "--timezone"),
        send_time=_time_opt(argv, "--send-time"),
    )
    _print(_match_payload(match))
    return 0 if match is None else 1


def cmd_check_exclusive(argv: list[str]) -> int:
    cache = ContactCache.from_settings()
    matching = _int_opt(argv, "--matching")
    scope = _int_opt(argv, "--scope")
    match = cache.check_exclusive(
        _contact(argv),
        _client(argv),
        send_time=_time_opt(argv, "--send-time"),
        matching=DEFAULT_EXCLUSIVE_MATCHING if matching is None else matching,
        scope=DEFAULT_EXCLUSIVE_SCOPE if scope is None else scope,
    )
    _print(_match_payload(match))
    return 0 if match is None else 1


COMMANDS = {
    "db:upgrade": cmd_db_upgrade,
    "db:status": cmd_db_status,
    "cache:purge": cmd_cache_purge,
    "cache:collapse": cmd_cache_collapse,
    "cache:maintain": cmd_cache_maintain,
    "check:limit": cmd_check_limit,
    "check:duplicate": cmd_check_duplicate,
    "check:exclusive": cmd_check_exclusive,
}


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(
        level=(os.environ.get("CACHE_LOG_LEVEL") or "WARNING").strip().upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if not argv:
        print(
            "Usage: python -m contactcache.workers.cli " + "|".join(COMMANDS) + " [options]",
            file=sys.stderr,
        )
        return 2

    cmd = argv[0]
    tail = argv[1:]
    fn = COMMANDS.get(cmd)
    if fn is None:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        return 2
    try:
        return fn(tail)
    except ConfigurationError as e:
        print(json.dumps({"ok": False, "error_code": e.err.code, "error": str(e)}, ensure_ascii=False))
        return 10
    except StoreError as e:
        print(json.dumps({"ok": False, "error_code": e.err.code, "error": str(e)}, ensure_ascii=False))
        return 11
    except CacheEngineError as e:
        print(json.dumps({"ok": False, "error_code": e.err.code, "error": str(e)}, ensure_ascii=False))
        return 12
    except Exception as e:  # pragma: no cover
        print(
            json.dumps(
                {"ok": False, "error_code": "CACHE_999_UNEXPECTED", "error": str(e)},
                ensure_ascii=False,
            )
        )
        return 12


if __name__ == "__main__":
    raise SystemExit(main())
