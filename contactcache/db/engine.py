from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url

from contactcache.db.config import DBSettings, get_db_settings, redact_database_url


_logger = logging.getLogger("db_engine")


def _engine_options_for_url(url: str) -> dict[str, Any]:
    u = (url or "").strip().lower()
    if u.startswith("postgresql") or u.startswith("mysql"):
        return {
            "pool_pre_ping": True,
            "pool_size": 5,
            "max_overflow": 10,
            "future": True,
        }
    # SQLite keeps args minimal to avoid compatibility surprises.
    return {"future": True}


def _ensure_sqlite_parent(url: str) -> None:
    try:
        parsed = make_url(url)
    except Exception:
        return
    if not parsed.drivername.startswith("sqlite"):
        return
    db_name = parsed.database or ""
    if not db_name or db_name == ":memory:":
        return
    Path(db_name).parent.mkdir(parents=True, exist_ok=True)


def make_engine(url: str, *, extra_options: Mapping[str, Any] | None = None) -> Engine:
    options = _engine_options_for_url(url)
    if extra_options:
        options.update(dict(extra_options))
    _ensure_sqlite_parent(url)
    return create_engine(url, **options)


class ConnectionRouter:
    """
    Chooses the engine a statement runs on.

    Writes always go to the primary. Reads prefer the replica when one is
    configured and the read mode allows it, otherwise they fall back to the
    primary. The router never opens connections itself.
    """

    def __init__(self, primary: Engine, replica: Engine | None = None, *, read_mode: str = "replica") -> None:
        self._primary = primary
        self._replica = replica
        self.read_mode = (read_mode or "replica").strip().lower()

    @classmethod
    def from_settings(cls, settings: DBSettings | None = None) -> "ConnectionRouter":
        s = settings or get_db_settings()
        primary = make_engine(s.database_url)
        replica = None
        if s.database_url_replica and s.database_url_replica != s.database_url:
            replica = make_engine(s.database_url_replica)
        _logger.debug(
            "connection router primary=%s replica=%s read_mode=%s",
            redact_database_url(s.database_url),
            redact_database_url(s.database_url_replica or ""),
            s.db_read_mode,
        )
        return cls(primary, replica, read_mode=s.db_read_mode)

    @property
    def has_replica(self) -> bool:
        return self._replica is not None

    def primary(self) -> Engine:
        return self._primary

    def prefer_replica(self) -> Engine:
        if self._replica is not None and self.read_mode == "replica":
            return self._replica
        return self._primary

    def dispose(self) -> None:
        self._primary.dispose()
        if self._replica is not None:
            self._replica.dispose()
