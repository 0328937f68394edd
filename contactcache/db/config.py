from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import make_url


DEFAULT_SQLITE_PATH = Path("data") / "contact_cache.db"
DEFAULT_DATABASE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH.as_posix()}"


@dataclass(frozen=True)
class DBSettings:
    database_url: str
    database_url_replica: str | None
    db_read_mode: str


ALLOWED_READ_MODES = {"replica", "primary"}


def _normalize_read_mode(v: str) -> str:
    vv = (v or "replica").strip().lower()
    return vv if vv in ALLOWED_READ_MODES else "replica"


def get_db_settings() -> DBSettings:
    database_url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL).strip() or DEFAULT_DATABASE_URL
    database_url_replica = os.environ.get("DATABASE_URL_REPLICA", "").strip() or None
    db_read_mode = _normalize_read_mode(os.environ.get("DB_READ_MODE", "replica"))
    return DBSettings(
        database_url=database_url,
        database_url_replica=database_url_replica,
        db_read_mode=db_read_mode,
    )


def redact_database_url(url: str) -> str:
    raw = (url or "").strip()
    if not raw:
        return ""
    try:
        return make_url(raw).render_as_string(hide_password=True)
    except Exception:
        return raw
