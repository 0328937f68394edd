from __future__ import annotations

import datetime as dt
import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pendulum
from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from contactcache.core.config import MatchSettings, get_match_settings
from contactcache.core.intervals import rolling_end, to_storage
from contactcache.core.phone import PhoneNormalizer
from contactcache.db.config import DBSettings, get_db_settings, redact_database_url
from contactcache.db.engine import ConnectionRouter
from contactcache.db.models.cache import CACHE_TABLE
from contactcache.db.repo import CacheRepo
from contactcache.rules.errors import CACHE_004_SCHEMA_NOT_READY, StoreError
from contactcache.rules.models import (
    DEFAULT_EXCLUSIVE_MATCHING,
    DEFAULT_EXCLUSIVE_SCOPE,
    CacheMatch,
    DuplicateRule,
    ExclusiveRule,
    LimitHit,
    LimitRule,
)
from contactcache.services.match_engine import (
    ADDRESS_FIELDS,
    MatchEngine,
    client_category_id,
    client_id_of,
    ucwords,
)
from contactcache.services.retention import RetentionMaintainer


class ContactCache:
    """
    Entry point used by send-eligibility callers and maintenance jobs.

    Wires the connection router, repository, match engine and retention
    maintainer together from environment settings.
    """

    def __init__(
        self,
        router: ConnectionRouter,
        *,
        project_root: Path | None = None,
        database_url: str | None = None,
        settings: MatchSettings | None = None,
        phone_normalizer: PhoneNormalizer | None = None,
    ) -> None:
        self.router = router
        self.project_root = project_root or Path(__file__).resolve().parents[2]
        self.database_url = database_url or router.primary().url.render_as_string(hide_password=False)
        self.settings = settings or get_match_settings()
        self.repo = CacheRepo(router)
        self.engine = MatchEngine(self.repo, phone_normalizer=phone_normalizer, settings=self.settings)
        self.maintainer = RetentionMaintainer(self.repo)
        self._logger = logging.getLogger("contact_cache")

    @classmethod
    def from_settings(
        cls,
        db_settings: DBSettings | None = None,
        *,
        project_root: Path | None = None,
        auto_init: bool = False,
    ) -> "ContactCache":
        s = db_settings or get_db_settings()
        cache = cls(ConnectionRouter.from_settings(s), project_root=project_root, database_url=s.database_url)
        if auto_init:
            cache.ensure_schema()
        return cache

    def _run_alembic_upgrade(self) -> None:
        alembic_ini = self.project_root / "alembic.ini"
        script_location = self.project_root / "alembic"
        if not alembic_ini.exists() or not script_location.exists():
            raise RuntimeError("Alembic configuration not found")
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(script_location))
        cfg.set_main_option("sqlalchemy.url", self.database_url)
        prev = os.environ.get("DATABASE_URL")
        try:
            os.environ["DATABASE_URL"] = self.database_url
            command.upgrade(cfg, "head")
        finally:
            if prev is None:
                os.environ.pop("DATABASE_URL", None)
            else:
                os.environ["DATABASE_URL"] = prev

    def ensure_schema(self) -> None:
        engine = self.router.primary()
        try:
            with engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            if inspect(engine).has_table(CACHE_TABLE):
                return
            self._run_alembic_upgrade()
            if not inspect(engine).has_table(CACHE_TABLE):
                raise RuntimeError(f"missing table after migration: {CACHE_TABLE}")
        except Exception as e:
            raise StoreError(
                CACHE_004_SCHEMA_NOT_READY,
                f"run `alembic upgrade head` (url={redact_database_url(self.database_url)}): {e}",
            ) from e

    def observability_info(self) -> dict[str, Any]:
        return {
            "db_url": redact_database_url(self.database_url),
            "has_replica": self.router.has_replica,
            "read_mode": self.router.read_mode,
            "timezone": self.settings.timezone,
            "exclusive_address": self.settings.exclusive_address,
        }

    def check_limit(
        self,
        client: Any,
        rules: Sequence[LimitRule | Mapping[str, Any]] = (),
        timezone: str | None = None,
        send_time: dt.datetime | None = None,
    ) -> LimitHit | None:
        return self.engine.find_limit(client, rules, timezone, send_time)

    def check_duplicate(
        self,
        contact: Any,
        client: Any,
        rules: Iterable[DuplicateRule | Mapping[str, Any]] = (),
        utm_source: str | None = None,
        timezone: str | None = None,
        send_time: dt.datetime | None = None,
    ) -> CacheMatch | None:
        return self.engine.find_duplicate(contact, client, rules, utm_source, timezone, send_time)

    def check_exclusive(
        self,
        contact: Any,
        client: Any,
        send_time: dt.datetime | None = None,
        matching: int = DEFAULT_EXCLUSIVE_MATCHING,
        scope: int = DEFAULT_EXCLUSIVE_SCOPE,
    ) -> CacheMatch | None:
        return self.engine.find_exclusive(contact, client, send_time, matching, scope)

    def purge_expired(self, now: dt.datetime | None = None) -> int:
        return self.maintainer.purge_expired(now)

    def collapse_expired_exclusivity(self, now: dt.datetime | None = None) -> int:
        return self.maintainer.collapse_expired_exclusivity(now)

    def record(
        self,
        contact: Any,
        client: Any,
        *,
        campaign_id: int | None = None,
        utm_source: str | None = None,
        send_time: dt.datetime | None = None,
        exclusive: ExclusiveRule | Mapping[str, Any] | None = None,
    ) -> int:
        """Append one send attempt to the cache and return its id."""
        date_added = to_storage(send_time if send_time is not None else pendulum.now("UTC"))
        email = str(getattr(contact, "email", None) or "").strip()
        contact_id = getattr(contact, "id", None)
        values: dict[str, Any] = {
            "contact_id": int(contact_id) if contact_id is not None else None,
            "contactclient_id": client_id_of(client),
            "campaign_id": int(campaign_id) if campaign_id else None,
            "category_id": client_category_id(client),
            "email": email or None,
            "phone": self.engine.normalize_phone(getattr(contact, "phone", None)),
            "mobile": self.engine.normalize_phone(getattr(contact, "mobile", None)),
            "utm_source": str(utm_source or "").strip() or None,
            "date_added": date_added,
        }
        # Partial addresses are stored too, matching decides whether they count.
        for key in ADDRESS_FIELDS:
            values[key] = ucwords(getattr(contact, key, None)) or None
        if exclusive is not None:
            rule = ExclusiveRule.coerce(exclusive)
            values["exclusive_pattern"] = rule.matching
            values["exclusive_scope"] = rule.scope
            values["exclusive_expire_date"] = to_storage(rolling_end(rule.duration, date_added))
        entry_id = self.repo.add_entry(values)
        self._logger.debug(
            "cache entry recorded id=%s client=%s exclusive=%s",
            entry_id,
            values["contactclient_id"],
            exclusive is not None,
        )
        return entry_id
