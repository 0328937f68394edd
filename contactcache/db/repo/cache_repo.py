from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from contactcache.db.engine import ConnectionRouter
from contactcache.db.models.cache import CacheRecord
from contactcache.rules.errors import CACHE_003_STORE_UNAVAILABLE, StoreError
from contactcache.rules.models import CacheMatch


class CacheRepo:
    """
    Statements against the contactclient_cache table.

    Lookups run on the replica-preferring engine, inserts and retention
    statements on the primary. Every SQLAlchemy failure surfaces as StoreError.
    """

    def __init__(self, router: ConnectionRouter):
        self.router = router
        self.table = CacheRecord.__table__
        self._Primary = sessionmaker(bind=router.primary(), autoflush=False, autocommit=False, expire_on_commit=False)
        self._Replica = sessionmaker(
            bind=router.prefer_replica(), autoflush=False, autocommit=False, expire_on_commit=False
        )
        self._logger = logging.getLogger("cache_repo")

    @contextmanager
    def _store_errors(self, op_name: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            self._logger.error("cache store failed op=%s error=%s", op_name, e)
            raise StoreError(CACHE_003_STORE_UNAVAILABLE, f"op={op_name} error={e}") from e

    def count(self, predicate: ColumnElement[bool]) -> int:
        q = select(func.count()).select_from(self.table).where(predicate)
        with self._store_errors("count"):
            with self._Replica() as s:
                return int(s.execute(q).scalar_one() or 0)

    def exists_one(self, predicate: ColumnElement[bool]) -> CacheMatch | None:
        # id + contact_id only, so the lookup can be answered from an index.
        q = select(self.table.c.id, self.table.c.contact_id).where(predicate).limit(1)
        with self._store_errors("exists_one"):
            with self._Replica() as s:
                row = s.execute(q).first()
        if row is None:
            return None
        return CacheMatch(id=int(row.id), contact_id=int(row.contact_id) if row.contact_id is not None else None)

    def add_entry(self, values: dict[str, Any]) -> int:
        with self._store_errors("add_entry"):
            with self._Primary() as s:
                try:
                    row = CacheRecord(**values)
                    s.add(row)
                    s.commit()
                    return int(row.id)
                except Exception:
                    s.rollback()
                    raise

    def get_entry(self, entry_id: int) -> CacheRecord | None:
        with self._store_errors("get_entry"):
            with self._Primary() as s:
                return s.get(CacheRecord, int(entry_id))

    def delete_older_than(self, oldest: dt.datetime) -> int:
        q = delete(CacheRecord).where(CacheRecord.date_added < oldest)
        with self._store_errors("delete_older_than"):
            with self._Primary() as s:
                try:
                    res = s.execute(q)
                    s.commit()
                    return int(res.rowcount or 0)
                except Exception:
                    s.rollback()
                    raise

    def clear_exclusivity_before(self, now: dt.datetime) -> int:
        q = (
            update(CacheRecord)
            .where(
                and_(
                    CacheRecord.exclusive_expire_date.isnot(None),
                    CacheRecord.exclusive_expire_date <= now,
                )
            )
            .values(exclusive_expire_date=None, exclusive_pattern=None, exclusive_scope=None)
        )
        with self._store_errors("clear_exclusivity_before"):
            with self._Primary() as s:
                try:
                    res = s.execute(q)
                    s.commit()
                    return int(res.rowcount or 0)
                except Exception:
                    s.rollback()
                    raise

    def status(self) -> dict[str, int]:
        q = select(
            func.count(),
            func.count(CacheRecord.exclusive_expire_date),
        ).select_from(self.table)
        with self._store_errors("status"):
            with self._Replica() as s:
                total, exclusive = s.execute(q).one()
        return {"rows": int(total or 0), "exclusive_rows": int(exclusive or 0)}
