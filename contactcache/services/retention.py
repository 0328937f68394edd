from __future__ import annotations

import datetime as dt
import logging
from typing import Any

import pendulum

from contactcache.core.intervals import RETENTION_CEILING, retention_floor, to_storage
from contactcache.db.repo import CacheRepo


class RetentionMaintainer:
    """
    Keeps the cache table and its exclusivity index small.

    purge_expired() hard-deletes rows older than one month and one day. That is
    the ceiling for every rule duration: a limit or duplicate window longer than
    RETENTION_CEILING silently loses its oldest rows.

    collapse_expired_exclusivity() clears exclusive_* on rows whose exclusivity
    has lapsed; the rows themselves stay for duplicate and limit counting.

    Both passes only depend on current row state, so overlapping or repeated
    runs are harmless.
    """

    def __init__(self, repo: CacheRepo) -> None:
        self.repo = repo
        self._logger = logging.getLogger("retention")

    def purge_expired(self, now: dt.datetime | None = None) -> int:
        oldest = to_storage(retention_floor(now))
        deleted = self.repo.delete_older_than(oldest)
        self._logger.info("purged expired cache rows deleted=%s oldest=%s", deleted, oldest.isoformat())
        return deleted

    def collapse_expired_exclusivity(self, now: dt.datetime | None = None) -> int:
        cutoff = to_storage(now if now is not None else pendulum.now("UTC"))
        updated = self.repo.clear_exclusivity_before(cutoff)
        self._logger.info("collapsed expired exclusivity updated=%s cutoff=%s", updated, cutoff.isoformat())
        return updated

    def run(self, now: dt.datetime | None = None) -> dict[str, Any]:
        return {
            "retention_ceiling": dict(RETENTION_CEILING),
            "purged": self.purge_expired(now),
            "exclusivity_collapsed": self.collapse_expired_exclusivity(now),
        }
