from contactcache.db.models.cache import CACHE_TABLE, CacheRecord

__all__ = [
    "CACHE_TABLE",
    "CacheRecord",
]
