from contactcache.db.repo.cache_repo import CacheRepo

__all__ = ["CacheRepo"]
