from contactcache.db.base import Base
from contactcache.db.config import DBSettings, get_db_settings
from contactcache.db.engine import ConnectionRouter, make_engine

__all__ = [
    "Base",
    "DBSettings",
    "get_db_settings",
    "make_engine",
    "ConnectionRouter",
]
