from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from contactcache.db.base import Base


CACHE_TABLE = "contactclient_cache"


class CacheRecord(Base):
    """
    One row per contact send attempt to a client.

    Rows are append-only. The only update ever issued is the retention pass that
    clears the exclusive_* columns once exclusive_expire_date has passed.
    Timestamps are naive UTC at second precision.
    """

    __tablename__ = CACHE_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    contactclient_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    campaign_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mobile: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    address1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    zipcode: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_source: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    date_added: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    exclusive_pattern: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    exclusive_scope: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    exclusive_expire_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_contactclient_cache_client_date", "contactclient_id", "date_added", "contact_id"),
        Index("idx_contactclient_cache_contact", "contact_id", "contactclient_id", "date_added"),
        Index("idx_contactclient_cache_email", "email", "contactclient_id", "date_added"),
        Index("idx_contactclient_cache_phone", "phone", "contactclient_id", "date_added"),
        Index("idx_contactclient_cache_mobile", "mobile", "contactclient_id", "date_added"),
        Index("idx_contactclient_cache_address", "address1", "city", "zipcode"),
        Index("idx_contactclient_cache_utm_source", "utm_source", "contactclient_id", "date_added"),
        Index("idx_contactclient_cache_category", "category_id", "contactclient_id", "date_added"),
        Index(
            "idx_contactclient_cache_exclusive",
            "exclusive_expire_date",
            "exclusive_pattern",
            "exclusive_scope",
        ),
        Index("idx_contactclient_cache_date_added", "date_added"),
    )
