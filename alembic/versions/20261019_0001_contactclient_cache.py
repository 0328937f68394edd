"""contactclient_cache baseline

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


TABLE = "contactclient_cache"

INDEXES: list[tuple[str, list[str]]] = [
    ("idx_contactclient_cache_client_date", ["contactclient_id", "date_added", "contact_id"]),
    ("idx_contactclient_cache_contact", ["contact_id", "contactclient_id", "date_added"]),
    ("idx_contactclient_cache_email", ["email", "contactclient_id", "date_added"]),
    ("idx_contactclient_cache_phone", ["phone", "contactclient_id", "date_added"]),
    ("idx_contactclient_cache_mobile", ["mobile", "contactclient_id", "date_added"]),
    ("idx_contactclient_cache_address", ["address1", "city", "zipcode"]),
    ("idx_contactclient_cache_utm_source", ["utm_source", "contactclient_id", "date_added"]),
    ("idx_contactclient_cache_category", ["category_id", "contactclient_id", "date_added"]),
    ("idx_contactclient_cache_exclusive", ["exclusive_expire_date", "exclusive_pattern", "exclusive_scope"]),
    ("idx_contactclient_cache_date_added", ["date_added"]),
]


def _has_table(table_name: str) -> bool:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    return table_name in set(insp.get_table_names())


def _existing_indexes(table_name: str) -> set[str]:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    try:
        return {str(i.get("name", "")) for i in insp.get_indexes(table_name)}
    except Exception:
        return set()


def _create_index_if_missing(name: str, table_name: str, cols: list[str]) -> None:
    if name in _existing_indexes(table_name):
        return
    op.create_index(name, table_name, cols, unique=False)


def upgrade() -> None:
    if not _has_table(TABLE):
        op.create_table(
            TABLE,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("contact_id", sa.Integer(), nullable=True),
            sa.Column("contactclient_id", sa.Integer(), nullable=True),
            sa.Column("campaign_id", sa.Integer(), nullable=True),
            sa.Column("category_id", sa.Integer(), nullable=True),
            sa.Column("email", sa.String(255), nullable=True),
            sa.Column("phone", sa.String(64), nullable=True),
            sa.Column("mobile", sa.String(64), nullable=True),
            sa.Column("address1", sa.String(255), nullable=True),
            sa.Column("address2", sa.String(255), nullable=True),
            sa.Column("city", sa.String(255), nullable=True),
            sa.Column("state", sa.String(255), nullable=True),
            sa.Column("zipcode", sa.String(32), nullable=True),
            sa.Column("country", sa.String(255), nullable=True),
            sa.Column("utm_source", sa.String(255), nullable=True),
            sa.Column("date_added", sa.DateTime(), nullable=False),
            sa.Column("exclusive_pattern", sa.Integer(), nullable=True),
            sa.Column("exclusive_scope", sa.Integer(), nullable=True),
            sa.Column("exclusive_expire_date", sa.DateTime(), nullable=True),
        )
    for name, cols in INDEXES:
        _create_index_if_missing(name, TABLE, cols)


def downgrade() -> None:
    if _has_table(TABLE):
        for name, _ in INDEXES:
            if name in _existing_indexes(TABLE):
                op.drop_index(name, table_name=TABLE)
        op.drop_table(TABLE)
