"""Initial schema: announcements, rosters and accounts."""

from sqlalchemy import inspect

from bonfire.database import create_tables

VERSION = 1
DESCRIPTION = "Announcement, roster and account tables"


def upgrade(engine):
    create_tables(engine)


def check(engine) -> bool:
    """True when every table of this version already exists."""
    tables = set(inspect(engine).get_table_names())
    return {"announcements", "rosters", "accounts"}.issubset(tables)
