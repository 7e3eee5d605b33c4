"""Database schema and connection management for Bonfire.

Uses SQLAlchemy Core (not ORM) for explicit SQL control.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine

from bonfire.config import Config

# Shared metadata for all tables
metadata = MetaData()


# =============================================================================
# Announcement Records
# =============================================================================

announcements = Table(
    "announcements",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("title", String, nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("author", String, nullable=False, default="Anonymous"),
    Column("additional_info", Text, nullable=False, default=""),
    Column("timestamp", DateTime, nullable=True),  # Display time in the message
    Column("roam_id", String, nullable=True),  # Event id inside the roster document
    Column("roam_details", JSON, nullable=True),
    Column("status", String, nullable=False),  # pending, posted, error, deleted
    Column("discord_message_id", String, nullable=True),
    Column("discord_channel_id", String, nullable=True),
    Column("discord_url", String, nullable=True),
    Column("reactions", JSON, nullable=False),
    Column("update_requested", Boolean, nullable=False, default=False),
    Column("update_requested_at", DateTime, nullable=True),
    Column("internal_update_in_flight", Boolean, nullable=False, default=False),
    Column("error", Text, nullable=True),
    Column("error_at", DateTime, nullable=True),
    Column("update_error", Text, nullable=True),
    Column("update_error_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Column("posted_at", DateTime, nullable=True),
    Column("last_updated", DateTime, nullable=True),
    Column("last_reaction_update", DateTime, nullable=True),
    Column("last_reaction_sync", DateTime, nullable=True),
    Column("deleted_at", DateTime, nullable=True),  # Soft delete tombstone
    Column("revision", Integer, nullable=False, default=1),  # Bumped on every write
    Index("ix_announcements_status", "status"),
    Index("ix_announcements_update_requested", "update_requested"),
    Index("ix_announcements_discord_message", "discord_message_id"),
    Index("ix_announcements_created", "created_at"),
)


# =============================================================================
# Roster & Accounts
# =============================================================================

rosters = Table(
    "rosters",
    metadata,
    Column("id", String, primary_key=True),  # e.g. "roams"
    Column("scheduled", JSON, nullable=False),  # list of event documents
    Column("version", Integer, nullable=False, default=1),  # Optimistic concurrency
    Column("last_updated", DateTime, nullable=True),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("discord_id", String, nullable=False),
    Column("username", String, nullable=False),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_accounts_discord_id", "discord_id", unique=True),
)


# =============================================================================
# Schema Version (for migrations)
# =============================================================================

schema_version = Table(
    "_schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("applied_at", DateTime, nullable=False),
    Column("description", String, nullable=True),
)


# =============================================================================
# Helper Functions
# =============================================================================



def get_engine(config: Config) -> Engine:
    """Create SQLAlchemy engine from config.

    Args:
        config: Application configuration.

    Returns:
        SQLAlchemy Engine instance.
    """
    db_path = config.database_path

    # Ensure data directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=config.log_level == "DEBUG",
    )

    # WAL lets the API read while the engine writes
    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.commit()

    return engine


def create_tables(engine: Engine) -> None:
    """Create all tables in the database.

    Args:
        engine: SQLAlchemy Engine instance.
    """
    metadata.create_all(engine)
