"""Pydantic models for Bonfire entities.

These models bridge between the database (SQLAlchemy Core) and application code,
providing validation and serialization. Wire/document shapes are camelCase
(``discordMessageId``, ``creatorId``) through aliases; Python code and database
columns use snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from ulid import ULID


# =============================================================================
# Enums
# =============================================================================


class RecordStatus(str, Enum):
    """Announcement record lifecycle status."""

    PENDING = "pending"
    POSTED = "posted"
    ERROR = "error"
    DELETED = "deleted"


class ChangeKind(str, Enum):
    """Kinds of change reported by a record watch."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class ReactionEventKind(str, Enum):
    """Channel reaction event kinds."""

    ADDED = "added"
    REMOVED = "removed"
    CLEARED = "cleared"


# =============================================================================
# Helper Functions
# =============================================================================


def generate_id() -> str:
    """Generate a new ULID for entities."""
    return str(ULID())


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDateTime = Annotated[datetime, AfterValidator(_as_utc)]

# Fields rendered into the Discord message body
CONTENT_FIELDS = ("title", "description", "author", "additional_info", "timestamp")


class WireModel(BaseModel):
    """Base for models with a camelCase wire shape."""

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =============================================================================
# Announcement Records
# =============================================================================


class AnnouncementRecord(WireModel):
    """A store record mirrored onto the Discord channel as a message."""

    id: str = Field(default_factory=generate_id)
    title: str
    description: str = ""
    author: str = "Anonymous"
    additional_info: str = ""
    timestamp: UtcDateTime | None = None
    roam_id: str | None = None
    roam_details: dict[str, Any] | None = None
    status: RecordStatus = RecordStatus.PENDING
    discord_message_id: str | None = None
    discord_channel_id: str | None = None
    discord_url: str | None = None
    reactions: dict[str, int] = Field(default_factory=dict)
    update_requested: bool = False
    update_requested_at: UtcDateTime | None = None
    internal_update_in_flight: bool = False
    error: str | None = None
    error_at: UtcDateTime | None = None
    update_error: str | None = None
    update_error_at: UtcDateTime | None = None
    created_at: UtcDateTime = Field(default_factory=utcnow)
    posted_at: UtcDateTime | None = None
    last_updated: UtcDateTime | None = None
    last_reaction_update: UtcDateTime | None = None
    last_reaction_sync: UtcDateTime | None = None
    deleted_at: UtcDateTime | None = None
    revision: int = 1

    @field_validator("reactions", mode="before")
    @classmethod
    def default_reactions(cls, v: Any) -> Any:
        """Treat a NULL reactions column as no reactions."""
        return v or {}

    def content_snapshot(self) -> tuple:
        """Values of the fields that are rendered into the message."""
        return tuple(getattr(self, name) for name in CONTENT_FIELDS)

    def reaction_count(self, symbol: str) -> int:
        """Stored count for a reaction symbol (0 if absent)."""
        return self.reactions.get(symbol, 0)


@dataclass(frozen=True)
class RecordChange:
    """One change observed by a record watch.

    ``previous`` is the last snapshot the watch saw for the record, if any.
    """

    kind: ChangeKind
    record: AnnouncementRecord
    previous: AnnouncementRecord | None = None


# =============================================================================
# Roster
# =============================================================================


class Guest(WireModel):
    """An unregistered participant on a roster event."""

    discord_id: str
    display_name: str | None = None
    added_at: UtcDateTime = Field(default_factory=utcnow)


class RosterEvent(WireModel):
    """One schedulable activity inside a roster document.

    Unknown fields written by other tools are kept and written back as-is.
    """

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    id: str
    category: str | None = None
    composition: str | None = None
    date: str | None = None
    time: str | None = None
    title: str | None = None
    creator_id: str | None = None
    signups: list[str] = Field(default_factory=list)
    guests: list[Guest] = Field(default_factory=list)

    @field_validator("signups", mode="before")
    @classmethod
    def normalize_signups(cls, v: Any) -> Any:
        """Drop duplicates and NULLs, keep first-seen order."""
        if not v:
            return []
        seen: dict[str, None] = {}
        for item in v:
            if item is not None:
                seen.setdefault(str(item), None)
        return list(seen)

    @field_validator("guests", mode="before")
    @classmethod
    def normalize_guests(cls, v: Any) -> Any:
        """Normalize legacy bare-id guest entries into guest records."""
        if not v:
            return []
        normalized = []
        for item in v:
            if isinstance(item, (str, int)):
                normalized.append({"discord_id": str(item)})
            else:
                normalized.append(item)
        return normalized

    @model_validator(mode="after")
    def enforce_exclusive_membership(self) -> "RosterEvent":
        """A signup is never also a guest; guests are unique by discord id."""
        signed_up = set(self.signups)
        seen: set[str] = set()
        guests = []
        for guest in self.guests:
            if guest.discord_id in signed_up or guest.discord_id in seen:
                continue
            seen.add(guest.discord_id)
            guests.append(guest)
        self.guests = guests
        return self

    def guest_ids(self) -> list[str]:
        """Discord ids of all guests, in list order."""
        return [g.discord_id for g in self.guests]

    def to_document(self) -> dict[str, Any]:
        """Serialize for storage inside the roster document."""
        return self.model_dump(mode="json", by_alias=True)


class Roster(WireModel):
    """The singleton document holding scheduled roster events."""

    id: str
    scheduled: list[RosterEvent] = Field(default_factory=list)
    version: int = 1
    last_updated: UtcDateTime | None = None

    @field_validator("scheduled", mode="before")
    @classmethod
    def default_scheduled(cls, v: Any) -> Any:
        """Treat a NULL scheduled column as an empty list."""
        return v or []

    def find_event(self, event_id: str) -> RosterEvent | None:
        """Look up a scheduled event by id."""
        for event in self.scheduled:
            if event.id == event_id:
                return event
        return None


# =============================================================================
# Accounts
# =============================================================================


class Account(WireModel):
    """A registered account linked to a Discord user."""

    id: str = Field(default_factory=generate_id)
    discord_id: str
    username: str
    created_at: UtcDateTime = Field(default_factory=utcnow)


# =============================================================================
# Channel Events & Gateway Results
# =============================================================================


class ReactionEvent(BaseModel):
    """A reaction change on the configured channel.

    ``live_count`` is the channel's own count for the symbol after the change,
    not a local increment. ``user_id`` is None for bulk clears.
    """

    kind: ReactionEventKind
    message_id: str
    channel_id: str
    symbol: str
    user_id: str | None = None
    display_name: str | None = None
    live_count: int = 0


class SentMessage(BaseModel):
    """Metadata for a message sent by the gateway."""

    message_id: str
    channel_id: str
    url: str
    created_at: UtcDateTime


# =============================================================================
# Conversion Helpers
# =============================================================================


T = TypeVar("T", bound=BaseModel)


def row_to_model(row, model_class: type[T]) -> T:
    """Convert SQLAlchemy row to Pydantic model.

    Args:
        row: SQLAlchemy row result.
        model_class: Target Pydantic model class.

    Returns:
        Instance of the model class.
    """
    return model_class.model_validate(dict(row._mapping))


def model_to_dict(model: BaseModel, exclude_none: bool = False) -> dict[str, Any]:
    """Convert Pydantic model to dict for database insert.

    Args:
        model: Pydantic model instance.
        exclude_none: If True, exclude None values.

    Returns:
        Dictionary representation.
    """
    return model.model_dump(exclude_none=exclude_none)
