"""Record store adapter for Bonfire.

Typed read/write/watch operations over the announcement records, the roster
documents and the account table. Every write to a record bumps its
``revision`` so that watches can tell a modification from a no-op re-read.

Watches are built by polling: each tick re-runs the query and diffs the result
against the previous snapshot, yielding ``added``, ``modified`` and ``removed``
changes in the style of a document-store snapshot listener. The first tick
reports every matching record as ``added``.

Roster writes use optimistic concurrency. The whole document is read with its
``version``, the mutation is applied to the target event, and the write is
conditional on the version being unchanged. On a mismatch the read and the
mutation are repeated, so mutation callbacks must compute their result from
the event they are handed.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bonfire.database import accounts, announcements, rosters
from bonfire.logging import get_logger
from bonfire.models import (
    CONTENT_FIELDS,
    Account,
    AnnouncementRecord,
    ChangeKind,
    RecordChange,
    RecordStatus,
    Roster,
    RosterEvent,
    model_to_dict,
    row_to_model,
    utcnow,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = get_logger("store")


class RosterConflictError(Exception):
    """Raised when a roster write keeps losing the optimistic version check."""


@dataclass(frozen=True)
class RecordQuery:
    """A named filter over announcement records.

    Unset criteria are not applied.
    """

    name: str
    status: RecordStatus | None = None
    update_requested: bool | None = None

    def clauses(self) -> list:
        """SQL criteria for this query."""
        criteria = []
        if self.status is not None:
            criteria.append(announcements.c.status == self.status.value)
        if self.update_requested is not None:
            criteria.append(announcements.c.update_requested == self.update_requested)
        return criteria

    def matches(self, record: AnnouncementRecord) -> bool:
        """Check a record against this query in memory."""
        if self.status is not None and record.status != self.status:
            return False
        if self.update_requested is not None and record.update_requested != self.update_requested:
            return False
        return True


PENDING = RecordQuery("pending", status=RecordStatus.PENDING)
UPDATE_REQUESTED = RecordQuery("update_requested", update_requested=True)
POSTED = RecordQuery("posted", status=RecordStatus.POSTED)


def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert model values to column values."""
    values = {}
    for key, value in fields.items():
        if isinstance(value, RecordStatus):
            value = value.value
        values[key] = value
    return values


class RecordStore:
    """Read/write/watch access to records, rosters and accounts.

    Attributes:
        engine: SQLAlchemy engine.
        watch_interval: Default seconds between watch polls.
        roster_max_retries: Attempts before a roster write gives up.
    """

    def __init__(
        self,
        engine: Engine,
        watch_interval: float = 1.0,
        roster_max_retries: int = 5,
    ) -> None:
        self.engine = engine
        self.watch_interval = watch_interval
        self.roster_max_retries = roster_max_retries

    # =========================================================================
    # Records
    # =========================================================================

    def create(self, record: AnnouncementRecord) -> AnnouncementRecord:
        """Insert a new record.

        Args:
            record: Record to insert. Its id is kept.

        Returns:
            The stored record.
        """
        values = _to_columns(model_to_dict(record))
        with self.engine.begin() as conn:
            conn.execute(announcements.insert().values(**values))
        log.info("record_created", record_id=record.id, status=record.status.value)
        return record

    def get(self, record_id: str) -> AnnouncementRecord | None:
        """Fetch a record by id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(announcements).where(announcements.c.id == record_id)
            ).fetchone()
        return row_to_model(row, AnnouncementRecord) if row else None

    def update(self, record_id: str, fields: dict[str, Any]) -> bool:
        """Apply a partial update and bump the record's revision.

        Args:
            record_id: Record to update.
            fields: Column name to new value.

        Returns:
            True if a record was updated.
        """
        values = _to_columns(fields)
        values["revision"] = announcements.c.revision + 1
        with self.engine.begin() as conn:
            result = conn.execute(
                announcements.update()
                .where(announcements.c.id == record_id)
                .values(**values)
            )
        return result.rowcount > 0

    def query(self, query: RecordQuery) -> list[AnnouncementRecord]:
        """Return all records matching a query, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(announcements)
                .where(*query.clauses())
                .order_by(announcements.c.created_at, announcements.c.id)
            ).fetchall()
        return [row_to_model(row, AnnouncementRecord) for row in rows]

    def list_records(
        self,
        status: RecordStatus | None = None,
        limit: int | None = None,
        with_message: bool = False,
    ) -> list[AnnouncementRecord]:
        """List records, newest first.

        Args:
            status: Only records with this status.
            limit: Maximum number of records.
            with_message: Only records that have a Discord message id.
        """
        stmt = select(announcements).order_by(
            announcements.c.created_at.desc(), announcements.c.id.desc()
        )
        if status is not None:
            stmt = stmt.where(announcements.c.status == status.value)
        if with_message:
            stmt = stmt.where(announcements.c.discord_message_id.is_not(None))
        if limit is not None:
            stmt = stmt.limit(limit)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [row_to_model(row, AnnouncementRecord) for row in rows]

    def find_by_message_id(self, message_id: str) -> AnnouncementRecord | None:
        """Find the record announced as a given Discord message."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(announcements)
                .where(announcements.c.discord_message_id == message_id)
                .order_by(announcements.c.created_at)
                .limit(1)
            ).fetchone()
        return row_to_model(row, AnnouncementRecord) if row else None

    def set_reaction_count(self, record_id: str, symbol: str, count: int) -> None:
        """Store the live count for one reaction symbol.

        Other symbols in the stored map are kept.
        """
        now = utcnow()
        with self.engine.begin() as conn:
            current = conn.execute(
                select(announcements.c.reactions).where(announcements.c.id == record_id)
            ).scalar()
            reactions = dict(current or {})
            reactions[symbol] = count
            conn.execute(
                announcements.update()
                .where(announcements.c.id == record_id)
                .values(
                    reactions=reactions,
                    last_reaction_update=now,
                    revision=announcements.c.revision + 1,
                )
            )

    def replace_reactions(self, record_id: str, reactions: dict[str, int]) -> bool:
        """Overwrite the stored reaction map and stamp the sync time."""
        return self.update(
            record_id,
            {"reactions": dict(reactions), "last_reaction_sync": utcnow()},
        )

    def request_update(self, record_id: str, fields: dict[str, Any]) -> bool:
        """Apply content changes and flag the record for a channel edit.

        Args:
            record_id: Record to update.
            fields: Content fields to change; anything else is ignored.

        Returns:
            True if the record exists.
        """
        content = {k: v for k, v in fields.items() if k in CONTENT_FIELDS}
        content["update_requested"] = True
        content["update_requested_at"] = utcnow()
        requested = self.update(record_id, content)
        if requested:
            log.info("record_update_requested", record_id=record_id, fields=sorted(fields))
        return requested

    def complete_update(self, record_id: str, requested_at: datetime | None) -> bool:
        """Record a finished channel edit and raise the in-flight marker.

        ``update_requested`` is only cleared if the request being completed is
        still the latest one (same ``update_requested_at``). A request made
        while the edit was running stays set and is picked up by the watch.

        Args:
            record_id: Record that was edited.
            requested_at: ``update_requested_at`` as read before the edit.

        Returns:
            True if the request flag was cleared.
        """
        values = {
            "internal_update_in_flight": True,
            "last_updated": utcnow(),
            "update_error": None,
            "update_error_at": None,
            "revision": announcements.c.revision + 1,
        }
        if requested_at is None:
            same_request = announcements.c.update_requested_at.is_(None)
        else:
            same_request = announcements.c.update_requested_at == requested_at

        with self.engine.begin() as conn:
            result = conn.execute(
                announcements.update()
                .where(announcements.c.id == record_id)
                .where(same_request)
                .values(update_requested=False, **values)
            )
            if result.rowcount > 0:
                return True
            conn.execute(
                announcements.update()
                .where(announcements.c.id == record_id)
                .values(**values)
            )
        log.info("record_update_requested_again", record_id=record_id)
        return False

    def reset_in_flight_markers(self) -> int:
        """Clear in-flight markers left behind by a previous process.

        Returns:
            Number of records reset.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                announcements.update()
                .where(announcements.c.internal_update_in_flight.is_(True))
                .values(
                    internal_update_in_flight=False,
                    revision=announcements.c.revision + 1,
                )
            )
        if result.rowcount:
            log.info("stale_in_flight_markers_reset", count=result.rowcount)
        return result.rowcount

    def mark_deleted(self, record_id: str) -> bool:
        """Soft-delete a record. The Discord message is left as it is."""
        deleted = self.update(
            record_id,
            {"status": RecordStatus.DELETED, "deleted_at": utcnow()},
        )
        if deleted:
            log.info("record_marked_deleted", record_id=record_id)
        return deleted

    async def watch(
        self,
        query: RecordQuery,
        interval: float | None = None,
    ) -> AsyncIterator[RecordChange]:
        """Yield changes to the set of records matching a query.

        Runs until the consuming task is cancelled. A failed poll is logged and
        retried on the next tick without losing the previous snapshot.

        Args:
            query: Filter to watch.
            interval: Seconds between polls (defaults to ``watch_interval``).
        """
        interval = self.watch_interval if interval is None else interval
        known: dict[str, AnnouncementRecord] = {}

        while True:
            try:
                current = {record.id: record for record in self.query(query)}
            except SQLAlchemyError as e:
                log.error("watch_poll_failed", query=query.name, error=str(e))
                await asyncio.sleep(interval)
                continue

            for record_id, record in current.items():
                previous = known.get(record_id)
                if previous is None:
                    yield RecordChange(ChangeKind.ADDED, record)
                elif previous.revision != record.revision:
                    yield RecordChange(ChangeKind.MODIFIED, record, previous)

            for record_id in known.keys() - current.keys():
                yield RecordChange(ChangeKind.REMOVED, known[record_id])

            known = current
            await asyncio.sleep(interval)

    # =========================================================================
    # Roster
    # =========================================================================

    def get_roster(self, roster_id: str) -> Roster | None:
        """Read a roster document."""
        with self.engine.connect() as conn:
            row = conn.execute(select(rosters).where(rosters.c.id == roster_id)).fetchone()
        return row_to_model(row, Roster) if row else None

    def save_roster(self, roster: Roster) -> Roster:
        """Create or overwrite a whole roster document.

        Used for seeding and administration, not by reconciliation.
        """
        now = utcnow()
        scheduled = [event.to_document() for event in roster.scheduled]
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(rosters.c.version).where(rosters.c.id == roster.id)
            ).scalar()
            if existing is None:
                version = 1
                conn.execute(
                    rosters.insert().values(
                        id=roster.id, scheduled=scheduled, version=version, last_updated=now
                    )
                )
            else:
                version = existing + 1
                conn.execute(
                    rosters.update()
                    .where(rosters.c.id == roster.id)
                    .values(scheduled=scheduled, version=version, last_updated=now)
                )
        return roster.model_copy(update={"version": version, "last_updated": now})

    def mutate_event(
        self,
        roster_id: str,
        event_id: str,
        mutate: Callable[[RosterEvent], bool],
    ) -> RosterEvent | None:
        """Apply a mutation to one roster event with optimistic concurrency.

        Args:
            roster_id: Roster document id.
            event_id: Event id inside the document.
            mutate: Changes the event in place; returns True if anything changed.
                May be called more than once when writes conflict.

        Returns:
            The event after the mutation (persisted if changed), or None if the
            roster or the event does not exist.

        Raises:
            RosterConflictError: If every attempt lost the version check.
        """
        for attempt in range(1, self.roster_max_retries + 1):
            with self.engine.connect() as conn:
                # first() closes the cursor so no read snapshot outlives the read
                row = conn.execute(
                    select(rosters).where(rosters.c.id == roster_id)
                ).first()
                if row is None:
                    log.warning("roster_not_found", roster_id=roster_id)
                    return None

                roster = row_to_model(row, Roster)
                event = roster.find_event(event_id)
                if event is None:
                    log.warning("roster_event_not_found", roster_id=roster_id, event_id=event_id)
                    return None

                if not mutate(event):
                    return event

                result = conn.execute(
                    rosters.update()
                    .where(rosters.c.id == roster_id)
                    .where(rosters.c.version == roster.version)
                    .values(
                        scheduled=[e.to_document() for e in roster.scheduled],
                        version=roster.version + 1,
                        last_updated=utcnow(),
                    )
                )
                conn.commit()

            if result.rowcount == 1:
                return event

            log.info(
                "roster_version_conflict",
                roster_id=roster_id,
                event_id=event_id,
                attempt=attempt,
            )

        raise RosterConflictError(
            f"Roster {roster_id} changed concurrently {self.roster_max_retries} times"
        )

    # =========================================================================
    # Accounts
    # =========================================================================

    def get_account_by_discord_id(self, discord_id: str) -> Account | None:
        """Find the registered account linked to a Discord user."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(accounts).where(accounts.c.discord_id == discord_id).limit(1)
            ).fetchone()
        return row_to_model(row, Account) if row else None

    def create_account(self, account: Account) -> Account:
        """Register an account.

        Raises:
            ValueError: If the Discord id is already linked.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(accounts.insert().values(**model_to_dict(account)))
        except IntegrityError as e:
            raise ValueError(f"Discord id already registered: {account.discord_id}") from e
        log.info("account_created", account_id=account.id, discord_id=account.discord_id)
        return account
