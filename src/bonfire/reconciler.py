"""Reaction reconciler: folds acknowledgement reactions back into the store.

Each reaction event updates the stored reaction count from the channel's live
count, then, when the announcement is linked to a roster event, adjusts that
event's membership:

- a reaction added by a registered account signs it up (promoting it from the
  guest list if it was there);
- a reaction added by anyone else adds them as a guest;
- a reaction removed takes the user off whichever list they are on.

Every branch is idempotent, so duplicate or replayed events leave the roster
unchanged. Failures drop the event; the sweeper heals the counts later.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from bonfire.logging import get_logger
from bonfire.models import Guest, ReactionEvent, ReactionEventKind, RosterEvent, utcnow
from bonfire.tasks import HandlerTasks, KeyedLocks

if TYPE_CHECKING:
    from bonfire.identity import CachedIdentity, IdentityCache
    from bonfire.store import RecordStore

log = get_logger("reconciler")

Prepare = Callable[[ReactionEvent], Awaitable[ReactionEvent | None]]


class MembershipChange(str, Enum):
    """Outcome of applying a join or leave to a roster event."""

    SIGNED_UP = "signed_up"
    PROMOTED = "promoted"
    GUEST_ADDED = "guest_added"
    SIGNUP_REMOVED = "signup_removed"
    GUEST_REMOVED = "guest_removed"
    ALREADY_SIGNED_UP = "already_signed_up"
    ALREADY_GUEST = "already_guest"
    NOT_SIGNED_UP = "not_signed_up"

    @property
    def changed(self) -> bool:
        """Whether the roster event was modified."""
        return self in _MODIFYING


_MODIFYING = {
    MembershipChange.SIGNED_UP,
    MembershipChange.PROMOTED,
    MembershipChange.GUEST_ADDED,
    MembershipChange.SIGNUP_REMOVED,
    MembershipChange.GUEST_REMOVED,
}


def apply_join(
    event: RosterEvent,
    discord_id: str,
    identity: CachedIdentity | None,
    display_name: str | None = None,
    now: datetime | None = None,
) -> MembershipChange:
    """Add a reacting user to a roster event in place.

    Registered users go to ``signups``; anyone else goes to ``guests``. A
    registered user found on the guest list is moved to ``signups``. Users are
    never moved from ``signups`` to ``guests``.
    """
    if discord_id in event.signups:
        return MembershipChange.ALREADY_SIGNED_UP

    guest_ids = event.guest_ids()

    if identity is not None:
        if discord_id in guest_ids:
            event.guests = [g for g in event.guests if g.discord_id != discord_id]
            event.signups.append(discord_id)
            return MembershipChange.PROMOTED
        event.signups.append(discord_id)
        return MembershipChange.SIGNED_UP

    if discord_id in guest_ids:
        return MembershipChange.ALREADY_GUEST

    event.guests.append(
        Guest(discord_id=discord_id, display_name=display_name, added_at=now or utcnow())
    )
    return MembershipChange.GUEST_ADDED


def apply_leave(event: RosterEvent, discord_id: str) -> MembershipChange:
    """Remove a user from a roster event in place."""
    if discord_id in event.signups:
        event.signups = [s for s in event.signups if s != discord_id]
        return MembershipChange.SIGNUP_REMOVED

    if discord_id in event.guest_ids():
        event.guests = [g for g in event.guests if g.discord_id != discord_id]
        return MembershipChange.GUEST_REMOVED

    return MembershipChange.NOT_SIGNED_UP


class ReactionReconciler:
    """Applies channel reaction events to records and the roster.

    Events for the same message are handled in the order they were submitted;
    events for different messages run concurrently.

    Attributes:
        store: Record store adapter.
        identity: Identity cache for resolving reacting users.
        roster_id: Roster document holding the events.
        ack_emoji: The only symbol that carries membership intent.
    """

    def __init__(
        self,
        store: RecordStore,
        identity: IdentityCache,
        roster_id: str = "roams",
        ack_emoji: str = "✅",
    ) -> None:
        self.store = store
        self.identity = identity
        self.roster_id = roster_id
        self.ack_emoji = ack_emoji
        self._handlers = HandlerTasks("reconciler")
        self._locks = KeyedLocks()

    def submit(self, event: ReactionEvent, prepare: Prepare | None = None) -> asyncio.Task:
        """Queue an event for handling without waiting for it.

        Args:
            event: The event, as known when it was delivered.
            prepare: Completes the event (live count, user details) once the
                message lock is held, so slow lookups never reorder events for
                the same message. Returning None drops the event.
        """

        async def run() -> MembershipChange | None:
            async with self._locks.hold(event.message_id):
                ready = event
                if prepare is not None:
                    ready = await prepare(event)
                    if ready is None:
                        return None
                return await self.handle(ready)

        return self._handlers.spawn(run(), name=f"reaction:{event.message_id}")

    async def close(self) -> None:
        """Wait for in-flight events to finish."""
        await self._handlers.drain()

    async def handle(self, event: ReactionEvent) -> MembershipChange | None:
        """Apply one reaction event.

        Returns:
            The membership change applied to the roster, or None when the
            event touched no roster event (unknown message, no roam link,
            bulk clear, missing roster entry, or failure).
        """
        try:
            if event.kind == ReactionEventKind.CLEARED:
                self._reset_count(event)
                return None
            return self._apply(event)
        except Exception as e:
            log.error(
                "reaction_event_failed",
                kind=event.kind.value,
                message_id=event.message_id,
                user_id=event.user_id,
                error=str(e),
            )
            return None

    def _reset_count(self, event: ReactionEvent) -> None:
        record = self.store.find_by_message_id(event.message_id)
        if record is None:
            log.warning("reaction_post_not_found", message_id=event.message_id)
            return
        self.store.set_reaction_count(record.id, self.ack_emoji, 0)
        log.info("reactions_cleared", record_id=record.id, message_id=event.message_id)

    def _apply(self, event: ReactionEvent) -> MembershipChange | None:
        if event.symbol != self.ack_emoji or event.user_id is None:
            log.debug("reaction_ignored", message_id=event.message_id, symbol=event.symbol)
            return None

        user_id = event.user_id
        identity = self.identity.resolve(user_id)

        record = self.store.find_by_message_id(event.message_id)
        if record is None:
            log.warning("reaction_post_not_found", message_id=event.message_id)
            return None

        self.store.set_reaction_count(record.id, self.ack_emoji, event.live_count)
        log.info(
            "reaction_count_updated",
            record_id=record.id,
            kind=event.kind.value,
            count=event.live_count,
        )

        if not record.roam_id:
            log.debug("reaction_post_without_roam", record_id=record.id)
            return None

        outcome: MembershipChange | None = None

        def mutate(roster_event: RosterEvent) -> bool:
            nonlocal outcome
            if event.kind == ReactionEventKind.ADDED:
                outcome = apply_join(roster_event, user_id, identity, event.display_name)
            else:
                outcome = apply_leave(roster_event, user_id)
            return outcome.changed

        roster_event = self.store.mutate_event(self.roster_id, record.roam_id, mutate)
        if roster_event is None or outcome is None:
            return None

        if outcome == MembershipChange.NOT_SIGNED_UP:
            log.info("user_was_not_signed_up", user_id=user_id, roam_id=record.roam_id)
        else:
            log.info(
                "roster_membership_reconciled",
                user_id=user_id,
                roam_id=record.roam_id,
                change=outcome.value,
                registered=identity is not None,
                signups=len(roster_event.signups),
                guests=len(roster_event.guests),
            )
        return outcome
