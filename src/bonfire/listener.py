"""Change listener: mirrors record changes onto the Discord channel.

Two watches drive the listener:

- ``status == pending``: a new record is rendered, sent, and written back as
  ``posted`` with its message metadata (or as ``error``, never retried).
- ``update_requested == true``: the announced message is re-rendered from the
  record's current content and edited in place.

Loop prevention: the write-back after an edit clears ``update_requested`` and
raises ``internal_update_in_flight`` in the same write, so the write-back never
matches the update watch. The in-flight marker is cleared shortly afterwards by
a timer keyed on the record id; a newer edit replaces the pending timer. The
optional content-change watch over posted records ignores any record whose
marker is raised, and any record whose content matches what the listener last
rendered for it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from bonfire.logging import get_logger
from bonfire.models import AnnouncementRecord, ChangeKind, RecordChange, RecordStatus, utcnow
from bonfire.store import PENDING, POSTED, UPDATE_REQUESTED, RecordQuery
from bonfire.tasks import HandlerTasks, KeyedLocks

if TYPE_CHECKING:
    from bonfire.gateway import MessageGateway
    from bonfire.store import RecordStore

log = get_logger("listener")


class ChangeListener:
    """Watches the record store and drives the message gateway.

    Attributes:
        store: Record store adapter.
        gateway: Message gateway.
        channel_id: Channel new records are announced in.
        clear_delay: Seconds before the in-flight marker is cleared.
        auto_update_on_content_change: Also edit posted messages when their
            rendered fields change without an explicit update request.
    """

    def __init__(
        self,
        store: RecordStore,
        gateway: MessageGateway,
        channel_id: str,
        ack_emoji: str = "✅",
        clear_delay: float = 1.0,
        auto_update_on_content_change: bool = False,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.channel_id = channel_id
        self.ack_emoji = ack_emoji
        self.clear_delay = clear_delay
        self.auto_update_on_content_change = auto_update_on_content_change

        self._watches: list[asyncio.Task] = []
        self._handlers = HandlerTasks("listener")
        self._locks = KeyedLocks()
        self._clears: dict[str, asyncio.Task] = {}
        # Content each record was last rendered with, by record id
        self._rendered: dict[str, tuple] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the record watches. Must be called on the running loop."""
        self._watch(PENDING, self._on_pending_change)
        self._watch(UPDATE_REQUESTED, self._on_update_change)
        if self.auto_update_on_content_change:
            self._watch(POSTED, self._on_posted_change)
        log.info(
            "listener_started",
            watches=len(self._watches),
            auto_update_on_content_change=self.auto_update_on_content_change,
        )

    async def close(self) -> None:
        """Stop watching, let running handlers finish, flush pending clears."""
        for task in self._watches:
            task.cancel()
        for task in self._watches:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watches.clear()

        await self._handlers.drain()
        self.flush_clears()
        log.info("listener_stopped")

    def _watch(self, query: RecordQuery, dispatch: Callable[[RecordChange], None]) -> None:
        task = asyncio.create_task(self._consume(query, dispatch), name=f"watch:{query.name}")
        self._watches.append(task)

    async def _consume(self, query: RecordQuery, dispatch: Callable[[RecordChange], None]) -> None:
        async for change in self.store.watch(query):
            dispatch(change)

    def _spawn(self, record_id: str, work: Callable[[str], Awaitable[object]], label: str) -> None:
        async def run() -> None:
            async with self._locks.hold(record_id):
                await work(record_id)

        self._handlers.spawn(run(), name=f"{label}:{record_id}")

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _on_pending_change(self, change: RecordChange) -> None:
        if change.kind != ChangeKind.ADDED:
            return
        log.info("new_post_detected", record_id=change.record.id)
        self._spawn(change.record.id, self.publish, "publish")

    def _on_update_change(self, change: RecordChange) -> None:
        if change.kind == ChangeKind.REMOVED:
            return
        log.info("post_update_requested", record_id=change.record.id, change=change.kind.value)
        self._spawn(change.record.id, self.apply_update, "update")

    def _on_posted_change(self, change: RecordChange) -> None:
        if change.kind == ChangeKind.REMOVED:
            self._rendered.pop(change.record.id, None)
            return
        if change.kind != ChangeKind.MODIFIED or change.previous is None:
            return
        record = change.record
        if record.internal_update_in_flight or record.update_requested:
            return
        # A poll can miss a whole edit and marker clear, so the previous
        # snapshot is only the baseline for records not rendered since start
        baseline = self._rendered.get(record.id, change.previous.content_snapshot())
        if record.content_snapshot() == baseline:
            return
        log.info("post_content_changed", record_id=record.id)
        self._spawn(record.id, self.apply_content_change, "content")

    # =========================================================================
    # Handlers
    # =========================================================================

    async def publish(self, record_id: str) -> AnnouncementRecord | None:
        """Announce a pending record on the channel.

        Returns:
            The record as posted, or None if it was skipped or failed.
        """
        record = self.store.get(record_id)
        if record is None or record.status != RecordStatus.PENDING:
            log.debug("publish_skipped", record_id=record_id)
            return None

        try:
            body = self.gateway.render(record)
            sent = await self.gateway.send(self.channel_id, body)
            self.store.update(
                record_id,
                {
                    "status": RecordStatus.POSTED,
                    "discord_message_id": sent.message_id,
                    "discord_channel_id": sent.channel_id,
                    "discord_url": sent.url,
                    "posted_at": utcnow(),
                    "reactions": {self.ack_emoji: 0},
                },
            )
        except Exception as e:
            log.error("post_publish_failed", record_id=record_id, error=str(e))
            self._write_failure(
                record_id,
                {"status": RecordStatus.ERROR, "error": str(e), "error_at": utcnow()},
            )
            return None

        self._remember_rendered(record)
        log.info("post_published", record_id=record_id, message_id=sent.message_id)
        return self.store.get(record_id)

    async def apply_update(self, record_id: str) -> bool:
        """Edit the announced message after an explicit update request.

        Returns:
            True if the message was edited.
        """
        record = self.store.get(record_id)
        if record is None:
            log.warning("update_record_missing", record_id=record_id)
            return False
        if not record.update_requested:
            log.debug("update_already_consumed", record_id=record_id)
            return False
        if record.status == RecordStatus.DELETED:
            log.info("update_ignored_deleted", record_id=record_id)
            self._write_failure(
                record_id,
                {
                    "update_requested": False,
                    "update_error": "Post is deleted",
                    "update_error_at": utcnow(),
                },
            )
            return False

        return await self._edit(record, record.update_requested_at)

    async def apply_content_change(self, record_id: str) -> bool:
        """Edit the announced message after its rendered fields changed."""
        record = self.store.get(record_id)
        if record is None or record.status != RecordStatus.POSTED:
            return False
        if record.internal_update_in_flight or record.update_requested:
            return False
        if self._rendered.get(record.id) == record.content_snapshot():
            log.debug("content_already_rendered", record_id=record_id)
            return False
        return await self._edit(record, record.update_requested_at)

    async def _edit(self, record: AnnouncementRecord, requested_at: datetime | None) -> bool:
        try:
            if not record.discord_message_id:
                raise ValueError("No Discord message ID found for post")
            await self.gateway.edit(
                record.discord_message_id,
                self.gateway.render(record),
                channel_id=record.discord_channel_id,
            )
            self._remember_rendered(record)
        except Exception as e:
            log.error("post_update_failed", record_id=record.id, error=str(e))
            self._write_failure(
                record.id,
                {
                    "update_requested": False,
                    "update_error": str(e),
                    "update_error_at": utcnow(),
                },
            )
            return False

        try:
            self.store.complete_update(record.id, requested_at)
        except SQLAlchemyError as e:
            log.error("post_update_writeback_failed", record_id=record.id, error=str(e))
            return True

        self._schedule_clear(record.id)
        log.info("post_updated", record_id=record.id, message_id=record.discord_message_id)
        return True

    def _remember_rendered(self, record: AnnouncementRecord) -> None:
        if self.auto_update_on_content_change:
            self._rendered[record.id] = record.content_snapshot()

    def _write_failure(self, record_id: str, fields: dict) -> None:
        try:
            self.store.update(record_id, fields)
        except SQLAlchemyError as e:
            log.error("error_state_write_failed", record_id=record_id, error=str(e))

    # =========================================================================
    # In-flight marker
    # =========================================================================

    def _schedule_clear(self, record_id: str) -> None:
        superseded = self._clears.pop(record_id, None)
        if superseded is not None:
            superseded.cancel()
        self._clears[record_id] = asyncio.create_task(
            self._clear_after_delay(record_id), name=f"clear:{record_id}"
        )

    async def _clear_after_delay(self, record_id: str) -> None:
        await asyncio.sleep(self.clear_delay)
        if self._clears.get(record_id) is asyncio.current_task():
            del self._clears[record_id]
        self._clear_in_flight(record_id)

    def _clear_in_flight(self, record_id: str) -> None:
        try:
            self.store.update(record_id, {"internal_update_in_flight": False})
        except SQLAlchemyError as e:
            log.error("in_flight_clear_failed", record_id=record_id, error=str(e))
            return
        log.debug("in_flight_cleared", record_id=record_id)

    def flush_clears(self) -> int:
        """Cancel pending timers and clear their markers now.

        Returns:
            Number of markers cleared.
        """
        pending = list(self._clears)
        for record_id in pending:
            self._clears.pop(record_id).cancel()
            self._clear_in_flight(record_id)
        return len(pending)

    @property
    def pending_clears(self) -> int:
        """Number of in-flight markers waiting to be cleared."""
        return len(self._clears)
