"""Reconciliation sweeper: resyncs stored reaction counts from Discord.

Reaction events are best-effort, so stored counts can drift. A sweep reads the
authoritative counts for every posted record and overwrites the stored map.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from bonfire.logging import get_logger
from bonfire.models import RecordStatus

if TYPE_CHECKING:
    from bonfire.gateway import MessageGateway
    from bonfire.store import RecordStore

log = get_logger("sweeper")


class ReconciliationSweeper:
    """Overwrites stored reaction counts with the channel's live counts."""

    def __init__(self, store: RecordStore, gateway: MessageGateway, ack_emoji: str = "✅") -> None:
        self.store = store
        self.gateway = gateway
        self.ack_emoji = ack_emoji

    async def sweep(self) -> int:
        """Resync every posted record.

        Failures on one record are logged and skipped.

        Returns:
            Number of records whose counts were written.
        """
        records = self.store.list_records(status=RecordStatus.POSTED, with_message=True)
        log.info("reaction_sweep_started", records=len(records))

        synced = 0
        for record in records:
            try:
                snapshot = await self.gateway.fetch_reaction_snapshot(
                    record.discord_message_id,  # type: ignore[arg-type]
                    channel_id=record.discord_channel_id,
                )
                counts = {self.ack_emoji: snapshot.get(self.ack_emoji, 0)}
                self.store.replace_reactions(record.id, counts)
            except Exception as e:
                log.warning(
                    "reaction_sync_failed",
                    record_id=record.id,
                    message_id=record.discord_message_id,
                    error=str(e),
                )
                continue

            synced += 1
            if counts != {self.ack_emoji: record.reaction_count(self.ack_emoji)}:
                log.info(
                    "reaction_drift_corrected",
                    record_id=record.id,
                    stored=record.reactions,
                    live=counts,
                )

        log.info("reaction_sweep_complete", synced=synced, records=len(records))
        return synced
