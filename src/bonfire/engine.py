"""The sync engine context.

One ``SyncEngine`` is built per process at startup and owns every component:
store adapter, identity cache, gateway, change listener, reaction reconciler,
sweeper and scheduler. Nothing is held in module-level state; ``close()``
stops the watches, waits for in-flight handlers, flushes pending in-flight
marker clears and stops the scheduled jobs.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from bonfire.gateway import MessageGateway
from bonfire.identity import IdentityCache
from bonfire.listener import ChangeListener
from bonfire.logging import get_logger
from bonfire.reconciler import ReactionReconciler
from bonfire.scheduler import SyncScheduler
from bonfire.store import RecordStore
from bonfire.sweeper import ReconciliationSweeper

if TYPE_CHECKING:
    import discord
    from sqlalchemy.engine import Engine

    from bonfire.config import Config
    from bonfire.models import ReactionEvent
    from bonfire.reconciler import Prepare

log = get_logger("engine")


class SyncEngine:
    """Owns and wires the synchronization components.

    Attributes:
        config: Application configuration.
        store: Record store adapter.
        identity: Identity cache.
        gateway: Message gateway.
        listener: Change listener.
        reconciler: Reaction reconciler.
        sweeper: Reconciliation sweeper.
        scheduler: Maintenance job scheduler.
    """

    def __init__(
        self,
        config: Config,
        db: Engine,
        client: discord.Client,
        gateway: MessageGateway | None = None,
    ) -> None:
        """Build every component.

        Raises:
            ConfigurationError: If no target channel is configured.
        """
        channel_id = config.require_channel_id()
        sync = config.sync
        ack_emoji = config.discord.ack_emoji

        self.config = config
        self.store = RecordStore(
            db,
            watch_interval=sync.watch_interval_seconds,
            roster_max_retries=sync.roster_max_retries,
        )
        self.identity = IdentityCache(self.store, ttl_seconds=sync.identity_cache_ttl_seconds)
        self.gateway = gateway or MessageGateway(client, channel_id, ack_emoji)
        self.listener = ChangeListener(
            self.store,
            self.gateway,
            channel_id,
            ack_emoji=ack_emoji,
            clear_delay=sync.internal_update_clear_delay_seconds,
            auto_update_on_content_change=sync.auto_update_on_content_change,
        )
        self.reconciler = ReactionReconciler(
            self.store,
            self.identity,
            roster_id=sync.roster_id,
            ack_emoji=ack_emoji,
        )
        self.sweeper = ReconciliationSweeper(self.store, self.gateway, ack_emoji)
        self.scheduler = SyncScheduler(self.sweeper, self.identity, config)

        self._started = False
        self._startup_sweep: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        """Whether ``start()`` has run and ``close()`` has not."""
        return self._started

    async def start(self) -> None:
        """Start watches and scheduled jobs. Idempotent."""
        if self._started:
            return
        self._started = True

        self.store.reset_in_flight_markers()
        self.listener.start()
        self.scheduler.start()

        if self.config.sync.sweep_on_startup:
            self._startup_sweep = asyncio.create_task(
                self.sync_reactions(), name="sweep:startup"
            )
        log.info("sync_engine_started", channel_id=self.gateway.channel_id)

    def submit_reaction(
        self, event: ReactionEvent, prepare: Prepare | None = None
    ) -> asyncio.Task:
        """Hand a channel reaction event to the reconciler."""
        return self.reconciler.submit(event, prepare)

    async def sync_reactions(self) -> int:
        """Run a reaction sweep now.

        Returns:
            Number of records resynced.
        """
        return await self.scheduler.trigger_now("sweep:reactions") or 0

    async def close(self) -> None:
        """Tear down every component in dependency order."""
        if not self._started:
            return
        self._started = False

        self.scheduler.stop()
        if self._startup_sweep is not None and not self._startup_sweep.done():
            self._startup_sweep.cancel()
            try:
                await self._startup_sweep
            except asyncio.CancelledError:
                pass

        await self.listener.close()
        await self.reconciler.close()
        self.identity.clear()
        log.info("sync_engine_stopped")
