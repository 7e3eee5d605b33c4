"""Discord bot for Bonfire.

This module owns the gateway connection. It builds the sync engine once the
bot is connected, turns raw reaction events on the announcement channel into
``ReactionEvent`` values for the reconciler, and shuts everything down on
SIGINT/SIGTERM.

Raw reaction events are used rather than the cached variants so reactions on
messages posted before the process started are still seen.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from bonfire.engine import SyncEngine
from bonfire.gateway import DeliveryError, serialize_emoji
from bonfire.logging import get_logger
from bonfire.models import ReactionEvent, ReactionEventKind

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from bonfire.config import Config

log = get_logger("bot")


class BonfireBot(commands.Bot):
    """Discord bot that drives the sync engine.

    Uses commands.Bot instead of discord.Client so operator slash commands
    can be loaded as a cog.

    Attributes:
        config: Application configuration.
        engine: SQLAlchemy database engine.
        sync: The sync engine owned by this bot.
    """

    def __init__(self, config: Config, engine: Engine) -> None:
        """Initialize the bot with required intents.

        Args:
            config: Application configuration.
            engine: SQLAlchemy database engine.

        Raises:
            ConfigurationError: If no announcement channel is configured.
        """
        intents = discord.Intents.default()
        intents.reactions = True  # Raw reaction events
        intents.guilds = True

        # commands.Bot requires a command_prefix even though we use slash commands
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.engine = engine
        self.sync = SyncEngine(config, engine, self)
        self.channel_id = config.require_channel_id()
        self.ack_emoji = config.discord.ack_emoji
        self._shutdown_requested = False

    async def setup_hook(self) -> None:
        """Load the operator commands cog and sync slash commands."""
        from bonfire.commands import OperatorCommands

        await self.add_cog(OperatorCommands(self))
        log.info("cog_loaded", cog="OperatorCommands")

        await self.tree.sync()
        log.info("commands_synced")

    async def on_ready(self) -> None:
        """Called when connected to Discord.

        The sync engine starts on the first ready event only. Records must not
        be published before the gateway can deliver them, so this cannot move
        to ``setup_hook``.
        """
        log.info("discord_ready", user=str(self.user), guilds=len(self.guilds))
        if not self.sync.started and not self._shutdown_requested:
            await self.sync.start()

    async def on_disconnect(self) -> None:
        """discord.py reconnects on its own; this is only logged."""
        log.warning("discord_disconnected")

    async def on_resumed(self) -> None:
        log.info("discord_resumed")

    # -------------------------------------------------------------------------
    # Reaction events
    # -------------------------------------------------------------------------

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        event = self.translate_reaction(payload, ReactionEventKind.ADDED)
        if event is not None:
            self.sync.submit_reaction(event, prepare=self.complete_reaction)

    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent) -> None:
        event = self.translate_reaction(payload, ReactionEventKind.REMOVED)
        if event is not None:
            self.sync.submit_reaction(event, prepare=self.complete_reaction)

    async def on_raw_reaction_clear(self, payload: discord.RawReactionClearEvent) -> None:
        if str(payload.channel_id) != self.channel_id:
            return
        self.sync.submit_reaction(self._cleared(payload.message_id, payload.channel_id))

    async def on_raw_reaction_clear_emoji(
        self, payload: discord.RawReactionClearEmojiEvent
    ) -> None:
        if str(payload.channel_id) != self.channel_id:
            return
        if serialize_emoji(payload.emoji) != self.ack_emoji:
            return
        self.sync.submit_reaction(self._cleared(payload.message_id, payload.channel_id))

    def _cleared(self, message_id: int, channel_id: int) -> ReactionEvent:
        return ReactionEvent(
            kind=ReactionEventKind.CLEARED,
            message_id=str(message_id),
            channel_id=str(channel_id),
            symbol=self.ack_emoji,
        )

    def translate_reaction(
        self,
        payload: discord.RawReactionActionEvent,
        kind: ReactionEventKind,
    ) -> ReactionEvent | None:
        """Build a reconciler event from a raw add/remove payload.

        Runs without awaiting anything, so events are handed to the reconciler
        in the order Discord delivered them. The live count (and the user,
        when it is not cached) is filled in by ``complete_reaction``.

        Returns None for events the engine ignores: other channels, other
        emoji, the bot's own reactions and (when configured) other bots.
        """
        if str(payload.channel_id) != self.channel_id:
            return None

        symbol = serialize_emoji(payload.emoji)
        if symbol != self.ack_emoji:
            return None

        if self.user is not None and payload.user_id == self.user.id:
            return None

        user = payload.member or self.get_user(payload.user_id)
        if user is not None and self._ignored(user):
            return None

        return ReactionEvent(
            kind=kind,
            message_id=str(payload.message_id),
            channel_id=str(payload.channel_id),
            symbol=symbol,
            user_id=str(payload.user_id),
            display_name=user.display_name if user is not None else None,
        )

    async def complete_reaction(self, event: ReactionEvent) -> ReactionEvent | None:
        """Fill in the live count and any uncached user details.

        Called by the reconciler while it holds the message's lock. Returns
        None to drop the event: a bot account surfaced by the user lookup, or
        a live count that cannot be read (the sweeper repairs the count
        later).
        """
        display_name = event.display_name
        if display_name is None:
            try:
                user = await self.fetch_user(int(event.user_id))
            except discord.HTTPException as e:
                log.warning("reaction_user_lookup_failed", user_id=event.user_id, error=str(e))
            else:
                if self._ignored(user):
                    return None
                display_name = user.display_name

        try:
            snapshot = await self.sync.gateway.fetch_reaction_snapshot(
                event.message_id, channel_id=event.channel_id
            )
        except DeliveryError as e:
            log.warning(
                "reaction_live_count_failed",
                message_id=event.message_id,
                error=str(e),
            )
            return None

        return event.model_copy(
            update={"display_name": display_name, "live_count": snapshot.get(event.symbol, 0)}
        )

    def _ignored(self, user: discord.abc.User) -> bool:
        if user.bot and self.config.discord.ignore_bots:
            log.debug("reaction_from_bot_ignored", user_id=user.id)
            return True
        return False

    async def graceful_shutdown(self) -> None:
        """Stop the sync engine, then disconnect.

        In-flight handlers finish and pending in-flight marker clears are
        flushed before the Discord connection closes.
        """
        log.info("shutdown_initiated")
        self._shutdown_requested = True

        await self.sync.close()

        await self.close()
        await asyncio.sleep(0)  # Allow pending aiohttp callbacks to finalize
        log.info("shutdown_complete")


def setup_signal_handlers(bot: BonfireBot, loop: asyncio.AbstractEventLoop) -> None:
    """Setup graceful shutdown handlers for SIGINT and SIGTERM."""

    def handle_signal(sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        loop.create_task(bot.graceful_shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    log.debug("signal_handlers_registered", signals=["SIGINT", "SIGTERM"])


async def run_bot(config: Config, engine: Engine, bot: BonfireBot | None = None) -> None:
    """Run the Discord bot until shutdown.

    Args:
        config: Application configuration with discord_token.
        engine: SQLAlchemy database engine.
        bot: A prebuilt bot, when the caller needs its sync engine (the
            API server shares it). Built from ``config`` otherwise.
    """
    token = config.require_discord_token()
    bot = bot or BonfireBot(config, engine)
    loop = asyncio.get_running_loop()

    setup_signal_handlers(bot, loop)

    try:
        log.info("bot_starting")
        await bot.start(token)
    except asyncio.CancelledError:
        log.debug("bot_cancelled")
    finally:
        await bot.sync.close()
        if not bot.is_closed():
            await bot.close()
