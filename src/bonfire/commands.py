"""Discord slash commands for Bonfire operators.

All commands respond ephemerally and are restricted to operators (by user ID
or role).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from bonfire.logging import get_logger

if TYPE_CHECKING:
    from bonfire.bot import BonfireBot

log = get_logger("commands")


class OperatorCommands(commands.Cog):
    """Slash commands for Bonfire operators."""

    def __init__(self, bot: BonfireBot) -> None:
        self.bot = bot
        self.config = bot.config

    def is_operator(self, interaction: discord.Interaction) -> bool:
        """Check if user is an operator.

        Operators are identified by:
        1. User ID in the configured operator user_ids list
        2. Having the configured operator role_id (if set)
        """
        operators_config = self.config.discord.operators

        if str(interaction.user.id) in operators_config.user_ids:
            return True

        if operators_config.role_id and interaction.guild:
            member = interaction.user
            if isinstance(member, discord.Member):
                user_role_ids = {str(r.id) for r in member.roles}
                if operators_config.role_id in user_role_ids:
                    return True

        return False

    async def operator_check(self, interaction: discord.Interaction) -> bool:
        """Reject non-operators with an ephemeral message."""
        if not self.is_operator(interaction):
            await interaction.response.send_message(
                "This command is restricted to operators.",
                ephemeral=True,
            )
            log.info(
                "command_rejected",
                command=interaction.command.name if interaction.command else "unknown",
                user=str(interaction.user),
                reason="not_operator",
            )
            return False
        return True

    @app_commands.command(name="ping", description="Health check - responds with pong")
    async def ping(self, interaction: discord.Interaction) -> None:
        if not await self.operator_check(interaction):
            return

        await interaction.response.send_message("pong", ephemeral=True)
        log.info("ping_command", user=str(interaction.user))

    @app_commands.command(
        name="sync-reactions",
        description="Resync stored reaction counts from the channel",
    )
    async def sync_reactions(self, interaction: discord.Interaction) -> None:
        """Run the reconciliation sweep now."""
        if not await self.operator_check(interaction):
            return

        await interaction.response.defer(ephemeral=True)

        synced = await self.bot.sync.sync_reactions()
        await interaction.followup.send(
            f"Reaction counts resynced for {synced} post(s).",
            ephemeral=True,
        )
        log.info("sync_reactions_command", user=str(interaction.user), synced=synced)

    @app_commands.command(name="cache-stats", description="Show identity cache statistics")
    async def cache_stats(self, interaction: discord.Interaction) -> None:
        if not await self.operator_check(interaction):
            return

        stats = self.bot.sync.identity.stats()
        lines = [
            "**Identity Cache**",
            "",
            f"Entries: {stats['size']}",
            f"TTL: {stats['ttl_seconds']}s",
        ]
        for entry in stats["entries"][:10]:
            lines.append(
                f"  • `{entry['discord_id']}` → {entry['display_name']} ({entry['age_seconds']:.0f}s)"
            )
        await interaction.response.send_message("\n".join(lines), ephemeral=True)
        log.info("cache_stats_command", user=str(interaction.user))
