"""Tests for the operator slash commands."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from bonfire.commands import OperatorCommands
from bonfire.config import Config, DiscordConfig, OperatorsConfig


class MockInteraction:
    """Mock Discord interaction for testing."""

    def __init__(self, user_id: str = "123456", command_name: str = "test") -> None:
        self.user = MagicMock()
        self.user.id = int(user_id)
        self.guild = MagicMock()
        self.command = MagicMock()
        self.command.name = command_name
        self.response = MagicMock()
        self.response.send_message = AsyncMock()
        self.response.defer = AsyncMock()
        self.followup = MagicMock()
        self.followup.send = AsyncMock()


class MockBonfireBot:
    """Mock BonfireBot with a stubbed sync engine."""

    def __init__(
        self,
        operator_user_ids: list[str] | None = None,
        operator_role_id: str | None = None,
    ) -> None:
        self.config = Config(
            discord=DiscordConfig(
                operators=OperatorsConfig(
                    user_ids=operator_user_ids or [],
                    role_id=operator_role_id,
                )
            )
        )
        self.sync = MagicMock()
        self.sync.sync_reactions = AsyncMock(return_value=4)
        self.sync.identity.stats.return_value = {
            "size": 1,
            "ttl_seconds": 300,
            "entries": [
                {
                    "discord_id": "U1",
                    "account_id": "acct-1",
                    "display_name": "sky",
                    "age_seconds": 12.0,
                }
            ],
        }


class TestOperatorCheck:
    def test_by_user_id(self) -> None:
        cog = OperatorCommands(MockBonfireBot(operator_user_ids=["123456"]))  # type: ignore[arg-type]

        assert cog.is_operator(MockInteraction(user_id="123456")) is True  # type: ignore[arg-type]
        assert cog.is_operator(MockInteraction(user_id="654321")) is False  # type: ignore[arg-type]

    def test_by_role(self) -> None:
        cog = OperatorCommands(MockBonfireBot(operator_role_id="111111"))  # type: ignore[arg-type]
        interaction = MockInteraction(user_id="123456")
        interaction.user = MagicMock(spec=discord.Member)
        interaction.user.id = 123456
        interaction.user.roles = [MagicMock(id=111111)]

        assert cog.is_operator(interaction) is True  # type: ignore[arg-type]

    def test_role_ignored_outside_guild(self) -> None:
        cog = OperatorCommands(MockBonfireBot(operator_role_id="111111"))  # type: ignore[arg-type]
        interaction = MockInteraction(user_id="123456")
        interaction.guild = None

        assert cog.is_operator(interaction) is False  # type: ignore[arg-type]


class TestCommands:
    @pytest.mark.asyncio
    async def test_ping(self) -> None:
        cog = OperatorCommands(MockBonfireBot(operator_user_ids=["123456"]))  # type: ignore[arg-type]
        interaction = MockInteraction()

        await cog.ping.callback(cog, interaction)  # type: ignore[arg-type]

        interaction.response.send_message.assert_awaited_once_with("pong", ephemeral=True)

    @pytest.mark.asyncio
    async def test_non_operator_rejected(self) -> None:
        bot = MockBonfireBot(operator_user_ids=["999"])
        cog = OperatorCommands(bot)  # type: ignore[arg-type]
        interaction = MockInteraction()

        await cog.sync_reactions.callback(cog, interaction)  # type: ignore[arg-type]

        interaction.response.send_message.assert_awaited_once_with(
            "This command is restricted to operators.", ephemeral=True
        )
        bot.sync.sync_reactions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_reactions(self) -> None:
        bot = MockBonfireBot(operator_user_ids=["123456"])
        cog = OperatorCommands(bot)  # type: ignore[arg-type]
        interaction = MockInteraction()

        await cog.sync_reactions.callback(cog, interaction)  # type: ignore[arg-type]

        interaction.response.defer.assert_awaited_once_with(ephemeral=True)
        bot.sync.sync_reactions.assert_awaited_once()
        message = interaction.followup.send.await_args.args[0]
        assert "4 post(s)" in message

    @pytest.mark.asyncio
    async def test_cache_stats(self) -> None:
        cog = OperatorCommands(MockBonfireBot(operator_user_ids=["123456"]))  # type: ignore[arg-type]
        interaction = MockInteraction()

        await cog.cache_stats.callback(cog, interaction)  # type: ignore[arg-type]

        message = interaction.response.send_message.await_args.args[0]
        assert "Entries: 1" in message
        assert "`U1`" in message
        assert "sky" in message
