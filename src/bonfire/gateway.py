"""Message gateway: sends and edits announcement messages on Discord.

The gateway is the only component that talks to the Discord REST API for
outgoing traffic. It renders records into message bodies, adds the
acknowledgement reaction to every new message, and reads authoritative
reaction counts for the sweeper. Every failure surfaces as ``DeliveryError``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import discord

from bonfire.logging import get_logger
from bonfire.models import AnnouncementRecord, SentMessage

if TYPE_CHECKING:
    from discord.abc import Messageable

log = get_logger("gateway")


class DeliveryError(Exception):
    """Raised when a message cannot be sent, edited or read on Discord."""


def serialize_emoji(emoji: discord.Emoji | discord.PartialEmoji | str) -> str:
    """Serialize emoji to a storable string.

    Unicode emoji are stored as-is. Custom emoji are stored by name as :name:.
    """
    if isinstance(emoji, str):
        return emoji
    if emoji.id is None:
        # PartialEmoji wrapping a unicode character
        return emoji.name or ""
    return f":{emoji.name}:"


def format_message(record: AnnouncementRecord, ack_emoji: str = "✅") -> str:
    """Render a record into a Discord message body.

    Layout: bold title, description, author line, optional time line, a
    reaction summary once anyone has reacted, and an "Update" block when the
    record carries additional info.
    """
    title = record.title or "New Post"
    author = record.author or "Anonymous"

    message = f"**{title}**\n"
    if record.description:
        message += f"{record.description}\n"

    message += f"\n*Posted by: {author}*"

    if record.timestamp is not None:
        when = record.timestamp.astimezone(timezone.utc)
        message += f"\n*Time: {when:%Y-%m-%d %H:%M} UTC*"

    reaction_count = record.reaction_count(ack_emoji)
    if reaction_count > 0:
        message += f"\n\n{ack_emoji} **{reaction_count}** people have reacted"

    if record.additional_info:
        message += f"\n\n**Update:**\n{record.additional_info}"

    return message


class MessageGateway:
    """Sends, edits and inspects messages on the configured channel.

    Attributes:
        client: Connected discord.py client.
        channel_id: Default channel for all operations.
        ack_emoji: Reaction added to every new message.
    """

    def __init__(self, client: discord.Client, channel_id: str, ack_emoji: str = "✅") -> None:
        self.client = client
        self.channel_id = channel_id
        self.ack_emoji = ack_emoji

    def render(self, record: AnnouncementRecord) -> str:
        """Render a record with this gateway's ack symbol."""
        return format_message(record, self.ack_emoji)

    async def send(self, channel_id: str, body: str) -> SentMessage:
        """Send a message and add the acknowledgement reaction.

        Args:
            channel_id: Target channel.
            body: Message content.

        Returns:
            Metadata of the sent message.

        Raises:
            DeliveryError: If the bot is not ready or Discord rejects the call.
        """
        channel = await self._get_channel(channel_id)
        try:
            message = await channel.send(body)
        except (discord.HTTPException, discord.ClientException) as e:
            raise DeliveryError(f"Could not send message to channel {channel_id}: {e}") from e

        try:
            await message.add_reaction(self.ack_emoji)
        except (discord.HTTPException, discord.ClientException) as e:
            raise DeliveryError(
                f"Sent message {message.id} but could not add {self.ack_emoji}: {e}"
            ) from e

        created_at = message.created_at or datetime.now(timezone.utc)
        log.info("message_sent", message_id=str(message.id), channel_id=str(message.channel.id))
        return SentMessage(
            message_id=str(message.id),
            channel_id=str(message.channel.id),
            url=message.jump_url,
            created_at=created_at,
        )

    async def edit(self, message_id: str, body: str, channel_id: str | None = None) -> None:
        """Replace the content of an existing message.

        Raises:
            DeliveryError: If the message cannot be fetched or edited.
        """
        message = await self._fetch_message(message_id, channel_id)
        try:
            await message.edit(content=body)
        except (discord.HTTPException, discord.ClientException) as e:
            raise DeliveryError(f"Could not edit message {message_id}: {e}") from e
        log.info("message_edited", message_id=message_id)

    async def fetch_reaction_snapshot(
        self, message_id: str, channel_id: str | None = None
    ) -> dict[str, int]:
        """Read the live reaction counts of a message.

        Returns:
            Serialized emoji -> count, for every reaction on the message.

        Raises:
            DeliveryError: If the message cannot be fetched.
        """
        message = await self._fetch_message(message_id, channel_id)
        return {serialize_emoji(r.emoji): r.count for r in message.reactions}

    def _ensure_ready(self) -> None:
        if not self.client.is_ready():
            raise DeliveryError("Discord bot is not ready")

    async def _get_channel(self, channel_id: str | None) -> Messageable:
        self._ensure_ready()
        target = channel_id or self.channel_id
        try:
            channel = self.client.get_channel(int(target))
            if channel is None:
                channel = await self.client.fetch_channel(int(target))
        except ValueError as e:
            raise DeliveryError(f"Invalid channel id: {target}") from e
        except (discord.HTTPException, discord.ClientException) as e:
            raise DeliveryError(f"Could not find channel with ID: {target}: {e}") from e

        if not hasattr(channel, "fetch_message"):
            raise DeliveryError(f"Channel {target} cannot hold messages")
        return channel

    async def _fetch_message(self, message_id: str, channel_id: str | None) -> discord.Message:
        channel = await self._get_channel(channel_id)
        try:
            return await channel.fetch_message(int(message_id))
        except ValueError as e:
            raise DeliveryError(f"Invalid message id: {message_id}") from e
        except (discord.HTTPException, discord.ClientException) as e:
            raise DeliveryError(f"Could not find message with ID: {message_id}: {e}") from e
