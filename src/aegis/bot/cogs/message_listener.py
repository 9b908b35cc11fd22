"""Message listener Cog for Aegis.

Deletes messages from muted authors and turns message bursts into automatic
warnings through the moderation scheduler.
"""

import discord
from discord.ext import commands

from aegis.bot.discord_utils import is_ignored_author
from aegis.bot.cogs.moderation_cmds import describe_warn
from aegis.moderation.spam_tracker import SpamTracker
from aegis.scheduler.moderation_scheduler import ModerationScheduler
from aegis.util.logger import get_logger

logger = get_logger("message_listener_cog")


class MessageListenerCog(commands.Cog):
    """Cog responsible for mute enforcement and auto-spam warnings."""

    def __init__(self, discord_bot_instance, scheduler: ModerationScheduler, spam_tracker: SpamTracker):
        """
        Initialize the message listener cog.

        Parameters
        ----------
        discord_bot_instance:
            The Discord bot instance to attach this cog to.
        scheduler:
            Moderation scheduler answering mute checks and recording warns.
        spam_tracker:
            Burst detector feeding automatic warnings.
        """
        self.bot = discord_bot_instance
        self.scheduler = scheduler
        self.spam_tracker = spam_tracker
        logger.info("Message listener cog loaded")

    @commands.Cog.listener(name="on_message")
    async def on_message(self, message: discord.Message) -> None:
        if message.guild is None or is_ignored_author(message.author):
            return

        guild_id = str(message.guild.id)
        author_id = str(message.author.id)

        if await self.scheduler.is_muted(guild_id, author_id):
            try:
                await message.delete()
            except discord.HTTPException as exc:
                logger.warning("Could not delete message %s from muted user %s: %s", message.id, author_id, exc)
            return

        sent_at = int(message.created_at.timestamp() * 1000)
        if not self.spam_tracker.record(guild_id, author_id, sent_at):
            return

        logger.info("Auto-spam warning for %s in %s", author_id, guild_id)
        result = await self.scheduler.warn(guild_id, author_id)
        try:
            await message.channel.send(
                f"Automatic spam warning. {describe_warn(result, message.author.mention)}",
                allowed_mentions=discord.AllowedMentions(users=[message.author]),
            )
        except discord.HTTPException as exc:
            logger.warning("Could not announce spam warning in %s: %s", message.channel.id, exc)


def setup(discord_bot_instance, scheduler: ModerationScheduler, spam_tracker: SpamTracker) -> None:
    """Register the message listener cog with the bot."""
    discord_bot_instance.add_cog(MessageListenerCog(discord_bot_instance, scheduler, spam_tracker))
