"""Lifecycle and command-error handling for Aegis."""

from collections import Counter

import discord
from discord.ext import commands

from aegis.scheduler.moderation_scheduler import ModerationScheduler
from aegis.util.logger import get_logger

logger = get_logger("events_listener_cog")

PRESENCE_TEXT = "over temporary restrictions"


class EventsListenerCog(commands.Cog):
    """Reports scheduler state once connected and answers failed commands."""

    def __init__(self, discord_bot_instance, scheduler: ModerationScheduler):
        self.bot = discord_bot_instance
        self.scheduler = scheduler
        logger.info("Events listener cog loaded")

    def _timer_summary(self) -> str:
        counts = Counter(key.kind.value for key in self.scheduler.registry.pending_keys())
        if not counts:
            return "no timers pending"
        return ", ".join(f"{kind}={count}" for kind, count in sorted(counts.items()))

    @commands.Cog.listener(name="on_ready")
    async def on_ready(self):
        if self.bot.user is None:
            logger.warning("on_ready fired before the bot user was available")
        else:
            logger.info("Connected as %s (ID: %s) in %d guilds", self.bot.user, self.bot.user.id, len(self.bot.guilds))

        logger.info("Moderation timers: %s", self._timer_summary())

        stuck = await self.scheduler.given_up_tempbans()
        for entry in stuck:
            logger.warning(
                "Tempban of %s in %s gave up after %d attempts; use /unban to clear it",
                entry.subject_id, entry.scope_id, entry.attempts,
            )

        await self.bot.change_presence(
            status=discord.Status.online,
            activity=discord.Activity(type=discord.ActivityType.watching, name=PRESENCE_TEXT),
        )

    @commands.Cog.listener(name="on_application_command_error")
    async def on_application_command_error(self, application_context: discord.ApplicationContext, error: Exception):
        """Tell the invoker the command failed; checks fail quietly, everything else is logged."""
        if isinstance(error, commands.CommandNotFound):
            return

        command_name = getattr(application_context.command, "name", "<unknown>")
        if isinstance(error, (commands.CheckFailure, discord.CheckFailure)):
            logger.info("Check failed for /%s by %s", command_name, application_context.author)
            message = "You are not allowed to use this command."
        else:
            logger.error("Unhandled error in /%s: %s", command_name, error, exc_info=error)
            message = "Something went wrong while running this command."

        try:
            await application_context.respond(message, ephemeral=True)
        except discord.InteractionResponded:
            await application_context.followup.send(message, ephemeral=True)


def setup(discord_bot_instance, scheduler: ModerationScheduler):
    discord_bot_instance.add_cog(EventsListenerCog(discord_bot_instance, scheduler))
