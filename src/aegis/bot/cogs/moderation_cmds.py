"""
Moderation cog: slash commands backed by the moderation scheduler.

Guild commands (mute, tempban, warn, kick and their inverses) require the
invoker to hold the matching guild permission. Bot-level commands (botban,
bottempban, botwarn, ...) are reserved for the user ids listed under
``bot_moderators`` in the app configuration. Every command is refused for
invokers who are themselves bot-banned.

All state changes go through :class:`ModerationScheduler`; this cog only
translates results into replies.
"""

import discord
from discord import Option
from discord.ext import commands

from aegis.bot.discord_utils import (
    DURATION_CHOICES,
    format_duration,
    has_permissions,
    mention,
    parse_duration_to_seconds,
)
from aegis.configuration.app_configuration import AppConfig, app_config
from aegis.datatypes.moderation_datatypes import OperationResult, ResultReason, WarnResult
from aegis.scheduler.moderation_scheduler import ModerationScheduler
from aegis.util.logger import get_logger

logger = get_logger("moderation_cog")

_FAILURE_MESSAGES = {
    ResultReason.NOT_FOUND: "{user} has no such restriction.",
    ResultReason.ALREADY_RESTRICTED: "{user} is already restricted.",
    ResultReason.EXTERNAL_ACTION_FAILED: "Discord refused the action for {user}.",
    ResultReason.INVALID_DURATION: "That duration is not valid.",
}


def describe_failure(result: OperationResult, user: str) -> str:
    message = _FAILURE_MESSAGES.get(result.reason, "The command failed.").format(user=user)
    if result.detail and result.reason is ResultReason.EXTERNAL_ACTION_FAILED:
        message += f" ({result.detail})"
    return message


def describe_warn(result: WarnResult, user: str, action: str = "kicked") -> str:
    if result.escalated:
        return f"⚠️ {user} reached {result.threshold} warnings and was {action}."
    if result.escalation_failed:
        return f"⚠️ {user} reached {result.threshold} warnings, but could not be {action}. Warnings: {result.count}"
    return f"⚠️ {user} was warned ({result.count}/{result.threshold})."


class ModerationCommandsCog(commands.Cog):
    """Slash commands for temporary restrictions and warn counters.

    Parameters
    ----------
    discord_bot_instance:
        Active :class:`discord.Bot` instance.
    scheduler:
        Rehydrated moderation scheduler.
    config:
        Configuration providing the bot moderator ids.
    """

    def __init__(self, discord_bot_instance, scheduler: ModerationScheduler, config: AppConfig = app_config):
        self.discord_bot_instance = discord_bot_instance
        self.scheduler = scheduler
        self.config = config
        logger.info("Moderation cog loaded")

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    async def _guard(self, ctx: discord.ApplicationContext, permission: str | None = None) -> bool:
        """Defer the response and run the bot-ban gate plus the permission check.

        Returns
        -------
        bool
            ``True`` when the command may proceed; ``False`` once a refusal was sent.
        """
        await ctx.defer(ephemeral=True)

        if await self.scheduler.is_bot_banned(str(ctx.author.id)):
            await ctx.send_followup("You are banned from using this bot.")
            return False

        if permission is None:
            if str(ctx.author.id) not in self.config.bot_moderator_ids:
                await ctx.send_followup("Only bot moderators can use this command.")
                return False
            return True

        if ctx.guild is None:
            await ctx.send_followup("This command can only be used in a server.")
            return False

        if not has_permissions(ctx, **{permission: True}):
            await ctx.send_followup("You do not have permission to use this command.")
            return False
        return True

    async def _reply(self, ctx: discord.ApplicationContext, result: OperationResult, success: str, user: str) -> None:
        await ctx.send_followup(success if result.ok else describe_failure(result, user))

    async def _run(self, ctx: discord.ApplicationContext, coro, success: str, user: str) -> None:
        try:
            result = await coro
        except Exception as exc:
            logger.exception("Error executing moderation command: %s", exc)
            await ctx.send_followup("An error occurred while processing the command.")
            return
        await self._reply(ctx, result, success, user)

    # ------------------------------------------------------------------
    # Mutes
    # ------------------------------------------------------------------

    @commands.slash_command(name="mute", description="Mute a user for a limited time.")
    async def mute(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to mute.", required=True),  # type: ignore
        duration: Option(str, "How long to mute for.", choices=DURATION_CHOICES, default="10 mins"),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "moderate_members"):
            return
        seconds = parse_duration_to_seconds(duration)
        await self._run(
            ctx,
            self.scheduler.mute(str(ctx.guild.id), str(user.id), seconds),
            f"🔇 {user.mention} is muted for {format_duration(seconds)}.",
            user.mention,
        )

    @commands.slash_command(name="unmute", description="Lift a user's mute.")
    async def unmute(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to unmute.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "moderate_members"):
            return
        await self._run(
            ctx,
            self.scheduler.unmute(str(ctx.guild.id), str(user.id)),
            f"🔊 {user.mention} was unmuted.",
            user.mention,
        )

    @commands.slash_command(name="mutes", description="List muted users in this server.")
    async def mutes(self, ctx: discord.ApplicationContext) -> None:
        if not await self._guard(ctx, "moderate_members"):
            return
        muted = await self.scheduler.list_mutes(str(ctx.guild.id))
        if not muted:
            await ctx.send_followup("Nobody is muted.")
            return
        lines = [f"{mention(entry.subject_id)} ({format_duration(remaining)} left)" for entry, remaining in muted]
        await ctx.send_followup("Muted users:\n" + "\n".join(lines))

    # ------------------------------------------------------------------
    # Tempbans
    # ------------------------------------------------------------------

    @commands.slash_command(name="tempban", description="Remove a user and invite them back after a while.")
    async def tempban(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to remove.", required=True),  # type: ignore
        duration: Option(str, "How long to keep them out.", choices=DURATION_CHOICES, default="1 hour"),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "kick_members"):
            return
        seconds = parse_duration_to_seconds(duration)
        await self._run(
            ctx,
            self.scheduler.tempban(str(ctx.guild.id), str(user.id), seconds),
            f"⛔ {user.mention} was removed for {format_duration(seconds)}.",
            user.mention,
        )

    @commands.slash_command(name="unban", description="Release a temporary ban early.")
    async def unban(
        self,
        ctx: discord.ApplicationContext,
        user_id: Option(str, "User id or mention of the banned user.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "kick_members"):
            return
        await self._run(
            ctx,
            self.scheduler.unban(str(ctx.guild.id), user_id),
            f"Temporary ban of {user_id} released.",
            user_id,
        )

    @commands.slash_command(name="tempbans", description="List temporary bans in this server.")
    async def tempbans(self, ctx: discord.ApplicationContext) -> None:
        if not await self._guard(ctx, "kick_members"):
            return
        entries = await self.scheduler.list_tempbans(str(ctx.guild.id))
        if not entries:
            await ctx.send_followup("No temporary bans.")
            return
        given_up = {entry.key for entry in await self.scheduler.given_up_tempbans()}
        lines = [
            f"{mention(entry.subject_id)}" + (" (re-invite failed, use /unban)" if entry.key in given_up else "")
            for entry in entries
        ]
        await ctx.send_followup("Temporary bans:\n" + "\n".join(lines))

    # ------------------------------------------------------------------
    # Warns
    # ------------------------------------------------------------------

    @commands.slash_command(name="warn", description="Warn a user; reaching the limit kicks them.")
    async def warn(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to warn.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "manage_messages"):
            return
        try:
            result = await self.scheduler.warn(str(ctx.guild.id), str(user.id))
        except Exception as exc:
            logger.exception("Error executing warn: %s", exc)
            await ctx.send_followup("An error occurred while processing the command.")
            return
        await ctx.send_followup(describe_warn(result, user.mention))

    @commands.slash_command(name="delwarn", description="Clear a user's warnings.")
    async def delwarn(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user whose warnings to clear.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "manage_messages"):
            return
        await self._run(
            ctx,
            self.scheduler.clear_warns(str(ctx.guild.id), str(user.id)),
            f"Warnings of {user.mention} cleared.",
            user.mention,
        )

    @commands.slash_command(name="warns", description="List warning counts in this server.")
    async def warns(self, ctx: discord.ApplicationContext) -> None:
        if not await self._guard(ctx, "manage_messages"):
            return
        counters = await self.scheduler.list_warns(str(ctx.guild.id))
        if not counters:
            await ctx.send_followup("No warnings.")
            return
        threshold = self.scheduler.settings.warn_threshold
        lines = [f"{mention(subject)}: {count}/{threshold}" for subject, count in sorted(counters.items())]
        await ctx.send_followup("Warnings:\n" + "\n".join(lines))

    @commands.slash_command(name="kick", description="Kick a user and reset their warnings.")
    async def kick(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to kick.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "kick_members"):
            return
        await self._run(
            ctx,
            self.scheduler.kick(str(ctx.guild.id), str(user.id)),
            f"👢 {user.mention} was kicked.",
            user.mention,
        )

    # ------------------------------------------------------------------
    # Bot-level restrictions
    # ------------------------------------------------------------------

    @commands.slash_command(name="botban", description="Permanently ban a user from using the bot.")
    async def botban(
        self,
        ctx: discord.ApplicationContext,
        user_id: Option(str, "User id or mention.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx):
            return
        await self._run(ctx, self.scheduler.bot_ban(user_id), f"{user_id} is banned from the bot.", user_id)

    @commands.slash_command(name="botunban", description="Lift a permanent bot ban.")
    async def botunban(
        self,
        ctx: discord.ApplicationContext,
        user_id: Option(str, "User id or mention.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx):
            return
        await self._run(ctx, self.scheduler.lift_bot_ban(user_id), f"Bot ban of {user_id} lifted.", user_id)

    @commands.slash_command(name="bottempban", description="Ban a user from using the bot for a while.")
    async def bottempban(
        self,
        ctx: discord.ApplicationContext,
        user_id: Option(str, "User id or mention.", required=True),  # type: ignore
        duration: Option(str, "How long the ban lasts.", choices=DURATION_CHOICES, default="1 day"),  # type: ignore
    ) -> None:
        if not await self._guard(ctx):
            return
        seconds = parse_duration_to_seconds(duration)
        await self._run(
            ctx,
            self.scheduler.bot_tempban(user_id, seconds),
            f"{user_id} is banned from the bot for {format_duration(seconds)}.",
            user_id,
        )

    @commands.slash_command(name="botuntempban", description="Lift a temporary bot ban.")
    async def botuntempban(
        self,
        ctx: discord.ApplicationContext,
        user_id: Option(str, "User id or mention.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx):
            return
        await self._run(ctx, self.scheduler.bot_unban(user_id), f"Temporary bot ban of {user_id} lifted.", user_id)

    @commands.slash_command(name="botwarn", description="Warn a user for bot misuse.")
    async def botwarn(
        self,
        ctx: discord.ApplicationContext,
        user_id: Option(str, "User id or mention.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx):
            return
        try:
            result = await self.scheduler.bot_warn(user_id)
        except Exception as exc:
            logger.exception("Error executing botwarn: %s", exc)
            await ctx.send_followup("An error occurred while processing the command.")
            return
        ban_length = format_duration(int(self.scheduler.settings.bot_warn_tempban_seconds))
        await ctx.send_followup(describe_warn(result, user_id, action=f"banned from the bot for {ban_length}"))

    @commands.slash_command(name="botdelwarn", description="Clear a user's bot warnings.")
    async def botdelwarn(
        self,
        ctx: discord.ApplicationContext,
        user_id: Option(str, "User id or mention.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx):
            return
        await self._run(ctx, self.scheduler.clear_bot_warns(user_id), f"Bot warnings of {user_id} cleared.", user_id)


def setup(discord_bot_instance, scheduler: ModerationScheduler) -> None:
    """Register the moderation commands cog with the bot."""
    discord_bot_instance.add_cog(ModerationCommandsCog(discord_bot_instance, scheduler))
