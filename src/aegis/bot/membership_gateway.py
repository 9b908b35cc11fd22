"""
Discord implementation of the membership gateway used by the moderation core.

Discord has no API to put a user back into a guild, so "adding a member"
means sending the user a single-use invite by DM. Removing a member is a
kick. Notifications go to the guild's configured notification channel, or
its system channel when none is configured.
"""

from __future__ import annotations

from typing import Sequence

import discord

from aegis.configuration.app_configuration import AppConfig, app_config
from aegis.util.logger import get_logger

logger = get_logger("membership_gateway")

INVITE_MAX_AGE_SECONDS = 24 * 60 * 60


class ScopeUnavailableError(LookupError):
    """Raised when the bot cannot reach the guild a request refers to."""


class DiscordMembershipGateway:
    """
    Membership operations against Discord guilds.

    Args:
        bot: Connected Discord bot.
        config: Application configuration providing notification channels.
    """

    def __init__(self, bot: discord.Bot, config: AppConfig = app_config) -> None:
        self.bot = bot
        self.config = config

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _guild(self, scope_id: str) -> discord.Guild:
        try:
            guild_id = int(scope_id)
        except (TypeError, ValueError) as exc:
            raise ScopeUnavailableError(f"invalid guild id {scope_id!r}") from exc

        guild = self.bot.get_guild(guild_id)
        if guild is not None:
            return guild
        try:
            return await self.bot.fetch_guild(guild_id)
        except discord.HTTPException as exc:
            raise ScopeUnavailableError(f"guild {scope_id} is not reachable: {exc}") from exc

    def _notification_channel(self, guild: discord.Guild) -> discord.TextChannel | None:
        channel_id = self.config.notification_channel_id(str(guild.id))
        if channel_id is not None:
            channel = guild.get_channel(channel_id)
            if isinstance(channel, discord.TextChannel):
                return channel
            logger.warning("[MEMBERSHIP] Configured channel %s not found in guild %s", channel_id, guild.id)
        channel = guild.system_channel
        return channel if isinstance(channel, discord.TextChannel) else None

    def _invite_channel(self, guild: discord.Guild) -> discord.TextChannel | None:
        channel = self._notification_channel(guild)
        if channel is not None:
            return channel
        return next(iter(guild.text_channels), None)

    async def _user(self, subject_id: str) -> discord.User:
        user_id = int(subject_id)
        user = self.bot.get_user(user_id)
        if user is not None:
            return user
        return await self.bot.fetch_user(user_id)

    # ------------------------------------------------------------------
    # MembershipGateway
    # ------------------------------------------------------------------

    async def remove_member(self, scope_id: str, subject_id: str) -> bool:
        """Kick ``subject_id`` from guild ``scope_id``.

        Returns:
            bool: False when Discord refuses the kick.

        Raises:
            ScopeUnavailableError: If the guild cannot be reached.
        """
        guild = await self._guild(scope_id)
        try:
            await guild.kick(discord.Object(id=int(subject_id)), reason="Aegis moderation")
        except discord.HTTPException as exc:
            logger.warning("[MEMBERSHIP] Kick of %s from %s failed: %s", subject_id, scope_id, exc)
            return False
        return True

    async def add_member(self, scope_id: str, subject_id: str) -> bool:
        """DM ``subject_id`` a single-use invite back to guild ``scope_id``.

        Returns:
            bool: False when no invite could be created or the DM was refused.

        Raises:
            ScopeUnavailableError: If the guild cannot be reached.
        """
        guild = await self._guild(scope_id)
        channel = self._invite_channel(guild)
        if channel is None:
            logger.warning("[MEMBERSHIP] Guild %s has no channel to create an invite in", scope_id)
            return False

        try:
            invite = await channel.create_invite(
                max_uses=1,
                max_age=INVITE_MAX_AGE_SECONDS,
                unique=True,
                reason="Temporary ban expired",
            )
            user = await self._user(subject_id)
            await user.send(f"Your temporary ban from **{guild.name}** has ended. You can rejoin here: {invite.url}")
        except discord.HTTPException as exc:
            logger.warning("[MEMBERSHIP] Could not re-invite %s to %s: %s", subject_id, scope_id, exc)
            return False
        return True

    async def notify(self, scope_id: str, text: str, mentioned_subjects: Sequence[str] = ()) -> None:
        guild = await self._guild(scope_id)
        channel = self._notification_channel(guild)
        if channel is None:
            logger.debug("[MEMBERSHIP] No notification channel in guild %s; dropping message", scope_id)
            return

        mentions = [discord.Object(id=int(s)) for s in mentioned_subjects if str(s).isdigit()]
        await channel.send(text, allowed_mentions=discord.AllowedMentions(users=mentions, roles=False, everyone=False))
