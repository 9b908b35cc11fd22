"""
Discord helpers shared by the Aegis cogs and the membership gateway.

Duration choices are expressed in seconds because every restriction in the
moderation core is time-bounded; there is no permanent choice.
"""

from typing import Union

import discord

DURATIONS = {
    "60 secs": 60,
    "5 mins": 5 * 60,
    "10 mins": 10 * 60,
    "15 mins": 15 * 60,
    "30 mins": 30 * 60,
    "1 hour": 60 * 60,
    "2 hours": 2 * 60 * 60,
    "1 day": 24 * 60 * 60,
    "1 week": 7 * 24 * 60 * 60,
}

DURATION_CHOICES = list(DURATIONS.keys())


def parse_duration_to_seconds(human_readable_duration: str) -> int:
    """
    Convert a duration label from DURATION_CHOICES to seconds.

    Returns:
        int: Duration in seconds, or 0 if the label is unknown.
    """
    return DURATIONS.get(human_readable_duration, 0)


def format_duration(seconds: int) -> str:
    """Render a number of seconds as a short human-readable label."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds} secs"
    if seconds < 3600:
        return f"{seconds // 60} mins"
    if seconds < 86400:
        hours = seconds // 3600
        return f"{hours} hour{'s' if hours != 1 else ''}"
    days = seconds // 86400
    return f"{days} day{'s' if days != 1 else ''}"


def is_ignored_author(author: Union[discord.User, discord.Member]) -> bool:
    """
    Check if an author should be ignored by message handlers (bots or non-members).

    Returns:
        bool: True if the author is a bot or not a member, False otherwise.
    """
    return author.bot or not isinstance(author, discord.Member)


def has_permissions(application_context: discord.ApplicationContext, **required_permissions) -> bool:
    """
    Check if the command issuer has all specified permissions in the guild.

    Args:
        application_context (discord.ApplicationContext): The command context.
        **required_permissions: Permission flags to check.

    Returns:
        bool: True if all permissions are present, False otherwise.
    """
    if not isinstance(application_context.author, discord.Member):
        return False
    return all(
        getattr(application_context.author.guild_permissions, permission_name, False)
        for permission_name in required_permissions
    )


def mention(subject_id: str) -> str:
    return f"<@{subject_id}>"
