"""
Discord integration for Aegis.

- **membership_gateway.py**: Kicks, single-use re-invites and guild
  notifications; the Discord side of the moderation core's membership gateway.

- **discord_utils.py**: Duration choices, permission checks and formatting
  helpers shared by the cogs.

- **cogs/**: Slash commands (moderation_cmds), mute enforcement and auto-spam
  warnings (message_listener), lifecycle and error handling (events_listener).
"""
