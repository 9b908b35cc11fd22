"""
Configuration management for Aegis.

- **app_configuration.py**: File-locked YAML loader for global settings.
  Exposes the database location, the moderation scheduler knobs (warn
  threshold, tempban retry budget and interval, bot-warn escalation length),
  auto-spam thresholds, bot moderators and per-guild notification channels.
  Falls back to defaults on missing or malformed config files.
"""
