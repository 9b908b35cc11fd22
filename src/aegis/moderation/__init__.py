"""
Message-level moderation helpers for Aegis.

- **spam_tracker.py**: Per-guild, per-user sliding window of recent message
  timestamps. Flags bursts so the message listener can issue an automatic
  warning through the moderation scheduler.
"""
