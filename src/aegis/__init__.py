"""
Aegis: a Discord moderation bot with durable, time-bounded restrictions.

Mutes, temporary bans and bot bans survive restarts: they are stored in
SQLite and their expiry timers are rebuilt at startup.
"""
