"""
Durable scheduling of time-bounded moderation actions.

This package owns the moderation core:

- **scheduler_state.py**: In-memory collections, the durable store, the timer
  registry and the single lock that guards them.

- **timer_registry.py**: One cancellable asyncio task per scheduler key.
  Re-arming a key replaces its pending timer.

- **expiry_executor.py**: What happens when a timer fires. Tempbans restore
  membership with a bounded, constant-interval retry; mutes and bot tempbans
  are simply lifted.

- **moderation_scheduler.py**: Command-facing façade (mute, tempban, bot
  bans, warn counters). Writes the store before arming or cancelling timers.

- **rehydrator.py**: Rebuilds the registry from the store at startup.
"""
