"""
Sliding-window burst detection for automatic spam warnings.

Usage:
    tracker = SpamTracker(app_config.autospam)
    if tracker.record(guild_id, user_id, now_ms):
        await scheduler.warn(guild_id, user_id)
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Tuple

from aegis.configuration.app_configuration import AutospamSettings


@dataclass(slots=True)
class _Activity:
    timestamps: Deque[int] = field(default_factory=deque)
    last_warn_at: int = 0


class SpamTracker:
    """
    Tracks recent message timestamps per (guild, user).

    A user is flagged when ``max_messages`` or more messages fall inside the
    last ``window_ms`` and no automatic warning was issued for them within
    ``warn_cooldown_ms``. Idle users are dropped as time moves on. State is
    in-memory only and lost on restart.
    """

    def __init__(self, settings: AutospamSettings | None = None) -> None:
        self.settings = settings or AutospamSettings()
        self._activity: Dict[Tuple[str, str], _Activity] = {}
        self._last_prune_at = 0

    def is_enabled(self, scope_id: str) -> bool:
        return str(scope_id) not in self.settings.disabled_guilds

    def _is_idle(self, activity: _Activity, now_ms: int) -> bool:
        if activity.timestamps and activity.timestamps[-1] >= now_ms - self.settings.window_ms:
            return False
        return not activity.last_warn_at or now_ms - activity.last_warn_at > self.settings.warn_cooldown_ms

    def prune(self, now_ms: int) -> int:
        """Drop users with no message in the window and no running warn cooldown.

        Returns:
            int: Number of users dropped.
        """
        idle = [key for key, activity in self._activity.items() if self._is_idle(activity, now_ms)]
        for key in idle:
            del self._activity[key]
        self._last_prune_at = now_ms
        return len(idle)

    def record(self, scope_id: str, subject_id: str, now_ms: int) -> bool:
        """
        Record one message and report whether it should trigger an auto-warn.

        Args:
            scope_id: Guild the message was sent in.
            subject_id: Author of the message.
            now_ms: Message time in epoch milliseconds.

        Returns:
            bool: True when the burst threshold is met and the cooldown has passed.
        """
        if not self.is_enabled(scope_id):
            return False

        if now_ms - self._last_prune_at >= max(self.settings.window_ms, self.settings.warn_cooldown_ms):
            self.prune(now_ms)

        key = (str(scope_id), str(subject_id))
        activity = self._activity.setdefault(key, _Activity())
        activity.timestamps.append(now_ms)

        cutoff = now_ms - self.settings.window_ms
        while activity.timestamps and activity.timestamps[0] < cutoff:
            activity.timestamps.popleft()

        if len(activity.timestamps) < self.settings.max_messages:
            return False
        if activity.last_warn_at and now_ms - activity.last_warn_at <= self.settings.warn_cooldown_ms:
            return False

        activity.last_warn_at = now_ms
        return True

    def forget(self, scope_id: str, subject_id: str) -> None:
        self._activity.pop((str(scope_id), str(subject_id)), None)

    def __len__(self) -> int:
        return len(self._activity)
