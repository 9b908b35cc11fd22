from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
import fcntl
from typing import Any, Dict, List
import yaml

from aegis.util.logger import get_logger

logger = get_logger("app_configuration")


CONFIG_PATH = Path("./config/app_config.yml").resolve()

DEFAULT_DATABASE_PATH = "./data/aegis.db"
DEFAULT_WARN_THRESHOLD = 3
DEFAULT_TEMPBAN_MAX_RETRIES = 5
DEFAULT_TEMPBAN_RETRY_INTERVAL_SECONDS = 60.0
DEFAULT_BOT_WARN_TEMPBAN_SECONDS = 24 * 60 * 60


@dataclass(frozen=True, slots=True)
class SchedulerSettings:
    """Numeric knobs consumed by the moderation scheduler core."""
    warn_threshold: int = DEFAULT_WARN_THRESHOLD
    tempban_max_retries: int = DEFAULT_TEMPBAN_MAX_RETRIES
    tempban_retry_interval_seconds: float = DEFAULT_TEMPBAN_RETRY_INTERVAL_SECONDS
    bot_warn_tempban_seconds: float = DEFAULT_BOT_WARN_TEMPBAN_SECONDS


@dataclass(frozen=True, slots=True)
class AutospamSettings:
    """Sliding-window thresholds for automatic spam warnings."""
    window_ms: int = 7000
    max_messages: int = 5
    warn_cooldown_ms: int = 10000
    disabled_guilds: frozenset[str] = frozenset()


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class AppConfig:
    """File-lock based accessor around the YAML-based application configuration.

    The class caches contents of ``./config/app_config.yml`` and exposes
    typed helpers for the moderation scheduler, the spam tracker and the
    Discord command layer. Uses fcntl file locks for safe concurrent access
    across processes.
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self._data: Dict[str, Any] = {}
        self.reload()

    # --------------------------
    # Private helpers
    # --------------------------
    def load_from_disk(self) -> Dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                # Acquire a shared lock for reading
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = yaml.safe_load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except FileNotFoundError:
            logger.warning("[APP CONFIGURATION] Config file %s not found, using defaults.", self.config_path)
            return {}
        except Exception as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
            return {}

        if not isinstance(data, dict):
            if data is not None:
                logger.error("[APP CONFIGURATION] Config %s is not a mapping; ignoring it.", self.config_path)
            return {}
        return data

    def _section(self, name: str) -> Dict[str, Any]:
        section = self._data.get(name, {})
        return section if isinstance(section, dict) else {}

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Reload configuration from disk and return the loaded mapping.

        Returns the raw mapping that was loaded (an empty dict on error).
        """
        self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        """Return the current cached configuration mapping (do not mutate)."""
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Safe lookup for top-level configuration keys."""
        return self._data.get(key, default)

    # --------------------------
    # High-level shortcuts
    # --------------------------
    @property
    def database_path(self) -> Path:
        """Location of the SQLite file backing the moderation store."""
        value = self._section("database").get("path") or DEFAULT_DATABASE_PATH
        return Path(str(value)).resolve()

    @property
    def scheduler_settings(self) -> SchedulerSettings:
        """Return the moderation scheduler knobs, falling back to defaults.

        Keys live under ``moderation:`` in the YAML file. Non-positive or
        unparseable values are replaced by their defaults.
        """
        section = self._section("moderation")
        warn_threshold = _as_int(section.get("warn_threshold"), DEFAULT_WARN_THRESHOLD)
        max_retries = _as_int(section.get("tempban_max_retries"), DEFAULT_TEMPBAN_MAX_RETRIES)
        retry_interval = _as_float(
            section.get("tempban_retry_interval_seconds"), DEFAULT_TEMPBAN_RETRY_INTERVAL_SECONDS
        )
        bot_tempban = _as_float(section.get("bot_warn_tempban_seconds"), DEFAULT_BOT_WARN_TEMPBAN_SECONDS)
        return SchedulerSettings(
            warn_threshold=warn_threshold if warn_threshold > 0 else DEFAULT_WARN_THRESHOLD,
            tempban_max_retries=max_retries if max_retries >= 0 else DEFAULT_TEMPBAN_MAX_RETRIES,
            tempban_retry_interval_seconds=(
                retry_interval if retry_interval > 0 else DEFAULT_TEMPBAN_RETRY_INTERVAL_SECONDS
            ),
            bot_warn_tempban_seconds=bot_tempban if bot_tempban > 0 else DEFAULT_BOT_WARN_TEMPBAN_SECONDS,
        )

    @property
    def autospam(self) -> AutospamSettings:
        """Return the auto-spam warning thresholds."""
        section = self._section("autospam")
        defaults = AutospamSettings()
        disabled = section.get("disabled_guilds") or []
        if not isinstance(disabled, list):
            disabled = []
        return AutospamSettings(
            window_ms=_as_int(section.get("window_ms"), defaults.window_ms),
            max_messages=_as_int(section.get("max_messages"), defaults.max_messages),
            warn_cooldown_ms=_as_int(section.get("warn_cooldown_ms"), defaults.warn_cooldown_ms),
            disabled_guilds=frozenset(str(g) for g in disabled),
        )

    @property
    def bot_moderator_ids(self) -> List[str]:
        """User ids allowed to issue bot-level restrictions (botban, botwarn, ...)."""
        value = self._data.get("bot_moderators") or []
        if not isinstance(value, list):
            return []
        return [str(v) for v in value]

    def notification_channel_id(self, guild_id: str) -> int | None:
        """Return the configured notification channel for ``guild_id``, if any."""
        channels = self._data.get("notification_channels") or {}
        if not isinstance(channels, dict):
            return None
        value = channels.get(str(guild_id), channels.get(_as_int(guild_id, -1)))
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            logger.warning("[APP CONFIGURATION] Invalid notification channel %r for guild %s", value, guild_id)
            return None


# Shared application-wide configuration instance
app_config = AppConfig(CONFIG_PATH)
