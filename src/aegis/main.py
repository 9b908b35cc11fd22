"""
Aegis entry point.

Startup runs in a fixed order: open the moderation store, rehydrate every
unexpired mute, tempban and bot tempban into a timer, then register the cogs
and connect to Discord. No command can reach the scheduler before its state
is loaded.

Exit codes: 0 on a clean shutdown, 1 when startup or the gateway connection
fails.
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Directory holding ``config/``, ``data/`` and ``.env``.

    ``AEGIS_HOME`` wins when set; a frozen build uses the executable's
    directory; a source checkout uses the repository root.
    """
    configured = os.getenv("AEGIS_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parents[2]


BASE_DIR = resolve_base_dir()
os.chdir(BASE_DIR)

import asyncio
from dataclasses import dataclass

import discord
from dotenv import load_dotenv

from aegis.bot.membership_gateway import DiscordMembershipGateway
from aegis.configuration.app_configuration import app_config
from aegis.database.db_connection import db_connection
from aegis.moderation.spam_tracker import SpamTracker
from aegis.repositories.moderation_state_repo import ModerationStateRepo
from aegis.scheduler.expiry_executor import ExpiryExecutor
from aegis.scheduler.moderation_scheduler import ModerationScheduler
from aegis.scheduler.rehydrator import Rehydrator
from aegis.scheduler.scheduler_state import SchedulerState
from aegis.scheduler.timer_registry import TimerRegistry
from aegis.util.clock import system_clock
from aegis.util.identity import identity_resolver
from aegis.util.logger import get_logger, handle_exception

logger = get_logger("main")

TOKEN_VARIABLE = "DISCORD_BOT_TOKEN"


class StartupError(RuntimeError):
    """A startup step failed; the process exits with status 1."""


@dataclass
class Runtime:
    bot: discord.Bot
    registry: TimerRegistry
    scheduler: ModerationScheduler | None = None


def read_token() -> str:
    """Read the bot token from the environment, loading ``.env`` first.

    Raises
    ------
    StartupError
        If ``DISCORD_BOT_TOKEN`` is unset or empty.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv(TOKEN_VARIABLE, "").strip()
    if not token:
        raise StartupError(f"{TOKEN_VARIABLE} is not set")
    return token


def build_intents() -> discord.Intents:
    """Guilds and members for kicks, message content for mute enforcement and auto-spam."""
    intents = discord.Intents.default()
    intents.guilds = True
    intents.members = True
    intents.messages = True
    intents.message_content = True
    return intents


def load_cogs(discord_bot_instance: discord.Bot, scheduler: ModerationScheduler) -> None:
    from aegis.bot.cogs import events_listener, message_listener, moderation_cmds

    events_listener.setup(discord_bot_instance, scheduler)
    message_listener.setup(discord_bot_instance, scheduler, SpamTracker(app_config.autospam))
    moderation_cmds.setup(discord_bot_instance, scheduler)
    logger.info("Registered %d cogs", len(discord_bot_instance.cogs))


async def open_store() -> ModerationStateRepo:
    path = app_config.database_path
    logger.info("Opening moderation store at %s", path)
    await db_connection.open(path)
    repo = ModerationStateRepo(db_connection)
    await repo.initialize()
    return repo


async def build_runtime() -> Runtime:
    """Open the store, rehydrate timers and wire the scheduler to a fresh bot."""
    try:
        repo = await open_store()
    except Exception as exc:
        raise StartupError(f"moderation store unavailable: {exc}") from exc

    settings = app_config.scheduler_settings
    bot = discord.Bot(intents=build_intents())
    runtime = Runtime(bot=bot, registry=TimerRegistry(system_clock))

    state = SchedulerState(repo, runtime.registry)
    gateway = DiscordMembershipGateway(bot, app_config)
    executor = ExpiryExecutor(state, gateway, settings)

    try:
        report = await Rehydrator(state, executor).rehydrate()
    except Exception as exc:
        await shutdown_runtime(runtime)
        raise StartupError(f"rehydration failed: {exc}") from exc
    logger.info("Rehydrated %d timers (%d past due)", report.total_armed, report.total_skipped)

    runtime.scheduler = ModerationScheduler(state, executor, gateway, identity_resolver, settings)
    load_cogs(bot, runtime.scheduler)
    return runtime


async def shutdown_runtime(runtime: Runtime | None) -> None:
    """Close the gateway connection, cancel pending timers and close the store.

    Each step runs even if an earlier one fails.
    """
    if runtime is not None:
        if not runtime.bot.is_closed():
            try:
                await runtime.bot.close()
            except Exception:
                logger.exception("Closing the Discord connection failed")
        try:
            await runtime.registry.shutdown()
        except Exception:
            logger.exception("Cancelling moderation timers failed")

    try:
        await db_connection.close()
    except Exception:
        logger.exception("Closing the moderation store failed")
    logger.info("Aegis stopped")


async def async_main() -> int:
    runtime: Runtime | None = None
    try:
        token = read_token()
        runtime = await build_runtime()
        logger.info("Connecting to Discord")
        await runtime.bot.start(token)
    except StartupError as exc:
        logger.critical("Startup aborted: %s", exc)
        return 1
    except asyncio.CancelledError:
        logger.info("Runtime cancelled")
    except Exception:
        logger.critical("Discord connection ended with an error", exc_info=True)
        return 1
    finally:
        await shutdown_runtime(runtime)
    return 0


def main() -> int:
    sys.excepthook = handle_exception
    logger.info("Starting Aegis from %s", BASE_DIR)
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting")
        return 0


if __name__ == "__main__":
    sys.exit(main())
