"""
Startup reconstruction of the timer registry from the durable store.

The rehydrator loads every collection, installs it into the shared
:class:`SchedulerState` and arms a timer for each entry that has not yet
expired. Entries already past due are left untouched: they are neither armed
nor executed, and the scheduler prunes them on next access. Given-up
tempbans are retained this way as well.

Rehydration must finish before any command is accepted; the scheduler
refuses operations until ``state.loaded`` is set here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from aegis.datatypes.moderation_datatypes import ModerationKind
from aegis.scheduler.expiry_executor import ExpiryExecutor
from aegis.scheduler.scheduler_state import SchedulerState
from aegis.util.logger import get_logger

logger = get_logger("rehydrator")


def _zero_counts() -> Dict[ModerationKind, int]:
    return {kind: 0 for kind in ModerationKind}


@dataclass(slots=True)
class RehydrationReport:
    """Per-kind counts of entries armed and skipped during rehydration."""
    armed: Dict[ModerationKind, int] = field(default_factory=_zero_counts)
    skipped: Dict[ModerationKind, int] = field(default_factory=_zero_counts)

    @property
    def total_armed(self) -> int:
        return sum(self.armed.values())

    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())


class Rehydrator:
    def __init__(self, state: SchedulerState, executor: ExpiryExecutor) -> None:
        self.state = state
        self.executor = executor

    async def rehydrate(self) -> RehydrationReport:
        """Load persisted state and arm timers for every unexpired entry.

        Raises:
            Exception: Connection-level store failures propagate; startup
                must abort rather than run without its state.
        """
        collections = await self.state.store.load()
        report = RehydrationReport()

        async with self.state.lock:
            self.state.collections.replace_with(collections)
            now = self.state.registry.clock.now_millis()

            for entry in self.state.collections.entries():
                if entry.expires_at > now:
                    self.executor.arm(entry)
                    report.armed[entry.kind] += 1
                else:
                    logger.info("[REHYDRATOR] %s expired while offline; not armed", entry.key)
                    report.skipped[entry.kind] += 1

            self.state.loaded = True

        logger.info(
            "[REHYDRATOR] Armed %d timers (%s); skipped %d past-due entries",
            report.total_armed,
            ", ".join(f"{kind}={count}" for kind, count in report.armed.items()),
            report.total_skipped,
        )
        return report
