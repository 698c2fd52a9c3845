"""
Autonomy Controller — Periodic Task Synthesis

Every ``interval_ms`` the controller shows the dispatcher status to an
oracle and submits whatever tasks come back. Only one cycle runs at a
time; disabling discards any cycle still waiting on the oracle.

Usage:
    from taskhive.engine.autonomy import AutonomyController

    autonomy = AutonomyController(dispatcher, AutonomyConfig(enabled=True))
    autonomy.enable()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from taskhive.config import AutonomyConfig
from taskhive.engine.dispatcher import Dispatcher
from taskhive.errors import OracleUnavailable, QueueFull, ValidationFailed
from taskhive.oracle.base import OracleResult, TaskOracle

logger = structlog.get_logger(__name__)


@dataclass
class CycleReport:
    """What one autonomy cycle did."""

    ran: bool
    skipped: str | None = None  # disabled | in_flight | busy | discarded
    proposed: int = 0
    admitted: list[str] = field(default_factory=list)
    rejected: list[dict[str, Any]] = field(default_factory=list)
    rationale: str | None = None
    error: dict[str, Any] | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ran": self.ran,
            "skipped": self.skipped,
            "proposed": self.proposed,
            "admitted": list(self.admitted),
            "rejected": list(self.rejected),
            "rationale": self.rationale,
            "error": self.error,
            "timestamp": self.timestamp,
        }


class AutonomyController:
    """Single-flight periodic generator feeding ``Dispatcher.submit``."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        config: AutonomyConfig | None = None,
        oracle: TaskOracle | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.bus = dispatcher.bus
        self.config = config or AutonomyConfig()
        self.oracle = oracle
        self.last_report: CycleReport | None = None
        self.cycles = 0

        self._enabled = False
        self._running = False
        self._generation = 0
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        return self._running

    def enable(self) -> None:
        """Start cycling: one cycle now, then one every ``interval_ms``."""
        self.disable()
        self._enabled = True
        self._generation += 1
        self._loop_task = asyncio.get_running_loop().create_task(self._loop(self._generation))
        logger.info(
            "autonomy_enabled",
            interval_ms=self.config.interval_ms,
            max_tasks=self.config.max_tasks,
            oracle=self.oracle.name if self.oracle else None,
        )
        self.bus.emit("autonomy_enabled", interval_ms=self.config.interval_ms)

    def disable(self) -> None:
        """Stop cycling. A cycle awaiting the oracle is dropped without effect."""
        was_enabled = self._enabled
        self._enabled = False
        self._generation += 1
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        if was_enabled:
            logger.info("autonomy_disabled")
            self.bus.emit("autonomy_disabled")

    async def _loop(self, generation: int) -> None:
        force = True
        while self._enabled and generation == self._generation:
            await self.run_cycle(force=force)
            force = False
            await asyncio.sleep(self.config.interval_ms / 1000)

    def _busy(self) -> bool:
        return bool(self.dispatcher.registry.list_working() or self.dispatcher.queue)

    async def run_cycle(self, force: bool = False) -> CycleReport:
        """
        Run one cycle.

        Args:
            force: Skip the busy check (used for the first cycle after enable).
        """
        if not self._enabled:
            return CycleReport(ran=False, skipped="disabled")
        if self._running:
            return CycleReport(ran=False, skipped="in_flight")
        if not force and not self.config.allow_when_busy and self._busy():
            logger.debug("autonomy_cycle_skipped", reason="busy")
            return CycleReport(ran=False, skipped="busy")

        self._running = True
        generation = self._generation
        try:
            result, error = await self._ask_oracle()
            if generation != self._generation:
                logger.debug("autonomy_result_discarded")
                return CycleReport(ran=False, skipped="discarded")

            report = CycleReport(
                ran=True,
                proposed=len(result.tasks),
                rationale=result.rationale,
                error=error,
            )
            for raw in result.tasks[: self.config.max_tasks]:
                self._submit(raw, report)
        finally:
            if generation == self._generation:
                self._running = False

        self.cycles += 1
        self.last_report = report
        logger.info(
            "autonomy_cycle",
            proposed=report.proposed,
            admitted=len(report.admitted),
            rejected=len(report.rejected),
            rationale=report.rationale,
        )
        self.bus.emit("autonomy_cycle", **report.to_dict())
        return report

    async def _ask_oracle(self) -> tuple[OracleResult, dict[str, Any] | None]:
        if self.oracle is None:
            unavailable = OracleUnavailable()
            return OracleResult(tasks=[], rationale=unavailable.reason), unavailable.to_dict()

        snapshot = self.dispatcher.status()
        try:
            result = await asyncio.wait_for(
                self.oracle.generate(
                    snapshot,
                    self.config.instructions,
                    self.config.max_tasks,
                    self.config.temperature,
                ),
                timeout=self.config.oracle_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning("oracle_timeout", timeout_ms=self.config.oracle_timeout_ms)
            return OracleResult(tasks=[], rationale="oracle timeout"), None
        except Exception as exc:
            logger.warning("oracle_failed", error=str(exc), exc_info=True)
            return OracleResult(tasks=[], rationale=f"oracle error: {exc}"), None
        return result, None

    def _submit(self, raw: dict[str, Any], report: CycleReport) -> None:
        try:
            admission = self.dispatcher.submit(raw, sender=self.config.sender)
        except ValidationFailed as exc:
            logger.warning("autonomy_task_rejected", errors=exc.errors)
            report.rejected.append(exc.to_dict())
            return
        except QueueFull as exc:
            logger.warning("autonomy_task_rejected", reason="queue_full")
            report.rejected.append(exc.to_dict())
            return
        report.admitted.append(admission.task.id)
