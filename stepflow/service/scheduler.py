"""Cron schedules for agents whose trigger node carries a ``cronExpression``.

Each registered agent gets one asyncio task that computes the next fire time
with croniter, sleeps until then and invokes the trigger callback. A separate
sync task periodically re-reads the agent registry so schedules follow agent
edits, pauses and deletions.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from croniter import croniter

from stepflow.logging import get_logger
from stepflow.service.agents import Agent
from stepflow.service.errors import ValidationError

logger = get_logger(__name__)

TriggerCallback = Callable[[str, str], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScheduledJob:
    agent_id: str
    cron_expression: str
    next_run: Optional[datetime] = None
    runs: int = 0
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = None

    def to_dict(self) -> dict:
        return {
            "agentId": self.agent_id,
            "cronExpression": self.cron_expression,
            "nextRun": self.next_run.isoformat() if self.next_run else None,
            "runs": self.runs,
            "lastError": self.last_error,
        }


class ScheduleRegistry:
    """Owns one cron job per agent id, with explicit ``start()``/``stop()``."""

    def __init__(
        self,
        trigger: TriggerCallback,
        *,
        sync_source: Optional[Callable[[], Iterable[Agent]]] = None,
        sync_interval_seconds: float = 300,
        trigger_input: str = "Auto-triggered by scheduler",
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.trigger = trigger
        self.sync_source = sync_source
        self.sync_interval_seconds = sync_interval_seconds
        self.trigger_input = trigger_input
        self.clock = clock
        self.sleep = sleep
        self._jobs: Dict[str, ScheduledJob] = {}
        self._sync_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self.sync_source is not None:
            self.sync(self.sync_source())
            self._sync_task = asyncio.ensure_future(self._sync_loop())
        for job in self._jobs.values():
            if job.task is None:
                job.task = asyncio.ensure_future(self._job_loop(job))
        logger.info("scheduler_started", jobs=len(self._jobs))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        if self._sync_task is not None:
            tasks.append(self._sync_task)
            self._sync_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            job.task = None
        logger.info("scheduler_stopped", jobs=len(self._jobs))

    def next_fire_time(self, cron_expression: str, after: Optional[datetime] = None) -> datetime:
        return croniter(cron_expression, after or self.clock()).get_next(datetime)

    def register(self, agent_id: str, cron_expression: str) -> ScheduledJob:
        """Create or replace the job for ``agent_id``."""
        expression = cron_expression.strip()
        if not croniter.is_valid(expression):
            raise ValidationError(
                f"invalid cron expression {cron_expression!r}",
                detail={"agent_id": agent_id},
            )
        self.unregister(agent_id)
        job = ScheduledJob(
            agent_id=agent_id,
            cron_expression=expression,
            next_run=self.next_fire_time(expression),
        )
        self._jobs[agent_id] = job
        if self._running:
            job.task = asyncio.ensure_future(self._job_loop(job))
        logger.info(
            "schedule_registered",
            agent_id=agent_id,
            cron_expression=expression,
            next_run=job.next_run.isoformat(),
        )
        return job

    def unregister(self, agent_id: str) -> bool:
        job = self._jobs.pop(agent_id, None)
        if job is None:
            return False
        if job.task is not None:
            job.task.cancel()
        logger.info("schedule_unregistered", agent_id=agent_id)
        return True

    def sync(self, agents: Iterable[Agent]) -> dict:
        """Match jobs to the active agents that declare a cron trigger."""
        desired: Dict[str, str] = {}
        for agent in agents:
            expression = agent.cron_expression
            if agent.status == "active" and expression:
                desired[agent.id] = expression

        removed = [agent_id for agent_id in list(self._jobs) if agent_id not in desired]
        for agent_id in removed:
            self.unregister(agent_id)

        added: List[str] = []
        updated: List[str] = []
        for agent_id, expression in desired.items():
            existing = self._jobs.get(agent_id)
            if existing is not None and existing.cron_expression == expression:
                continue
            try:
                self.register(agent_id, expression)
            except ValidationError as exc:
                logger.warning("schedule_sync_invalid_cron", agent_id=agent_id, error=exc.message)
                continue
            (updated if existing is not None else added).append(agent_id)

        if added or removed or updated:
            logger.info("schedule_synced", added=added, removed=removed, updated=updated)
        return {"added": added, "removed": removed, "updated": updated}

    def jobs(self) -> List[ScheduledJob]:
        return [self._jobs[agent_id] for agent_id in sorted(self._jobs)]

    async def _job_loop(self, job: ScheduledJob) -> None:
        while True:
            now = self.clock()
            job.next_run = self.next_fire_time(job.cron_expression, now)
            wait_seconds = max(0.0, (job.next_run - now).total_seconds())
            logger.debug(
                "schedule_next_run",
                agent_id=job.agent_id,
                next_run=job.next_run.isoformat(),
                wait_seconds=wait_seconds,
            )
            await self.sleep(wait_seconds)
            try:
                await self.trigger(job.agent_id, self.trigger_input)
                job.runs += 1
                job.last_error = None
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                job.last_error = str(exc)
                logger.error(
                    "schedule_trigger_failed",
                    agent_id=job.agent_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def _sync_loop(self) -> None:
        while True:
            await self.sleep(self.sync_interval_seconds)
            if self.sync_source is None:
                continue
            try:
                self.sync(self.sync_source())
            except Exception as exc:
                logger.error("schedule_sync_failed", error=str(exc))
