"""Tests for cron-driven agent schedules."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from stepflow.service.agents import Agent
from stepflow.service.errors import ValidationError
from stepflow.service.scheduler import ScheduleRegistry

FIXED_NOW = datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)


class FakeSleep:
    """Records requested waits and yields to the loop instead of sleeping."""

    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)
        await asyncio.sleep(0)


class RecordingTrigger:
    def __init__(self, fail_first=0):
        self.calls = []
        self.fail_first = fail_first

    async def __call__(self, agent_id, message):
        self.calls.append((agent_id, message))
        if len(self.calls) <= self.fail_first:
            raise RuntimeError("agent unavailable")


def _agent(agent_id, cron=None, status="active"):
    config = {"cronExpression": cron} if cron else {}
    return Agent(
        id=agent_id,
        status=status,
        definition={
            "nodes": [
                {"id": "start", "kind": "trigger", "config": config},
                {"id": "out", "kind": "output"},
            ],
            "edges": [{"source": "start", "target": "out"}],
        },
    )


def _registry(trigger=None, **kwargs):
    return ScheduleRegistry(
        trigger or RecordingTrigger(),
        clock=lambda: FIXED_NOW,
        sleep=kwargs.pop("sleep", FakeSleep()),
        **kwargs,
    )


async def _wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class TestRegistration:
    def test_invalid_cron_is_rejected(self):
        registry = _registry()
        with pytest.raises(ValidationError, match="invalid cron expression"):
            registry.register("agent-1", "every tuesday")
        assert registry.jobs() == []

    def test_next_fire_time(self):
        registry = _registry()
        assert registry.next_fire_time("*/5 * * * *") == datetime(
            2026, 1, 1, 0, 5, tzinfo=timezone.utc
        )
        assert registry.next_fire_time("0 9 * * 1-5") == datetime(
            2026, 1, 1, 9, 0, tzinfo=timezone.utc
        )

    def test_register_replaces_existing_job(self):
        registry = _registry()
        registry.register("agent-1", "*/5 * * * *")
        job = registry.register("agent-1", " 0 * * * * ")
        assert [j.cron_expression for j in registry.jobs()] == ["0 * * * *"]
        assert job.next_run == datetime(2026, 1, 1, 1, 0, tzinfo=timezone.utc)

    def test_unregister(self):
        registry = _registry()
        registry.register("agent-1", "*/5 * * * *")
        assert registry.unregister("agent-1") is True
        assert registry.unregister("agent-1") is False

    def test_job_wire_shape(self):
        registry = _registry()
        registry.register("agent-1", "*/5 * * * *")
        assert registry.jobs()[0].to_dict() == {
            "agentId": "agent-1",
            "cronExpression": "*/5 * * * *",
            "nextRun": "2026-01-01T00:05:00+00:00",
            "runs": 0,
            "lastError": None,
        }


class TestRunning:
    async def test_fires_trigger_after_waiting_for_next_slot(self):
        trigger = RecordingTrigger()
        sleep = FakeSleep()
        registry = _registry(trigger, sleep=sleep, trigger_input="tick")
        registry.register("agent-1", "*/5 * * * *")
        await registry.start()
        try:
            await _wait_for(lambda: len(trigger.calls) >= 2)
        finally:
            await registry.stop()

        assert trigger.calls[0] == ("agent-1", "tick")
        assert sleep.waits[0] == 300.0
        assert registry.jobs()[0].runs >= 2
        assert not registry.running

    async def test_trigger_errors_do_not_stop_the_job(self):
        trigger = RecordingTrigger(fail_first=1)
        registry = _registry(trigger)
        job = registry.register("agent-1", "*/5 * * * *")
        await registry.start()
        try:
            await _wait_for(lambda: len(trigger.calls) >= 1)
            assert job.last_error == "agent unavailable"
            await _wait_for(lambda: job.runs >= 1)
        finally:
            await registry.stop()
        assert job.last_error is None

    async def test_jobs_registered_while_running_start_immediately(self):
        trigger = RecordingTrigger()
        registry = _registry(trigger)
        await registry.start()
        try:
            registry.register("late", "*/5 * * * *")
            await _wait_for(lambda: trigger.calls)
        finally:
            await registry.stop()
        assert trigger.calls[0][0] == "late"

    async def test_start_syncs_from_source(self):
        agents = [_agent("cron-agent", "*/5 * * * *"), _agent("manual")]
        registry = _registry(sync_source=lambda: agents)
        await registry.start()
        try:
            assert [job.agent_id for job in registry.jobs()] == ["cron-agent"]
        finally:
            await registry.stop()

    async def test_stop_is_idempotent(self):
        registry = _registry()
        await registry.stop()
        await registry.start()
        await registry.stop()
        await registry.stop()
        assert not registry.running


class TestSync:
    def test_adds_updates_and_removes(self):
        registry = _registry()
        registry.register("gone", "*/5 * * * *")
        registry.register("changed", "*/5 * * * *")
        registry.register("same", "0 * * * *")

        outcome = registry.sync(
            [
                _agent("changed", "*/10 * * * *"),
                _agent("same", "0 * * * *"),
                _agent("new", "0 0 * * *"),
            ]
        )

        assert outcome == {"added": ["new"], "removed": ["gone"], "updated": ["changed"]}
        assert [job.agent_id for job in registry.jobs()] == ["changed", "new", "same"]

    def test_paused_and_cronless_agents_are_not_scheduled(self):
        registry = _registry()
        registry.register("paused", "*/5 * * * *")
        outcome = registry.sync([_agent("paused", "*/5 * * * *", status="paused"), _agent("plain")])
        assert outcome["removed"] == ["paused"]
        assert registry.jobs() == []

    def test_invalid_cron_is_skipped(self):
        registry = _registry()
        outcome = registry.sync([_agent("broken", "not a cron"), _agent("ok", "*/5 * * * *")])
        assert outcome["added"] == ["ok"]
