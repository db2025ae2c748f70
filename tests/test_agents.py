"""Tests for the agent registry, delegation and runtime agent lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from stepflow.service.agents import Agent, AgentRegistry
from stepflow.service.context import RunContext
from stepflow.service.errors import ConflictError, NotFoundError, StructuralError
from stepflow.service.graph import compile_graph
from stepflow.service.recorder import NodeStatus
from stepflow.service.runtime import reset_runtime_for_tests


def _echo_definition(template=None, cron=None):
    output_config = {"templateContent": template} if template else {}
    trigger_config = {"cronExpression": cron} if cron else {}
    return {
        "nodes": [
            {"id": "start", "kind": "trigger", "config": trigger_config},
            {"id": "out", "kind": "output", "config": output_config},
        ],
        "edges": [{"source": "start", "target": "out"}],
    }


def _delegating_definition(target):
    return {
        "nodes": [
            {"id": "start", "kind": "trigger"},
            {"id": "ask", "kind": "delegate", "config": {"agentId": target}},
            {"id": "out", "kind": "output"},
        ],
        "edges": [
            {"source": "start", "target": "ask"},
            {"source": "ask", "target": "out"},
        ],
    }


class TestAgentRegistry:
    def test_put_validates_definition(self):
        registry = AgentRegistry(validator=compile_graph)
        broken = {
            "nodes": [{"id": "a", "kind": "output"}, {"id": "b", "kind": "output"}],
            "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        }
        with pytest.raises(StructuralError):
            registry.put(Agent(id="cyclic", definition=broken))
        assert registry.list() == []

    def test_get_missing_agent(self):
        with pytest.raises(NotFoundError, match="agent ghost not found"):
            AgentRegistry().get("ghost")

    def test_list_filters_by_tenant(self):
        registry = AgentRegistry()
        registry.put(Agent(id="a", tenant_id="acme", definition=_echo_definition()))
        registry.put(Agent(id="b", tenant_id="other", definition=_echo_definition()))
        assert [agent.id for agent in registry.list("acme")] == ["a"]
        assert len(registry.list()) == 2

    def test_set_status_returns_updated_copy(self):
        registry = AgentRegistry()
        original = registry.put(Agent(id="a", definition=_echo_definition()))
        paused = registry.set_status("a", "paused")
        assert paused.status == "paused"
        assert original.status == "active"
        assert registry.get("a").status == "paused"

    def test_remove(self):
        registry = AgentRegistry()
        registry.put(Agent(id="a", definition=_echo_definition()))
        registry.remove("a")
        with pytest.raises(NotFoundError):
            registry.remove("a")

    def test_cron_expression_and_defaults(self):
        agent = Agent.model_validate(
            {
                "id": "a",
                "defaultModel": "small-model",
                "definition": _echo_definition(cron=" */5 * * * * "),
            }
        )
        assert agent.cron_expression == "*/5 * * * *"
        assert agent.run_defaults() == {"model": "small-model"}


class TestRuntimeAgents:
    async def test_run_agent_uses_its_definition(self):
        runtime = reset_runtime_for_tests()
        runtime.save_agent(Agent(id="echo", definition=_echo_definition("got {{input}}")))
        result = await runtime.run_agent("echo", "ping")
        assert result.success
        assert result.final_output == "got ping"

    async def test_delegation_runs_the_target_agent(self):
        runtime = reset_runtime_for_tests()
        runtime.save_agent(Agent(id="b", definition=_echo_definition("B says {{input}}")))
        runtime.save_agent(Agent(id="a", definition=_delegating_definition("b")))

        result = await runtime.run_agent("a", "hello")

        assert result.success
        assert result.result_for("ask").output == "B says hello"
        assert result.final_output == "B says hello"

    async def test_self_delegation_hits_depth_limit(self):
        runtime = reset_runtime_for_tests()
        runtime.save_agent(Agent(id="loop", definition=_delegating_definition("loop")))

        result = await runtime.run_agent("loop", "again")

        assert not result.success
        assert "exceeds maximum" in result.error
        assert result.result_for("ask").status == NodeStatus.FAILED

    async def test_delegating_to_paused_agent_fails_the_node(self):
        runtime = reset_runtime_for_tests()
        runtime.save_agent(Agent(id="b", status="paused", definition=_echo_definition()))
        runtime.save_agent(Agent(id="a", definition=_delegating_definition("b")))
        result = await runtime.run_agent("a", "hello")
        assert result.result_for("ask").error == "agent b is paused"

    async def test_paused_agent_cannot_run(self):
        runtime = reset_runtime_for_tests()
        runtime.save_agent(Agent(id="a", definition=_echo_definition()))
        runtime.set_agent_status("a", "paused")
        with pytest.raises(ConflictError, match="agent a is paused"):
            await runtime.run_agent("a", "x")

    def test_save_with_cron_registers_schedule(self):
        runtime = reset_runtime_for_tests()
        runtime.save_agent(Agent(id="cron", definition=_echo_definition(cron="0 * * * *")))
        assert [job.agent_id for job in runtime.scheduler.jobs()] == ["cron"]

        runtime.set_agent_status("cron", "paused")
        assert runtime.scheduler.jobs() == []

        runtime.set_agent_status("cron", "active")
        assert [job.agent_id for job in runtime.scheduler.jobs()] == ["cron"]

    def test_delete_unregisters_schedule(self):
        runtime = reset_runtime_for_tests()
        runtime.save_agent(Agent(id="cron", definition=_echo_definition(cron="0 * * * *")))
        runtime.delete_agent("cron")
        assert runtime.scheduler.jobs() == []
        with pytest.raises(NotFoundError):
            runtime.agents.get("cron")

    async def test_delete_aborts_in_flight_runs(self):
        runtime = reset_runtime_for_tests()
        agent = runtime.save_agent(Agent(id="caller", definition=_echo_definition()))

        handle = runtime.engine.start(agent.definition, "x", RunContext(agent_id="caller"))
        runtime.delete_agent("caller")
        result = await asyncio.wait_for(handle.result(), timeout=5)

        assert result.aborted
        assert result.error == "run aborted: agent_deleted"
