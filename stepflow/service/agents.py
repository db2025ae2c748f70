from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stepflow.logging import get_logger
from stepflow.service.context import RunContext
from stepflow.service.definition import WorkflowDefinition
from stepflow.service.errors import NodeExecutionError, NotFoundError

if TYPE_CHECKING:
    from stepflow.service.workflow import WorkflowEngine

logger = get_logger(__name__)

AgentStatus = Literal["active", "paused"]


class Agent(BaseModel):
    """Owner of a workflow definition, its defaults and optional schedule."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    id: str = Field(min_length=1)
    name: str = ""
    tenant_id: str = "public"
    definition: WorkflowDefinition
    default_model: Optional[str] = None
    status: AgentStatus = "active"
    notify_emails: List[str] = Field(default_factory=list)

    @property
    def cron_expression(self) -> Optional[str]:
        for node in self.definition.nodes:
            if node.kind == "trigger" and node.config.cron_expression:
                return node.config.cron_expression.strip()
        return None

    def run_defaults(self) -> Dict[str, Any]:
        return {"model": self.default_model} if self.default_model else {}


class AgentRegistry:
    """In-memory agent store. ``put`` compiles the definition before accepting it."""

    def __init__(self, validator: Optional[Callable[[WorkflowDefinition], Any]] = None) -> None:
        self.validator = validator
        self._agents: Dict[str, Agent] = {}
        self._lock = threading.Lock()

    def put(self, agent: Agent) -> Agent:
        if self.validator is not None:
            self.validator(agent.definition)
        with self._lock:
            self._agents[agent.id] = agent
        logger.info("agent_saved", agent_id=agent.id, tenant_id=agent.tenant_id)
        return agent

    def get(self, agent_id: str) -> Agent:
        with self._lock:
            agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"agent {agent_id} not found", detail={"agent_id": agent_id})
        return agent

    def list(self, tenant_id: Optional[str] = None) -> List[Agent]:
        with self._lock:
            agents = list(self._agents.values())
        if tenant_id is not None:
            agents = [agent for agent in agents if agent.tenant_id == tenant_id]
        return agents

    def remove(self, agent_id: str) -> Agent:
        with self._lock:
            agent = self._agents.pop(agent_id, None)
        if agent is None:
            raise NotFoundError(f"agent {agent_id} not found", detail={"agent_id": agent_id})
        logger.info("agent_removed", agent_id=agent_id)
        return agent

    def set_status(self, agent_id: str, status: AgentStatus) -> Agent:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise NotFoundError(f"agent {agent_id} not found", detail={"agent_id": agent_id})
            agent = agent.model_copy(update={"status": status})
            self._agents[agent_id] = agent
        logger.info("agent_status_changed", agent_id=agent_id, status=status)
        return agent


class AgentGateway(Protocol):
    async def send_message(self, agent_id: str, message: str, ctx: RunContext) -> str: ...


class EngineAgentGateway:
    """Delegates to another agent by running its workflow through the same engine."""

    def __init__(
        self,
        engine: "WorkflowEngine",
        registry: AgentRegistry,
        *,
        max_depth: int = 3,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.max_depth = max_depth

    async def send_message(self, agent_id: str, message: str, ctx: RunContext) -> str:
        if ctx.depth + 1 > self.max_depth:
            raise NodeExecutionError(
                f"delegation depth {ctx.depth + 1} exceeds maximum of {self.max_depth}"
            )
        try:
            agent = self.registry.get(agent_id)
        except NotFoundError as exc:
            raise NodeExecutionError(exc.message) from exc
        if agent.status != "active":
            raise NodeExecutionError(f"agent {agent_id} is {agent.status}")

        child = ctx.child(agent_id=agent_id, trigger_input=message)
        child.defaults.update(agent.run_defaults())
        if agent.notify_emails:
            child.notify_emails = list(agent.notify_emails)
        result = await self.engine.execute(agent.definition, message, run_context=child)
        if not result.success:
            raise NodeExecutionError(
                f"delegated agent {agent_id} failed: {result.error or 'unknown error'}",
                detail={"run_id": result.run_id},
            )
        return result.final_output
