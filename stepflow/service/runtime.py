from __future__ import annotations

import threading
from typing import Optional

import httpx

from stepflow.config import Settings, get_settings, reset_settings_cache
from stepflow.logging import get_logger
from stepflow.service.activity import ActivityStore
from stepflow.service.agents import Agent, AgentRegistry, AgentStatus, EngineAgentGateway
from stepflow.service.context import RunContext
from stepflow.service.email import EmailService
from stepflow.service.errors import ConflictError
from stepflow.service.executors import build_default_registry
from stepflow.service.llm import LLMService, ModelProvider, OpenAICompatibleProvider
from stepflow.service.notifications import NotificationService
from stepflow.service.rag import RetrievalService
from stepflow.service.recorder import ProgressCallback, WorkflowExecutionResult
from stepflow.service.sandbox import (
    AllowlistedFetcher,
    SandboxConfig,
    ScriptSandbox,
    build_http_egress_policy,
)
from stepflow.service.scheduler import ScheduleRegistry
from stepflow.service.workflow import WorkflowEngine

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        model_provider: Optional[ModelProvider] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            scheduler_enabled=self.settings.scheduler_enabled,
        )

        self.activity = ActivityStore()
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.notifications = NotificationService(self.email, self.activity)
        self.retrieval = RetrievalService(self.activity)

        provider = model_provider or OpenAICompatibleProvider(
            api_key=self.settings.model_api_key,
            base_url=self.settings.model_base_url,
            timeout_seconds=self.settings.model_timeout_seconds,
        )
        self.llm = LLMService(self.settings.default_model, provider=provider)

        self.sandbox = ScriptSandbox(
            SandboxConfig(
                max_memory_mb=self.settings.script_max_memory_mb,
                max_cpu_seconds=self.settings.script_max_cpu_seconds,
            )
        )
        self.http_policy = build_http_egress_policy(
            allowlist=self.settings.http_allowlist,
            proxy_url=self.settings.http_proxy_url,
            total_timeout=self.settings.http_timeout_seconds,
        )
        self.fetcher = AllowlistedFetcher(self.http_policy, transport=http_transport)

        self.executors = build_default_registry(
            llm=self.llm,
            sandbox=self.sandbox,
            fetcher=self.fetcher,
            notifications=self.notifications,
            retrieval=self.retrieval,
            script_timeout_ms=self.settings.script_timeout_ms,
        )
        self.engine = WorkflowEngine(
            self.executors, activity=self.activity, settings=self.settings
        )
        self.agents = AgentRegistry(validator=self.engine.compile)
        self.gateway = EngineAgentGateway(
            self.engine, self.agents, max_depth=self.settings.max_delegation_depth
        )
        self.executors["delegate"].gateway = self.gateway
        self.scheduler = ScheduleRegistry(
            self.run_agent,
            sync_source=self.agents.list,
            sync_interval_seconds=self.settings.scheduler_sync_interval_seconds,
            trigger_input=self.settings.scheduler_trigger_input,
        )

        logger.info(
            "runtime_initialized",
            default_model=self.settings.default_model,
            model_configured=bool(self.settings.model_api_key) or model_provider is not None,
            email_configured=self.email.is_configured,
            http_allowlist=len(self.http_policy.allowlist),
        )

    async def start(self) -> None:
        if self.settings.scheduler_enabled:
            await self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.engine.shutdown()

    def save_agent(self, agent: Agent) -> Agent:
        saved = self.agents.put(agent)
        if saved.status == "paused":
            self.engine.abort_agent_runs(saved.id, "agent_paused")
        self._sync_schedule(saved)
        return saved

    def delete_agent(self, agent_id: str) -> Agent:
        agent = self.agents.remove(agent_id)
        self.engine.abort_agent_runs(agent_id, "agent_deleted")
        self.scheduler.unregister(agent_id)
        return agent

    def set_agent_status(self, agent_id: str, status: AgentStatus) -> Agent:
        agent = self.agents.set_status(agent_id, status)
        if status == "paused":
            self.engine.abort_agent_runs(agent_id, "agent_paused")
        self._sync_schedule(agent)
        return agent

    def _sync_schedule(self, agent: Agent) -> None:
        expression = agent.cron_expression
        if agent.status == "active" and expression:
            self.scheduler.register(agent.id, expression)
        else:
            self.scheduler.unregister(agent.id)

    async def run_agent(
        self,
        agent_id: str,
        trigger_input: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> WorkflowExecutionResult:
        agent = self.agents.get(agent_id)
        if agent.status != "active":
            raise ConflictError(
                f"agent {agent_id} is {agent.status}", detail={"agent_id": agent_id}
            )
        ctx = RunContext(
            tenant_id=agent.tenant_id,
            agent_id=agent.id,
            defaults=agent.run_defaults(),
            notify_emails=list(agent.notify_emails),
        )
        return await self.engine.execute(agent.definition, trigger_input, ctx, on_progress)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
