from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set

import structlog

from stepflow.config import Settings
from stepflow.logging import get_logger, log_workflow_trace
from stepflow.service.activity import ActivityStore
from stepflow.service.branching import BranchRouter
from stepflow.service.context import RunContext
from stepflow.service.definition import (
    BRANCHING_KINDS,
    Edge,
    NodeBase,
    RetryableConfig,
    WorkflowDefinition,
)
from stepflow.service.errors import (
    NotFoundError,
    RunAbortedError,
    ScriptTimeoutError,
    ServiceError,
)
from stepflow.service.executors import ExecutorRegistry, StepExecutor, build_step_input
from stepflow.service.graph import CompiledGraph, compile_graph
from stepflow.service.recorder import (
    ProgressCallback,
    RunRecorder,
    WorkflowExecutionResult,
)
from stepflow.service.templates import TemplateResolver

DEFAULT_NODE_TIMEOUT_MS = 300000  # nodes without their own timeout
DEFAULT_BACKOFF_MS = 1000
DEFAULT_WORKFLOW_TIMEOUT_MS = 300000

WORKFLOW_TIMEOUT_REASON = "workflow_timeout"
RUN_HALTED_REASON = "run halted"


@dataclass
class _NodeOutcome:
    node_id: str
    failed: bool = False
    error: Optional[str] = None
    halts: bool = False


class _NodeFailed(Exception):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.message = message
        self.attempts = attempts


def _format_error(exc: BaseException) -> str:
    if isinstance(exc, ServiceError):
        return exc.message
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _backoff_ms(config: RetryableConfig, attempt: int) -> int:
    interval = config.retry_interval
    if config.retry_backoff == "linear":
        return interval * attempt
    if config.retry_backoff == "exponential":
        return interval * (2 ** (attempt - 1))
    return interval


class RunHandle:
    """A started run: ``abort()`` cancels it, ``await result()`` returns the sealed summary."""

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx
        self.reason: Optional[str] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def run_id(self) -> str:
        return self.ctx.run_id

    @property
    def agent_id(self) -> Optional[str]:
        return self.ctx.agent_id

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def abort(self, reason: str = "aborted") -> bool:
        if self.done:
            return False
        if self.reason is None:
            self.reason = reason
        self.ctx.cancel_event.set()
        return True

    async def result(self) -> WorkflowExecutionResult:
        if self.task is None:
            raise RuntimeError("run has not been started")
        return await self.task


class WorkflowEngine:
    """Executes workflow definitions layer by layer.

    Nodes of one structural layer run concurrently; the next layer starts once
    the slowest member of the current one is sealed. Branch selectors from
    condition and classifier nodes decide which out-edges stay live, and nodes
    left without a live incoming edge are skipped.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        *,
        activity: Optional[ActivityStore] = None,
        settings: Optional[Settings] = None,
        router: Optional[BranchRouter] = None,
    ) -> None:
        self.registry = registry
        self.activity = activity
        self.router = router or BranchRouter()
        self.default_timeout_ms = (
            settings.workflow_timeout_ms if settings else DEFAULT_WORKFLOW_TIMEOUT_MS
        )
        self.logger = get_logger(__name__)
        self._active: Dict[str, RunHandle] = {}

    def compile(self, definition: WorkflowDefinition | Mapping[str, Any]) -> CompiledGraph:
        return compile_graph(definition, self.registry)

    async def execute(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        trigger_input: str = "",
        run_context: Optional[RunContext] = None,
        on_progress: Optional[ProgressCallback] = None,
        *,
        timeout_ms: Optional[int] = None,
    ) -> WorkflowExecutionResult:
        """Run ``definition`` to completion.

        Raises ``StructuralError`` for a malformed definition; every other
        outcome, including node failures and aborts, is reported in the result.
        """
        handle = self.start(
            definition, trigger_input, run_context, on_progress, timeout_ms=timeout_ms
        )
        return await handle.result()

    def start(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        trigger_input: str = "",
        run_context: Optional[RunContext] = None,
        on_progress: Optional[ProgressCallback] = None,
        *,
        timeout_ms: Optional[int] = None,
    ) -> RunHandle:
        graph = self.compile(definition)
        ctx = run_context or RunContext()
        ctx.trigger_input = trigger_input
        recorder = RunRecorder(graph, ctx.run_id, on_progress)
        handle = RunHandle(ctx)
        handle.task = asyncio.ensure_future(
            self._run(graph, ctx, recorder, handle, timeout_ms or self.default_timeout_ms)
        )
        self._active[ctx.run_id] = handle
        handle.task.add_done_callback(lambda _: self._active.pop(ctx.run_id, None))
        return handle

    def active_runs(self) -> List[RunHandle]:
        return list(self._active.values())

    def abort(self, run_id: str, reason: str = "aborted") -> bool:
        handle = self._active.get(run_id)
        if handle is None:
            raise NotFoundError(f"run {run_id} is not active", detail={"run_id": run_id})
        return handle.abort(reason)

    def abort_agent_runs(self, agent_id: str, reason: str = "agent_stopped") -> int:
        """Abort every active run owned by ``agent_id``; returns how many were signalled."""
        aborted = 0
        for handle in list(self._active.values()):
            if handle.agent_id == agent_id and handle.abort(reason):
                aborted += 1
        if aborted:
            self.logger.info("workflow_agent_runs_aborted", agent_id=agent_id, count=aborted)
        return aborted

    async def shutdown(self) -> None:
        """Abort active runs and wait for them to seal. Call during app shutdown."""
        handles = list(self._active.values())
        for handle in handles:
            handle.abort("shutdown")
        if handles:
            await asyncio.gather(
                *(h.task for h in handles if h.task is not None), return_exceptions=True
            )
        self.logger.info("workflow_engine_shutdown", aborted=len(handles))

    async def _run(
        self,
        graph: CompiledGraph,
        ctx: RunContext,
        recorder: RunRecorder,
        handle: RunHandle,
        timeout_ms: int,
    ) -> WorkflowExecutionResult:
        with structlog.contextvars.bound_contextvars(run_id=ctx.run_id, agent_id=ctx.agent_id):
            self.logger.info(
                "workflow_run_started",
                nodes=len(graph.nodes),
                layers=len(graph.layers),
                depth=ctx.depth,
            )
            body = asyncio.ensure_future(self._run_layers(graph, ctx, recorder))
            waiter = asyncio.ensure_future(ctx.cancel_event.wait())
            try:
                done, _ = await asyncio.wait(
                    {body, waiter},
                    timeout=timeout_ms / 1000.0,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                waiter.cancel()
                await self._cancel_body(body)
                recorder.fail_running(RunAbortedError("cancelled").message)
                raise

            if body in done:
                waiter.cancel()
                try:
                    error = body.result()
                except Exception as exc:
                    self.logger.error(
                        "workflow_run_crashed", error=str(exc), error_type=type(exc).__name__
                    )
                    recorder.fail_running(_format_error(exc))
                    error = _format_error(exc)
                result = recorder.seal(success=error is None, error=error)
            else:
                if waiter in done:
                    reason = handle.reason or "aborted"
                else:
                    reason = WORKFLOW_TIMEOUT_REASON
                    handle.reason = reason
                    ctx.cancel_event.set()
                    waiter.cancel()
                await self._cancel_body(body)
                abort = RunAbortedError(reason)
                recorder.fail_running(abort.message)
                self.logger.warning("workflow_run_aborted", reason=reason)
                result = recorder.seal(success=False, error=abort.message, aborted=True)

            await recorder.drain()
            log_workflow_trace(recorder.trace(), self.logger)
            self.logger.info(
                "workflow_run_finished",
                success=result.success,
                aborted=result.aborted,
                duration_ms=result.total_duration_ms,
            )
            self._record_run(ctx, result)
            return result

    async def _cancel_body(self, body: asyncio.Future) -> None:
        if body.done():
            return
        body.cancel()
        await asyncio.gather(body, return_exceptions=True)

    async def _run_layers(
        self, graph: CompiledGraph, ctx: RunContext, recorder: RunRecorder
    ) -> Optional[str]:
        """Walk the graph; returns the run error when a ``fail``-policy node halts it."""
        resolver = TemplateResolver(
            ctx.variables,
            run_input=ctx.trigger_input,
            run_id=ctx.run_id,
            tenant_id=ctx.tenant_id,
        )
        position = {node_id: idx for idx, node_id in enumerate(graph.ordered_node_ids())}
        remaining = dict(graph.in_degree)
        live_edges: Set[Edge] = set()
        forwarded: Dict[str, Any] = {}
        current = [node_id for node_id in graph.ordered_node_ids() if remaining[node_id] == 0]

        while current:
            runnable: List[str] = []
            for node_id in current:
                incoming = graph.incoming[node_id]
                if not incoming or any(edge in live_edges for edge in incoming):
                    runnable.append(node_id)
                else:
                    recorder.skip(node_id, "no live incoming edge")
                    self.logger.info("workflow_node_skipped", node=node_id)

            outcomes = await asyncio.gather(
                *(
                    self._run_node(graph, node_id, ctx, recorder, resolver, live_edges, forwarded)
                    for node_id in runnable
                )
            )

            halting = [outcome for outcome in outcomes if outcome.halts]
            if halting:
                first = halting[0]
                skipped = recorder.skip_pending(RUN_HALTED_REASON)
                if skipped:
                    self.logger.info("workflow_nodes_skipped_after_halt", nodes=skipped)
                return f"node {first.node_id} failed: {first.error}"

            for outcome in outcomes:
                node = graph.nodes[outcome.node_id]
                live, _dead = self.router.split_edges(
                    node,
                    ctx.variables.get(outcome.node_id),
                    graph.outgoing[outcome.node_id],
                    failed=outcome.failed,
                )
                live_edges.update(live)

            ready: List[str] = []
            for node_id in current:
                for target in graph.adjacency[node_id]:
                    remaining[target] -= 1
                    if remaining[target] == 0:
                        ready.append(target)
            current = sorted(ready, key=position.__getitem__)
        return None

    def _upstream(
        self, graph: CompiledGraph, node_id: str, live_edges: Set[Edge], forwarded: Dict[str, Any]
    ) -> Dict[str, Any]:
        upstream: Dict[str, Any] = {}
        for edge in graph.incoming[node_id]:
            if edge in live_edges and edge.source not in upstream and edge.source in forwarded:
                upstream[edge.source] = forwarded[edge.source]
        return upstream

    async def _run_node(
        self,
        graph: CompiledGraph,
        node_id: str,
        ctx: RunContext,
        recorder: RunRecorder,
        resolver: TemplateResolver,
        live_edges: Set[Edge],
        forwarded: Dict[str, Any],
    ) -> _NodeOutcome:
        node = graph.nodes[node_id]
        executor = self.registry[node.kind]
        upstream = self._upstream(graph, node_id, live_edges, forwarded)
        if not graph.incoming[node_id]:
            input_value: Any = ctx.trigger_input
        elif len(upstream) == 1:
            input_value = next(iter(upstream.values()))
        else:
            input_value = upstream

        recorder.mark_running(node_id)
        started = time.monotonic()
        attempts = 0
        try:
            step = build_step_input(node, upstream, input_value, resolver, ctx.defaults)
            output, attempts = await self._execute_node_with_retry(node, executor, step, ctx)
        except _NodeFailed as failure:
            return self._handle_node_failure(
                node, ctx, recorder, forwarded, failure.message, failure.attempts, started
            )
        except ServiceError as exc:
            return self._handle_node_failure(
                node, ctx, recorder, forwarded, exc.message, max(attempts, 1), started
            )

        ctx.variables.set(node_id, output)
        forwarded[node_id] = input_value if node.kind in BRANCHING_KINDS else output
        recorder.complete(
            node_id,
            output,
            duration_ms=int((time.monotonic() - started) * 1000),
            attempts=attempts,
        )
        return _NodeOutcome(node_id)

    def _handle_node_failure(
        self,
        node: NodeBase,
        ctx: RunContext,
        recorder: RunRecorder,
        forwarded: Dict[str, Any],
        error: str,
        attempts: int,
        started: float,
    ) -> _NodeOutcome:
        policy = node.config.error_handling
        self.logger.warning(
            "workflow_node_failed",
            node=node.id,
            kind=node.kind,
            policy=policy,
            attempts=attempts,
            error=error,
        )
        recorder.fail(
            node.id,
            error,
            duration_ms=int((time.monotonic() - started) * 1000),
            attempts=attempts,
        )
        if self.activity is not None and ctx.tenant_id:
            self.activity.append(
                ctx.tenant_id,
                "logs",
                f"node {node.display_label} failed: {error}",
                title=f"{node.kind} node failed",
                agent_id=ctx.agent_id,
                run_id=ctx.run_id,
                level="error",
                meta={"node_id": node.id},
            )
        if policy == "fail":
            return _NodeOutcome(node.id, failed=True, error=error, halts=True)

        substitute = node.config.default_value if policy == "default_value" else ""
        ctx.variables.set(node.id, substitute)
        forwarded[node.id] = substitute
        return _NodeOutcome(node.id, failed=True, error=error)

    async def _execute_node_with_retry(
        self,
        node: NodeBase,
        executor: StepExecutor,
        step: Any,
        ctx: RunContext,
    ) -> tuple[Any, int]:
        """Run one node with its timeout and retry policy.

        Each attempt is bounded by ``asyncio.wait_for``; retry waits end early
        when the run is cancelled. Returns ``(output, attempts)`` or raises
        ``_NodeFailed`` once attempts are exhausted.
        """
        config = node.config
        retryable = isinstance(config, RetryableConfig)
        max_retries = config.retry_count if retryable else 0
        node_timeout_ms = (
            (config.timeout if retryable else None)
            or executor.default_timeout_ms
            or DEFAULT_NODE_TIMEOUT_MS
        )

        last_error: Optional[BaseException] = None
        attempt = 0
        while attempt <= max_retries:
            attempt += 1
            try:
                output = await asyncio.wait_for(
                    executor.execute(step, ctx), timeout=node_timeout_ms / 1000.0
                )
                if attempt > 1:
                    self.logger.info("workflow_node_recovered", node=node.id, attempts=attempt)
                return output, attempt
            except asyncio.TimeoutError:
                last_error = ScriptTimeoutError(
                    f"node timed out after {node_timeout_ms} ms", node_id=node.id
                )
                self.logger.warning(
                    "workflow_node_timeout",
                    node=node.id,
                    attempt=attempt,
                    timeout_ms=node_timeout_ms,
                )
            except Exception as exc:
                last_error = exc
                if max_retries:
                    self.logger.warning(
                        "workflow_node_retry",
                        node=node.id,
                        attempt=attempt,
                        max_retries=max_retries,
                        error=_format_error(exc),
                    )

            if attempt > max_retries:
                break
            sleep_ms = _backoff_ms(config, attempt)
            if sleep_ms > 0:
                self.logger.info(
                    "workflow_node_backoff", node=node.id, attempt=attempt, backoff_ms=sleep_ms
                )
                try:
                    await asyncio.wait_for(ctx.cancel_event.wait(), timeout=sleep_ms / 1000.0)
                except asyncio.TimeoutError:
                    pass
            if ctx.cancelled:
                break

        if max_retries:
            self.logger.error(
                "workflow_node_retries_exhausted",
                node=node.id,
                attempts=attempt,
                error=_format_error(last_error) if last_error else None,
            )
        raise _NodeFailed(
            _format_error(last_error) if last_error else "unknown error", attempt
        )

    def _record_run(self, ctx: RunContext, result: WorkflowExecutionResult) -> None:
        if self.activity is None or not ctx.tenant_id:
            return
        counts: Dict[str, int] = {}
        for node_result in result.node_results:
            counts[node_result.status.value] = counts.get(node_result.status.value, 0) + 1
        status = "succeeded" if result.success else ("aborted" if result.aborted else "failed")
        summary = f"run {status} in {result.total_duration_ms} ms"
        if result.error:
            summary += f": {result.error}"
        self.activity.append(
            ctx.tenant_id,
            "execution_results",
            summary,
            title=f"workflow run {status}",
            agent_id=ctx.agent_id,
            run_id=result.run_id,
            level="info" if result.success else "error",
            meta={"counts": counts, "final_output": result.final_output[:500]},
        )
