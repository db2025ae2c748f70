from __future__ import annotations

import asyncio
import inspect
import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stepflow.logging import get_logger
from stepflow.service.graph import CompiledGraph

logger = get_logger(__name__)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED})


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class NodeExecutionResult(_CamelModel):
    node_id: str
    kind: str
    label: str
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: int = 0
    attempts: int = 0


class WorkflowExecutionResult(_CamelModel):
    run_id: str
    success: bool
    final_output: str = ""
    node_results: List[NodeExecutionResult] = Field(default_factory=list)
    total_duration_ms: int = 0
    error: Optional[str] = None
    aborted: bool = False

    def result_for(self, node_id: str) -> Optional[NodeExecutionResult]:
        for result in self.node_results:
            if result.node_id == node_id:
                return result
        return None


# (node_id, status, output, error); may return an awaitable
ProgressCallback = Callable[[str, NodeStatus, Any, Optional[str]], Any]


def stringify_output(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunRecorder:
    """Accumulates one result per node and seals the run summary.

    Records are created ``pending`` in structural layer order when the run is
    scheduled, so the summary lists every node exactly once in a stable order.
    Each record is finalized at most once; a second terminal write is a bug in
    the scheduler and raises.
    """

    def __init__(
        self,
        graph: CompiledGraph,
        run_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.graph = graph
        self.run_id = run_id
        self.on_progress = on_progress
        self._results: Dict[str, NodeExecutionResult] = {}
        for node_id in graph.ordered_node_ids():
            node = graph.nodes[node_id]
            self._results[node_id] = NodeExecutionResult(
                node_id=node_id, kind=node.kind, label=node.display_label
            )
        self._completion_order: List[str] = []
        self._started = time.monotonic()
        self._pending_callbacks: Set[asyncio.Task] = set()
        self._sealed: Optional[WorkflowExecutionResult] = None

    def get(self, node_id: str) -> NodeExecutionResult:
        return self._results[node_id]

    def is_terminal(self, node_id: str) -> bool:
        return self._results[node_id].status in TERMINAL_STATUSES

    def mark_running(self, node_id: str) -> None:
        result = self._results[node_id]
        if result.status != NodeStatus.PENDING:
            raise RuntimeError(f"node {node_id} is {result.status.value}, cannot start")
        result.status = NodeStatus.RUNNING
        result.started_at = _now()
        self._emit(node_id, NodeStatus.RUNNING, None, None)

    def complete(
        self, node_id: str, output: Any, *, duration_ms: int, attempts: int = 1
    ) -> None:
        result = self._finalize(node_id, NodeStatus.COMPLETED, duration_ms, attempts)
        result.output = output
        self._completion_order.append(node_id)
        self._emit(node_id, NodeStatus.COMPLETED, output, None)

    def fail(
        self, node_id: str, error: str, *, duration_ms: int, attempts: int = 1
    ) -> None:
        result = self._finalize(node_id, NodeStatus.FAILED, duration_ms, attempts)
        result.error = error
        self._emit(node_id, NodeStatus.FAILED, None, error)

    def skip(self, node_id: str, reason: Optional[str] = None) -> None:
        result = self._finalize(node_id, NodeStatus.SKIPPED, 0, 0)
        result.error = reason
        self._emit(node_id, NodeStatus.SKIPPED, None, reason)

    def skip_pending(self, reason: str) -> List[str]:
        """Skip every node never scheduled (used when a run halts early)."""
        skipped = [
            node_id
            for node_id, result in self._results.items()
            if result.status == NodeStatus.PENDING
        ]
        for node_id in skipped:
            self.skip(node_id, reason)
        return skipped

    def fail_running(self, error: str) -> List[str]:
        """Fail every node still ``running`` (used when a run is aborted)."""
        failed = []
        for node_id, result in self._results.items():
            if result.status != NodeStatus.RUNNING:
                continue
            elapsed = 0
            if result.started_at is not None:
                elapsed = int((_now() - result.started_at).total_seconds() * 1000)
            self.fail(node_id, error, duration_ms=elapsed, attempts=max(result.attempts, 1))
            failed.append(node_id)
        return failed

    def _finalize(
        self, node_id: str, status: NodeStatus, duration_ms: int, attempts: int
    ) -> NodeExecutionResult:
        result = self._results[node_id]
        if result.status in TERMINAL_STATUSES:
            raise RuntimeError(
                f"node {node_id} already sealed as {result.status.value}"
            )
        result.status = status
        result.finished_at = _now()
        result.duration_ms = max(0, int(duration_ms))
        result.attempts = attempts
        return result

    def _emit(
        self, node_id: str, status: NodeStatus, output: Any, error: Optional[str]
    ) -> None:
        if self.on_progress is None:
            return
        try:
            outcome = self.on_progress(node_id, status, output, error)
        except Exception as exc:
            logger.warning(
                "workflow_progress_callback_failed",
                node_id=node_id,
                status=status.value,
                error=str(exc),
            )
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._pending_callbacks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._pending_callbacks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("workflow_progress_callback_failed", error=str(exc))

    async def drain(self) -> None:
        """Wait for scheduled async progress callbacks to finish."""
        if self._pending_callbacks:
            await asyncio.gather(*list(self._pending_callbacks), return_exceptions=True)

    def final_output(self) -> str:
        completed_outputs = [
            node_id
            for node_id in self._completion_order
            if self.graph.nodes[node_id].kind == "output"
        ]
        if completed_outputs:
            return stringify_output(self._results[completed_outputs[-1]].output)
        if self._completion_order:
            return stringify_output(self._results[self._completion_order[-1]].output)
        return ""

    def seal(
        self, *, success: bool, error: Optional[str] = None, aborted: bool = False
    ) -> WorkflowExecutionResult:
        if self._sealed is not None:
            return self._sealed
        self._sealed = WorkflowExecutionResult(
            run_id=self.run_id,
            success=success,
            final_output=self.final_output(),
            node_results=[result.model_copy() for result in self._results.values()],
            total_duration_ms=int((time.monotonic() - self._started) * 1000),
            error=error,
            aborted=aborted,
        )
        return self._sealed

    def trace(self) -> List[dict]:
        return [
            {
                "node_id": result.node_id,
                "status": result.status.value,
                "duration_ms": result.duration_ms,
                "attempts": result.attempts,
                **({"error": result.error} if result.error else {}),
            }
            for result in self._results.values()
        ]
