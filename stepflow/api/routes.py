from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Body, Path, Query
from fastapi.responses import StreamingResponse

from stepflow.api.schemas import (
    AbortRunRequest,
    AgentRequest,
    AgentResponse,
    AgentRunRequest,
    Envelope,
    RunWorkflowRequest,
    ValidateWorkflowRequest,
)
from stepflow.logging import get_logger
from stepflow.service.agents import Agent
from stepflow.service.context import RunContext
from stepflow.service.graph import load_definition
from stepflow.service.recorder import NodeStatus
from stepflow.service.runtime import get_runtime
from stepflow.service.workflow import RunHandle

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ID_PATTERN = r"^[A-Za-z0-9_.:-]{1,128}$"


def _run_context(runtime, body: RunWorkflowRequest) -> RunContext:
    return RunContext(
        tenant_id=body.tenant_id or runtime.settings.default_tenant_id,
        defaults=dict(body.defaults),
        notify_emails=list(body.notify_emails),
    )


def _agent_to_response(agent: Agent) -> dict:
    resp = AgentResponse(
        id=agent.id,
        name=agent.name,
        tenant_id=agent.tenant_id,
        status=agent.status,
        default_model=agent.default_model,
        notify_emails=list(agent.notify_emails),
        cron_expression=agent.cron_expression,
        definition=agent.definition.model_dump(mode="json", by_alias=True),
    )
    return resp.model_dump(mode="json", by_alias=True)


def _ndjson(payload: dict) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str) + "\n"


@router.post("/workflows/validate", response_model=Envelope, tags=["workflows"])
async def validate_workflow(body: ValidateWorkflowRequest):
    runtime = get_runtime()
    graph = runtime.engine.compile(body.definition)
    return Envelope(
        status="ok",
        data={"valid": True, "layers": graph.layers, "nodeCount": len(graph.nodes)},
    )


@router.post("/workflows/run", response_model=Envelope, tags=["workflows"])
async def run_workflow(body: RunWorkflowRequest):
    runtime = get_runtime()
    ctx = _run_context(runtime, body)
    result = await runtime.engine.execute(
        body.definition, body.input, ctx, timeout_ms=body.timeout_ms
    )
    logger.info(
        "workflow_run_requested",
        run_id=result.run_id,
        success=result.success,
        aborted=result.aborted,
    )
    return Envelope(status="ok", data=result.to_wire())


async def _stream_run(handle: RunHandle, queue: "asyncio.Queue[dict]") -> AsyncIterator[str]:
    task = handle.task
    try:
        yield _ndjson({"type": "started", "runId": handle.run_id})
        while not (task.done() and queue.empty()):
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield _ndjson(getter.result())
            else:
                getter.cancel()
        result = await handle.result()
        yield _ndjson({"type": "final", "result": result.to_wire()})
    finally:
        if not task.done():
            # client went away mid-stream
            handle.abort("client_disconnected")


@router.post("/workflows/test-run", tags=["workflows"])
async def test_run_workflow(body: RunWorkflowRequest):
    """Run an inline definition and stream node transitions as NDJSON."""
    runtime = get_runtime()
    queue: asyncio.Queue[dict] = asyncio.Queue()

    def on_progress(node_id: str, status: NodeStatus, output: Any, error: Optional[str]) -> None:
        queue.put_nowait(
            {
                "type": "update",
                "nodeId": node_id,
                "status": status.value,
                "output": output,
                "error": error,
            }
        )

    # compile errors surface as a 400 envelope before streaming starts
    handle = runtime.engine.start(
        body.definition,
        body.input,
        _run_context(runtime, body),
        on_progress,
        timeout_ms=body.timeout_ms,
    )
    return StreamingResponse(_stream_run(handle, queue), media_type="application/x-ndjson")


@router.post("/runs/{run_id}/abort", response_model=Envelope, tags=["workflows"])
async def abort_run(
    run_id: str = Path(..., max_length=64),
    body: Optional[AbortRunRequest] = Body(None),
):
    runtime = get_runtime()
    reason = body.reason if body else "aborted"
    signalled = runtime.engine.abort(run_id, reason)
    return Envelope(status="ok", data={"runId": run_id, "aborted": signalled, "reason": reason})


@router.get("/agents", response_model=Envelope, tags=["agents"])
async def list_agents(tenant_id: Optional[str] = Query(None, alias="tenantId", max_length=255)):
    runtime = get_runtime()
    agents = sorted(runtime.agents.list(tenant_id), key=lambda agent: agent.id)
    return Envelope(status="ok", data={"items": [_agent_to_response(a) for a in agents]})


@router.get("/agents/{agent_id}", response_model=Envelope, tags=["agents"])
async def get_agent(agent_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_agent_to_response(runtime.agents.get(agent_id)))


@router.put("/agents/{agent_id}", response_model=Envelope, tags=["agents"])
async def put_agent(body: AgentRequest, agent_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    agent = Agent(
        id=agent_id,
        name=body.name or agent_id,
        tenant_id=body.tenant_id or runtime.settings.default_tenant_id,
        definition=load_definition(body.definition),
        default_model=body.default_model,
        status=body.status,
        notify_emails=list(body.notify_emails),
    )
    saved = runtime.save_agent(agent)
    return Envelope(status="ok", data=_agent_to_response(saved))


@router.delete("/agents/{agent_id}", response_model=Envelope, tags=["agents"])
async def delete_agent(agent_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    agent = runtime.delete_agent(agent_id)
    return Envelope(status="ok", data={"id": agent.id, "deleted": True})


@router.post("/agents/{agent_id}/pause", response_model=Envelope, tags=["agents"])
async def pause_agent(agent_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    agent = runtime.set_agent_status(agent_id, "paused")
    return Envelope(status="ok", data=_agent_to_response(agent))


@router.post("/agents/{agent_id}/resume", response_model=Envelope, tags=["agents"])
async def resume_agent(agent_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    agent = runtime.set_agent_status(agent_id, "active")
    return Envelope(status="ok", data=_agent_to_response(agent))


@router.post("/agents/{agent_id}/run", response_model=Envelope, tags=["agents"])
async def run_agent(
    agent_id: str = Path(..., pattern=_ID_PATTERN),
    body: Optional[AgentRunRequest] = Body(None),
):
    runtime = get_runtime()
    result = await runtime.run_agent(agent_id, body.input if body else "")
    return Envelope(status="ok", data=result.to_wire())


@router.get("/schedules", response_model=Envelope, tags=["schedules"])
async def list_schedules():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={
            "running": runtime.scheduler.running,
            "items": [job.to_dict() for job in runtime.scheduler.jobs()],
        },
    )


@router.post("/schedules/sync", response_model=Envelope, tags=["schedules"])
async def sync_schedules():
    runtime = get_runtime()
    changes = runtime.scheduler.sync(runtime.agents.list())
    return Envelope(status="ok", data=changes)
