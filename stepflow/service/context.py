from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional


class VariablePool(Mapping[str, Any]):
    """Run-scoped map of node id to completed output.

    Write-once per node id: the pool only grows, and a value is never replaced
    after it is written. Concurrent nodes of one layer write distinct keys, so
    the single-threaded event loop makes ``set`` atomic.
    """

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}

    def set(self, node_id: str, value: Any) -> None:
        if node_id in self._values:
            raise RuntimeError(f"variable pool already holds a value for node {node_id!r}")
        self._values[node_id] = value

    def __getitem__(self, node_id: str) -> Any:
        return self._values[node_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)


@dataclass
class RunContext:
    """Ephemeral state for one invocation of a workflow definition.

    ``defaults`` carries tenant/agent level settings (model, credentials) that
    sit below a node's own config when its effective input is built.
    """

    trigger_input: str = ""
    tenant_id: Optional[str] = None
    agent_id: Optional[str] = None
    defaults: Dict[str, Any] = field(default_factory=dict)
    notify_emails: List[str] = field(default_factory=list)
    depth: int = 0
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    variables: VariablePool = field(default_factory=VariablePool)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def child(self, *, agent_id: Optional[str], trigger_input: str) -> "RunContext":
        """Context for a delegated run, one level deeper, sharing the tenant.

        The child gets its own cancel event; aborting the parent cancels the
        delegate task, which cancels the child run with it.
        """
        return RunContext(
            trigger_input=trigger_input,
            tenant_id=self.tenant_id,
            agent_id=agent_id,
            defaults=dict(self.defaults),
            notify_emails=list(self.notify_emails),
            depth=self.depth + 1,
        )
