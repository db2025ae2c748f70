from __future__ import annotations

from typing import Any, Iterable, List, Optional, Tuple

from stepflow.service.definition import Edge, NodeBase


class BranchRouter:
    """Decides which outgoing edges of a finished node are live.

    Condition nodes produce ``"true"``/``"false"``; classifier nodes produce a
    category key. Untagged edges are always live; tagged edges are live only
    when their tag equals the node's selector.
    """

    def selector_for(self, node: NodeBase, output: Any) -> Optional[str]:
        kind = getattr(node, "kind", None)
        if kind == "condition":
            if isinstance(output, dict):
                output = output.get("result")
            return "true" if _truthy(output) else "false"
        if kind == "classifier":
            if isinstance(output, dict):
                result = output.get("result")
                return str(result) if result is not None else None
            return str(output) if output is not None else None
        return None

    def split_edges(
        self, node: NodeBase, output: Any, edges: Iterable[Edge], *, failed: bool = False
    ) -> Tuple[List[Edge], List[Edge]]:
        """Partition ``edges`` into (live, dead).

        A failed node has no selector, so only its untagged edges stay live even
        when its error policy lets dependents proceed.
        """
        selector = None if failed else self.selector_for(node, output)
        live: List[Edge] = []
        dead: List[Edge] = []
        for edge in edges:
            if edge.branch_tag is None or edge.branch_tag == selector:
                live.append(edge)
            else:
                dead.append(edge)
        return live, dead


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)
