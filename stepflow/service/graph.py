"""Graph compilation: validation, adjacency/in-degree maps and structural layers.

Compilation is pure: it either returns a ``CompiledGraph`` or raises
``StructuralError`` listing every problem it found. Layering follows Kahn's
algorithm; a node lands in layer ``k`` when the last of its predecessors sits
in layer ``k - 1``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from pydantic import ValidationError as PydanticValidationError

from stepflow.logging import get_logger
from stepflow.service.definition import (
    BRANCHING_KINDS,
    Edge,
    NodeBase,
    WorkflowDefinition,
)
from stepflow.service.errors import StructuralError
from stepflow.service.templates import INPUT_TOKENS, SYS_TOKEN, references

logger = get_logger(__name__)


class ConfigValidator(Protocol):
    def validate(self, config: Any) -> Optional[str]: ...


@dataclass
class CompiledGraph:
    definition: WorkflowDefinition
    nodes: Dict[str, NodeBase]
    adjacency: Dict[str, List[str]]
    in_degree: Dict[str, int]
    incoming: Dict[str, List[Edge]]
    outgoing: Dict[str, List[Edge]]
    layers: List[List[str]]
    layer_index: Dict[str, int] = field(default_factory=dict)

    def predecessors(self, node_id: str) -> List[str]:
        """Distinct predecessor ids in edge-declaration order."""
        seen: List[str] = []
        for edge in self.incoming.get(node_id, []):
            if edge.source not in seen:
                seen.append(edge.source)
        return seen

    def ancestors(self, node_id: str) -> Set[str]:
        found: Set[str] = set()
        stack = list(self.predecessors(node_id))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self.predecessors(current))
        return found

    def ordered_node_ids(self) -> List[str]:
        return [node_id for layer in self.layers for node_id in layer]


def _problems_from_pydantic(exc: PydanticValidationError, raw: Any) -> List[dict]:
    raw_nodes = raw.get("nodes") if isinstance(raw, Mapping) else None
    problems = []
    for error in exc.errors():
        loc = error.get("loc", ())
        problem: Dict[str, Any] = {
            "loc": ".".join(str(part) for part in loc),
            "message": error.get("msg", "invalid value"),
        }
        if (
            len(loc) >= 2
            and loc[0] == "nodes"
            and isinstance(loc[1], int)
            and isinstance(raw_nodes, list)
            and loc[1] < len(raw_nodes)
            and isinstance(raw_nodes[loc[1]], Mapping)
        ):
            problem["node_id"] = raw_nodes[loc[1]].get("id")
        problems.append(problem)
    return problems


def load_definition(raw: Any) -> WorkflowDefinition:
    """Validate a raw mapping into a typed ``WorkflowDefinition``."""
    if isinstance(raw, WorkflowDefinition):
        return raw
    if not isinstance(raw, Mapping):
        raise StructuralError(
            "workflow definition must be an object with nodes and edges",
            problems=[{"message": f"got {type(raw).__name__}"}],
        )
    try:
        return WorkflowDefinition.model_validate(dict(raw))
    except PydanticValidationError as exc:
        raise StructuralError(
            "invalid workflow definition", problems=_problems_from_pydantic(exc, raw)
        ) from exc


def _kahn_layers(
    order: List[str], adjacency: Dict[str, List[str]], in_degree: Dict[str, int]
) -> tuple[List[List[str]], List[str]]:
    """Return (layers, unconsumed node ids)."""
    position = {node_id: idx for idx, node_id in enumerate(order)}
    remaining = dict(in_degree)
    current = [node_id for node_id in order if remaining[node_id] == 0]
    layers: List[List[str]] = []
    while current:
        layers.append(current)
        ready: List[str] = []
        for node_id in current:
            for target in adjacency[node_id]:
                remaining[target] -= 1
                if remaining[target] == 0:
                    ready.append(target)
        current = sorted(ready, key=position.__getitem__)
    leftover = [node_id for node_id in order if remaining[node_id] > 0]
    return layers, leftover


def compile_graph(
    definition: WorkflowDefinition | Mapping[str, Any],
    registry: Optional[Mapping[str, ConfigValidator]] = None,
) -> CompiledGraph:
    """Validate ``definition`` and build the graph used by the scheduler.

    When ``registry`` is given each node's config is also checked by its
    executor's ``validate``, and a kind without an executor is rejected.
    """
    definition = load_definition(definition)
    problems: List[dict] = []

    if not definition.nodes:
        raise StructuralError(
            "workflow has no nodes", problems=[{"message": "workflow has no nodes"}]
        )

    nodes: Dict[str, NodeBase] = {}
    order: List[str] = []
    for node in definition.nodes:
        if node.id in nodes:
            problems.append({"node_id": node.id, "message": "duplicate node id"})
            continue
        nodes[node.id] = node
        order.append(node.id)

    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in order}
    in_degree: Dict[str, int] = {node_id: 0 for node_id in order}
    incoming: Dict[str, List[Edge]] = {node_id: [] for node_id in order}
    outgoing: Dict[str, List[Edge]] = {node_id: [] for node_id in order}

    for edge in definition.edges:
        missing = [ref for ref in (edge.source, edge.target) if ref not in nodes]
        if missing:
            problems.append(
                {
                    "edge_id": edge.id,
                    "message": f"edge references unknown node(s): {', '.join(missing)}",
                }
            )
            continue
        if edge.source == edge.target:
            problems.append(
                {"edge_id": edge.id, "node_id": edge.source, "message": "self-loop creates a cycle"}
            )
            continue
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1
        incoming[edge.target].append(edge)
        outgoing[edge.source].append(edge)

    layers, leftover = _kahn_layers(order, adjacency, in_degree)
    if leftover:
        problems.append(
            {"node_ids": leftover, "message": "cycle detected among nodes: " + ", ".join(leftover)}
        )

    graph = CompiledGraph(
        definition=definition,
        nodes=nodes,
        adjacency=adjacency,
        in_degree=in_degree,
        incoming=incoming,
        outgoing=outgoing,
        layers=layers,
        layer_index={
            node_id: idx for idx, layer in enumerate(layers) for node_id in layer
        },
    )

    problems.extend(_check_branch_tags(graph))
    if not leftover:
        problems.extend(_check_aggregator_sources(graph))
        _warn_non_ancestor_references(graph)
    problems.extend(_check_configs(graph, registry))

    if problems:
        raise StructuralError(
            problems[0].get("message", "invalid workflow definition"), problems=problems
        )
    return graph


def _check_branch_tags(graph: CompiledGraph) -> List[dict]:
    problems = []
    for node_id, edges in graph.outgoing.items():
        node = graph.nodes[node_id]
        for edge in edges:
            if edge.branch_tag is None:
                continue
            if node.kind not in BRANCHING_KINDS:
                problems.append(
                    {
                        "edge_id": edge.id,
                        "message": f"branch tag on edge from {node.kind} node {node_id} which has no selector",
                    }
                )
            elif node.kind == "condition" and edge.branch_tag not in {"true", "false"}:
                problems.append(
                    {
                        "edge_id": edge.id,
                        "message": f"condition edge tag must be 'true' or 'false', got {edge.branch_tag!r}",
                    }
                )
            elif node.kind == "classifier":
                keys = {category.key for category in node.config.categories}
                if edge.branch_tag not in keys:
                    problems.append(
                        {
                            "edge_id": edge.id,
                            "message": f"classifier edge tag {edge.branch_tag!r} is not a category of {node_id}",
                        }
                    )
    return problems


def _check_aggregator_sources(graph: CompiledGraph) -> List[dict]:
    problems = []
    for node_id, node in graph.nodes.items():
        if node.kind != "aggregator":
            continue
        ancestors = graph.ancestors(node_id)
        for reference in node.config.aggregate_variables:
            source = reference.split(".", 1)[0]
            if source in INPUT_TOKENS or source == SYS_TOKEN:
                continue
            if source not in ancestors:
                problems.append(
                    {
                        "node_id": node_id,
                        "message": f"aggregator source {source!r} is not upstream of {node_id}",
                    }
                )
    return problems


def _warn_non_ancestor_references(graph: CompiledGraph) -> None:
    for node_id, node in graph.nodes.items():
        config = node.config
        payload = config.model_dump(exclude=set(config.template_exclude))
        refs = references(payload) - graph.ancestors(node_id)
        if refs:
            logger.warning(
                "workflow_template_non_ancestor_reference",
                node_id=node_id,
                references=sorted(refs),
            )


def _check_configs(
    graph: CompiledGraph, registry: Optional[Mapping[str, ConfigValidator]]
) -> List[dict]:
    if registry is None:
        return []
    problems = []
    for node_id, node in graph.nodes.items():
        executor = registry.get(node.kind)
        if executor is None:
            problems.append(
                {"node_id": node_id, "message": f"no executor registered for kind {node.kind!r}"}
            )
            continue
        error = executor.validate(node.config)
        if error:
            problems.append({"node_id": node_id, "message": error})
    return problems
