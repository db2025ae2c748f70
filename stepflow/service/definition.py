"""Typed workflow definition model.

A definition is a list of nodes and edges. Each node kind has its own config
model, and the node itself is a discriminated union on ``kind`` so a malformed
config is rejected when the definition is loaded rather than when the node is
dispatched.

Definitions arrive either in the canonical shape::

    {"id": "n1", "kind": "script", "label": "Double", "config": {...}}

or in the visual editor's shape (``type`` + ``data`` on nodes, ``sourceHandle``
on edges); ``WorkflowDefinition`` normalizes the latter on the way in.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

KIND_ALIASES: Dict[str, str] = {
    "start": "trigger",
    "cron_trigger": "trigger",
    "webhook": "trigger",
    "process": "model",
    "llm": "model",
    "code": "script",
    "http_request": "http",
    "knowledge_retrieval": "retrieval",
    "question_classifier": "classifier",
    "variable_aggregator": "aggregator",
    "sub_employee": "delegate",
    "sub_agent": "delegate",
    "end": "output",
    "template_transform": "template",
    "text_template": "template",
    "variable_assignment": "assignment",
    "list_operation": "list",
}

NODE_KINDS = frozenset(
    {
        "trigger",
        "model",
        "script",
        "http",
        "condition",
        "notification",
        "retrieval",
        "classifier",
        "aggregator",
        "delegate",
        "output",
        "template",
        "assignment",
        "list",
    }
)

# kinds whose output carries a branch selector
BRANCHING_KINDS = frozenset({"condition", "classifier"})

ErrorHandling = Literal["fail", "continue", "default_value"]

# definitions asking for more retries are rejected when loaded
MAX_RETRY_COUNT = 10


class NodeConfig(BaseModel):
    """Settings shared by every node kind."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    # field names left untouched by placeholder resolution
    template_exclude: ClassVar[frozenset] = frozenset()

    error_handling: ErrorHandling = "fail"
    default_value: Any = None


class RetryableConfig(NodeConfig):
    """Per-node retry and timeout policy. ``timeout`` and ``retry_interval`` are in ms."""

    timeout: Optional[int] = Field(None, gt=0)
    retry_count: int = Field(0, ge=0, le=MAX_RETRY_COUNT)
    retry_interval: int = Field(1000, ge=0)
    retry_backoff: Literal["fixed", "linear", "exponential"] = "fixed"


class TriggerConfig(NodeConfig):
    cron_expression: Optional[str] = Field(
        None, validation_alias=AliasChoices("cronExpression", "cron_expression", "cron")
    )


class ModelConfig(RetryableConfig):
    prompt: str = ""
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, gt=0)
    output_schema: Optional[Dict[str, Any]] = None


class ScriptConfig(RetryableConfig):
    template_exclude: ClassVar[frozenset] = frozenset({"code"})

    code: str = Field(min_length=1)
    language: Literal["python"] = "python"
    variables: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("language", mode="before")
    @classmethod
    def _normalize_language(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class HttpConfig(RetryableConfig):
    url: str = Field(min_length=1, validation_alias=AliasChoices("url", "httpUrl"))
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = Field(
        "GET", validation_alias=AliasChoices("method", "httpMethod")
    )
    headers: Dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("headers", "httpHeaders")
    )
    body: Any = Field(None, validation_alias=AliasChoices("body", "httpBody"))

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("headers", mode="before")
    @classmethod
    def _parse_headers(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            if not value.strip():
                return {}
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"headers must be a JSON object: {exc.msg}") from exc
        if not isinstance(value, dict):
            raise ValueError("headers must be a mapping")
        return {str(k): str(v) for k, v in value.items()}


ConditionOperator = Literal[
    "contains",
    "not_contains",
    "equals",
    "not_equals",
    "start_with",
    "end_with",
    "is_empty",
    "not_empty",
    "is_null",
    "not_null",
    "regex",
    "gt",
    "gte",
    "lt",
    "lte",
]


class ConditionRule(BaseModel):
    model_config = ConfigDict(extra="ignore")

    variable: str = ""
    operator: ConditionOperator = "contains"
    value: Any = ""


class ConditionConfig(NodeConfig):
    template_exclude: ClassVar[frozenset] = frozenset({"conditions", "expression"})

    conditions: List[ConditionRule] = Field(default_factory=list)
    logical_operator: Literal["AND", "OR"] = "AND"
    expression: Optional[str] = Field(
        None, validation_alias=AliasChoices("expression", "conditionExpression")
    )

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _require_predicate(self) -> "ConditionConfig":
        if not self.conditions and not (self.expression and self.expression.strip()):
            raise ValueError("condition node needs at least one condition or an expression")
        return self


class Category(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    key: str = Field(min_length=1, validation_alias=AliasChoices("key", "id"))
    label: str = ""
    description: str = ""


class ClassifierConfig(RetryableConfig):
    categories: List[Category] = Field(min_length=1)
    instructions: Optional[str] = None
    model: Optional[str] = None
    query: Optional[str] = None
    max_attempts: int = Field(3, ge=1, le=5)

    @field_validator("categories")
    @classmethod
    def _unique_keys(cls, value: List[Category]) -> List[Category]:
        keys = [category.key for category in value]
        if len(keys) != len(set(keys)):
            raise ValueError("category keys must be unique")
        return value


class AggregatorConfig(NodeConfig):
    template_exclude: ClassVar[frozenset] = frozenset({"aggregate_variables"})

    aggregate_variables: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "aggregateVariables", "aggregate_variables", "variables"
        ),
    )
    strategy: Literal["array", "object", "concat", "merge"] = "array"

    @field_validator("aggregate_variables", mode="before")
    @classmethod
    def _strip_braces(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        cleaned = []
        for item in value:
            if isinstance(item, dict):
                # editor shape: {"variable": "node.field"}
                item = item.get("variable") or item.get("value") or ""
            text = str(item).strip()
            if text.startswith("{{") and text.endswith("}}"):
                text = text[2:-2].strip()
            if text:
                cleaned.append(text)
        return cleaned


class NotificationConfig(NodeConfig):
    notification_type: Literal["site", "email", "both"] = Field(
        "site",
        validation_alias=AliasChoices("notificationType", "notification_type", "channel"),
    )
    subject: str = "Workflow notification"
    content: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)

    @field_validator("recipients", mode="before")
    @classmethod
    def _split_recipients(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


class RetrievalConfig(NodeConfig):
    query_type: Literal["knowledge_base", "logs", "notifications", "execution_results"] = (
        "knowledge_base"
    )
    query_keyword: Optional[str] = None
    query_limit: int = Field(
        50, ge=1, le=500, validation_alias=AliasChoices("queryLimit", "query_limit", "limit")
    )
    top_k: int = Field(5, ge=1, le=50)
    query_time_range: Literal["1h", "24h", "7d", "30d", "all"] = "all"


class DelegateConfig(RetryableConfig):
    agent_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("agentId", "agent_id", "linkedEmployeeId"),
    )
    message: Optional[str] = None


class OutputConfig(NodeConfig):
    template_content: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("templateContent", "template_content", "template"),
    )


class TemplateConfig(NodeConfig):
    template_exclude: ClassVar[frozenset] = frozenset({"template_content"})

    template_content: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("templateContent", "template_content", "template"),
    )


class AssignmentConfig(NodeConfig):
    variable_name: str = Field(
        min_length=1, validation_alias=AliasChoices("variableName", "variable_name", "name")
    )
    variable_value: Any = Field(
        None, validation_alias=AliasChoices("variableValue", "variable_value", "value")
    )


ListOperation = Literal["filter", "map", "sort", "slice"]


class ListOperationConfig(NodeConfig):
    """``expression`` is evaluated per item for filter/map/sort (names ``item`` and
    ``index``); for slice it is ``"start,end"`` with either bound optional."""

    template_exclude: ClassVar[frozenset] = frozenset({"expression", "source"})

    operation: ListOperation = Field(
        validation_alias=AliasChoices("operation", "listOperationType", "list_operation_type")
    )
    expression: Optional[str] = Field(
        None, validation_alias=AliasChoices("expression", "listExpression", "list_expression")
    )
    source: Optional[str] = None
    descending: bool = False

    @field_validator("operation", mode="before")
    @classmethod
    def _lower_operation(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _require_expression(self) -> "ListOperationConfig":
        if self.operation in ("filter", "map") and not (self.expression and self.expression.strip()):
            raise ValueError(f"{self.operation} needs an expression")
        return self


class NodeBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    label: Optional[str] = None

    @property
    def display_label(self) -> str:
        return self.label or self.id


class TriggerNode(NodeBase):
    kind: Literal["trigger"] = "trigger"
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ModelNode(NodeBase):
    kind: Literal["model"] = "model"
    config: ModelConfig = Field(default_factory=ModelConfig)


class ScriptNode(NodeBase):
    kind: Literal["script"] = "script"
    config: ScriptConfig


class HttpNode(NodeBase):
    kind: Literal["http"] = "http"
    config: HttpConfig


class ConditionNode(NodeBase):
    kind: Literal["condition"] = "condition"
    config: ConditionConfig


class NotificationNode(NodeBase):
    kind: Literal["notification"] = "notification"
    config: NotificationConfig = Field(default_factory=NotificationConfig)


class RetrievalNode(NodeBase):
    kind: Literal["retrieval"] = "retrieval"
    config: RetrievalConfig = Field(default_factory=RetrievalConfig)


class ClassifierNode(NodeBase):
    kind: Literal["classifier"] = "classifier"
    config: ClassifierConfig


class AggregatorNode(NodeBase):
    kind: Literal["aggregator"] = "aggregator"
    config: AggregatorConfig = Field(default_factory=AggregatorConfig)


class DelegateNode(NodeBase):
    kind: Literal["delegate"] = "delegate"
    config: DelegateConfig


class OutputNode(NodeBase):
    kind: Literal["output"] = "output"
    config: OutputConfig = Field(default_factory=OutputConfig)


class TemplateNode(NodeBase):
    kind: Literal["template"] = "template"
    config: TemplateConfig = Field(default_factory=TemplateConfig)


class AssignmentNode(NodeBase):
    kind: Literal["assignment"] = "assignment"
    config: AssignmentConfig


class ListOperationNode(NodeBase):
    kind: Literal["list"] = "list"
    config: ListOperationConfig


Node = Annotated[
    Union[
        TriggerNode,
        ModelNode,
        ScriptNode,
        HttpNode,
        ConditionNode,
        NotificationNode,
        RetrievalNode,
        ClassifierNode,
        AggregatorNode,
        DelegateNode,
        OutputNode,
        TemplateNode,
        AssignmentNode,
        ListOperationNode,
    ],
    Field(discriminator="kind"),
]


class Edge(BaseModel):
    """Directed dependency; hashable so the scheduler can track live edges in a set."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True
    )

    id: str = ""
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    branch_tag: Optional[str] = None

    @field_validator("branch_tag", mode="before")
    @classmethod
    def _blank_tag_is_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            return {**data, "id": f"{data.get('source')}->{data.get('target')}"}
        return data


def canonical_kind(kind: Any) -> Any:
    if not isinstance(kind, str):
        return kind
    lowered = kind.strip().lower()
    return KIND_ALIASES.get(lowered, lowered)


def _normalize_node(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    kind = raw.get("kind") or raw.get("type")
    if canonical_kind(kind) not in NODE_KINDS and data.get("type"):
        kind = data.get("type")
    config = raw.get("config") if isinstance(raw.get("config"), dict) else data
    label = raw.get("label") or config.get("label")
    normalized: Dict[str, Any] = {
        "id": raw.get("id"),
        "kind": canonical_kind(kind),
        "config": config,
    }
    if label:
        normalized["label"] = str(label)
    return normalized


def _normalize_edge(raw: Any, kinds: Dict[Any, Any]) -> Any:
    if not isinstance(raw, dict):
        return raw
    edge = dict(raw)
    tag = edge.pop("branch_tag", None)
    tag = edge.get("branchTag", tag)
    if tag is None and kinds.get(edge.get("source")) in BRANCHING_KINDS:
        tag = edge.get("sourceHandle")
    edge["branchTag"] = tag
    return edge


class WorkflowDefinition(BaseModel):
    """Immutable input to a run."""

    model_config = ConfigDict(extra="ignore")

    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_editor_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        nodes = [_normalize_node(node) for node in data.get("nodes") or []]
        kinds = {
            node.get("id"): node.get("kind") for node in nodes if isinstance(node, dict)
        }
        edges = [_normalize_edge(edge, kinds) for edge in data.get("edges") or []]
        return {**data, "nodes": nodes, "edges": edges}

    def get_node(self, node_id: str) -> Optional[NodeBase]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None
