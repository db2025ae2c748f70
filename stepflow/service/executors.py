"""Step executors, one per node kind.

Each executor exposes ``validate(config)``, called by the graph compiler, and
``execute(step, ctx)``, called by the scheduler with a ``StepInput`` whose
config already has placeholders resolved. Failures raise
``NodeExecutionError``; retries and timeouts are handled by the scheduler.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional

from croniter import croniter
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import ValidationError as PydanticValidationError

from stepflow.logging import get_logger
from stepflow.service.agents import AgentGateway
from stepflow.service.context import RunContext
from stepflow.service.definition import (
    AggregatorConfig,
    AssignmentConfig,
    Category,
    ClassifierConfig,
    ConditionConfig,
    ConditionRule,
    DelegateConfig,
    HttpConfig,
    ListOperationConfig,
    ModelConfig,
    NodeBase,
    NodeConfig,
    NotificationConfig,
    OutputConfig,
    RetrievalConfig,
    ScriptConfig,
    TemplateConfig,
    TriggerConfig,
)
from stepflow.service.errors import NodeExecutionError
from stepflow.service.llm import LLMService, extract_json
from stepflow.service.notifications import NotificationService
from stepflow.service.rag import RetrievalService
from stepflow.service.sandbox import (
    AllowlistedFetcher,
    SandboxError,
    ScriptSandbox,
    parse_expression,
    safe_eval_expr,
    validate_script_source,
)
from stepflow.service.templates import TemplateResolver, render_value

logger = get_logger(__name__)


@dataclass
class StepInput:
    """Everything an executor needs for one node dispatch.

    ``effective`` layers run defaults, then explicitly-set config fields, then
    ``input``; executors read typed values from ``config``.
    """

    node_id: str
    kind: str
    config: NodeConfig
    input: Any
    upstream: Dict[str, Any]
    resolver: TemplateResolver
    effective: Dict[str, Any] = field(default_factory=dict)


def build_step_input(
    node: NodeBase,
    upstream: Dict[str, Any],
    input_value: Any,
    resolver: TemplateResolver,
    defaults: Mapping[str, Any],
) -> StepInput:
    config = node.config
    raw = config.model_dump()
    resolved = resolver.resolve(raw, exclude=config.template_exclude)
    try:
        typed = type(config).model_validate(resolved)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {"msg": str(exc)}
        raise NodeExecutionError(
            f"config invalid after placeholder resolution: {first.get('msg')}",
            node_id=node.id,
        ) from exc
    explicit = {name: resolved[name] for name in config.model_fields_set if name in resolved}
    effective = {**dict(defaults), **explicit, "input": input_value}
    return StepInput(
        node_id=node.id,
        kind=node.kind,
        config=typed,
        input=input_value,
        upstream=upstream,
        resolver=resolver,
        effective=effective,
    )


class StepExecutor:
    kind: str = ""
    # used by the scheduler when the node config sets no timeout
    default_timeout_ms: Optional[int] = None

    def validate(self, config: Any) -> Optional[str]:
        return None

    async def execute(self, step: StepInput, ctx: RunContext) -> Any:
        raise NotImplementedError


class TriggerExecutor(StepExecutor):
    kind = "trigger"

    def validate(self, config: TriggerConfig) -> Optional[str]:
        expr = config.cron_expression
        if expr and not croniter.is_valid(expr.strip()):
            return f"invalid cron expression {expr!r}"
        return None

    async def execute(self, step: StepInput, ctx: RunContext) -> Any:
        return step.input


class ModelExecutor(StepExecutor):
    kind = "model"

    def __init__(self, llm: LLMService) -> None:
        self.llm = llm

    def validate(self, config: ModelConfig) -> Optional[str]:
        if config.output_schema is None:
            return None
        try:
            Draft202012Validator.check_schema(config.output_schema)
        except SchemaError as exc:
            return f"invalid output schema: {exc.message}"
        return None

    async def execute(self, step: StepInput, ctx: RunContext) -> Any:
        config: ModelConfig = step.config
        prompt = config.prompt or render_value(step.input)
        model = config.model or step.effective.get("model") or self.llm.default_model
        result = await self.llm.generate(
            prompt,
            system_prompt=config.system_prompt,
            model=model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        content = result.get("content") or ""
        if config.output_schema is None:
            return content
        try:
            parsed = extract_json(content)
        except ValueError as exc:
            raise NodeExecutionError(
                f"model reply is not valid JSON: {exc}", detail={"reply": content[:500]}
            ) from exc
        validator = Draft202012Validator(config.output_schema)
        errors = sorted(validator.iter_errors(parsed), key=lambda e: [str(p) for p in e.path])
        if errors:
            raise NodeExecutionError(
                f"model reply does not match output schema: {errors[0].message}",
                detail={"errors": [e.message for e in errors]},
            )
        return parsed


class ScriptExecutor(StepExecutor):
    kind = "script"

    def __init__(self, sandbox: ScriptSandbox, *, default_timeout_ms: Optional[int] = 30000) -> None:
        self.sandbox = sandbox
        self.default_timeout_ms = default_timeout_ms

    def validate(self, config: ScriptConfig) -> Optional[str]:
        return validate_script_source(config.code)

    async def execute(self, step: StepInput, ctx: RunContext) -> Any:
        config: ScriptConfig = step.config
        kwargs = {
            **config.variables,
            "input": step.input,
            "vars": dict(config.variables),
            "run_input": ctx.trigger_input,
        }
        try:
            return await self.sandbox.run(config.code, kwargs)
        except SandboxError as exc:
            raise NodeExecutionError(str(exc)) from exc


class HttpExecutor(StepExecutor):
    kind = "http"

    def __init__(self, fetcher: AllowlistedFetcher) -> None:
        self.fetcher = fetcher

    def validate(self, config: HttpConfig) -> Optional[str]:
        url = config.url.strip()
        if "{{" in url:
            return None
        if not re.match(r"^https?://[^/\s]+", url, re.IGNORECASE):
            return f"http url must start with http:// or https://, got {url!r}"
        return None

    async def execute(self, step: StepInput, ctx: RunContext) -> Any:
        config: HttpConfig = step.config
        headers = {"Content-Type": "application/json", **config.headers}
        content: Optional[str] = None
        if config.method not in ("GET", "HEAD") and config.body not in (None, ""):
            if isinstance(config.body, (dict, list)):
                content = json.dumps(config.body, ensure_ascii=False)
            else:
                content = str(config.body)
        try:
            response = await self.fetcher.request(
                config.method, config.url.strip(), headers=headers, content=content
            )
        except SandboxError as exc:
            raise NodeExecutionError(str(exc)) from exc

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        if not 200 <= response.status_code < 300:
            raise NodeExecutionError(
                f"HTTP {response.status_code}: {response.text[:500]}",
                detail={"status": response.status_code, "body": payload},
            )
        return payload


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return render_value(value).strip() == ""


def _contains(haystack: Any, needle: str) -> bool:
    if isinstance(haystack, (list, tuple)):
        return any(render_value(item) == needle for item in haystack)
    return needle in render_value(haystack)


# callables usable from condition expressions
EXPRESSION_CALLABLES: Dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
    "contains": lambda haystack, needle: needle in haystack,
}


class ConditionExecutor(StepExecutor):
    kind = "condition"

    def validate(self, config: ConditionConfig) -> Optional[str]:
        if config.expression and config.expression.strip():
            try:
                parse_expression(config.expression.strip())
            except ValueError as exc:
                return str(exc)
        for rule in config.conditions:
            if rule.operator == "regex" and isinstance(rule.value, str) and "{{" not in rule.value:
                try:
                    re.compile(rule.value)
                except re.error as exc:
                    return f"invalid regex {rule.value!r}: {exc}"
        return None

    async def execute(self, step: StepInput, ctx: RunContext) -> bool:
        config: ConditionConfig = step.config
        if config.expression and config.expression.strip():
            names = {
                "input": step.input,
                "run_input": ctx.trigger_input,
                "nodes": ctx.variables.snapshot(),
            }
            try:
                return bool(safe_eval_expr(config.expression.strip(), names, EXPRESSION_CALLABLES))
            except (ValueError, TypeError, ZeroDivisionError) as exc:
                raise NodeExecutionError(f"condition expression failed: {exc}") from exc

        outcomes = (self._evaluate_rule(rule, step) for rule in config.conditions)
        if config.logical_operator == "OR":
            return any(outcomes)
        return all(outcomes)

    def _subject(self, rule: ConditionRule, step: StepInput) -> Any:
        variable = rule.variable.strip()
        if not variable:
            return step.input
        if "{{" in variable:
            return step.resolver.resolve_string(variable)
        return step.resolver.lookup(variable)

    def _evaluate_rule(self, rule: ConditionRule, step: StepInput) -> bool:
        actual = self._subject(rule, step)
        expected = rule.value
        if isinstance(expected, str):
            expected = step.resolver.resolve_string(expected)
        op = rule.operator

        if op == "is_null":
            return actual is None
        if op == "not_null":
            return actual is not None
        if op == "is_empty":
            return _is_empty(actual)
        if op == "not_empty":
            return not _is_empty(actual)
        if op in ("gt", "gte", "lt", "lte"):
            left, right = _to_number(actual), _to_number(expected)
            if left is None or right is None:
                return False
            return {
                "gt": left > right,
                "gte": left >= right,
                "lt": left < right,
                "lte": left <= right,
            }[op]

        text = render_value(actual)
        needle = render_value(expected)
        if op == "contains":
            return _contains(actual, needle)
        if op == "not_contains":
            return not _contains(actual, needle)
        if op == "equals":
            return text == needle
        if op == "not_equals":
            return text != needle
        if op == "start_with":
            return text.startswith(needle)
        if op == "end_with":
            return text.endswith(needle)
        if op == "regex":
            try:
                return re.search(needle, text) is not None
            except re.error as exc:
                raise NodeExecutionError(f"invalid regex {needle!r}: {exc}") from exc
        raise NodeExecutionError(f"unsupported condition operator {op!r}")


_CLASSIFIER_REPLY_SHAPE = (
    '{"category": "<category key>", "confidence": <0..1>, "reasoning": "<short>", '
    '"keywords": ["..."], "urgency": "low|medium|high", "summary": "<one sentence>"}'
)


def _match_category(value: Any, categories: List[Category]) -> Optional[Category]:
    if value is None:
        return None
    wanted = str(value).strip().lower()
    if not wanted:
        return None
    for category in categories:
        if category.key.lower() == wanted:
            return category
    for category in categories:
        if category.label and category.label.lower() == wanted:
            return category
    for category in categories:
        if category.key.lower() in wanted or (category.label and category.label.lower() in wanted):
            return category
    return None


def _coerce_confidence(value: Any) -> float:
    number = _to_number(value)
    if number is None:
        return 0.5
    return max(0.0, min(1.0, number))


class ClassifierExecutor(StepExecutor):
    kind = "classifier"

    def __init__(self, llm: LLMService) -> None:
        self.llm = llm

    def _system_prompt(self, config: ClassifierConfig) -> str:
        lines = ["Classify the user's message into exactly one of these categories:"]
        for category in config.categories:
            label = category.label or category.key
            line = f"- {category.key}: {label}"
            if category.description:
                line += f" ({category.description})"
            lines.append(line)
        if config.instructions:
            lines.append("")
            lines.append(config.instructions)
        lines.append("")
        lines.append(f"Respond with JSON only, in this shape: {_CLASSIFIER_REPLY_SHAPE}")
        return "\n".join(lines)

    async def execute(self, step: StepInput, ctx: RunContext) -> dict:
        config: ClassifierConfig = step.config
        query = config.query or render_value(step.input)
        model = config.model or step.effective.get("model") or self.llm.default_model
        system_prompt = self._system_prompt(config)

        for attempt in range(1, config.max_attempts + 1):
            result = await self.llm.generate(query, system_prompt=system_prompt, model=model)
            content = result.get("content") or ""
            try:
                parsed = extract_json(content)
            except ValueError:
                parsed = None
            if not isinstance(parsed, dict):
                logger.info("classifier_unparseable_reply", node_id=step.node_id, attempt=attempt)
                continue
            category = _match_category(
                parsed.get("category") or parsed.get("result"), config.categories
            )
            if category is None:
                logger.info(
                    "classifier_unknown_category",
                    node_id=step.node_id,
                    attempt=attempt,
                    category=parsed.get("category"),
                )
                continue
            keywords = parsed.get("keywords") or []
            return {
                "result": category.key,
                "label": category.label or category.key,
                "confidence": _coerce_confidence(parsed.get("confidence")),
                "reasoning": str(parsed.get("reasoning") or ""),
                "keywords": [str(k) for k in keywords] if isinstance(keywords, list) else [],
                "urgency": str(parsed.get("urgency") or "medium"),
                "summary": str(parsed.get("summary") or ""),
            }

        fallback = config.categories[0]
        logger.warning(
            "classifier_fallback_category",
            node_id=step.node_id,
            attempts=config.max_attempts,
            category=fallback.key,
        )
        return {
            "result": fallback.key,
            "label": fallback.label or fallback.key,
            "confidence": 0.0,
            "reasoning": f"no usable classification after {config.max_attempts} attempts",
            "keywords": [],
            "urgency": "medium",
            "summary": "",
        }


class AggregatorExecutor(StepExecutor):
    kind = "aggregator"

    async def execute(self, step: StepInput, ctx: RunContext) -> Any:
        config: AggregatorConfig = step.config
        if config.aggregate_variables:
            items = [(ref, step.resolver.lookup(ref)) for ref in config.aggregate_variables]
        else:
            items = list(step.upstream.items())

        if config.strategy == "array":
            return [value for _, value in items]
        if config.strategy == "object":
            return {ref: value for ref, value in items}
        if config.strategy == "concat":
            return "\n".join(render_value(value) for _, value in items if value is not None)

        merged: Dict[str, Any] = {}
        for ref, value in items:
            if isinstance(value, str) and value.strip()[:1] == "{":
                try:
                    value = json.loads(value)
                except ValueError:
                    pass
            if isinstance(value, Mapping):
                merged.update(value)
            else:
                merged[ref] = value
        return merged


class NotificationExecutor(StepExecutor):
    kind = "notification"

    def __init__(self, notifications: NotificationService) -> None:
        self.notifications = notifications

    async def execute(self, step: StepInput, ctx: RunContext) -> dict:
        config: NotificationConfig = step.config
        content = config.content if config.content else render_value(step.input)
        outcome = await self.notifications.send(
            channel=config.notification_type,
            subject=config.subject,
            content=content,
            recipients=config.recipients or ctx.notify_emails,
            tenant_id=ctx.tenant_id,
            agent_id=ctx.agent_id,
            run_id=ctx.run_id,
        )
        requested = {"site": ["site"], "email": ["email"], "both": ["site", "email"]}[
            config.notification_type
        ]
        delivered = {"site": outcome.site_sent, "email": outcome.email_sent}
        if not any(delivered[channel] for channel in requested):
            errors = [
                f"{channel}: {getattr(outcome, channel + '_error') or 'not sent'}"
                for channel in requested
            ]
            raise NodeExecutionError(
                "notification failed: " + "; ".join(errors), detail=outcome.to_dict()
            )
        return outcome.to_dict()


class RetrievalExecutor(StepExecutor):
    kind = "retrieval"

    def __init__(self, retrieval: RetrievalService) -> None:
        self.retrieval = retrieval

    async def execute(self, step: StepInput, ctx: RunContext) -> List[dict]:
        config: RetrievalConfig = step.config
        keyword = config.query_keyword
        if keyword is None:
            keyword = render_value(step.input)
        try:
            return self.retrieval.retrieve(
                ctx.tenant_id,
                config.query_type,
                keyword,
                limit=config.query_limit,
                top_k=config.top_k,
                time_range=config.query_time_range,
            )
        except ValueError as exc:
            raise NodeExecutionError(str(exc)) from exc


class DelegateExecutor(StepExecutor):
    kind = "delegate"

    def __init__(self, gateway: Optional[AgentGateway] = None) -> None:
        self.gateway = gateway

    async def execute(self, step: StepInput, ctx: RunContext) -> str:
        config: DelegateConfig = step.config
        if self.gateway is None:
            raise NodeExecutionError("no agent gateway configured for delegation")
        message = config.message or render_value(step.input)
        return await self.gateway.send_message(config.agent_id, message, ctx)


class OutputExecutor(StepExecutor):
    kind = "output"

    async def execute(self, step: StepInput, ctx: RunContext) -> Any:
        config: OutputConfig = step.config
        if config.template_content:
            return config.template_content
        return step.input


class TemplateExecutor(StepExecutor):
    kind = "template"

    async def execute(self, step: StepInput, ctx: RunContext) -> str:
        config: TemplateConfig = step.config
        if not config.template_content:
            return render_value(step.input)
        return step.resolver.resolve_string(config.template_content)


class AssignmentExecutor(StepExecutor):
    """Names a value so later nodes can address it as ``{{node.<name>}}``.

    Without ``variableValue`` the node's input is assigned.
    """

    kind = "assignment"

    async def execute(self, step: StepInput, ctx: RunContext) -> dict:
        config: AssignmentConfig = step.config
        value = step.input if config.variable_value is None else config.variable_value
        return {config.variable_name: value}


def _parse_slice(expression: Optional[str]) -> tuple:
    text = (expression or "").strip()
    if not text:
        return None, None
    parts = [part.strip() for part in text.split(",")]
    if len(parts) > 2:
        raise ValueError(f"slice expects 'start,end', got {text!r}")
    bounds = [int(part) if part else None for part in parts]
    if len(bounds) == 1:
        bounds.append(None)
    return bounds[0], bounds[1]


class ListOperationExecutor(StepExecutor):
    kind = "list"

    def validate(self, config: ListOperationConfig) -> Optional[str]:
        if config.operation == "slice":
            try:
                _parse_slice(config.expression)
            except ValueError as exc:
                return f"invalid slice bounds: {exc}"
            return None
        if config.expression and config.expression.strip():
            try:
                parse_expression(config.expression.strip())
            except ValueError as exc:
                return str(exc)
        return None

    def _items(self, step: StepInput) -> List[Any]:
        config: ListOperationConfig = step.config
        value = step.input
        if config.source:
            reference = config.source.strip()
            if reference.startswith("{{") and reference.endswith("}}"):
                reference = reference[2:-2].strip()
            value = step.resolver.lookup(reference)
        if isinstance(value, str) and value.strip()[:1] == "[":
            try:
                value = json.loads(value)
            except ValueError:
                pass
        if isinstance(value, tuple):
            value = list(value)
        if not isinstance(value, list):
            raise NodeExecutionError(
                f"list operation needs a list, got {type(value).__name__}"
            )
        return value

    async def execute(self, step: StepInput, ctx: RunContext) -> List[Any]:
        config: ListOperationConfig = step.config
        items = self._items(step)
        expression = (config.expression or "").strip()

        def evaluate(item: Any, index: int) -> Any:
            names = {"item": item, "index": index, "input": step.input}
            return safe_eval_expr(expression, names, EXPRESSION_CALLABLES)

        try:
            if config.operation == "filter":
                return [item for index, item in enumerate(items) if evaluate(item, index)]
            if config.operation == "map":
                return [evaluate(item, index) for index, item in enumerate(items)]
            if config.operation == "sort":
                if not expression:
                    return sorted(items, reverse=config.descending)
                keys = [evaluate(item, index) for index, item in enumerate(items)]
                order = sorted(range(len(items)), key=keys.__getitem__, reverse=config.descending)
                return [items[index] for index in order]
            start, end = _parse_slice(expression)
            return items[start:end]
        except (ValueError, TypeError, ZeroDivisionError) as exc:
            raise NodeExecutionError(f"list {config.operation} failed: {exc}") from exc


class ExecutorRegistry(Mapping[str, StepExecutor]):
    """Node kind to executor lookup used by both the compiler and the scheduler."""

    def __init__(self, executors: Optional[List[StepExecutor]] = None) -> None:
        self._executors: Dict[str, StepExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: StepExecutor) -> None:
        if not executor.kind:
            raise ValueError("executor must declare a kind")
        self._executors[executor.kind] = executor

    def __getitem__(self, kind: str) -> StepExecutor:
        return self._executors[kind]

    def __iter__(self) -> Iterator[str]:
        return iter(self._executors)

    def __len__(self) -> int:
        return len(self._executors)


def build_default_registry(
    *,
    llm: LLMService,
    sandbox: ScriptSandbox,
    fetcher: AllowlistedFetcher,
    notifications: NotificationService,
    retrieval: RetrievalService,
    gateway: Optional[AgentGateway] = None,
    script_timeout_ms: Optional[int] = 30000,
) -> ExecutorRegistry:
    return ExecutorRegistry(
        [
            TriggerExecutor(),
            ModelExecutor(llm),
            ScriptExecutor(sandbox, default_timeout_ms=script_timeout_ms),
            HttpExecutor(fetcher),
            ConditionExecutor(),
            ClassifierExecutor(llm),
            AggregatorExecutor(),
            NotificationExecutor(notifications),
            RetrievalExecutor(retrieval),
            DelegateExecutor(gateway),
            OutputExecutor(),
            TemplateExecutor(),
            AssignmentExecutor(),
            ListOperationExecutor(),
        ]
    )
