"""Tests for the per-kind step executors."""

from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from stepflow.service.activity import ActivityStore
from stepflow.service.context import RunContext, VariablePool
from stepflow.service.definition import WorkflowDefinition
from stepflow.service.email import EmailService
from stepflow.service.errors import NodeExecutionError, StructuralError
from stepflow.service.graph import compile_graph
from stepflow.service.executors import (
    AggregatorExecutor,
    AssignmentExecutor,
    ClassifierExecutor,
    ConditionExecutor,
    DelegateExecutor,
    ExecutorRegistry,
    HttpExecutor,
    ListOperationExecutor,
    ModelExecutor,
    NotificationExecutor,
    OutputExecutor,
    RetrievalExecutor,
    ScriptExecutor,
    TemplateExecutor,
    build_step_input,
)
from stepflow.service.llm import LLMService
from stepflow.service.notifications import NotificationService
from stepflow.service.rag import RetrievalService
from stepflow.service.sandbox import AllowlistedFetcher, HttpEgressPolicy, SandboxError
from stepflow.service.templates import TemplateResolver


def make_step(kind, config=None, input_value="", pool=None, upstream=None, run_input=""):
    definition = WorkflowDefinition.model_validate(
        {"nodes": [{"id": "node", "kind": kind, "config": config or {}}]}
    )
    pool = pool if pool is not None else VariablePool()
    resolver = TemplateResolver(pool, run_input=run_input)
    return build_step_input(definition.nodes[0], upstream or {}, input_value, resolver, {})


def pool_with(**values):
    pool = VariablePool()
    for key, value in values.items():
        pool.set(key, value)
    return pool


class MockProvider:
    """Returns queued replies and records the messages it was sent."""

    def __init__(self, replies: List[str]):
        self.replies = list(replies)
        self.requests = []

    async def complete(self, messages, *, model, temperature=None, max_tokens=None):
        self.requests.append({"messages": messages, "model": model})
        content = self.replies.pop(0) if self.replies else ""
        return {"content": content, "usage": {}, "model": model}


class TestConditionExecutor:
    async def _evaluate(self, operator, value, input_value, **extra):
        step = make_step(
            "condition",
            {"conditions": [{"operator": operator, "value": value}], **extra},
            input_value,
        )
        return await ConditionExecutor().execute(step, RunContext())

    @pytest.mark.parametrize(
        "operator,value,input_value,expected",
        [
            ("contains", "PROD", "deploy PROD-1", True),
            ("not_contains", "PROD", "deploy STAGE", True),
            ("equals", "ok", "ok", True),
            ("not_equals", "ok", "ko", True),
            ("start_with", "dep", "deploy", True),
            ("end_with", "loy", "deploy", True),
            ("is_empty", "", "   ", True),
            ("not_empty", "", "x", True),
            ("regex", r"^v\d+$", "v12", True),
            ("gt", "10", "11", True),
            ("gte", "10", "10", True),
            ("lt", "10", "9.5", True),
            ("lte", "10", "11", False),
            ("gt", "10", "not a number", False),
        ],
    )
    async def test_operators(self, operator, value, input_value, expected):
        assert await self._evaluate(operator, value, input_value) is expected

    async def test_null_checks_use_variable_lookup(self):
        pool = pool_with(fetch={"user": None, "name": "Ada"})
        ctx = RunContext()
        step = make_step(
            "condition",
            {"conditions": [{"variable": "fetch.user", "operator": "is_null"}]},
            pool=pool,
        )
        assert await ConditionExecutor().execute(step, ctx) is True
        step = make_step(
            "condition",
            {"conditions": [{"variable": "fetch.name", "operator": "not_null"}]},
            pool=pool,
        )
        assert await ConditionExecutor().execute(step, ctx) is True

    async def test_contains_checks_list_membership(self):
        pool = pool_with(tags=["urgent", "billing"])
        step = make_step(
            "condition",
            {"conditions": [{"variable": "{{tags}}", "operator": "contains", "value": "urgent"}]},
            pool=pool,
        )
        assert await ConditionExecutor().execute(step, RunContext()) is True

    async def test_logical_operators(self):
        rules = [
            {"operator": "contains", "value": "a"},
            {"operator": "contains", "value": "z"},
        ]
        and_step = make_step("condition", {"conditions": rules}, "abc")
        or_step = make_step("condition", {"conditions": rules, "logicalOperator": "or"}, "abc")
        assert await ConditionExecutor().execute(and_step, RunContext()) is False
        assert await ConditionExecutor().execute(or_step, RunContext()) is True

    async def test_expression(self):
        pool = pool_with(score={"value": 7})
        step = make_step(
            "condition",
            {"expression": "nodes['score']['value'] > 5 and contains(upper(input), 'PROD')"},
            "deploy prod",
            pool=pool,
        )
        assert await ConditionExecutor().execute(step, RunContext(variables=pool)) is True

    async def test_expression_errors_fail_the_node(self):
        step = make_step("condition", {"expression": "missing_name > 1"}, "x")
        with pytest.raises(NodeExecutionError, match="condition expression failed"):
            await ConditionExecutor().execute(step, RunContext())

    def test_validate_rejects_attribute_access(self):
        step = make_step("condition", {"expression": "input.__class__"})
        assert "disallowed syntax" in ConditionExecutor().validate(step.config)


class TestAggregatorExecutor:
    async def _run(self, strategy, pool=None, variables=None, upstream=None):
        config = {"strategy": strategy}
        if variables is not None:
            config["aggregateVariables"] = variables
        step = make_step("aggregator", config, pool=pool, upstream=upstream)
        return await AggregatorExecutor().execute(step, RunContext())

    async def test_array_uses_declared_variable_order(self):
        pool = pool_with(a=1, b={"x": 2}, c="three")
        assert await self._run("array", pool, ["c", "a", "b.x"]) == ["three", 1, 2]

    async def test_object_keys_are_references(self):
        pool = pool_with(a=1, b=2)
        assert await self._run("object", pool, ["a", "b"]) == {"a": 1, "b": 2}

    async def test_concat_skips_missing_values(self):
        pool = pool_with(a="first", b=["x"])
        assert await self._run("concat", pool, ["a", "ghost", "b"]) == 'first\n["x"]'

    async def test_merge_parses_json_text(self):
        pool = pool_with(a='{"k": 1}', b={"j": 2}, c="plain")
        assert await self._run("merge", pool, ["a", "b", "c"]) == {"k": 1, "j": 2, "c": "plain"}

    async def test_defaults_to_upstream_values(self):
        assert await self._run("array", upstream={"p": 1, "q": 2}) == [1, 2]


class TestModelExecutor:
    async def test_plain_completion_uses_prompt_and_default_model(self):
        provider = MockProvider(["hello"])
        llm = LLMService("base-model", provider=provider)
        pool = pool_with(fetch={"topic": "cats"})
        step = make_step("model", {"prompt": "Write about {{fetch.topic}}"}, pool=pool)
        assert await ModelExecutor(llm).execute(step, RunContext()) == "hello"
        assert provider.requests[0]["messages"][-1]["content"] == "Write about cats"
        assert provider.requests[0]["model"] == "base-model"

    async def test_input_is_the_prompt_when_none_is_set(self):
        provider = MockProvider(["ok"])
        step = make_step("model", {"systemPrompt": "be brief"}, "summarize this")
        await ModelExecutor(LLMService("m", provider=provider)).execute(step, RunContext())
        assert provider.requests[0]["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "summarize this"},
        ]

    async def test_structured_output_is_validated(self):
        schema = {
            "type": "object",
            "properties": {"score": {"type": "integer"}},
            "required": ["score"],
        }
        provider = MockProvider(['```json\n{"score": 4}\n```', '{"score": "high"}'])
        executor = ModelExecutor(LLMService("m", provider=provider))
        step = make_step("model", {"prompt": "rate", "outputSchema": schema})
        assert await executor.execute(step, RunContext()) == {"score": 4}
        with pytest.raises(NodeExecutionError, match="does not match output schema"):
            await executor.execute(step, RunContext())

    async def test_non_json_reply_fails_structured_node(self):
        provider = MockProvider(["no json here"])
        step = make_step("model", {"prompt": "rate", "outputSchema": {"type": "object"}})
        with pytest.raises(NodeExecutionError, match="not valid JSON"):
            await ModelExecutor(LLMService("m", provider=provider)).execute(step, RunContext())

    def test_invalid_schema_is_rejected_at_compile_time(self):
        step = make_step("model", {"outputSchema": {"type": "not-a-type"}})
        message = ModelExecutor(LLMService("m", provider=MockProvider([]))).validate(step.config)
        assert message.startswith("invalid output schema")


class TestClassifierExecutor:
    CONFIG = {
        "categories": [
            {"key": "bug", "label": "Bug report"},
            {"key": "feature", "label": "Feature request"},
        ],
        "maxAttempts": 2,
    }

    async def test_reply_is_mapped_to_category(self):
        provider = MockProvider(
            ['{"category": "Feature request", "confidence": 1.7, "keywords": ["dark mode"]}']
        )
        step = make_step("classifier", self.CONFIG, "please add dark mode")
        result = await ClassifierExecutor(LLMService("m", provider=provider)).execute(
            step, RunContext()
        )
        assert result["result"] == "feature"
        assert result["confidence"] == 1.0
        assert result["keywords"] == ["dark mode"]
        assert "bug: Bug report" in provider.requests[0]["messages"][0]["content"]

    async def test_unusable_replies_are_retried_then_fall_back(self):
        provider = MockProvider(["not json", '{"category": "praise"}'])
        step = make_step("classifier", self.CONFIG, "great app")
        result = await ClassifierExecutor(LLMService("m", provider=provider)).execute(
            step, RunContext()
        )
        assert len(provider.requests) == 2
        assert result["result"] == "bug"
        assert result["confidence"] == 0.0


class TestHttpExecutor:
    def _executor(self, handler, allowlist=()):
        policy = HttpEgressPolicy(allowlist=list(allowlist))
        return HttpExecutor(AllowlistedFetcher(policy, transport=httpx.MockTransport(handler)))

    async def test_post_sends_json_body_and_parses_reply(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            seen["content_type"] = request.headers["content-type"]
            return httpx.Response(200, json={"ok": True})

        pool = pool_with(user={"id": 42})
        step = make_step(
            "http",
            {"url": "https://api.test/users/{{user.id}}", "method": "POST", "body": {"id": "{{user.id}}"}},
            pool=pool,
        )
        result = await self._executor(handler).execute(step, RunContext())
        assert result == {"ok": True}
        assert seen == {"method": "POST", "body": {"id": "42"}, "content_type": "application/json"}

    async def test_non_2xx_fails_with_status_and_body(self):
        step = make_step("http", {"url": "https://api.test/x"})
        executor = self._executor(lambda request: httpx.Response(503, text="down"))
        with pytest.raises(NodeExecutionError, match="HTTP 503: down"):
            await executor.execute(step, RunContext())

    async def test_text_reply_is_returned_as_text(self):
        step = make_step("http", {"url": "https://api.test/x"})
        executor = self._executor(lambda request: httpx.Response(200, text="plain"))
        assert await executor.execute(step, RunContext()) == "plain"

    async def test_host_outside_allowlist_is_refused(self):
        step = make_step("http", {"url": "https://evil.test/x"})
        executor = self._executor(lambda request: httpx.Response(200), allowlist=["*.good.test"])
        with pytest.raises(NodeExecutionError, match="not allowlisted"):
            await executor.execute(step, RunContext())

    def test_validate_requires_http_scheme(self):
        executor = self._executor(lambda request: httpx.Response(200))
        assert executor.validate(make_step("http", {"url": "ftp://x"}).config)
        assert executor.validate(make_step("http", {"url": "{{cfg.url}}"}).config) is None


class MockSandbox:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def run(self, code, kwargs, *, timeout_ms=None):
        self.calls.append((code, kwargs))
        if self.error:
            raise self.error
        return self.result


class TestScriptExecutor:
    async def test_kwargs_include_input_variables_and_run_input(self):
        sandbox = MockSandbox(result=6)
        step = make_step(
            "script",
            {"code": "def main(input):\n    return 1\n", "variables": {"factor": 2}},
            "3",
        )
        assert await ScriptExecutor(sandbox).execute(step, RunContext(trigger_input="raw")) == 6
        _, kwargs = sandbox.calls[0]
        assert kwargs == {"factor": 2, "input": "3", "vars": {"factor": 2}, "run_input": "raw"}

    async def test_sandbox_errors_become_node_errors(self):
        sandbox = MockSandbox(error=SandboxError("ValueError: bad"))
        step = make_step("script", {"code": "def main():\n    pass\n"})
        with pytest.raises(NodeExecutionError, match="ValueError: bad"):
            await ScriptExecutor(sandbox).execute(step, RunContext())

    def test_validate_requires_main(self):
        step = make_step("script", {"code": "x = 1\n"})
        assert "main" in ScriptExecutor(MockSandbox()).validate(step.config)


class TestNotificationExecutor:
    def _executor(self, activity):
        return NotificationExecutor(NotificationService(EmailService(), activity))

    async def test_site_notification_is_recorded(self):
        activity = ActivityStore()
        step = make_step("notification", {"subject": "Hi"}, "body text")
        outcome = await self._executor(activity).execute(step, RunContext(tenant_id="t1"))
        assert outcome["siteSent"] is True
        entry = activity.query("t1", "notifications")[0]
        assert (entry.title, entry.content) == ("Hi", "body text")

    async def test_partial_success_completes_the_node(self):
        activity = ActivityStore()
        step = make_step("notification", {"notificationType": "both"}, "body")
        outcome = await self._executor(activity).execute(step, RunContext(tenant_id="t1"))
        assert outcome["siteSent"] is True
        assert outcome["emailSent"] is False
        assert outcome["emailError"] == "email not configured"

    async def test_all_channels_failing_fails_the_node(self):
        step = make_step("notification", {"notificationType": "email"}, "body")
        with pytest.raises(NodeExecutionError, match="email: email not configured"):
            await self._executor(ActivityStore()).execute(step, RunContext(tenant_id="t1"))


class TestRetrievalExecutor:
    async def test_knowledge_base_search(self):
        service = RetrievalService(ActivityStore())
        service.ingest_text("t1", "Invoices are due within thirty days of receipt.", source="billing")
        service.ingest_text("t1", "The office dog is named Biscuit.", source="misc")
        step = make_step("retrieval", {"queryType": "knowledge_base"}, "when are invoices due")
        hits = await RetrievalExecutor(service).execute(step, RunContext(tenant_id="t1"))
        assert hits[0]["source"] == "billing"
        assert all(hit["score"] > 0 for hit in hits)

    async def test_activity_search_with_keyword(self):
        activity = ActivityStore()
        activity.append("t1", "logs", "disk full on node-7")
        activity.append("t1", "logs", "all good")
        step = make_step("retrieval", {"queryType": "logs", "queryKeyword": "disk"})
        hits = await RetrievalExecutor(RetrievalService(activity)).execute(
            step, RunContext(tenant_id="t1")
        )
        assert [hit["content"] for hit in hits] == ["disk full on node-7"]

    async def test_no_tenant_no_hits(self):
        step = make_step("retrieval", {"queryType": "logs"})
        service = RetrievalService(ActivityStore())
        assert await RetrievalExecutor(service).execute(step, RunContext()) == []


class TestDelegateAndOutput:
    async def test_delegate_without_gateway_fails(self):
        step = make_step("delegate", {"agentId": "helper"})
        with pytest.raises(NodeExecutionError, match="no agent gateway"):
            await DelegateExecutor().execute(step, RunContext())

    async def test_delegate_sends_input_as_message(self):
        class RecordingGateway:
            def __init__(self):
                self.sent = []

            async def send_message(self, agent_id, message, ctx):
                self.sent.append((agent_id, message))
                return "reply"

        gateway = RecordingGateway()
        step = make_step("delegate", {"agentId": "helper"}, "do the thing")
        assert await DelegateExecutor(gateway).execute(step, RunContext()) == "reply"
        assert gateway.sent == [("helper", "do the thing")]

    async def test_output_template_or_passthrough(self):
        templated = make_step("output", {"templateContent": "Result: {{input}}"}, run_input="q")
        assert await OutputExecutor().execute(templated, RunContext()) == "Result: q"
        passthrough = make_step("output", {}, {"a": 1})
        assert await OutputExecutor().execute(passthrough, RunContext()) == {"a": 1}


class TestTemplateExecutor:
    async def test_renders_node_outputs_and_run_input(self):
        pool = pool_with(fetch={"title": "Outage", "count": 3})
        step = make_step(
            "template",
            {"templateContent": "{{fetch.title}} x{{fetch.count}} for {{input}}"},
            pool=pool,
            run_input="ops",
        )
        assert await TemplateExecutor().execute(step, RunContext()) == "Outage x3 for ops"

    async def test_editor_kind_name_and_empty_template(self):
        step = make_step("template_transform", {}, {"a": 1})
        assert step.kind == "template"
        assert await TemplateExecutor().execute(step, RunContext()) == '{"a": 1}'


class TestAssignmentExecutor:
    async def test_assigns_resolved_value_under_its_name(self):
        pool = pool_with(lookup={"owner": "dana"})
        step = make_step(
            "variable_assignment",
            {"variableName": "owner", "variableValue": "{{lookup.owner}}"},
            pool=pool,
        )
        assert await AssignmentExecutor().execute(step, RunContext()) == {"owner": "dana"}

    async def test_assigns_input_without_value(self):
        step = make_step("assignment", {"variableName": "raw"}, [1, 2])
        assert await AssignmentExecutor().execute(step, RunContext()) == {"raw": [1, 2]}


class TestListOperationExecutor:
    async def _run(self, config, input_value, pool=None):
        step = make_step("list_operation", config, input_value, pool=pool)
        return await ListOperationExecutor().execute(step, RunContext())

    async def test_filter_with_expression(self):
        items = [{"level": "error"}, {"level": "info"}, {"level": "error"}]
        result = await self._run(
            {"listOperationType": "filter", "listExpression": "item['level'] == 'error'"}, items
        )
        assert result == [{"level": "error"}, {"level": "error"}]

    async def test_map_sees_item_and_index(self):
        assert await self._run({"operation": "map", "expression": "item * 10 + index"}, "[1, 2, 3]") == [
            10,
            21,
            32,
        ]

    async def test_sort_plain_and_by_key(self):
        assert await self._run({"operation": "sort"}, [3, 1, 2]) == [1, 2, 3]
        rows = [{"n": "b", "v": 2}, {"n": "a", "v": 5}]
        result = await self._run(
            {"operation": "sort", "expression": "item['v']", "descending": True}, rows
        )
        assert [row["n"] for row in result] == ["a", "b"]

    async def test_slice_bounds(self):
        assert await self._run({"operation": "slice", "expression": "1,3"}, [0, 1, 2, 3]) == [1, 2]
        assert await self._run({"operation": "slice", "expression": ",2"}, [0, 1, 2]) == [0, 1]

    async def test_reads_named_source_instead_of_input(self):
        pool = pool_with(search={"hits": [5, 1, 4]})
        assert await self._run({"operation": "sort", "source": "{{search.hits}}"}, "ignored", pool) == [
            1,
            4,
            5,
        ]

    async def test_non_list_input_fails_the_node(self):
        with pytest.raises(NodeExecutionError, match="needs a list"):
            await self._run({"operation": "sort"}, "plain text")

    async def test_expression_errors_fail_the_node(self):
        with pytest.raises(NodeExecutionError, match="list map failed"):
            await self._run({"operation": "map", "expression": "item / 0"}, [1])

    def test_attribute_access_is_rejected_at_compile_time(self):
        with pytest.raises(StructuralError):
            compile_graph(
                {
                    "nodes": [
                        {
                            "id": "l",
                            "kind": "list",
                            "config": {"operation": "map", "expression": "item.__class__"},
                        }
                    ]
                },
                build_list_registry(),
            )

    def test_filter_without_expression_is_rejected(self):
        with pytest.raises(StructuralError):
            compile_graph(
                {"nodes": [{"id": "l", "kind": "list", "config": {"operation": "filter"}}]},
                build_list_registry(),
            )


def build_list_registry():
    return ExecutorRegistry([ListOperationExecutor()])
