"""Tests for individual node handlers and the handler registry."""

import base64

import pytest

from flowsim.core.exceptions import HandlerRegistryError, NodeExecutionError
from flowsim.core.handler_registry import HandlerResult, HandlerRuntime, NodeHandlerRegistry
from flowsim.core.http_client import SimulatedHttpClient
from flowsim.core.variables import VariableContext
from flowsim.handlers import DEFAULT_HANDLERS, register_default_handlers
from flowsim.handlers.control import handle_approval, handle_delay, handle_end, handle_start
from flowsim.handlers.integrations import (
    build_request,
    handle_document_extractor,
    handle_knowledge_retrieval,
    handle_sql,
    process_sql_template,
)
from flowsim.handlers.tasks import handle_data_op, handle_llm, handle_pass_through
from flowsim.models.configs import ResolutionMode, parse_node_config
from flowsim.models.core import Node, NodeType


def make(node_type: str, config=None, node_id: str = "n1"):
    parsed = Node.model_validate({"id": node_id, "type": node_type, "config": config or {}})
    return parsed, parse_node_config(parsed)


@pytest.fixture
def ctx():
    base = VariableContext(payload={"amount": 8500, "user": "alex", "token": "t0k"})
    return base.with_node_output("lookup", {"id": 42}, {"id": 42, "email": "a@example.com"})


@pytest.fixture
def runtime():
    return HandlerRuntime(http_client=SimulatedHttpClient())


class TestRegistry:
    """Handler registration and lookup."""

    def test_register_and_get(self):
        registry = NodeHandlerRegistry()
        registry.register(NodeType.SCRIPT, handle_pass_through, "Pass through")
        assert registry.get(NodeType.SCRIPT) is handle_pass_through
        assert registry.exists(NodeType.SCRIPT)
        assert registry.list_handlers() == {"script": "Pass through"}

    def test_duplicate_registration_rejected(self):
        registry = NodeHandlerRegistry()
        registry.register("script", handle_pass_through)
        with pytest.raises(HandlerRegistryError):
            registry.register("script", handle_start)
        registry.register("script", handle_start, replace=True)
        assert registry.get(NodeType.SCRIPT) is handle_start

    def test_unknown_type_and_missing_handler(self):
        registry = NodeHandlerRegistry()
        with pytest.raises(HandlerRegistryError):
            registry.register("teleport", handle_pass_through)
        with pytest.raises(HandlerRegistryError):
            registry.get(NodeType.END)
        with pytest.raises(HandlerRegistryError):
            registry.register(NodeType.END, "not callable")

    def test_unregister_and_clear(self):
        registry = NodeHandlerRegistry()
        register_default_handlers(registry)
        assert registry.unregister(NodeType.END) is True
        assert registry.unregister(NodeType.END) is False
        registry.clear()
        assert registry.list_handlers() == {}

    def test_defaults_cover_every_type_but_loop(self):
        """Loop bodies are driven by the simulator itself."""
        assert set(DEFAULT_HANDLERS) == set(NodeType) - {NodeType.LOOP}

    def test_descriptions_default_to_docstring(self):
        registry = NodeHandlerRegistry()
        register_default_handlers(registry)
        assert registry.list_handlers()["start"] == "Emit the initial payload unchanged."


class TestHandlerResult:
    """Logged output of a handler result."""

    def test_error_attached_to_logged_output(self):
        result = HandlerResult(success=False, output={"a": 1}, error="bad")
        assert result.logged_output() == {"a": 1, "error": "bad"}
        assert result.output == {"a": 1}

    def test_trace_output_defaults_to_output(self):
        result = HandlerResult(success=True, output=[1, 2])
        assert result.logged_output() == [1, 2]
        assert HandlerResult(success=False, output="x", error="bad").logged_output() == {"error": "bad"}


class TestControlHandlers:
    """Start, End, Approval and Delay."""

    def test_start_copies_payload(self, ctx, runtime):
        node, config = make("start")
        result = handle_start(node, config, ctx, runtime)
        assert result.output == ctx.payload
        assert result.output is not ctx.payload

    def test_end_outputs(self, ctx, runtime):
        node, config = make("end", {"outputs": [
            {"key": "total", "value": "{{payload.amount}}"},
            {"key": "email", "value": "lookup.email"},
            {"key": "note", "value": "plain text"},
            {"key": "", "value": "ignored"},
        ]})
        result = handle_end(node, config, ctx, runtime)
        assert result.output == {"total": 8500, "email": "a@example.com", "note": "plain text"}

    def test_approval_default_approves(self, ctx, runtime):
        node, config = make("approval", {"approver": "finance"})
        result = handle_approval(node, config, ctx, runtime)
        assert result.success
        assert result.output["processed_data"]["approval_result"] == "approved"
        assert result.output["processed_data"]["amount"] == 8500
        assert result.trace_input["approvers"] == "finance"

    def test_approval_reject(self, ctx, runtime):
        node, config = make("approval", {"approver": "finance", "mockDecision": "REJECT"})
        result = handle_approval(node, config, ctx, runtime)
        assert not result.success
        assert result.error == "Approval rejected by finance"

    def test_delay_never_sleeps(self, ctx, runtime):
        node, config = make("delay", {"duration": 2, "unit": "hours"})
        assert handle_delay(node, config, ctx, runtime).output["duration_seconds"] == 7200


class TestTaskHandlers:
    """Mocked task nodes keep stable output shapes."""

    def test_data_op_target_field(self, ctx, runtime):
        node, config = make("data_op", {"operation": "map", "targetField": "lookup.id"})
        result = handle_data_op(node, config, ctx, runtime)
        assert result.output == {"result": 42, "operation": "map", "processed": True}

    def test_data_op_without_target_uses_payload(self, ctx, runtime):
        node, config = make("data_op", {"opType": "filter"})
        assert handle_data_op(node, config, ctx, runtime).output["result"] == ctx.payload

    def test_llm_prompts_substituted(self, ctx, runtime):
        node, config = make("llm", {
            "model": "gpt-x",
            "systemPrompt": "You help {{payload.user}}",
            "userPrompt": "Summarize order {{lookup.id}}",
        })
        result = handle_llm(node, config, ctx, runtime)
        assert result.trace_input["user_prompt"] == "Summarize order 42"
        assert result.output["text"] == "[gpt-x] simulated response to: Summarize order 42"
        assert result.output["response"]["model"] == "gpt-x"


class TestApiRequestBuilding:
    """Assembly of the effective API request."""

    def test_query_params_and_headers(self, ctx):
        _, config = make("api_call", {
            "url": "https://api.test/users/{{lookup.id}}",
            "queryParams": [
                {"key": "q", "value": "{{payload.user}} smith"},
                {"key": "skip", "value": "1", "enabled": False},
            ],
            "headers": [
                {"key": "X-Trace", "value": "{{payload.amount}}"},
                {"key": "Bad Header", "value": "dropped"},
                {"key": " ", "value": "blank"},
            ],
        })
        request = build_request(config, ctx)
        assert request["url"] == "https://api.test/users/42?q=alex+smith"
        assert request["headers"] == {"X-Trace": "8500"}

    def test_default_url(self, ctx):
        _, config = make("api_call", {})
        assert build_request(config, ctx)["url"] == "https://api.example.com"

    def test_basic_auth(self, ctx):
        _, config = make("api_call", {"url": "https://x", "auth": {"type": "basic", "username": "u", "password": "p"}})
        expected = "Basic " + base64.b64encode(b"u:p").decode("ascii")
        assert build_request(config, ctx)["headers"]["Authorization"] == expected

    def test_bearer_auth(self, ctx):
        _, config = make("api_call", {"url": "https://x", "auth": {"type": "bearer", "token": "{{payload.token}}"}})
        assert build_request(config, ctx)["headers"]["Authorization"] == "Bearer t0k"

    def test_api_key_in_query(self, ctx):
        _, config = make("api_call", {
            "url": "https://x/path?a=1",
            "auth": {"type": "api_key", "apiKey": "k", "apiKeyName": "key", "apiKeyLocation": "query"},
        })
        assert build_request(config, ctx)["url"] == "https://x/path?a=1&key=k"

    def test_api_key_in_header(self, ctx):
        _, config = make("api_call", {
            "url": "https://x",
            "auth": {"type": "api_key", "apiKey": "{{payload.token}}", "apiKeyName": "X-Service-Key"},
        })
        request = build_request(config, ctx)
        assert request["headers"] == {"X-Service-Key": "t0k"}
        assert request["url"] == "https://x"

    def test_json_body(self, ctx):
        _, config = make("api_call", {"url": "https://x", "bodyType": "json", "body": '{"id": {{lookup.id}}}'})
        assert build_request(config, ctx)["body"] == {"id": 42}

    def test_invalid_json_body_sends_payload(self, ctx):
        _, config = make("api_call", {"url": "https://x", "bodyType": "json", "body": "{oops"})
        assert build_request(config, ctx)["body"] == ctx.payload

    def test_form_body(self, ctx):
        _, config = make("api_call", {"url": "https://x", "bodyType": "x-www-form-urlencoded",
                                      "body": "user={{payload.user}}&n=1"})
        assert build_request(config, ctx)["body"] == "user=alex&n=1"


class TestIntegrationHandlers:
    """SQL, knowledge retrieval and document extraction mocks."""

    def test_sql_template_blocks(self, ctx):
        sql = "SELECT * FROM orders {% if amount > 1000 %}WHERE big = 1{% else %}WHERE big = 0{% endif %}"
        assert process_sql_template(sql, ctx, ResolutionMode.NODE) == "SELECT * FROM orders WHERE big = 1"

    def test_sql_template_variables_and_bad_condition(self, ctx):
        sql = "SELECT {{lookup.id}} {% if missing.x %}A{% endif %}"
        assert process_sql_template(sql, ctx, ResolutionMode.NODE) == "SELECT 42 {% if missing.x %}A{% endif %}"

    def test_select_returns_rows(self, ctx, runtime):
        node, config = make("sql", {"sql": "select * from users", "databaseId": "crm"})
        result = handle_sql(node, config, ctx, runtime)
        assert result.output["affectedRows"] == 2
        assert len(result.output["data"]) == 2
        assert result.output["database"] == "crm"

    def test_single_record(self, ctx, runtime):
        node, config = make("sql", {"sql": "SELECT 1", "returnSingleRecord": True})
        assert handle_sql(node, config, ctx, runtime).output["data"]["id"] == 1

    def test_write_statement(self, ctx, runtime):
        node, config = make("sql", {"sql": "UPDATE users SET a = 1"})
        output = handle_sql(node, config, ctx, runtime).output
        assert output["output"] == {"affectedRows": 1, "success": True}
        assert output["data"] == []

    def test_knowledge_retrieval(self, ctx, runtime):
        node, config = make("knowledge_retrieval", {"query": "orders of {{payload.user}}", "datasetIds": ["d1"],
                                                    "top_k": 1})
        result = handle_knowledge_retrieval(node, config, ctx, runtime)
        assert len(result.output["references"]) == 1
        assert "orders of alex" in result.output["result"]

    def test_knowledge_retrieval_needs_dataset(self, ctx, runtime):
        node, config = make("knowledge_retrieval", {"query": "x"})
        with pytest.raises(NodeExecutionError) as exc_info:
            handle_knowledge_retrieval(node, config, ctx, runtime)
        assert exc_info.value.message == "No knowledge base selected"
        assert exc_info.value.output["references"]

    def test_document_extractor(self, ctx, runtime):
        node, config = make("document_extractor", {"fileUrl": "https://files/{{lookup.id}}.pdf",
                                                   "extractFields": [{"name": "total"}, "date"]})
        result = handle_document_extractor(node, config, ctx, runtime)
        assert "https://files/42.pdf" in result.output["text"]
        assert result.output["fields"] == {"total": None, "date": None}

    def test_document_extractor_needs_url(self, ctx, runtime):
        node, config = make("document_extractor", {})
        with pytest.raises(NodeExecutionError, match="No valid file URL provided"):
            handle_document_extractor(node, config, ctx, runtime)
