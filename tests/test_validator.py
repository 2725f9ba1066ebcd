"""Tests for the structural workflow validator."""

import pytest

from flowsim.core.validator import WorkflowValidator, validate_workflow
from flowsim.models.core import Edge, Node, ValidationCategory, ValidationSeverity

from helpers import edge, node


def findings(result, severity=None, category=None, node_id=None):
    """Filter findings by severity, category and node."""
    return [
        f for f in result.errors
        if (severity is None or f.severity == severity)
        and (category is None or f.category == category)
        and (node_id is None or f.node_id == node_id)
    ]


def messages(result, **filters):
    return [f.message for f in findings(result, **filters)]


@pytest.fixture
def valid_workflow():
    nodes = [
        node("start", "start", label="Start"),
        node("work", "script", {"code": "return 1"}, label="Work"),
        node("end", "end", label="End"),
    ]
    return nodes, [edge("start", "work"), edge("work", "end")]


class TestWorkflowStructure:
    """Workflow-level checks."""

    def test_valid_workflow(self, valid_workflow):
        result = validate_workflow(*valid_workflow)
        assert result.is_valid
        assert result.errors == []
        assert result.summary.total_nodes == 3
        assert result.summary.total_edges == 2

    def test_missing_start(self):
        result = validate_workflow([node("end", "end", label="End")], [])
        assert not result.is_valid
        assert findings(result, ValidationSeverity.ERROR, ValidationCategory.WORKFLOW)

    def test_multiple_starts(self, valid_workflow):
        nodes, edges = valid_workflow
        nodes.append(node("start2", "start"))
        result = validate_workflow(nodes, edges + [edge("start2", "work")])
        assert "Workflow can contain only one start node, found 2" in messages(result, category=ValidationCategory.WORKFLOW)

    def test_missing_end_and_edges_are_warnings(self):
        result = validate_workflow([node("start", "start")], [])
        assert result.is_valid
        warnings = messages(result, severity=ValidationSeverity.WARNING, category=ValidationCategory.WORKFLOW)
        assert "Workflow has no end node" in warnings
        assert "Workflow nodes are not connected" in warnings

    def test_duplicate_ids(self, valid_workflow):
        nodes, edges = valid_workflow
        nodes.append(node("work", "script", {"code": "x"}))
        result = validate_workflow(nodes, edges)
        assert any("used by more than one node" in m for m in messages(result, severity=ValidationSeverity.ERROR))

    def test_empty_workflow(self):
        result = validate_workflow([], [])
        assert not result.is_valid
        assert result.summary.error_count == 1

    def test_summary_counts(self):
        result = validate_workflow([node("start", "start"), node("a", "llm", {"temperature": 3})], [])
        summary = result.summary
        assert summary.error_count == len(result.by_severity(ValidationSeverity.ERROR))
        assert summary.warning_count == len(result.by_severity(ValidationSeverity.WARNING))
        assert summary.info_count == len(result.by_severity(ValidationSeverity.INFO))
        assert result.is_valid is (summary.error_count == 0)

    def test_findings_have_ids_and_suggestions(self):
        result = validate_workflow([node("end", "end")], [])
        assert all(f.id.startswith("val_") and f.suggestion for f in result.errors)
        assert len({f.id for f in result.errors}) == len(result.errors)


class TestMalformedInput:
    """Entries that do not parse become findings instead of exceptions."""

    def test_unknown_node_type(self, valid_workflow):
        nodes, edges = valid_workflow
        nodes.append(node("widget", "custom_widget"))
        result = validate_workflow(nodes, edges)

        assert not result.is_valid
        rejected = findings(result, ValidationSeverity.ERROR, ValidationCategory.WORKFLOW, node_id="widget")
        assert len(rejected) == 1
        assert rejected[0].message.startswith("Node 'widget' is malformed and was skipped: type:")
        assert result.summary.total_nodes == 3

    def test_blank_node_id(self, valid_workflow):
        nodes, edges = valid_workflow
        nodes.insert(1, {"id": "  ", "type": "script"})
        result = validate_workflow(nodes, edges)

        rejected = findings(result, category=ValidationCategory.WORKFLOW)
        assert len(rejected) == 1
        assert rejected[0].node_id is None
        assert rejected[0].message.startswith("Node at position 1 is malformed and was skipped: id:")

    def test_edge_without_target(self, valid_workflow):
        nodes, edges = valid_workflow
        result = validate_workflow(nodes, edges + [{"id": "e9", "source": "start"}])

        assert not result.is_valid
        rejected = messages(result, severity=ValidationSeverity.ERROR, category=ValidationCategory.CONNECTION)
        assert rejected == ["Edge 'e9' is malformed and was skipped: target: Field required"]
        assert result.summary.total_edges == 2

    def test_remaining_checks_still_run(self):
        """A bad entry does not hide findings about the good ones."""
        nodes = [node("start", "start"), node("call", "api_call", {"url": ""}), "not a node"]
        result = validate_workflow(nodes, [edge("start", "call")])

        assert findings(result, ValidationSeverity.ERROR, ValidationCategory.NODE_CONFIG, node_id="call")
        assert any(m.startswith("Node at position 2 is malformed") for m in messages(result))


class TestNodeConfigRules:
    """Per-type configuration rules."""

    def validate_single(self, node_type, config, extra_edges=(), label="Node"):
        nodes = [node("start", "start"), node("n", node_type, config, label=label), node("end", "end", label="End")]
        edges = [edge("start", "n"), edge("n", "end"), *extra_edges]
        return validate_workflow(nodes, edges)

    def test_api_call_without_url(self):
        result = self.validate_single("api_call", {"url": "", "method": "GET"})
        errors = findings(result, ValidationSeverity.ERROR, ValidationCategory.NODE_CONFIG, node_id="n")
        assert [f.message for f in errors] == ["API call node has no URL"]
        assert errors[0].node_label == "Node"

    def test_api_call_invalid_method_and_variable_url(self):
        result = self.validate_single("api_call", {"url": "https://x/{{payload.id}}", "method": "FETCH"})
        assert "API call node uses an invalid HTTP method: FETCH" in messages(result, severity=ValidationSeverity.ERROR)
        assert findings(result, ValidationSeverity.INFO, ValidationCategory.VARIABLE, node_id="n")

    def test_condition_needs_expression_or_groups(self):
        assert "Condition node has no condition" in messages(self.validate_single("condition", {}))
        assert "Condition node has no condition" not in messages(
            self.validate_single("condition", {"expression": "payload.a > 1"}))

    def test_condition_groups_vs_outgoing(self):
        groups = [{"conditions": []}, {"conditions": []}]
        result = self.validate_single("condition", {"conditionGroups": groups})
        assert findings(result, ValidationSeverity.WARNING, ValidationCategory.CONNECTION, node_id="n")

    def test_loop_rules(self):
        nodes = [
            node("start", "start"),
            node("each", "loop", {}),
            node("inner", "loop", {"targetArray": "loop.item"}, parent="each"),
            node("end", "end", label="End"),
        ]
        result = validate_workflow(nodes, [edge("start", "each"), edge("each", "end")])
        assert "Loop node has no target array" in messages(result, node_id="each")
        assert "Loop node has no loop output connection" in messages(result, node_id="each")
        assert "Loops cannot be nested inside another loop" in messages(result, node_id="inner")

    def test_loop_without_children(self):
        result = self.validate_single("loop", {"targetArray": "payload.items"})
        assert "Loop node has no child nodes" in messages(result, severity=ValidationSeverity.WARNING)

    def test_parallel_rules(self):
        assert "Parallel node has no branches" in messages(self.validate_single("parallel", {}))
        result = self.validate_single("parallel", {"branches": [1, 2, 3]})
        assert any("defines 3 branches but has only 1" in m for m in messages(result, severity=ValidationSeverity.WARNING))

    def test_approval_rules(self):
        result = self.validate_single("approval", {"approvalType": "majority"})
        assert "Approval node has no approver" in messages(result)
        assert "Approval node has no valid approval type" in messages(result)
        ok = self.validate_single("approval", {"approver": "cfo", "approvalType": "any"})
        assert findings(ok, node_id="n") == []

    def test_llm_rules(self):
        result = self.validate_single("llm", {"model": "m", "systemPrompt": "s", "temperature": 2.5})
        assert messages(result, severity=ValidationSeverity.ERROR, node_id="n") == ["LLM node has no user prompt"]
        assert messages(result, severity=ValidationSeverity.WARNING, node_id="n") == [
            "LLM temperature is outside the recommended range (0-2)"
        ]

    def test_delay_rules(self):
        assert "Delay node has no delay duration" in messages(self.validate_single("delay", {"duration": 0}))
        long_delay = self.validate_single("delay", {"duration": 2, "unit": "days"})
        assert "Delay is longer than 24 hours" in messages(long_delay, severity=ValidationSeverity.WARNING)

    @pytest.mark.parametrize("node_type, config, expected", [
        ("notification", {"channel": "email"}, "Notification node has no recipients"),
        ("notification", {"recipients": ["a"]}, "Notification node has no channel"),
        ("script", {}, "Script node has no code"),
        ("sql", {"sql": "select 1"}, "SQL node has no database selected"),
        ("knowledge_retrieval", {"query": "q"}, "Knowledge retrieval node has no knowledge base selected"),
        ("document_extractor", {}, "Document extractor node has no document URL"),
        ("data_op", {}, "Data operation node has no operation type"),
        ("cc", {}, "CC node has no recipients"),
        ("question_classifier", {}, "Question classifier node has no categories"),
    ])
    def test_required_fields(self, node_type, config, expected):
        result = self.validate_single(node_type, config)
        assert expected in messages(result, severity=ValidationSeverity.ERROR,
                                    category=ValidationCategory.NODE_CONFIG, node_id="n")

    def test_sql_unsafe_mode_warns(self):
        result = self.validate_single("sql", {"sql": "select 1", "databaseId": "db", "unsafeMode": True})
        assert messages(result, node_id="n") == ["SQL node runs in unsafe mode"]

    def test_unparsable_config(self):
        result = self.validate_single("loop", {"targetArray": "payload.items", "concurrency": "many"})
        errors = messages(result, severity=ValidationSeverity.ERROR, node_id="n")
        assert len(errors) == 1
        assert errors[0].startswith("Node configuration is invalid at 'concurrency'")

    def test_end_without_label(self):
        result = validate_workflow([node("start", "start"), node("end", "end", label="")], [edge("start", "end")])
        assert "End node has no label" in messages(result, severity=ValidationSeverity.WARNING)


class TestConnections:
    """Edges, isolated nodes and reachability."""

    def test_dangling_edges(self, valid_workflow):
        nodes, edges = valid_workflow
        result = validate_workflow(nodes, edges + [edge("work", "ghost"), edge("phantom", "end")])
        errors = messages(result, severity=ValidationSeverity.ERROR, category=ValidationCategory.CONNECTION)
        assert "Connection references a missing target node: ghost" in errors
        assert "Connection references a missing source node: phantom" in errors

    def test_isolated_node(self, valid_workflow):
        nodes, edges = valid_workflow
        nodes.append(node("lonely", "script", {"code": "x"}, label="Lonely"))
        result = validate_workflow(nodes, edges)
        warnings = messages(result, severity=ValidationSeverity.WARNING, node_id="lonely")
        assert warnings == ['Node "Lonely" is isolated and not connected to any other node']

    def test_unreachable_node(self, valid_workflow):
        nodes, edges = valid_workflow
        nodes += [node("a", "script", {"code": "x"}, label="A"), node("b", "script", {"code": "x"}, label="B")]
        result = validate_workflow(nodes, edges + [edge("a", "b")])
        assert 'Node "A" cannot be reached from the start node' in messages(result, node_id="a")
        assert result.is_valid

    def test_loop_children_count_as_connected(self):
        nodes = [
            node("start", "start"),
            node("each", "loop", {"targetArray": "payload.items"}),
            node("body", "script", {"code": "x"}, parent="each"),
            node("end", "end", label="End"),
        ]
        edges = [edge("start", "each"), edge("each", "end", "loop-output")]
        result = validate_workflow(nodes, edges)
        assert findings(result, node_id="body") == []
        assert result.is_valid


class TestCycles:
    """Cycle detection."""

    def test_three_node_cycle_reported_once(self):
        nodes = [
            node("start", "start", label="Start"),
            node("a", "script", {"code": "x"}, label="A"),
            node("b", "script", {"code": "x"}, label="B"),
            node("c", "script", {"code": "x"}, label="C"),
        ]
        edges = [edge("start", "a"), edge("a", "b"), edge("b", "c"), edge("c", "a")]
        result = validate_workflow(nodes, edges)

        cycle_errors = [m for m in messages(result, severity=ValidationSeverity.ERROR) if m.startswith("Cycle detected")]
        assert cycle_errors == ["Cycle detected: A → B → C"]
        assert not result.is_valid

    def test_find_cycles(self):
        validator = WorkflowValidator(
            [Node.model_validate(node(n, "script")) for n in ("x", "y", "z")],
            [Edge.model_validate(e) for e in (edge("x", "y"), edge("y", "x"), edge("z", "z"))],
        )
        assert sorted(validator.find_cycles()) == [["x", "y"], ["z"]]

    def test_acyclic_graph(self, valid_workflow):
        validator = WorkflowValidator(
            [Node.model_validate(n) for n in valid_workflow[0]],
            [Edge.model_validate(e) for e in valid_workflow[1]],
        )
        assert validator.find_cycles() == []


class TestVariableAudit:
    """Variable references in node configuration."""

    def test_missing_node_reference(self, valid_workflow):
        nodes, edges = valid_workflow
        nodes[1]["data"]["config"]["code"] = "return {{nodes.ghost.value}}"
        result = validate_workflow(nodes, edges)
        assert "Variable references a missing node: {{nodes.ghost.value}}" in messages(
            result, severity=ValidationSeverity.ERROR, category=ValidationCategory.VARIABLE)

    def test_reference_without_connection(self):
        nodes = [
            node("start", "start"),
            node("a", "script", {"code": "x"}),
            node("b", "script", {"code": "x"}),
            node("n", "notification", {"channel": "email", "recipients": "ops", "message": "{{a.result}}"}),
            node("end", "end", label="End"),
        ]
        edges = [edge("start", "a"), edge("a", "b"), edge("b", "n"), edge("n", "end")]
        result = validate_workflow(nodes, edges)
        warnings = messages(result, severity=ValidationSeverity.WARNING, category=ValidationCategory.VARIABLE)
        assert warnings == ["Node uses data from {{a.result}} but is not connected to that node"]

    def test_connected_and_exempt_references(self):
        nodes = [
            node("start", "start"),
            node("a", "script", {"code": "x"}),
            node("n", "notification", {
                "channel": "email",
                "recipients": "ops",
                "message": "{{a.result}} {{steps.a.result}} {{start.amount}} {{payload.x}} {{unknown.y}}",
            }),
            node("end", "end", label="End"),
        ]
        edges = [edge("start", "a"), edge("a", "n"), edge("n", "end")]
        result = validate_workflow(nodes, edges)
        assert findings(result, category=ValidationCategory.VARIABLE) == []
