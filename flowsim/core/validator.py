"""Structural validation of workflow graphs.

Validation never raises on a malformed graph: every problem found becomes a
finding in the returned ``ValidationResult`` and all checks always run.
"""

import json
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from ..models.configs import (
    HTTP_METHODS,
    APICallConfig,
    ApprovalConfig,
    CCConfig,
    ConditionConfig,
    DataOpConfig,
    DelayConfig,
    DocumentExtractorConfig,
    EndConfig,
    KnowledgeRetrievalConfig,
    LLMConfig,
    LoopConfig,
    NotificationConfig,
    ParallelConfig,
    QuestionClassifierConfig,
    ScriptConfig,
    SQLConfig,
    parse_node_config,
)
from ..models.core import (
    Edge,
    Node,
    NodeType,
    ValidationCategory,
    ValidationError,
    ValidationResult,
    ValidationSeverity,
    ValidationSummary,
)
from .graph import WorkflowGraph
from .logging import get_logger
from .variables import find_references

logger = get_logger(__name__)

APPROVAL_TYPES = ("single", "any", "all")
MAX_DELAY_SECONDS = 86400
LOOP_OUTPUT_HANDLE = "loop-output"
NON_NODE_ROOTS = ("payload", "system", "loop")


def _blank(value: Any) -> bool:
    """True for None, whitespace-only strings and empty containers."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


class WorkflowValidator:
    """Runs every structural check over one workflow and collects the findings."""

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge],
                 rejected: Optional[List[Tuple[ValidationCategory, Optional[str], str]]] = None):
        self.graph = WorkflowGraph(nodes, edges)
        # (category, node id, message) for input entries that never became models
        self.rejected = list(rejected or [])
        self.errors: List[ValidationError] = []
        self._node_rules: Dict[NodeType, Callable[[Node, Any], None]] = {
            NodeType.END: self._check_end,
            NodeType.API_CALL: self._check_api_call,
            NodeType.CONDITION: self._check_condition,
            NodeType.LOOP: self._check_loop,
            NodeType.PARALLEL: self._check_parallel,
            NodeType.APPROVAL: self._check_approval,
            NodeType.NOTIFICATION: self._check_notification,
            NodeType.DELAY: self._check_delay,
            NodeType.SCRIPT: self._check_script,
            NodeType.LLM: self._check_llm,
            NodeType.SQL: self._check_sql,
            NodeType.KNOWLEDGE_RETRIEVAL: self._check_knowledge_retrieval,
            NodeType.DOCUMENT_EXTRACTOR: self._check_document_extractor,
            NodeType.DATA_OP: self._check_data_op,
            NodeType.CC: self._check_cc,
            NodeType.QUESTION_CLASSIFIER: self._check_question_classifier,
        }

    @property
    def nodes(self) -> List[Node]:
        return self.graph.nodes

    @property
    def edges(self) -> List[Edge]:
        return self.graph.edges

    def validate(self) -> ValidationResult:
        """Run all checks and summarize the findings."""
        self.errors = []

        for category, node_id, message in self.rejected:
            self.errors.append(ValidationError(
                id=f"val_{uuid.uuid4().hex[:12]}",
                severity=ValidationSeverity.ERROR,
                category=category,
                node_id=node_id,
                message=message,
                suggestion="Fix or remove the entry in the workflow definition",
            ))
        self._validate_workflow_structure()
        self._validate_node_configs()
        self._validate_connections()
        self._validate_variables()

        error_count = sum(1 for e in self.errors if e.severity == ValidationSeverity.ERROR)
        warning_count = sum(1 for e in self.errors if e.severity == ValidationSeverity.WARNING)
        info_count = sum(1 for e in self.errors if e.severity == ValidationSeverity.INFO)
        logger.debug(
            f"Validated {len(self.nodes)} nodes / {len(self.edges)} edges: "
            f"{error_count} errors, {warning_count} warnings, {info_count} info"
        )

        return ValidationResult(
            is_valid=error_count == 0,
            errors=list(self.errors),
            summary=ValidationSummary(
                total_nodes=len(self.nodes),
                total_edges=len(self.edges),
                error_count=error_count,
                warning_count=warning_count,
                info_count=info_count,
            ),
        )

    def _add(self, severity: ValidationSeverity, category: ValidationCategory, message: str,
             suggestion: Optional[str] = None, node: Optional[Node] = None):
        self.errors.append(ValidationError(
            id=f"val_{uuid.uuid4().hex[:12]}",
            severity=severity,
            category=category,
            node_id=node.id if node else None,
            node_label=node.display_name if node else None,
            message=message,
            suggestion=suggestion,
        ))

    def _node_error(self, node: Node, message: str, suggestion: str):
        self._add(ValidationSeverity.ERROR, ValidationCategory.NODE_CONFIG, message, suggestion, node)

    def _node_warning(self, node: Node, message: str, suggestion: str,
                      category: ValidationCategory = ValidationCategory.NODE_CONFIG):
        self._add(ValidationSeverity.WARNING, category, message, suggestion, node)

    # Workflow-level checks

    def _validate_workflow_structure(self):
        starts = self.graph.nodes_of_type(NodeType.START)
        ends = self.graph.nodes_of_type(NodeType.END)

        if not starts:
            self._add(ValidationSeverity.ERROR, ValidationCategory.WORKFLOW,
                      "Workflow must contain a start node",
                      "Add a start node to the canvas")
        elif len(starts) > 1:
            self._add(ValidationSeverity.ERROR, ValidationCategory.WORKFLOW,
                      f"Workflow can contain only one start node, found {len(starts)}",
                      "Remove the extra start nodes")

        if not ends:
            self._add(ValidationSeverity.WARNING, ValidationCategory.WORKFLOW,
                      "Workflow has no end node",
                      "Add an end node to make the end of the flow explicit")

        if self.nodes and not self.edges:
            self._add(ValidationSeverity.WARNING, ValidationCategory.WORKFLOW,
                      "Workflow nodes are not connected",
                      "Drag between node handles to connect them")

        seen: Set[str] = set()
        reported: Set[str] = set()
        for node in self.nodes:
            if node.id in seen and node.id not in reported:
                reported.add(node.id)
                self._add(ValidationSeverity.ERROR, ValidationCategory.WORKFLOW,
                          f"Node id '{node.id}' is used by more than one node",
                          "Give every node a unique id", node)
            seen.add(node.id)

    # Per-type configuration checks

    def _validate_node_configs(self):
        for node in self.nodes:
            try:
                config = parse_node_config(node)
            except PydanticValidationError as e:
                first = e.errors()[0] if e.errors() else {}
                location = ".".join(str(part) for part in first.get("loc", ())) or "config"
                self._node_error(node, f"Node configuration is invalid at '{location}': {first.get('msg', str(e))}",
                                 "Fix the highlighted field in the configuration panel")
                continue

            rule = self._node_rules.get(node.type)
            if rule:
                rule(node, config)

    def _outgoing_count(self, node: Node) -> int:
        return len(self.graph.outgoing_edges(node.id))

    def _check_end(self, node: Node, config: EndConfig):
        if _blank(node.label):
            self._node_warning(node, "End node has no label", "Give the end node a descriptive label")

    def _check_api_call(self, node: Node, config: APICallConfig):
        if _blank(config.url):
            self._node_error(node, "API call node has no URL", "Enter the URL of the target API")

        if config.method and config.method.upper() not in HTTP_METHODS:
            self._node_error(node, f"API call node uses an invalid HTTP method: {config.method}",
                             "Choose a valid HTTP method (GET, POST, PUT, ...)")

        if config.url and "{{" in config.url:
            self._add(ValidationSeverity.INFO, ValidationCategory.VARIABLE,
                      "API URL contains variable references",
                      "Make sure the variable paths are correct; they are substituted at run time", node)

    def _check_condition(self, node: Node, config: ConditionConfig):
        has_expression = not _blank(config.expression)
        group_count = len(config.condition_groups)
        if not has_expression and not group_count:
            self._node_error(node, "Condition node has no condition",
                             "Enter an expression or add a condition group")

        outgoing = self._outgoing_count(node)
        if group_count and outgoing < group_count:
            self._node_warning(
                node,
                f"Condition node defines {group_count} condition groups but has only {outgoing} outgoing connections",
                "Connect an outgoing edge for every branch",
                ValidationCategory.CONNECTION,
            )

    def _check_loop(self, node: Node, config: LoopConfig):
        if _blank(config.target_array):
            self._node_error(node, "Loop node has no target array", "Set the path of the array to iterate over")

        children = self.graph.children_of(node.id)
        if not children:
            self._node_warning(node, "Loop node has no child nodes", "Drag nodes into the loop to define its body")
        elif not any(edge.source_handle == LOOP_OUTPUT_HANDLE for edge in self.graph.outgoing_edges(node.id)):
            self._node_warning(node, "Loop node has no loop output connection",
                               "Connect the loop output handle to the next node",
                               ValidationCategory.CONNECTION)

        for child in children:
            if child.type == NodeType.LOOP:
                self._node_error(child, "Loops cannot be nested inside another loop",
                                 "Move the inner loop out of the loop body")

    def _check_parallel(self, node: Node, config: ParallelConfig):
        branch_count = len(config.branches)
        if not branch_count:
            self._node_error(node, "Parallel node has no branches", "Add at least one branch")

        outgoing = self._outgoing_count(node)
        if outgoing < branch_count:
            self._node_warning(
                node,
                f"Parallel node defines {branch_count} branches but has only {outgoing} outgoing connections",
                "Connect an outgoing edge for every branch",
                ValidationCategory.CONNECTION,
            )

    def _check_approval(self, node: Node, config: ApprovalConfig):
        if _blank(config.approver):
            self._node_error(node, "Approval node has no approver", "Choose an approver or approver group")
        if config.approval_type not in APPROVAL_TYPES:
            self._node_error(node, "Approval node has no valid approval type",
                             "Choose an approval type: single, any or all")

    def _check_notification(self, node: Node, config: NotificationConfig):
        if _blank(config.channel):
            self._node_error(node, "Notification node has no channel", "Choose a notification channel")
        if _blank(config.recipients):
            self._node_error(node, "Notification node has no recipients", "Specify who receives the notification")

    def _check_delay(self, node: Node, config: DelayConfig):
        if config.duration is None or config.duration <= 0:
            self._node_error(node, "Delay node has no delay duration", "Set a delay duration greater than zero")
        elif config.duration_seconds() > MAX_DELAY_SECONDS:
            self._node_warning(node, "Delay is longer than 24 hours", "Check that such a long delay is intended")

    def _check_script(self, node: Node, config: ScriptConfig):
        if _blank(config.code):
            self._node_error(node, "Script node has no code", "Write the script in the configuration panel")

    def _check_llm(self, node: Node, config: LLMConfig):
        if _blank(config.model):
            self._node_error(node, "LLM node has no model", "Choose or enter a model name")
        if _blank(config.system_prompt):
            self._node_error(node, "LLM node has no system prompt", "Enter a system prompt")
        if _blank(config.user_prompt):
            self._node_error(node, "LLM node has no user prompt", "Enter a user prompt")
        if config.temperature is not None and not 0 <= config.temperature <= 2:
            self._node_warning(node, "LLM temperature is outside the recommended range (0-2)",
                               "Set the temperature between 0 and 2")

    def _check_sql(self, node: Node, config: SQLConfig):
        if _blank(config.sql):
            self._node_error(node, "SQL node has no SQL statement", "Write the SQL statement to run")
        if _blank(config.database_id):
            self._node_error(node, "SQL node has no database selected", "Choose the database to run against")
        if config.unsafe_mode:
            self._node_warning(node, "SQL node runs in unsafe mode",
                               "Unsafe mode allows arbitrary SQL; use it with care")

    def _check_knowledge_retrieval(self, node: Node, config: KnowledgeRetrievalConfig):
        if not config.dataset_ids:
            self._node_error(node, "Knowledge retrieval node has no knowledge base selected",
                             "Choose the knowledge bases to search")
        if _blank(config.query):
            self._node_error(node, "Knowledge retrieval node has no query",
                             "Enter the query text or a variable reference")

    def _check_document_extractor(self, node: Node, config: DocumentExtractorConfig):
        if _blank(config.file_url):
            self._node_error(node, "Document extractor node has no document URL", "Enter the URL of the document")
        if not config.extract_fields:
            self._node_warning(node, "Document extractor node has no fields to extract",
                               "Add the fields to extract from the document")

    def _check_data_op(self, node: Node, config: DataOpConfig):
        if _blank(config.op_type):
            self._node_error(node, "Data operation node has no operation type",
                             "Choose an operation: map, filter, transform, ...")

    def _check_cc(self, node: Node, config: CCConfig):
        if _blank(config.recipients):
            self._node_error(node, "CC node has no recipients", "Specify who receives the copy")

    def _check_question_classifier(self, node: Node, config: QuestionClassifierConfig):
        category_count = len(config.categories)
        if not category_count:
            self._node_error(node, "Question classifier node has no categories", "Add at least one category")

        outgoing = self._outgoing_count(node)
        if outgoing < category_count:
            self._node_warning(
                node,
                f"Question classifier defines {category_count} categories but has only {outgoing} outgoing connections",
                "Connect an outgoing edge for every category",
                ValidationCategory.CONNECTION,
            )

    # Connectivity and cycles

    def _validate_connections(self):
        if not self.nodes:
            return

        connected: Set[str] = set()
        for edge in self.edges:
            if not self.graph.has_node(edge.source):
                self._add(ValidationSeverity.ERROR, ValidationCategory.CONNECTION,
                          f"Connection references a missing source node: {edge.source}",
                          "Delete the connection or recreate the node")
            if not self.graph.has_node(edge.target):
                self._add(ValidationSeverity.ERROR, ValidationCategory.CONNECTION,
                          f"Connection references a missing target node: {edge.target}",
                          "Delete the connection or recreate the node")
            connected.add(edge.source)
            connected.add(edge.target)

        # a child is connected through its container
        for node in self.nodes:
            if node.parent_id and self.graph.has_node(node.parent_id):
                connected.add(node.id)
                connected.add(node.parent_id)

        isolated = self._find_isolated_nodes(connected)
        for node in isolated:
            self._node_warning(node, f"Node \"{node.display_name}\" is isolated and not connected to any other node",
                               "Delete the node or connect it to the workflow",
                               ValidationCategory.CONNECTION)

        start = self.graph.start_node()
        if start is not None:
            reachable = self.graph.reachable_from(start.id)
            isolated_ids = {node.id for node in isolated}
            for node in self.nodes:
                if node.id not in reachable and node.id not in isolated_ids:
                    self._node_warning(node, f"Node \"{node.display_name}\" cannot be reached from the start node",
                                       "Connect it to a path that begins at the start node",
                                       ValidationCategory.CONNECTION)

        self._detect_cycles()

    def _find_isolated_nodes(self, connected: Set[str]) -> List[Node]:
        """Nodes that appear in no edge and have no container or children."""
        isolated: List[Node] = []
        seen: Set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                continue
            seen.add(node.id)
            if node.id not in connected:
                isolated.append(node)
        return isolated

    def find_cycles(self) -> List[List[str]]:
        """Find cycles with a DFS over the edge adjacency list.

        Each cycle is reported once, starting from the node where the DFS
        first entered it.
        """
        graph = self.graph.adjacency()
        visited: Set[str] = set()
        rec_stack: Set[str] = set()
        cycles: List[List[str]] = []
        seen_keys: Set[Tuple[str, ...]] = set()

        def dfs(node_id: str, path: List[str]):
            visited.add(node_id)
            rec_stack.add(node_id)
            path.append(node_id)

            for neighbor in graph.get(node_id, []):
                if neighbor not in visited:
                    dfs(neighbor, path)
                elif neighbor in rec_stack:
                    cycle = path[path.index(neighbor):]
                    key = self._cycle_key(cycle)
                    if key not in seen_keys:
                        seen_keys.add(key)
                        cycles.append(cycle)

            path.pop()
            rec_stack.discard(node_id)

        for node_id in graph:
            if node_id not in visited:
                dfs(node_id, [])

        return cycles

    @staticmethod
    def _cycle_key(cycle: List[str]) -> Tuple[str, ...]:
        """Rotation-independent identity of a cycle."""
        pivot = cycle.index(min(cycle))
        return tuple(cycle[pivot:] + cycle[:pivot])

    def _detect_cycles(self):
        for cycle in self.find_cycles():
            labels = []
            for node_id in cycle:
                node = self.graph.node_by_id(node_id)
                labels.append(node.display_name if node else node_id)
            self._add(ValidationSeverity.ERROR, ValidationCategory.CONNECTION,
                      f"Cycle detected: {' → '.join(labels)}",
                      "Change the connections so the flow cannot loop forever")

    # Variable references

    def _referenced_node_id(self, reference: str) -> Tuple[Optional[str], bool]:
        """Return ``(node_id, explicit)`` for a reference, or ``(None, False)``.

        ``explicit`` is true for the ``nodes.X`` / ``steps.X`` forms, whose
        target must exist. A bare ``X.field`` only counts when X is a node id.
        """
        parts = [part.strip() for part in reference.split(".")]
        if parts[0] in ("nodes", "steps"):
            return (parts[1], True) if len(parts) > 1 and parts[1] else (None, False)
        if parts[0] in NON_NODE_ROOTS:
            return None, False
        if self.graph.has_node(parts[0]):
            return parts[0], False
        return None, False

    def _validate_variables(self):
        for node in self.nodes:
            config_text = json.dumps(node.config or {}, ensure_ascii=False, default=str)
            checked: Set[str] = set()
            for reference in find_references(config_text):
                if reference in checked:
                    continue
                checked.add(reference)

                source_id, explicit = self._referenced_node_id(reference)
                if source_id is None:
                    continue
                source = self.graph.node_by_id(source_id)
                if source is None:
                    if explicit:
                        self._add(ValidationSeverity.ERROR, ValidationCategory.VARIABLE,
                                  f"Variable references a missing node: {{{{{reference}}}}}",
                                  "Check the variable path or make sure the source node exists", node)
                    continue

                if source.id in (node.id, node.parent_id) or source.type == NodeType.START:
                    continue
                has_connection = any(edge.target == node.id for edge in self.graph.outgoing_edges(source.id))
                if not has_connection:
                    self._add(ValidationSeverity.WARNING, ValidationCategory.VARIABLE,
                              f"Node uses data from {{{{{reference}}}}} but is not connected to that node",
                              "Connect the source node to this node", node)


def _describe_parse_error(error: PydanticValidationError) -> str:
    first = error.errors()[0] if error.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", str(error))
    return f"{location}: {message}" if location else message


def _parse_entries(items, model, kind: str) -> Tuple[list, List[Tuple[Optional[str], str]]]:
    """Split raw entries into parsed models and (id, message) pairs for those that fail."""
    parsed, rejected = [], []
    for position, item in enumerate(items):
        if isinstance(item, model):
            parsed.append(item)
            continue
        try:
            parsed.append(model.model_validate(item))
        except PydanticValidationError as e:
            raw_id = item.get("id") if isinstance(item, dict) else None
            entry_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else None
            name = f"'{entry_id}'" if entry_id else f"at position {position}"
            rejected.append((entry_id, f"{kind} {name} is malformed and was skipped: {_describe_parse_error(e)}"))
    return parsed, rejected


def validate_workflow(
    nodes: Iterable[Union[Node, Dict[str, Any]]],
    edges: Iterable[Union[Edge, Dict[str, Any]]],
) -> ValidationResult:
    """Validate a workflow given as models or editor dictionaries.

    Entries that do not parse become findings (``workflow`` for nodes,
    ``connection`` for edges) and the remaining checks run on the rest.
    """
    parsed_nodes, bad_nodes = _parse_entries(nodes, Node, "Node")
    parsed_edges, bad_edges = _parse_entries(edges, Edge, "Edge")
    rejected = [(ValidationCategory.WORKFLOW, node_id, message) for node_id, message in bad_nodes]
    rejected += [(ValidationCategory.CONNECTION, None, message) for _, message in bad_edges]
    return WorkflowValidator(parsed_nodes, parsed_edges, rejected=rejected).validate()
