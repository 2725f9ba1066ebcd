"""Core Pydantic models for the workflow simulator."""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeType(str, Enum):
    """Enumeration of workflow node types understood by the editor."""
    START = "start"
    END = "end"
    APPROVAL = "approval"
    CC = "cc"
    CONDITION = "condition"
    API_CALL = "api_call"
    NOTIFICATION = "notification"
    DELAY = "delay"
    DATA_OP = "data_op"
    SCRIPT = "script"
    PARALLEL = "parallel"
    LLM = "llm"
    KNOWLEDGE_RETRIEVAL = "knowledge_retrieval"
    DOCUMENT_EXTRACTOR = "document_extractor"
    LOOP = "loop"
    SQL = "sql"
    QUESTION_CLASSIFIER = "question_classifier"
    CLOUD_PHONE = "cloud_phone"
    STORAGE = "storage"


class NodeStatus(str, Enum):
    """Latest execution status of a node within one simulation run."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TraceStatus(str, Enum):
    """Outcome recorded on a single trace entry."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ValidationSeverity(str, Enum):
    """Severity of a validation finding."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationCategory(str, Enum):
    """Area of the workflow a validation finding belongs to."""
    NODE_CONFIG = "node_config"
    CONNECTION = "connection"
    WORKFLOW = "workflow"
    VARIABLE = "variable"


class WorkflowModel(BaseModel):
    """Base model accepting both snake_case names and the editor's camelCase aliases."""
    model_config = ConfigDict(populate_by_name=True)


class Node(WorkflowModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node")
    type: NodeType = Field(..., description="Node type")
    parent_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("parent_id", "parentId", "parentNode"),
        serialization_alias="parentId",
        description="Container node this node belongs to (e.g. a loop)"
    )
    label: str = Field("", description="Human readable label")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")

    @model_validator(mode='before')
    @classmethod
    def lift_editor_data(cls, values):
        """Accept the editor shape where label and config live under ``data``."""
        if isinstance(values, dict) and isinstance(values.get("data"), dict):
            values = dict(values)
            data = values.pop("data")
            values.setdefault("label", data.get("label") or "")
            values.setdefault("config", data.get("config") or {})
        return values

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not empty."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()

    @field_validator('config', mode='before')
    @classmethod
    def default_config(cls, config):
        """Treat a missing config as empty."""
        return config if config is not None else {}

    @property
    def display_name(self) -> str:
        """Label used in messages, falling back to the id."""
        return self.label or self.id


class Edge(WorkflowModel):
    """Directed connection between two nodes."""
    id: str = Field(..., description="Unique identifier for the edge")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(None, alias="sourceHandle", description="Output handle on the source node")
    target_handle: Optional[str] = Field(None, alias="targetHandle", description="Input handle on the target node")


class TraceEntry(WorkflowModel):
    """Record of a single node dispatch."""
    step_id: str = Field(..., alias="stepId", description="Unique step identifier")
    sequence: int = Field(..., description="Monotonic dispatch counter giving the total order of entries")
    node_id: str = Field(..., alias="nodeId", description="Dispatched node")
    node_type: NodeType = Field(..., alias="nodeType", description="Type of the dispatched node")
    label: str = Field("", description="Node label")
    status: TraceStatus = Field(..., description="Outcome of the dispatch")
    timestamp_start: str = Field(..., alias="timestampStart", description="ISO-8601 start time")
    duration_ms: float = Field(0.0, alias="durationMs", description="Handler wall time in milliseconds")
    input: Any = Field(None, description="Input recorded for the node")
    output: Any = Field(None, description="Output recorded for the node")
    error: Optional[str] = Field(None, description="Failure message")
    loop_index: Optional[int] = Field(None, alias="loopIndex", description="Iteration index for loop body entries")


class ValidationError(WorkflowModel):
    """A single validation finding."""
    id: str = Field(..., description="Finding identifier")
    severity: ValidationSeverity = Field(..., description="Finding severity")
    category: ValidationCategory = Field(..., description="Finding category")
    node_id: Optional[str] = Field(None, alias="nodeId", description="Node the finding refers to")
    node_label: Optional[str] = Field(None, alias="nodeLabel", description="Label of that node")
    message: str = Field(..., description="What is wrong")
    suggestion: Optional[str] = Field(None, description="How to fix it")


class ValidationSummary(WorkflowModel):
    """Counts over a validation result."""
    total_nodes: int = Field(0, alias="totalNodes")
    total_edges: int = Field(0, alias="totalEdges")
    error_count: int = Field(0, alias="errorCount")
    warning_count: int = Field(0, alias="warningCount")
    info_count: int = Field(0, alias="infoCount")


class ValidationResult(WorkflowModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., alias="isValid", description="True iff there are no error-severity findings")
    errors: List[ValidationError] = Field(default_factory=list, description="All findings")
    summary: ValidationSummary = Field(default_factory=ValidationSummary, description="Finding counts")

    def by_severity(self, severity: ValidationSeverity) -> List[ValidationError]:
        """Return the findings of one severity."""
        return [error for error in self.errors if error.severity == severity]


class SimulationResult(WorkflowModel):
    """Everything a simulation run produces."""
    run_id: str = Field(..., alias="runId", description="Identifier of the simulation run")
    trace: List[TraceEntry] = Field(default_factory=list, description="Trace entries in dispatch order")
    status: Dict[str, NodeStatus] = Field(default_factory=dict, description="Latest status per node")
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Latest logged output per node")
    steps_executed: int = Field(0, alias="stepsExecuted", description="Queue dispatches performed")
    truncated: bool = Field(False, description="True when the step ceiling stopped the run")

    def entries_for(self, node_id: str) -> List[TraceEntry]:
        """Return the trace entries of one node."""
        return [entry for entry in self.trace if entry.node_id == node_id]
