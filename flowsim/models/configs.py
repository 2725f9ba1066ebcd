"""Typed per-node-type configuration models.

Node configuration arrives as the free-form mapping the editor writes. Each
node type has one model here; ``parse_node_config`` picks it by ``NodeType``.
Field aliases match the editor's camelCase keys, unknown keys are kept.
"""

from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .core import Node, NodeType


class ResolutionMode(str, Enum):
    """How the first segment of a ``{{a.b}}`` reference is interpreted.

    CONTEXT: ``a`` is a context root (payload, steps, nodes, loop, system).
    NODE: ``a`` is tried as an upstream node id first, then as a context root.
    """
    CONTEXT = "context"
    NODE = "node"


class NodeConfig(BaseModel):
    """Base class for node configuration models."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    # field name -> resolution mode for template fields that may reference upstream nodes
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {}

    @classmethod
    def mode_for(cls, field_name: str) -> ResolutionMode:
        """Return the resolution mode declared for a template field."""
        return cls.reference_fields.get(field_name, ResolutionMode.CONTEXT)


class KeyValueParam(BaseModel):
    """Query parameter or header row."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    key: str = ""
    value: Any = ""
    enabled: bool = True


class Condition(BaseModel):
    """One row of the condition builder."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    variable: Optional[str] = None
    operator: str = "=="
    value: Any = None


class ConditionGroup(BaseModel):
    """Group of builder conditions combined by one logical operator."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    conditions: List[Condition] = Field(default_factory=list)
    logical_operator: str = Field("AND", alias="logicalOperator")

    @field_validator('logical_operator', mode='before')
    @classmethod
    def normalize_operator(cls, value):
        return str(value or "AND").upper()


class StartConfig(NodeConfig):
    dev_input: Optional[str] = Field(None, alias="devInput")
    dev_mode: Optional[bool] = Field(None, alias="devMode")
    variables: List[Any] = Field(default_factory=list)


class EndOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    key: str = ""
    value: Any = ""


class EndConfig(NodeConfig):
    outputs: List[EndOutput] = Field(default_factory=list)


class ConditionConfig(NodeConfig):
    expression: Optional[str] = None
    condition_groups: List[ConditionGroup] = Field(default_factory=list, alias="conditionGroups")


class LoopConfig(NodeConfig):
    target_array: Optional[str] = Field(None, alias="targetArray")
    mode: str = "loop"
    concurrency: int = 10
    export_output: Optional[str] = Field(None, alias="exportOutput")
    termination_conditions: List[ConditionGroup] = Field(default_factory=list, alias="terminationConditions")

    @field_validator('concurrency', mode='before')
    @classmethod
    def default_concurrency(cls, value):
        return 10 if value in (None, "") else value

    @field_validator('concurrency')
    @classmethod
    def validate_concurrency(cls, value):
        if value < 1:
            raise ValueError("Loop concurrency must be at least 1")
        return value


class AuthConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = "none"
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = Field(None, alias="apiKey")
    api_key_name: str = Field("X-API-Key", alias="apiKeyName")
    api_key_location: str = Field("header", alias="apiKeyLocation")
    token: Optional[str] = None


class RetryConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    enabled: bool = False
    max_retries: int = Field(3, alias="maxRetries")
    delay: int = 1000
    retry_on_status_codes: List[int] = Field(default_factory=list, alias="retryOnStatusCodes")


class ResponseHandling(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    follow_redirects: bool = Field(True, alias="followRedirects")
    parse_response: bool = Field(True, alias="parseResponse")
    extract_path: Optional[str] = Field(None, alias="extractPath")
    status_code_branching: bool = Field(False, alias="statusCodeBranching")


HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE")


class APICallConfig(NodeConfig):
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {
        "url": ResolutionMode.NODE,
        "query_params": ResolutionMode.NODE,
        "headers": ResolutionMode.NODE,
        "body": ResolutionMode.NODE,
        "auth": ResolutionMode.NODE,
    }

    method: Optional[str] = None
    url: Optional[str] = None
    query_params: List[KeyValueParam] = Field(default_factory=list, alias="queryParams")
    headers: List[KeyValueParam] = Field(default_factory=list)
    body_type: str = Field("none", alias="bodyType")
    body: Optional[str] = None
    auth: AuthConfig = Field(default_factory=AuthConfig)
    timeout: Optional[int] = None
    retry: RetryConfig = Field(default_factory=RetryConfig)
    response_handling: ResponseHandling = Field(default_factory=ResponseHandling, alias="responseHandling")


class ApprovalConfig(NodeConfig):
    approver: Optional[str] = None
    approval_type: Optional[str] = Field(None, alias="approvalType")
    approval_strategy: str = Field("all", alias="approvalStrategy")
    timeout: float = 24
    timeout_unit: str = Field("hours", alias="timeoutUnit")
    form_title: str = Field("Approval form", alias="formTitle")
    send_approval_notice: bool = Field(True, alias="sendApprovalNotice")
    send_timeout_notice: bool = Field(True, alias="sendTimeoutNotice")
    notice_recipient: str = Field("requester", alias="noticeRecipient")
    mock_decision: str = Field("approve", alias="mockDecision")


class NotificationConfig(NodeConfig):
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {"message": ResolutionMode.NODE, "recipients": ResolutionMode.NODE}

    channel: Optional[str] = None
    recipients: Any = Field(None, validation_alias=AliasChoices("recipients", "recipient"))
    message: Optional[str] = None


class CCConfig(NodeConfig):
    recipients: Any = Field(None, validation_alias=AliasChoices("recipients", "recipient"))
    channel: Optional[str] = None
    timing: Optional[str] = None


DELAY_UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


class DelayConfig(NodeConfig):
    duration: Optional[float] = None
    unit: str = "seconds"

    def duration_seconds(self) -> float:
        """Configured duration converted to seconds; unknown units count as seconds."""
        return (self.duration or 0) * DELAY_UNIT_SECONDS.get(self.unit, 1)


class ScriptConfig(NodeConfig):
    code: Optional[str] = Field(None, validation_alias=AliasChoices("code", "script"))
    language: str = "javascript"
    input_variables: List[Any] = Field(default_factory=list, alias="inputVariables")
    output_field: str = Field("result", alias="outputField")


class DataOpConfig(NodeConfig):
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {"target_field": ResolutionMode.NODE}

    op_type: Optional[str] = Field(None, validation_alias=AliasChoices("op_type", "opType", "operation"))
    target_field: Optional[str] = Field(None, alias="targetField")


class ParallelConfig(NodeConfig):
    branches: List[Any] = Field(default_factory=list)


class LLMConfig(NodeConfig):
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {"system_prompt": ResolutionMode.NODE, "user_prompt": ResolutionMode.NODE}

    model: Optional[str] = None
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")
    user_prompt: Optional[str] = Field(None, alias="userPrompt")
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(None, alias="maxTokens")


class SQLConfig(NodeConfig):
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {"sql": ResolutionMode.NODE}

    sql: Optional[str] = None
    database_id: Optional[str] = Field(None, alias="databaseId")
    return_single_record: bool = Field(False, alias="returnSingleRecord")
    unsafe_mode: bool = Field(False, alias="unsafeMode")


class KnowledgeRetrievalConfig(NodeConfig):
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {"query": ResolutionMode.NODE}

    query: Optional[str] = None
    dataset_ids: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("dataset_ids", "datasetIds")
    )
    retrieval_mode: Optional[str] = None
    top_k: int = 3
    score_threshold: Optional[float] = None


class DocumentExtractorConfig(NodeConfig):
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {"file_url": ResolutionMode.NODE}

    file_url: Optional[str] = Field(None, validation_alias=AliasChoices("file_url", "fileUrl", "documentUrl"))
    extraction_mode: str = "text"
    extract_fields: List[Any] = Field(default_factory=list, alias="extractFields")


class ClassifierCategory(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = None
    name: str = ""
    keywords: List[str] = Field(default_factory=list)


class QuestionClassifierConfig(NodeConfig):
    reference_fields: ClassVar[Dict[str, ResolutionMode]] = {"input_variable": ResolutionMode.NODE}

    categories: List[ClassifierCategory] = Field(default_factory=list)
    input_variable: Optional[str] = Field(None, alias="inputVariable")
    model: Optional[str] = None


class PassThroughConfig(NodeConfig):
    """Configuration of node types that only pass data through."""


CONFIG_MODELS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.START: StartConfig,
    NodeType.END: EndConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.API_CALL: APICallConfig,
    NodeType.APPROVAL: ApprovalConfig,
    NodeType.NOTIFICATION: NotificationConfig,
    NodeType.CC: CCConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.SCRIPT: ScriptConfig,
    NodeType.DATA_OP: DataOpConfig,
    NodeType.PARALLEL: ParallelConfig,
    NodeType.LLM: LLMConfig,
    NodeType.SQL: SQLConfig,
    NodeType.KNOWLEDGE_RETRIEVAL: KnowledgeRetrievalConfig,
    NodeType.DOCUMENT_EXTRACTOR: DocumentExtractorConfig,
    NodeType.QUESTION_CLASSIFIER: QuestionClassifierConfig,
    NodeType.CLOUD_PHONE: PassThroughConfig,
    NodeType.STORAGE: PassThroughConfig,
}


def parse_node_config(node: Node) -> NodeConfig:
    """Parse a node's raw config into the model for its type.

    Raises:
        pydantic.ValidationError: If the config does not fit the model
    """
    model = CONFIG_MODELS.get(node.type, PassThroughConfig)
    return model.model_validate(node.config or {})
