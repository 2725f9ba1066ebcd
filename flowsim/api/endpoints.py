"""FastAPI REST endpoints for the workflow simulator."""

from datetime import datetime, timezone
from typing import Any, List, Optional
from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..core.exceptions import (
    GraphValidationError,
    WorkflowEngineError,
    create_error_response,
)
from ..core.handler_registry import NodeHandlerRegistry
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..core.simulator import WorkflowSimulator
from ..core.validator import validate_workflow
from ..models.core import (
    Edge,
    Node,
    NodeType,
    SimulationResult,
    ValidationResult,
    ValidationSeverity,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["simulation"])

# Initialized by the application factory
_simulator: Optional[WorkflowSimulator] = None
_registry: Optional[NodeHandlerRegistry] = None


def init_dependencies(simulator: WorkflowSimulator, registry: NodeHandlerRegistry):
    """Initialize the global dependencies."""
    global _simulator, _registry
    _simulator = simulator
    _registry = registry


def get_simulator() -> WorkflowSimulator:
    """Dependency to get the simulator."""
    if _simulator is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Simulator not initialized"
        )
    return _simulator


def get_registry() -> NodeHandlerRegistry:
    """Dependency to get the handler registry."""
    if _registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Handler registry not initialized"
        )
    return _registry


class WorkflowRequest(BaseModel):
    """Nodes and edges as exported by the editor."""
    model_config = ConfigDict(populate_by_name=True)

    nodes: List[Node] = Field(default_factory=list, description="Workflow nodes")
    edges: List[Edge] = Field(default_factory=list, description="Workflow edges")


class SimulateRequest(WorkflowRequest):
    """Request model for simulating a workflow."""
    payload: Optional[Any] = Field(
        None,
        validation_alias=AliasChoices("payload", "samplePayload", "sample_payload"),
        description="Initial payload as JSON text or a JSON value; defaults to the Start node's sample input"
    )
    workflow_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("workflow_id", "workflowId"),
        description="Identifier exposed to templates as system.workflow_id"
    )
    validate_first: bool = Field(
        False,
        validation_alias=AliasChoices("validate_first", "validateFirst"),
        description="Reject the request with 400 when validation reports errors"
    )


class NodeTypeInfo(BaseModel):
    """One supported node type."""
    type: str = Field(..., description="Node type identifier")
    description: str = Field("", description="What simulating the node does")
    handler: str = Field(..., description="'registry' for registered handlers, 'engine' for built-in control flow")


@router.post(
    "/simulate",
    response_model=SimulationResult,
    summary="Simulate a workflow",
    description="Walk the workflow from its Start node with mocked side effects and return the execution trace"
)
async def simulate_workflow(
    request: SimulateRequest,
    simulator: WorkflowSimulator = Depends(get_simulator)
) -> SimulationResult:
    """
    Simulate a workflow.

    Args:
        request: Workflow definition and optional sample payload
        simulator: Simulator dependency

    Returns:
        Simulation result with trace, node statuses and node outputs

    Raises:
        HTTPException: If validation was requested and failed, or on unexpected errors
    """
    try:
        logger.info(f"Simulating workflow {request.workflow_id or '<unnamed>'}: {len(request.nodes)} nodes")

        if request.validate_first:
            validation = validate_workflow(request.nodes, request.edges)
            if not validation.is_valid:
                raise GraphValidationError(
                    "Workflow failed validation",
                    validation_errors=[e.message for e in validation.by_severity(ValidationSeverity.ERROR)]
                )

        return simulator.simulate(
            request.nodes,
            request.edges,
            sample_payload=request.payload,
            workflow_id=request.workflow_id,
        )

    except WorkflowEngineError as e:
        logger.warning(f"Simulation rejected: {e.message}")
        raise HTTPException(
            status_code=status_code_for_error(e),
            detail=create_error_response(e)
        )
    except Exception as e:
        logger.error(f"Unexpected error during simulation: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "InternalError",
                "message": "An unexpected error occurred while simulating the workflow",
                "details": {"original_error": str(e)},
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )


@router.post(
    "/validate",
    response_model=ValidationResult,
    summary="Validate a workflow",
    description="Run the structural checks and return every finding"
)
async def validate_workflow_endpoint(request: WorkflowRequest) -> ValidationResult:
    """
    Validate a workflow definition.

    Args:
        request: Workflow definition

    Returns:
        Validation result with findings and counts
    """
    try:
        result = validate_workflow(request.nodes, request.edges)
        logger.debug(f"Validation completed. Valid: {result.is_valid}")
        return result

    except Exception as e:
        logger.error(f"Error during workflow validation: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "ValidationError",
                "message": "An error occurred during workflow validation",
                "details": {"original_error": str(e)}
            }
        )


@router.get(
    "/node-types",
    response_model=List[NodeTypeInfo],
    summary="List node types",
    description="List every node type the simulator understands"
)
async def list_node_types(registry: NodeHandlerRegistry = Depends(get_registry)) -> List[NodeTypeInfo]:
    """List supported node types with the description of their handler."""
    descriptions = registry.list_handlers()
    node_types = []
    for node_type in NodeType:
        if node_type.value in descriptions:
            node_types.append(NodeTypeInfo(
                type=node_type.value,
                description=descriptions[node_type.value],
                handler="registry"
            ))
        elif node_type == NodeType.LOOP:
            node_types.append(NodeTypeInfo(
                type=node_type.value,
                description="Run the child nodes once per element of the target array",
                handler="engine"
            ))
    return node_types
