"""Breadth-first simulation engine for workflow graphs."""

import json
import logging
import contextvars
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from ..config import AppConfig, get_config
from ..models.configs import LoopConfig, ResolutionMode, parse_node_config
from ..models.core import (
    Edge,
    Node,
    NodeStatus,
    NodeType,
    SimulationResult,
    TraceEntry,
    TraceStatus,
)
from .exceptions import NodeExecutionError, WorkflowEngineError
from .expressions import evaluate_condition
from .graph import WorkflowGraph
from .handler_registry import HandlerResult, HandlerRuntime, NodeHandlerRegistry, get_default_registry
from .http_client import create_http_client
from .logging import get_logger, log_with_context, logging_context
from .variables import UNDEFINED, VariableContext, build_system_values, resolve

logger = get_logger(__name__)

LOOP_BODY_HANDLE = "loop-start"


def _now() -> Tuple[str, float]:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"), time.perf_counter()


@dataclass
class _Execution:
    """One handler invocation, not yet written to the trace."""
    node: Node
    result: HandlerResult
    started_at: str
    duration_ms: float
    loop_index: Optional[int] = None


@dataclass
class _Iteration:
    """Everything one loop iteration produced."""
    index: int
    executions: List[_Execution] = field(default_factory=list)
    value: Any = None
    error: Optional[str] = None


class _RunState:
    """Mutable bookkeeping of a single simulation run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.trace: List[TraceEntry] = []
        self.status: Dict[str, NodeStatus] = {}
        self.outputs: Dict[str, Any] = {}
        self.sequence = 0

    def record(self, execution: _Execution) -> TraceEntry:
        """Append a trace entry and update status and outputs for its node."""
        self.sequence += 1
        node, result = execution.node, execution.result
        step_id = f"step-{self.sequence}-{node.id}"
        if execution.loop_index is not None:
            step_id += f"-iter{execution.loop_index}"

        logged_output = result.logged_output()
        entry = TraceEntry(
            step_id=step_id,
            sequence=self.sequence,
            node_id=node.id,
            node_type=node.type,
            label=node.label,
            status=TraceStatus.SUCCESS if result.success else TraceStatus.FAILED,
            timestamp_start=execution.started_at,
            duration_ms=execution.duration_ms,
            input=result.trace_input,
            output=logged_output,
            error=result.error,
            loop_index=execution.loop_index,
        )
        self.trace.append(entry)
        self.status[node.id] = NodeStatus.SUCCESS if result.success else NodeStatus.FAILED
        self.outputs[node.id] = logged_output
        return entry


class WorkflowSimulator:
    """Walks a workflow graph from its Start node, simulating every node it reaches.

    Each dispatched node yields one trace entry. Failures are recorded on the
    trace and stop only the path they occur on; nothing raised by a handler
    escapes ``simulate``.
    """

    def __init__(
        self,
        registry: Optional[NodeHandlerRegistry] = None,
        http_client=None,
        config: Optional[AppConfig] = None,
    ):
        """Initialize the simulator.

        Args:
            registry: Handler registry, defaults to the built-in handlers
            http_client: Client used by API Call nodes, defaults to the configured HTTP mode
            config: Application configuration, defaults to the process-wide config
        """
        self.config = config or get_config()
        self.registry = registry or get_default_registry()
        self.runtime = HandlerRuntime(
            http_client=http_client or create_http_client(self.config.http_mode),
            default_http_timeout_ms=self.config.default_http_timeout_ms,
        )
        self.step_ceiling = self.config.step_ceiling
        self.max_loop_concurrency = self.config.max_loop_concurrency

    def simulate(
        self,
        nodes: Iterable[Union[Node, Dict[str, Any]]],
        edges: Iterable[Union[Edge, Dict[str, Any]]],
        sample_payload: Any = None,
        workflow_id: Optional[str] = None,
    ) -> SimulationResult:
        """Simulate a workflow.

        Args:
            nodes: Workflow nodes (models or editor dictionaries)
            edges: Workflow edges (models or editor dictionaries)
            sample_payload: Initial payload as JSON text or an already decoded value;
                defaults to the Start node's sample input
            workflow_id: Identifier exposed as ``system.workflow_id``

        Returns:
            SimulationResult with the trace, node statuses and node outputs
        """
        graph = WorkflowGraph(
            [node if isinstance(node, Node) else Node.model_validate(node) for node in nodes],
            [edge if isinstance(edge, Edge) else Edge.model_validate(edge) for edge in edges],
        )
        run = _RunState(str(uuid.uuid4()))
        with logging_context(run_id=run.run_id):
            return self._simulate(graph, run, sample_payload, workflow_id)

    def _simulate(self, graph: WorkflowGraph, run: _RunState, sample_payload: Any,
                  workflow_id: Optional[str]) -> SimulationResult:
        start = graph.start_node()
        if start is None:
            logger.warning("Workflow has no start node, nothing to simulate")
            return SimulationResult(run_id=run.run_id)

        payload = self._initial_payload(start, sample_payload)
        started_at, _ = _now()
        initial_ctx = VariableContext(
            payload=payload,
            system=build_system_values(workflow_id or "workflow", run.run_id, started_at),
        )
        logger.info(f"Starting simulation {run.run_id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")

        queue = deque([(start.id, initial_ctx)])
        steps = 0
        truncated = False
        while queue:
            if steps >= self.step_ceiling:
                truncated = True
                logger.warning(f"Step ceiling of {self.step_ceiling} reached, {len(queue)} queued items dropped")
                break

            node_id, ctx = queue.popleft()
            node = graph.node_by_id(node_id)
            if node is None:
                logger.debug(f"Skipping unknown node {node_id}")
                continue

            steps += 1
            result = self._dispatch(run, graph, node, ctx)
            if not result.success or node.type == NodeType.END:
                continue

            next_ctx = ctx.with_node_output(node.id, result.output, result.logged_output())
            for edge in graph.outgoing_edges(node.id):
                if self._follows(graph, node, edge, result):
                    queue.append((edge.target, next_ctx))

        log_with_context(
            logger, logging.INFO, f"Simulation {run.run_id} finished after {steps} steps",
            steps_executed=steps, trace_entries=len(run.trace), truncated=truncated,
        )
        return SimulationResult(
            run_id=run.run_id,
            trace=run.trace,
            status=run.status,
            outputs=run.outputs,
            steps_executed=steps,
            truncated=truncated,
        )

    def _initial_payload(self, start: Node, sample_payload: Any) -> Any:
        """Caller input, else the Start node's sample input, else the default payload."""
        if sample_payload is not None and not isinstance(sample_payload, str):
            return sample_payload

        candidate = sample_payload
        if not candidate:
            candidate = (start.config or {}).get("devInput") or (start.config or {}).get("dev_input")
            if isinstance(candidate, (dict, list)):
                return candidate
        if candidate:
            try:
                return json.loads(candidate)
            except (TypeError, ValueError):
                logger.warning("Sample payload is not valid JSON, using the default payload")
        return json.loads(self.config.default_payload)

    def _follows(self, graph: WorkflowGraph, node: Node, edge: Edge, result: HandlerResult) -> bool:
        """Decide whether the outer walk continues along ``edge``."""
        target = graph.node_by_id(edge.target)
        if target is not None and target.parent_id:
            # loop bodies are driven by their container
            return False
        if node.type == NodeType.LOOP and edge.source_handle == LOOP_BODY_HANDLE:
            return False
        if edge.source_handle is None or result.selected_handles is None:
            return True
        return edge.source_handle in result.selected_handles

    def _dispatch(self, run: _RunState, graph: WorkflowGraph, node: Node, ctx: VariableContext) -> HandlerResult:
        """Simulate one queued node and record its trace entry."""
        started_at, started = _now()
        if node.type == NodeType.LOOP:
            result = self._guarded(node, ctx, lambda config: self._run_loop(run, graph, node, config, ctx))
        else:
            result = self._invoke(node, ctx)
        run.record(_Execution(node, result, started_at, (time.perf_counter() - started) * 1000))
        return result

    def _invoke(self, node: Node, ctx: VariableContext) -> HandlerResult:
        """Run the registered handler for a node."""
        def call(config):
            handler = self.registry.get(node.type)
            return handler(node, config, ctx, self.runtime)

        return self._guarded(node, ctx, call)

    def _guarded(self, node: Node, ctx: VariableContext, body) -> HandlerResult:
        """Parse the node's config and run ``body``, turning every error into a failed result."""
        try:
            config = parse_node_config(node)
        except PydanticValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            message = f"Invalid configuration: {location}: {first.get('msg', str(e))}" if location else \
                f"Invalid configuration: {first.get('msg', str(e))}"
            return HandlerResult(success=False, output={}, trace_input=ctx.payload, error=message)

        try:
            return body(config)
        except NodeExecutionError as e:
            logger.info(f"Node {node.id} failed: {e.message}")
            return HandlerResult(
                success=False,
                output=e.output,
                trace_input=e.details.get("input", ctx.payload),
                error=e.message,
            )
        except WorkflowEngineError as e:
            logger.warning(f"Node {node.id} failed: {e.message}")
            return HandlerResult(success=False, output={}, trace_input=ctx.payload, error=e.message)
        except Exception as e:
            logger.error(f"Unexpected error simulating node {node.id}: {str(e)}", exc_info=True)
            return HandlerResult(success=False, output={}, trace_input=ctx.payload,
                                 error=f"Unexpected error: {str(e)}")

    def _run_loop(self, run: _RunState, graph: WorkflowGraph, node: Node, config: LoopConfig,
                  ctx: VariableContext) -> HandlerResult:
        """Run the loop body once per element of the target array.

        Body entries are written to the trace as iterations complete, before
        the loop node's own entry.
        """
        target_path = config.target_array or ""
        items = resolve(ctx, target_path)
        if items is UNDEFINED:
            items = resolve(ctx, target_path, ResolutionMode.NODE)

        concurrency = min(config.concurrency, self.max_loop_concurrency)
        trace_input = {
            "mode": config.mode,
            "concurrency": concurrency if config.mode == "iteration" else None,
            "targetArray": target_path,
            "arrayLength": len(items) if isinstance(items, list) else 0,
        }
        if not isinstance(items, list):
            shown = "undefined" if items is UNDEFINED else json.dumps(items, default=str)
            return HandlerResult(
                success=False,
                output={"error": "Invalid Array"},
                trace_input=trace_input,
                error=f"Loop target is not an array: {target_path} = {shown}",
            )

        body = graph.body_order(node.id)
        if not body:
            output = {"loop_results": [], "count": 0, "message": "No child nodes found in loop"}
            return HandlerResult(success=True, output=output, trace_input=trace_input)

        if config.mode == "iteration":
            iterations, stopped_at = self._run_concurrent(run, node, config, body, items, ctx, concurrency), None
        else:
            iterations, stopped_at = self._run_sequential(run, node, config, body, items, ctx)

        failed = next((iteration for iteration in iterations if iteration.error), None)
        loop_results = [iteration.value for iteration in iterations if not iteration.error]
        output: Dict[str, Any] = {"loop_results": loop_results, "count": len(loop_results)}
        if stopped_at is not None:
            output["stoppedAtIndex"] = stopped_at
        if failed is not None:
            return HandlerResult(success=False, output=output, trace_input=trace_input, error=failed.error)
        return HandlerResult(success=True, output=output, trace_input=trace_input)

    def _run_sequential(self, run: _RunState, node: Node, config: LoopConfig, body: List[Node],
                        items: List[Any], ctx: VariableContext) -> Tuple[List[_Iteration], Optional[int]]:
        iterations: List[_Iteration] = []
        for index, item in enumerate(items):
            if config.termination_conditions:
                should_stop, _ = evaluate_condition(None, config.termination_conditions, ctx.with_loop(item, index))
                if should_stop:
                    logger.info(f"Loop {node.id} stopped by termination condition at index {index}")
                    return iterations, index

            iteration = self._run_iteration(node, config, body, item, index, ctx)
            for execution in iteration.executions:
                run.record(execution)
            iterations.append(iteration)
            if iteration.error:
                break
        return iterations, None

    def _run_concurrent(self, run: _RunState, node: Node, config: LoopConfig, body: List[Node],
                        items: List[Any], ctx: VariableContext, concurrency: int) -> List[_Iteration]:
        iterations: List[_Iteration] = []
        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            for chunk_start in range(0, len(items), concurrency):
                chunk = items[chunk_start:chunk_start + concurrency]
                # copy_context keeps run_id on records logged from worker threads
                futures = [
                    executor.submit(contextvars.copy_context().run, self._run_iteration,
                                    node, config, body, item, chunk_start + offset, ctx)
                    for offset, item in enumerate(chunk)
                ]
                chunk_iterations = [future.result() for future in futures]
                for iteration in chunk_iterations:
                    for execution in iteration.executions:
                        run.record(execution)
                iterations.extend(chunk_iterations)
                if any(iteration.error for iteration in chunk_iterations):
                    break
        return iterations

    def _run_iteration(self, node: Node, config: LoopConfig, body: List[Node], item: Any, index: int,
                       ctx: VariableContext) -> _Iteration:
        """Run every body node once for one element; nothing is recorded here."""
        iteration = _Iteration(index=index)
        iter_ctx = ctx.with_loop(item, index)
        for child in body:
            started_at, started = _now()
            if child.type == NodeType.LOOP:
                result = HandlerResult(
                    success=False,
                    output={},
                    trace_input={"item": item},
                    error="Nested loops are not supported inside a loop body",
                )
            else:
                result = self._invoke(child, iter_ctx)
            iteration.executions.append(
                _Execution(child, result, started_at, (time.perf_counter() - started) * 1000, loop_index=index)
            )
            if not result.success:
                iteration.error = f"Loop body node '{child.display_name}' failed at index {index}: {result.error}"
                return iteration
            iter_ctx = iter_ctx.with_node_output(child.id, result.output, result.logged_output())

        exported = UNDEFINED
        if config.export_output:
            exported = resolve(iter_ctx, config.export_output, ResolutionMode.NODE)
        iteration.value = {"item": item, "index": index} if exported is UNDEFINED else exported
        return iteration


def simulate(nodes, edges, sample_payload: Any = None, **kwargs) -> SimulationResult:
    """Simulate a workflow with a default-configured simulator."""
    return WorkflowSimulator(**kwargs).simulate(nodes, edges, sample_payload)
