"""Handlers for flow-control nodes: start, end, branching, approval and delay."""

from typing import Any, Dict

from ..core.expressions import evaluate_condition, resolve_operand
from ..core.handler_registry import HandlerResult, HandlerRuntime
from ..core.logging import get_logger
from ..core.variables import UNDEFINED, VariableContext, resolve, to_display_string
from ..models.configs import (
    ApprovalConfig,
    ConditionConfig,
    DelayConfig,
    EndConfig,
    ParallelConfig,
    QuestionClassifierConfig,
    ResolutionMode,
    StartConfig,
)
from ..models.core import Node

logger = get_logger(__name__)


def handle_start(node: Node, config: StartConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Emit the initial payload unchanged."""
    payload = ctx.payload
    output = dict(payload) if isinstance(payload, dict) else payload
    return HandlerResult(success=True, output=output, trace_input=payload)


def handle_end(node: Node, config: EndConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Collect the configured outputs, or the payload when none are configured.

    Each output value is a variable path, optionally wrapped in ``{{ }}``;
    values that do not resolve are kept as literals.
    """
    outputs = [item for item in config.outputs if item.key and item.value not in (None, "")]
    if not outputs:
        return HandlerResult(success=True, output=ctx.payload, trace_input=ctx.payload)

    final_output: Dict[str, Any] = {}
    for item in outputs:
        value = item.value
        if isinstance(value, str):
            resolved = resolve(ctx, value)
            if resolved is UNDEFINED:
                resolved = resolve(ctx, value, ResolutionMode.NODE)
            final_output[item.key] = value if resolved is UNDEFINED else resolved
        else:
            final_output[item.key] = value

    return HandlerResult(success=True, output=final_output, trace_input=ctx.payload)


def handle_condition(node: Node, config: ConditionConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Evaluate the condition and select the ``true`` or ``false`` handle.

    An evaluation error fails the node with a ``false`` result.
    """
    result, error = evaluate_condition(config.expression, config.condition_groups, ctx)
    trace_input = {
        "expression": config.expression or "builder",
        "condition_groups": [group.model_dump(by_alias=True) for group in config.condition_groups],
        "data": ctx.payload,
    }
    output = {
        "result": result,
        "next_path": "true" if result else "false",
        "condition_result": result,
    }
    if error:
        return HandlerResult(success=False, output=output, trace_input=trace_input,
                             error=f"Condition evaluation failed: {error}")

    logger.debug(f"Condition {node.id} evaluated to {result}")
    return HandlerResult(
        success=True,
        output=output,
        trace_input=trace_input,
        selected_handles=[output["next_path"]],
    )


def handle_parallel(node: Node, config: ParallelConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Fan out along every configured branch."""
    handles = [f"branch-{index}" for index in range(len(config.branches))]
    output = {"branches": len(config.branches), "activated": handles}
    return HandlerResult(
        success=True,
        output=output,
        trace_input=ctx.payload,
        selected_handles=handles or None,
    )


def handle_question_classifier(node: Node, config: QuestionClassifierConfig, ctx: VariableContext,
                               runtime: HandlerRuntime) -> HandlerResult:
    """Pick the first category whose name or keyword occurs in the input text."""
    raw_input = resolve_operand(ctx, config.input_variable) if config.input_variable else ctx.payload
    text = "" if raw_input is UNDEFINED else to_display_string(raw_input)
    lowered = text.lower()

    matched_index = None
    for index, category in enumerate(config.categories):
        terms = [category.name] + list(category.keywords)
        if any(term and term.lower() in lowered for term in terms):
            matched_index = index
            break

    if matched_index is None:
        handle = "source-else"
        output = {"class_name": "else", "category_id": None, "matched": False}
    else:
        category = config.categories[matched_index]
        handle = f"source-{matched_index}"
        output = {"class_name": category.name, "category_id": category.id, "matched": True}

    return HandlerResult(
        success=True,
        output=output,
        trace_input={"input": text, "categories": [category.name for category in config.categories]},
        selected_handles=[handle],
    )


def handle_approval(node: Node, config: ApprovalConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Apply the configured mock decision; a rejection fails the node."""
    approver = config.approver or "manager"
    approved = (config.mock_decision or "approve").lower() != "reject"
    payload = ctx.payload if isinstance(ctx.payload, dict) else {"value": ctx.payload}

    trace_input = {
        "approvers": approver,
        "approval_type": config.approval_type or "single",
        "approval_strategy": config.approval_strategy,
        "timeout": f"{to_display_string(config.timeout)} {config.timeout_unit}",
        "form_title": config.form_title,
        "request": ctx.payload,
        "context_data": dict(ctx.nodes),
    }
    output = {
        "approved": approved,
        "comment": "Approved" if approved else "Rejected",
        "approver": approver,
        "form_title": config.form_title,
        "original_request": ctx.payload,
        "processed_data": {
            **payload,
            "approval_result": "approved" if approved else "rejected",
            "approver": approver,
        },
        "notifications": {
            "approval_notice_sent": config.send_approval_notice,
            "timeout_notice_sent": config.send_timeout_notice,
            "recipients": config.notice_recipient,
        },
    }
    if not approved:
        return HandlerResult(success=False, output=output, trace_input=trace_input,
                             error=f"Approval rejected by {approver}")
    return HandlerResult(success=True, output=output, trace_input=trace_input)


def handle_delay(node: Node, config: DelayConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Record the configured wait without sleeping."""
    output = {
        "status": "waited",
        "duration": config.duration or 0,
        "unit": config.unit,
        "duration_seconds": config.duration_seconds(),
    }
    return HandlerResult(success=True, output=output, trace_input=ctx.payload)
