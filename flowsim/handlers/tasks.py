"""Handlers for task nodes that produce mocked, shape-stable outputs."""

import uuid

from ..core.expressions import resolve_operand
from ..core.handler_registry import HandlerResult, HandlerRuntime
from ..core.variables import UNDEFINED, VariableContext, deep_substitute, substitute
from ..models.configs import (
    CCConfig,
    DataOpConfig,
    LLMConfig,
    NodeConfig,
    NotificationConfig,
    ScriptConfig,
)
from ..models.core import Node


def handle_script(node: Node, config: ScriptConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Scripts are never run; the configured output field reports execution."""
    output = {config.output_field or "result": "Script Executed"}
    return HandlerResult(
        success=True,
        output=output,
        trace_input={"language": config.language, "payload": ctx.payload},
    )


def handle_data_op(node: Node, config: DataOpConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Expose the target field's value (or the payload) as ``result``."""
    value = UNDEFINED
    if config.target_field:
        value = resolve_operand(ctx, config.target_field)
    output = {
        "result": ctx.payload if value is UNDEFINED else value,
        "operation": config.op_type,
        "processed": True,
    }
    return HandlerResult(
        success=True,
        output=output,
        trace_input={"operation": config.op_type, "target_field": config.target_field},
    )


def handle_notification(node: Node, config: NotificationConfig, ctx: VariableContext,
                        runtime: HandlerRuntime) -> HandlerResult:
    message = substitute(ctx, config.message or "", config.mode_for("message"))
    recipients = deep_substitute(ctx, config.recipients or "", config.mode_for("recipients"))
    output = {
        "status": "sent",
        "channel": config.channel,
        "recipients": recipients,
        "message": message,
    }
    return HandlerResult(success=True, output=output, trace_input=ctx.payload)


def handle_cc(node: Node, config: CCConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    output = {
        "status": "sent",
        "recipients": config.recipients,
        "channel": config.channel,
        "timing": config.timing,
    }
    return HandlerResult(success=True, output=output, trace_input=ctx.payload)


def handle_llm(node: Node, config: LLMConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Mock a completion built from the substituted prompts."""
    system_prompt = substitute(ctx, config.system_prompt or "", config.mode_for("system_prompt"))
    user_prompt = substitute(ctx, config.user_prompt or "", config.mode_for("user_prompt"))
    model = config.model or "default"

    output = {
        "text": f"[{model}] simulated response to: {user_prompt}",
        "response": {
            "id": f"sim-{uuid.uuid4().hex[:8]}",
            "model": model,
            "usage": {
                "prompt_tokens": len(system_prompt.split()) + len(user_prompt.split()),
                "completion_tokens": 0,
            },
        },
    }
    trace_input = {
        "model": model,
        "system_prompt": system_prompt,
        "user_prompt": user_prompt,
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
    }
    return HandlerResult(success=True, output=output, trace_input=trace_input)


def handle_pass_through(node: Node, config: NodeConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Generic handler for node types with no simulated behaviour."""
    return HandlerResult(success=True, output={"processed": True}, trace_input=ctx.payload)
